"""Persisted hand-off records between the image and pool stages.

Both files use camelCase keys, the layout job-submission tooling reads.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from batch_prep.exceptions import MetadataInvalidError, MetadataNotFoundError

logger = logging.getLogger(__name__)

REQUIRED_IMAGE_FIELDS = (
    "imageId",
    "nodeAgentSku",
    "galleryName",
    "imageName",
    "version",
    "location",
)


def utc_timestamp() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class ImageMetadata(BaseModel):
    """Written at the end of the image plan, read at the start of a pool-only run."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    image_id: str = Field(alias="imageId")
    node_agent_sku: str = Field(alias="nodeAgentSku")
    gallery_name: str = Field(alias="galleryName")
    image_name: str = Field(alias="imageName")
    version: str
    location: str
    base_os: str = Field(default="", alias="baseOS")
    os_version: str = Field(default="", alias="osVersion")
    gpu_enabled: bool = Field(default=False, alias="gpuEnabled")
    vm_size: str = Field(default="", alias="vmSize")
    created_at: str = Field(default_factory=utc_timestamp, alias="createdAt")
    resource_group: str = Field(default="", alias="resourceGroup")


class PoolMetadata(BaseModel):
    """Written after a pool is submitted; read by job-submission callers."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    batch_account: str = Field(alias="batchAccount")
    pool_id: str = Field(alias="poolId")
    image_id: str = Field(alias="imageId")
    vm_size: str = Field(alias="vmSize")
    node_count: int = Field(alias="nodeCount")
    location: str
    gpu_enabled: bool = Field(default=False, alias="gpuEnabled")
    base_os: str = Field(default="", alias="baseOS")
    created_at: str = Field(default_factory=utc_timestamp, alias="createdAt")
    resource_group: str = Field(default="", alias="resourceGroup")


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class MetadataStore:
    """Reads and writes the image and pool metadata files."""

    def __init__(
        self,
        image_path: Path,
        pool_path: Path,
        *,
        log: logging.Logger | None = None,
    ) -> None:
        self.image_path = image_path
        self.pool_path = pool_path
        self._log = log or logger

    # ------------------------------------------------------------------
    # Image metadata
    # ------------------------------------------------------------------

    def save_image(self, metadata: ImageMetadata) -> Path:
        _write_json_atomic(self.image_path, metadata.model_dump(by_alias=True))
        self._log.info("Image metadata saved to %s", self.image_path)
        return self.image_path

    def load_image(self) -> ImageMetadata:
        """Load and validate the image hand-off record.

        Raises:
            MetadataNotFoundError: the file does not exist.
            MetadataInvalidError: the file is not a JSON object, or
                required fields are missing or empty.
        """
        path = self.image_path
        if not path.is_file():
            raise MetadataNotFoundError(path)

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MetadataInvalidError(path, reason=f"invalid JSON ({exc})") from exc
        if not isinstance(raw, dict):
            raise MetadataInvalidError(path, reason="top-level value is not an object")

        missing = [
            key
            for key in REQUIRED_IMAGE_FIELDS
            if not isinstance(raw.get(key), str) or not raw[key].strip()
        ]
        if missing:
            raise MetadataInvalidError(path, missing_fields=missing)

        try:
            metadata = ImageMetadata.model_validate(raw)
        except ValidationError as exc:
            raise MetadataInvalidError(path, reason=str(exc)) from exc

        self._log.info("Loaded image metadata from %s (image %s)", path, metadata.image_id)
        return metadata

    # ------------------------------------------------------------------
    # Pool metadata
    # ------------------------------------------------------------------

    def save_pool(self, metadata: PoolMetadata) -> Path:
        _write_json_atomic(self.pool_path, metadata.model_dump(by_alias=True))
        self._log.info("Pool metadata saved to %s", self.pool_path)
        return self.pool_path

    def load_pool(self) -> PoolMetadata | None:
        """Return the last pool record, or None if no pool was created here."""
        if not self.pool_path.is_file():
            return None
        try:
            return PoolMetadata.model_validate_json(self.pool_path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise MetadataInvalidError(self.pool_path, reason=str(exc)) from exc
