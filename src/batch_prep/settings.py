"""Resolved, immutable configuration for one batch-prep invocation.

Precedence, lowest to highest: field defaults, TOML config file (profile
section), ``BATCHPREP_*`` environment variables, CLI overrides.
"""

from __future__ import annotations

import hashlib
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from batch_prep.exceptions import ConfigError

ENV_PREFIX = "BATCHPREP_"
DEFAULT_CONFIG_FILE = Path("batch-prep.toml")

GPU_BASE_CONTAINER_IMAGE = "nvidia/cuda:12.0.0-base-ubuntu22.04"
CPU_BASE_CONTAINER_IMAGE = "ubuntu:22.04"


@dataclass(frozen=True)
class OsProfile:
    """Marketplace image and Batch node agent matching one base OS."""

    family: str
    version: str
    image_urn: str
    node_agent_sku: str
    image_sku: str
    package_manager: Literal["apt", "dnf"]
    dockerfile: str


_OS_PROFILES: dict[tuple[str, str], OsProfile] = {
    ("ubuntu", "22.04"): OsProfile(
        family="ubuntu",
        version="22.04",
        image_urn="Canonical:0001-com-ubuntu-server-jammy:22_04-lts:latest",
        node_agent_sku="batch.node.ubuntu 22.04",
        image_sku="Ubuntu2204",
        package_manager="apt",
        dockerfile="Dockerfile.gpu.ubuntu",
    ),
    ("almalinux", "8"): OsProfile(
        family="almalinux",
        version="8",
        image_urn="almalinux:almalinux-x86_64:8-gen2:latest",
        node_agent_sku="batch.node.el 8",
        image_sku="AlmaLinux8",
        package_manager="dnf",
        dockerfile="Dockerfile.gpu.almalinux",
    ),
    ("almalinux", "9"): OsProfile(
        family="almalinux",
        version="9",
        image_urn="almalinux:almalinux-x86_64:9-gen2:latest",
        node_agent_sku="batch.node.el 9",
        image_sku="AlmaLinux9",
        package_manager="dnf",
        dockerfile="Dockerfile.gpu.almalinux",
    ),
}

_DEFAULT_OS_VERSION = {"ubuntu": "22.04", "almalinux": "8"}


def _short_hash(*parts: str) -> str:
    return hashlib.sha1(":".join(parts).encode("utf-8")).hexdigest()[:10]


class PrepSettings(BaseSettings):
    """Every option a provisioning run reads.

    Instances are frozen; build a new one with :func:`load_settings`
    instead of mutating.  Derived fields (``os_version``, ``vm_size``,
    ``batch_account_name``, ``registry_name``) are resolved during
    validation so every consumer sees the same values.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        frozen=True,
        extra="forbid",
    )

    # -- Placement ------------------------------------------------------------

    resource_group: str = "batch-pool-verify"
    location: str = "swedencentral"

    # -- Base OS / compute ----------------------------------------------------

    base_os: Literal["ubuntu", "almalinux"] = "ubuntu"
    os_version: str = Field(default="", validate_default=True)
    enable_gpu: bool = False
    gpu_vm_size: str = "Standard_NC4as_T4_v3"
    cpu_vm_size: str = "Standard_D2s_v3"
    vm_size: str = Field(default="", validate_default=True)
    vm_name: str = "batch-custom-vm"
    admin_username: str = "azureuser"

    # -- Shared Image Gallery -------------------------------------------------

    gallery_name: str = "batchImageGallery"
    image_definition: str = "batchCustomImage"
    image_version: str = "1.0.0"
    image_publisher: str = "MyCompany"
    image_offer: str = "BatchImages"
    hyperv_generation: Literal["V1", "V2"] = "V1"

    # -- Batch ----------------------------------------------------------------

    batch_account_name: str = Field(default="", validate_default=True)
    pool_id: str = "myBatchPool"
    node_count: int = Field(default=1, ge=1)
    image_id: str = Field(
        default="",
        description="Explicit image resource id; bypasses the image metadata file.",
    )

    # -- Container registry ---------------------------------------------------

    create_registry: bool = False
    registry_name: str = Field(default="", validate_default=True)
    registry_sku: Literal["Basic", "Standard", "Premium"] = "Basic"
    build_container_image: bool = False
    container_image_name: str = "batch-gpu-pytorch"
    container_image_tag: str = "latest"
    build_context: str = "."
    preload_images: bool = False

    # -- Preflight ------------------------------------------------------------

    # From the environment this is JSON: BATCHPREP_REQUIRED_PROVIDERS='["Microsoft.Batch"]'
    required_providers: tuple[str, ...] = (
        "Microsoft.Compute",
        "Microsoft.Network",
        "Microsoft.Batch",
    )
    register_providers: bool = True

    # -- Polling / timeouts (seconds) -----------------------------------------

    poll_interval_seconds: float = Field(default=30.0, gt=0)
    vm_ready_timeout_seconds: float = 900.0
    gpu_driver_timeout_seconds: float = 1200.0
    image_version_timeout_seconds: float = 2700.0
    batch_account_timeout_seconds: float = 600.0
    provider_registration_timeout_seconds: float = 600.0
    command_timeout_seconds: float = 1800.0

    # -- Local files ----------------------------------------------------------

    image_metadata_file: Path = Path("image_metadata.json")
    pool_metadata_file: Path = Path("batch_metadata.json")
    work_dir: Path = Path(".")
    log_dir: Path = Path("logs")
    az_binary: str = "az"

    # ------------------------------------------------------------------
    # Derived-field validators
    # ------------------------------------------------------------------

    @field_validator("os_version")
    @classmethod
    def _resolve_os_version(cls, value: str, info: ValidationInfo) -> str:
        base_os = info.data.get("base_os", "ubuntu")
        version = value or _DEFAULT_OS_VERSION.get(base_os, "")
        if (base_os, version) not in _OS_PROFILES:
            supported = sorted(v for f, v in _OS_PROFILES if f == base_os)
            raise ValueError(
                f"unsupported {base_os} version {version!r}; expected one of {supported}"
            )
        return version

    @field_validator("vm_size")
    @classmethod
    def _resolve_vm_size(cls, value: str, info: ValidationInfo) -> str:
        if value:
            return value
        if info.data.get("enable_gpu"):
            return str(info.data.get("gpu_vm_size", ""))
        return str(info.data.get("cpu_vm_size", ""))

    @field_validator("batch_account_name")
    @classmethod
    def _resolve_batch_account(cls, value: str, info: ValidationInfo) -> str:
        if value:
            return value
        # Batch account names are global, 3-24 lowercase alphanumerics.
        return "batch" + _short_hash(
            str(info.data.get("resource_group", "")), str(info.data.get("location", ""))
        )

    @field_validator("registry_name")
    @classmethod
    def _resolve_registry_name(cls, value: str, info: ValidationInfo) -> str:
        if value:
            return value
        return "batchacr" + _short_hash(
            str(info.data.get("resource_group", "")), "registry"
        )

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def os_profile(self) -> OsProfile:
        return _OS_PROFILES[(self.base_os, self.os_version)]

    @property
    def registry_login_server(self) -> str:
        return f"{self.registry_name}.azurecr.io"

    @property
    def uses_registry_image(self) -> bool:
        return self.enable_gpu and self.build_container_image and self.create_registry

    @property
    def container_image(self) -> str:
        """Image the pool nodes and the builder VM run workloads from."""
        if self.uses_registry_image:
            return (
                f"{self.registry_login_server}/"
                f"{self.container_image_name}:{self.container_image_tag}"
            )
        if self.enable_gpu:
            return GPU_BASE_CONTAINER_IMAGE
        return CPU_BASE_CONTAINER_IMAGE

    @property
    def managed_image_name(self) -> str:
        return f"{self.vm_name}-image"

    @property
    def image_version_path(self) -> str:
        """Probe name of the gallery image version."""
        return f"{self.gallery_name}/{self.image_definition}/{self.image_version}"

    def image_version_id(self, subscription_id: str) -> str:
        """Resource id of the gallery image version in *subscription_id*."""
        return (
            f"/subscriptions/{subscription_id}/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Compute/galleries/{self.gallery_name}"
            f"/images/{self.image_definition}/versions/{self.image_version}"
        )

    def resolve_path(self, path: Path) -> Path:
        """Anchor a relative local path at ``work_dir``."""
        return path if path.is_absolute() else self.work_dir / path


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _load_toml(path: Path) -> dict[str, Any]:
    """Read a TOML config file, returning {} if absent."""
    if not path.is_file():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError, PermissionError) as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc


def _profile_values(data: dict[str, Any], profile: str) -> dict[str, Any]:
    """Extract a profile section from parsed TOML data."""
    section = data.get(profile)
    if isinstance(section, dict):
        return section
    return {}


def load_settings(
    overrides: dict[str, Any] | None = None,
    *,
    config_path: Path | None = None,
    profile: str | None = None,
) -> PrepSettings:
    """Build settings with precedence: overrides > env vars > TOML file > defaults.

    ``None`` values in *overrides* are ignored so unset CLI flags fall
    through to the lower layers.
    """
    effective_profile = profile or os.environ.get(f"{ENV_PREFIX}PROFILE", "default")
    file_vals = _profile_values(_load_toml(config_path or DEFAULT_CONFIG_FILE), effective_profile)

    env_keys = {key.upper() for key in os.environ}
    layered = {
        key: value
        for key, value in file_vals.items()
        if f"{ENV_PREFIX}{key.upper()}" not in env_keys
    }
    layered.update({key: value for key, value in (overrides or {}).items() if value is not None})

    try:
        return PrepSettings(**layered)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from exc
