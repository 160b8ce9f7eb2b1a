"""Existence and state queries for the resources a plan creates.

Every "create" step consults the probe first so re-running a plan reuses
what a previous run left behind instead of failing on a conflict.
Nested resources are addressed with ``/``-separated names, e.g.
``"batch-custom-vm/NvidiaGpuDriverLinux"`` or
``"batchImageGallery/batchCustomImage/1.0.0"``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

from batch_prep.azure_cli import decode_json
from batch_prep.exceptions import CommandFailedError

if TYPE_CHECKING:
    from batch_prep.azure_cli import AzureCli

logger = logging.getLogger(__name__)

# Substrings of az error output meaning "absent" (ResourceNotFound,
# ResourceGroupNotFound, PoolNotFound, "... could not be found", ...).
_NOT_FOUND_MARKERS = ("notfound", "not found", "could not be found", "does not exist")


class ResourceKind(StrEnum):
    """External resource kinds the provisioning plans touch."""

    RESOURCE_GROUP = "resource_group"
    VM = "vm"
    VM_EXTENSION = "vm_extension"
    GALLERY = "gallery"
    IMAGE_DEFINITION = "image_definition"
    IMAGE_VERSION = "image_version"
    MANAGED_IMAGE = "managed_image"
    BATCH_ACCOUNT = "batch_account"
    POOL = "pool"
    REGISTRY = "registry"
    REGISTRY_IMAGE = "registry_image"
    PROVIDER = "provider"


@dataclass
class ResourceHandle:
    """In-memory reference to an external resource and its last observed state."""

    kind: ResourceKind
    name: str
    identifier: str = ""
    state: str = ""
    properties: dict[str, Any] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class NotFound:
    """Sentinel returned by :meth:`ResourceProbe.describe` for absent resources."""

    _instance: NotFound | None = None

    def __new__(cls) -> NotFound:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND: Final = NotFound()


def _split(name: str, parts: int, kind: ResourceKind) -> list[str]:
    pieces = name.split("/")
    if len(pieces) != parts or not all(pieces):
        raise ValueError(f"{kind.value} name must have {parts} '/'-separated parts, got {name!r}")
    return pieces


def _vm_power_state(data: dict[str, Any]) -> tuple[str, bool]:
    """Return (power state, generalized) from ``az vm get-instance-view`` output."""
    statuses = (data.get("instanceView") or {}).get("statuses") or []
    power = ""
    generalized = False
    for status in statuses:
        code = str(status.get("code", ""))
        if code.startswith("PowerState/"):
            power = code.split("/", 1)[1]
        elif code.lower() == "osstate/generalized":
            generalized = True
    return power, generalized


def _provisioning_state(data: dict[str, Any]) -> str:
    state = data.get("provisioningState")
    if state is None:
        state = (data.get("properties") or {}).get("provisioningState", "")
    return str(state or "")


class ResourceProbe:
    """Answers "does it exist?" and "what state is it in?" for a resource kind.

    Each successful :meth:`describe` refreshes the handle ledger, which the
    driver reports at the end of a run.
    """

    def __init__(
        self,
        cli: AzureCli,
        resource_group: str,
        *,
        log: logging.Logger | None = None,
    ) -> None:
        self._cli = cli
        self._resource_group = resource_group
        self._log = log or logger
        self.handles: dict[tuple[ResourceKind, str], ResourceHandle] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def exists(self, kind: ResourceKind, name: str) -> bool:
        return bool(self.describe(kind, name))

    def describe(self, kind: ResourceKind, name: str) -> ResourceHandle | NotFound:
        """Query the current state of *name*; ``NOT_FOUND`` if it is absent.

        Raises:
            CommandFailedError: the lookup failed for any other reason
                (throttling, expired login, network) or returned
                unreadable output.
        """
        args = self._show_args(kind, name)
        result = self._cli.run(
            f"Check {kind.value.replace('_', ' ')} {name}",
            *args,
            "--output",
            "json",
            mutating=False,
        )
        if not result.succeeded:
            if not self._looks_missing(result.error):
                raise CommandFailedError(
                    f"Lookup of {kind.value} {name} failed: {result.error_summary}",
                    result=result,
                )
            self._log.debug("%s %s not found", kind.value, name)
            self.handles.pop((kind, name), None)
            return NOT_FOUND

        data = decode_json(result.output, description=f"show {kind.value} {name}")
        if not data:
            return NOT_FOUND

        handle = self._to_handle(kind, name, data)
        self.handles[(kind, name)] = handle
        return handle

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _looks_missing(error: str) -> bool:
        lowered = error.lower()
        return any(marker in lowered for marker in _NOT_FOUND_MARKERS)

    def _show_args(self, kind: ResourceKind, name: str) -> list[str]:
        rg = self._resource_group
        match kind:
            case ResourceKind.RESOURCE_GROUP:
                return ["group", "show", "--name", name]
            case ResourceKind.VM:
                return ["vm", "get-instance-view", "--resource-group", rg, "--name", name]
            case ResourceKind.VM_EXTENSION:
                vm, ext = _split(name, 2, kind)
                return [
                    "vm", "extension", "show",
                    "--resource-group", rg, "--vm-name", vm, "--name", ext,
                ]  # fmt: skip
            case ResourceKind.GALLERY:
                return ["sig", "show", "--resource-group", rg, "--gallery-name", name]
            case ResourceKind.IMAGE_DEFINITION:
                gallery, definition = _split(name, 2, kind)
                return [
                    "sig", "image-definition", "show",
                    "--resource-group", rg,
                    "--gallery-name", gallery,
                    "--gallery-image-definition", definition,
                ]  # fmt: skip
            case ResourceKind.IMAGE_VERSION:
                gallery, definition, version = _split(name, 3, kind)
                return [
                    "sig", "image-version", "show",
                    "--resource-group", rg,
                    "--gallery-name", gallery,
                    "--gallery-image-definition", definition,
                    "--gallery-image-version", version,
                ]  # fmt: skip
            case ResourceKind.MANAGED_IMAGE:
                return ["image", "show", "--resource-group", rg, "--name", name]
            case ResourceKind.BATCH_ACCOUNT:
                return ["batch", "account", "show", "--resource-group", rg, "--name", name]
            case ResourceKind.POOL:
                account, pool = _split(name, 2, kind)
                return ["batch", "pool", "show", "--account-name", account, "--pool-id", pool]
            case ResourceKind.REGISTRY:
                return ["acr", "show", "--resource-group", rg, "--name", name]
            case ResourceKind.REGISTRY_IMAGE:
                registry, image = _split(name, 2, kind)
                return ["acr", "repository", "show", "--name", registry, "--image", image]
            case ResourceKind.PROVIDER:
                return ["provider", "show", "--namespace", name]
        raise ValueError(f"unsupported resource kind: {kind!r}")  # pragma: no cover

    @staticmethod
    def _to_handle(kind: ResourceKind, name: str, data: Any) -> ResourceHandle:
        if not isinstance(data, dict):
            return ResourceHandle(kind=kind, name=name, properties={"value": data})

        properties: dict[str, Any] = {}
        if kind is ResourceKind.VM:
            state, generalized = _vm_power_state(data)
            properties["generalized"] = generalized
            properties["provisioningState"] = _provisioning_state(data)
        elif kind is ResourceKind.PROVIDER:
            state = str(data.get("registrationState", ""))
        elif kind is ResourceKind.POOL:
            state = str(data.get("state", ""))
            vm_config = data.get("virtualMachineConfiguration") or {}
            properties["allocationState"] = data.get("allocationState", "")
            properties["vmSize"] = data.get("vmSize", "")
            properties["targetDedicatedNodes"] = data.get("targetDedicatedNodes")
            properties["imageId"] = (vm_config.get("imageReference") or {}).get(
                "virtualMachineImageId", ""
            )
        else:
            state = _provisioning_state(data)

        return ResourceHandle(
            kind=kind,
            name=name,
            identifier=str(data.get("id", "")),
            state=state,
            properties=properties,
        )
