"""Steps shared by the image and pool plans."""

from __future__ import annotations

from typing import TYPE_CHECKING

from batch_prep.plan import ProvisioningStep
from batch_prep.probe import ResourceKind

if TYPE_CHECKING:
    from batch_prep.driver import RunContext


def _resource_group_exists(ctx: RunContext) -> str | None:
    name = ctx.settings.resource_group
    if ctx.probe.exists(ResourceKind.RESOURCE_GROUP, name):
        return f"resource group {name} exists"
    return None


def _create_resource_group(ctx: RunContext) -> None:
    settings = ctx.settings
    ctx.run(
        f"Create resource group {settings.resource_group}",
        "group", "create",
        "--name", settings.resource_group,
        "--location", settings.location,
        "--output", "none",
    )  # fmt: skip


def ensure_resource_group_step() -> ProvisioningStep:
    return ProvisioningStep(
        name="ensure-resource-group",
        description="Ensure resource group",
        action=_create_resource_group,
        precondition=_resource_group_exists,
    )
