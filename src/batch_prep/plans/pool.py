"""Pool plan: create a Batch account and a pool that boots the captured image."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

from batch_prep.exceptions import MetadataNotFoundError, StepFailedError
from batch_prep.metadata import PoolMetadata
from batch_prep.plan import ProvisioningPlan, ProvisioningStep
from batch_prep.plans._common import ensure_resource_group_step
from batch_prep.probe import ResourceHandle, ResourceKind
from batch_prep.templates import build_start_task, render_pool_spec, write_pool_spec

if TYPE_CHECKING:
    from batch_prep.driver import RunContext
    from batch_prep.settings import PrepSettings


# ---------------------------------------------------------------------------
# Image hand-off
# ---------------------------------------------------------------------------


def _list_available_versions(ctx: RunContext) -> None:
    s = ctx.settings
    result = ctx.cli.run(
        "List gallery image versions",
        "sig", "image-version", "list",
        "--resource-group", s.resource_group,
        "--gallery-name", s.gallery_name,
        "--gallery-image-definition", s.image_definition,
        "--query", "[].name",
        "--output", "tsv",
        mutating=False,
    )  # fmt: skip
    versions = result.output.split() if result.succeeded else []
    if versions:
        ctx.log.info(
            "Available versions of %s/%s: %s",
            s.gallery_name,
            s.image_definition,
            ", ".join(versions),
        )
    else:
        ctx.log.info("No image versions found in %s/%s", s.gallery_name, s.image_definition)


def _load_image_from_file(ctx: RunContext) -> None:
    s = ctx.settings
    try:
        metadata = ctx.store.load_image()
    except MetadataNotFoundError:
        _list_available_versions(ctx)
        raise
    if metadata.location != s.location:
        ctx.log.warning(
            "Image was built in %s but the pool targets %s", metadata.location, s.location
        )
    ctx.values["image_id"] = metadata.image_id
    ctx.values["node_agent_sku"] = metadata.node_agent_sku


def _load_image_from_run(ctx: RunContext) -> None:
    s = ctx.settings
    metadata = ctx.values.get("image_metadata")
    if metadata is not None:
        ctx.values["image_id"] = metadata.image_id
        ctx.values["node_agent_sku"] = metadata.node_agent_sku
        return
    subscription_id = ctx.values.get("subscription_id")
    if not subscription_id:
        raise StepFailedError(
            "No image from the image stage and no subscription to derive it from",
            step=ctx.step_name,
        )
    ctx.values["image_id"] = s.image_version_id(subscription_id)
    ctx.values["node_agent_sku"] = s.os_profile.node_agent_sku


def _load_image(ctx: RunContext, *, from_previous_stage: bool) -> None:
    s = ctx.settings
    if s.image_id:
        ctx.values["image_id"] = s.image_id
        ctx.values["node_agent_sku"] = s.os_profile.node_agent_sku
    elif from_previous_stage:
        _load_image_from_run(ctx)
    else:
        _load_image_from_file(ctx)
    ctx.log.info("Pool image: %s (%s)", ctx.values["image_id"], ctx.values["node_agent_sku"])


# ---------------------------------------------------------------------------
# Batch account
# ---------------------------------------------------------------------------


def _batch_account_ready(ctx: RunContext) -> str | None:
    name = ctx.settings.batch_account_name
    handle = ctx.probe.describe(ResourceKind.BATCH_ACCOUNT, name)
    if isinstance(handle, ResourceHandle) and handle.state == "Succeeded":
        return f"batch account {name} exists"
    return None


def _create_batch_account(ctx: RunContext) -> None:
    s = ctx.settings
    if not ctx.probe.exists(ResourceKind.BATCH_ACCOUNT, s.batch_account_name):
        ctx.run(
            f"Create Batch account {s.batch_account_name}",
            "batch", "account", "create",
            "--name", s.batch_account_name,
            "--resource-group", s.resource_group,
            "--location", s.location,
            "--output", "none",
        )  # fmt: skip
    ctx.wait_for_state(
        ResourceKind.BATCH_ACCOUNT,
        s.batch_account_name,
        label=f"Batch account {s.batch_account_name}",
    )


def _login_batch_account(ctx: RunContext) -> None:
    s = ctx.settings
    ctx.run(
        f"Log in to Batch account {s.batch_account_name}",
        "batch", "account", "login",
        "--name", s.batch_account_name,
        "--resource-group", s.resource_group,
        "--shared-key-auth",
    )  # fmt: skip


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


def _render_pool_spec(ctx: RunContext) -> None:
    s = ctx.settings
    start_task = build_start_task(s)
    ctx.values["pool_spec"] = render_pool_spec(
        s,
        image_id=ctx.values["image_id"],
        node_agent_sku=ctx.values["node_agent_sku"],
        start_task=start_task,
    )
    ctx.log.info("Start task: %s", start_task.render())


def _pool_exists(ctx: RunContext) -> str | None:
    s = ctx.settings
    if ctx.probe.exists(ResourceKind.POOL, f"{s.batch_account_name}/{s.pool_id}"):
        return f"pool {s.pool_id} exists"
    return None


def _create_pool(ctx: RunContext) -> None:
    s = ctx.settings
    path = write_pool_spec(
        s.resolve_path(Path(f"pool_config_{s.pool_id}.json")), ctx.values["pool_spec"]
    )
    try:
        ctx.run(
            f"Create Batch pool {s.pool_id} ({s.node_count} x {s.vm_size})",
            "batch", "pool", "create",
            "--account-name", s.batch_account_name,
            "--json-file", str(path),
        )  # fmt: skip
    finally:
        path.unlink(missing_ok=True)


def _live_pool(ctx: RunContext) -> dict[str, Any]:
    """Size and image of the pool as Batch reports it, falling back to the settings."""
    s = ctx.settings
    live: dict[str, Any] = {
        "vmSize": s.vm_size,
        "targetDedicatedNodes": s.node_count,
        "imageId": ctx.values["image_id"],
    }
    handle = ctx.probe.describe(ResourceKind.POOL, f"{s.batch_account_name}/{s.pool_id}")
    if not isinstance(handle, ResourceHandle):
        return live
    for key, configured in list(live.items()):
        actual = handle.properties.get(key)
        if actual in (None, ""):
            continue
        if str(actual).lower() != str(configured).lower():
            ctx.log.warning(
                "Pool %s has %s=%s, not the configured %s; recording the live value",
                s.pool_id,
                key,
                actual,
                configured,
            )
        live[key] = actual
    return live


def _save_pool_metadata(ctx: RunContext) -> None:
    s = ctx.settings
    live = _live_pool(ctx)
    metadata = PoolMetadata(
        batch_account=s.batch_account_name,
        pool_id=s.pool_id,
        image_id=live["imageId"],
        vm_size=live["vmSize"],
        node_count=int(live["targetDedicatedNodes"]),
        location=s.location,
        gpu_enabled=s.enable_gpu,
        base_os=s.base_os,
        resource_group=s.resource_group,
    )
    ctx.store.save_pool(metadata)
    ctx.values["pool_metadata"] = metadata


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


def build_pool_plan(
    settings: PrepSettings, *, from_previous_stage: bool = False
) -> ProvisioningPlan:
    """Pool plan.

    With *from_previous_stage* the image comes from the image plan that
    ran earlier in the same invocation instead of the metadata file.
    """
    return ProvisioningPlan(
        name="pool",
        steps=(
            ProvisioningStep(
                name="load-image-metadata",
                description="Load image metadata",
                action=lambda ctx: _load_image(ctx, from_previous_stage=from_previous_stage),
                mutating=False,
            ),
            ensure_resource_group_step(),
            ProvisioningStep(
                name="ensure-batch-account",
                description=f"Ensure Batch account {settings.batch_account_name}",
                action=_create_batch_account,
                precondition=_batch_account_ready,
                timeout_seconds=settings.batch_account_timeout_seconds,
            ),
            ProvisioningStep(
                name="batch-account-login",
                description="Log in to Batch account",
                action=_login_batch_account,
            ),
            ProvisioningStep(
                name="render-pool-spec",
                description="Render pool specification",
                action=_render_pool_spec,
                mutating=False,
            ),
            ProvisioningStep(
                name="create-pool",
                description=f"Create pool {settings.pool_id}",
                action=_create_pool,
                precondition=_pool_exists,
            ),
            ProvisioningStep(
                name="save-pool-metadata",
                description="Save pool metadata",
                action=_save_pool_metadata,
            ),
        ),
    )
