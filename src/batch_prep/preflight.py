"""Read-only environment checks run before any resource is touched."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from batch_prep.exceptions import CommandFailedError, PreconditionError
from batch_prep.probe import ResourceHandle, ResourceKind

if TYPE_CHECKING:
    from batch_prep.driver import RunContext

_COMMAND_NOT_FOUND = 127

# VM size prefix -> quota family substring reported by ``az vm list-usage``.
_GPU_QUOTA_FAMILIES: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        (
            "Standard_NC4as_T4",
            "Standard_NC8as_T4",
            "Standard_NC16as_T4",
            "Standard_NC64as_T4",
        ),
        "NCASv3_T4",
    ),
    (("Standard_NC6s_v3", "Standard_NC12s_v3", "Standard_NC24s_v3"), "NCSv3"),
)
_DEFAULT_GPU_FAMILY = "NC"


def gpu_quota_family(vm_size: str) -> str:
    """Quota family for a GPU VM size, e.g. ``Standard_NC4as_T4_v3`` -> ``NCASv3_T4``."""
    for prefixes, family in _GPU_QUOTA_FAMILIES:
        if vm_size.startswith(prefixes):
            return family
    return _DEFAULT_GPU_FAMILY


def check_cli(ctx: RunContext) -> None:
    result = ctx.cli.run("Check Azure CLI", "version", "--output", "json", mutating=False)
    if result.returncode == _COMMAND_NOT_FOUND:
        raise PreconditionError(
            f"Azure CLI not found ({ctx.settings.az_binary}). "
            "Install it from https://aka.ms/installazurecli",
            check="check-cli",
        )
    if not result.succeeded:
        raise PreconditionError(
            f"Azure CLI is not usable: {result.error_summary}", check="check-cli"
        )


def check_login(ctx: RunContext) -> None:
    try:
        account = ctx.query("Check Azure login", "account", "show")
    except CommandFailedError as exc:
        raise PreconditionError(
            "Not logged in to Azure. Run 'az login' first.", check="check-login"
        ) from exc
    if not isinstance(account, dict) or not account.get("id"):
        raise PreconditionError("Could not determine the active subscription", check="check-login")

    ctx.values["subscription_id"] = account["id"]
    ctx.log.info("Using subscription %s (%s)", account.get("name", ""), account["id"])


def check_providers(ctx: RunContext) -> None:
    """Verify resource providers are registered, registering them when allowed."""
    settings = ctx.settings
    pending = []
    for namespace in settings.required_providers:
        try:
            handle = ctx.probe.describe(ResourceKind.PROVIDER, namespace)
        except CommandFailedError as exc:
            raise PreconditionError(str(exc), check="check-providers") from exc
        state = handle.state if isinstance(handle, ResourceHandle) else "NotFound"
        if state == "Registered":
            continue
        ctx.log.warning("Provider %s is %s", namespace, state)
        pending.append(namespace)

    if not pending:
        return
    if not settings.register_providers:
        raise PreconditionError(
            "Resource provider(s) not registered: " + ", ".join(pending),
            check="check-providers",
        )
    if ctx.dry_run:
        ctx.log.info("[DRY-RUN] Would register provider(s): %s", ", ".join(pending))
        return

    for namespace in pending:
        result = ctx.cli.run(
            f"Register provider {namespace}", "provider", "register", "--namespace", namespace
        )
        if not result.succeeded:
            raise PreconditionError(
                f"Could not register provider {namespace}: {result.error_summary}",
                check="check-providers",
            )
        ctx.wait_for_state(
            ResourceKind.PROVIDER,
            namespace,
            success=("Registered",),
            failure=("Unregistered",),
            label=f"provider {namespace} registration",
            timeout=settings.provider_registration_timeout_seconds,
        )


def check_vm_size(ctx: RunContext) -> None:
    settings = ctx.settings
    skus = _query_list(
        ctx,
        f"Check VM size {settings.vm_size} in {settings.location}",
        "vm", "list-skus",
        "--location", settings.location,
        "--size", settings.vm_size,
        "--all",
        check="check-vm-size",
    )  # fmt: skip
    for sku in skus:
        if sku.get("name") != settings.vm_size:
            continue
        restrictions = sku.get("restrictions") or []
        if restrictions:
            reasons = ", ".join(str(r.get("reasonCode", "restricted")) for r in restrictions)
            raise PreconditionError(
                f"VM size {settings.vm_size} is restricted in {settings.location}: {reasons}",
                check="check-vm-size",
            )
        return
    raise PreconditionError(
        f"VM size {settings.vm_size} is not available in {settings.location}",
        check="check-vm-size",
    )


def check_gpu_quota(ctx: RunContext) -> None:
    settings = ctx.settings
    family = gpu_quota_family(settings.vm_size)
    usages = _query_list(
        ctx,
        f"Check GPU quota in {settings.location}",
        "vm", "list-usage", "--location", settings.location,
        check="check-gpu-quota",
    )  # fmt: skip
    matches = [
        u
        for u in usages
        if family.lower() in str((u.get("name") or {}).get("value", "")).lower()
    ]
    if not matches:
        raise PreconditionError(
            f"No {family} GPU quota found in {settings.location}. "
            "Request a quota increase for this VM family.",
            check="check-gpu-quota",
        )

    limit = max(_as_int(u.get("limit")) for u in matches)
    current = max(_as_int(u.get("currentValue")) for u in matches)
    if limit <= 0:
        raise PreconditionError(
            f"GPU quota for {family} in {settings.location} is 0. "
            "Request a quota increase for this VM family.",
            check="check-gpu-quota",
            details={"family": family, "limit": limit},
        )
    ctx.log.info("GPU quota %s: %d of %d cores in use", family, current, limit)


def _query_list(ctx: RunContext, description: str, *args: str, check: str) -> list[dict[str, Any]]:
    try:
        data = ctx.query(description, *args)
    except CommandFailedError as exc:
        raise PreconditionError(str(exc), check=check) from exc
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
