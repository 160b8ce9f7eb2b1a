"""Preflight plan: read-only checks that run before every mode."""

from __future__ import annotations

from typing import TYPE_CHECKING

from batch_prep import preflight
from batch_prep.plan import ProvisioningPlan, ProvisioningStep

if TYPE_CHECKING:
    from batch_prep.settings import PrepSettings


def build_validation_plan(settings: PrepSettings) -> ProvisioningPlan:
    return ProvisioningPlan(
        name="validation",
        steps=(
            ProvisioningStep(
                name="check-cli",
                description="Check Azure CLI",
                action=preflight.check_cli,
                mutating=False,
            ),
            ProvisioningStep(
                name="check-login",
                description="Check Azure login",
                action=preflight.check_login,
                mutating=False,
                retryable=True,
            ),
            ProvisioningStep(
                name="check-providers",
                description="Check resource provider registration",
                action=preflight.check_providers,
                mutating=False,
                timeout_seconds=settings.provider_registration_timeout_seconds,
            ),
            ProvisioningStep(
                name="check-vm-size",
                description=f"Check VM size {settings.vm_size}",
                action=preflight.check_vm_size,
                mutating=False,
                retryable=True,
            ),
            ProvisioningStep(
                name="check-gpu-quota",
                description="Check GPU quota",
                action=preflight.check_gpu_quota,
                mutating=False,
                retryable=True,
                enabled=settings.enable_gpu,
                disabled_reason="GPU disabled",
            ),
        ),
    )
