"""Image plan: build a VM, prepare it, capture it into a Shared Image Gallery.

Re-running the plan is safe.  Every create step skips when its resource
exists, and once the VM is generalized (or the image version is already
published) every step that would touch the VM skips too, so a second run
performs no mutating call at all.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from batch_prep.exceptions import StepFailedError
from batch_prep.metadata import ImageMetadata
from batch_prep.plan import ProvisioningPlan, ProvisioningStep
from batch_prep.plans._common import ensure_resource_group_step
from batch_prep.probe import ResourceHandle, ResourceKind
from batch_prep.templates import RegistryLogin, preload_script, runtime_install_script

if TYPE_CHECKING:
    from batch_prep.driver import RunContext
    from batch_prep.settings import PrepSettings

GPU_EXTENSION_NAME = "NvidiaGpuDriverLinux"
GPU_EXTENSION_PUBLISHER = "Microsoft.HpcCompute"
GPU_EXTENSION_VERSION = "1.10"


# ---------------------------------------------------------------------------
# Shared observations
# ---------------------------------------------------------------------------


def _vm(ctx: RunContext) -> ResourceHandle | None:
    handle = ctx.probe.describe(ResourceKind.VM, ctx.settings.vm_name)
    return handle if isinstance(handle, ResourceHandle) else None


def _image_published(ctx: RunContext) -> str | None:
    path = ctx.settings.image_version_path
    handle = ctx.probe.describe(ResourceKind.IMAGE_VERSION, path)
    if isinstance(handle, ResourceHandle) and handle.state == "Succeeded":
        return f"image version {path} already published"
    return None


def _vm_prepared(ctx: RunContext) -> str | None:
    """Reason to leave the VM alone: it is generalized or already captured."""
    published = _image_published(ctx)
    if published:
        return published
    vm = _vm(ctx)
    if vm is not None and vm.properties.get("generalized"):
        return f"VM {vm.name} already generalized"
    return None


def _vm_stopped(ctx: RunContext) -> str | None:
    prepared = _vm_prepared(ctx)
    if prepared:
        return prepared
    vm = _vm(ctx)
    if vm is not None and vm.state == "deallocated":
        return f"VM {vm.name} already deallocated"
    return None


# ---------------------------------------------------------------------------
# VM lifecycle
# ---------------------------------------------------------------------------


def _vm_exists(ctx: RunContext) -> str | None:
    prepared = _vm_prepared(ctx)
    if prepared:
        return prepared
    if _vm(ctx) is not None:
        return f"VM {ctx.settings.vm_name} exists"
    return None


def _create_vm(ctx: RunContext) -> None:
    s = ctx.settings
    ctx.run(
        f"Create VM {s.vm_name} ({s.vm_size})",
        "vm", "create",
        "--resource-group", s.resource_group,
        "--name", s.vm_name,
        "--image", s.os_profile.image_urn,
        "--size", s.vm_size,
        "--admin-username", s.admin_username,
        "--generate-ssh-keys",
        "--public-ip-address", "",
        "--no-wait",
    )  # fmt: skip


def _wait_vm_running(ctx: RunContext) -> None:
    def observe() -> str | None:
        vm = ctx.describe_while_polling(ResourceKind.VM, ctx.settings.vm_name)
        if vm is None:
            return None
        if vm.properties.get("provisioningState") == "Failed":
            return "Failed"
        if vm.state == "running":
            return vm.state
        return None

    state = ctx.wait_for(observe, label=f"VM {ctx.settings.vm_name} to be running")
    if state == "Failed":
        raise StepFailedError(f"VM {ctx.settings.vm_name} failed to provision", step=ctx.step_name)


def _gpu_driver_installed(ctx: RunContext) -> str | None:
    stopped = _vm_stopped(ctx)
    if stopped:
        return stopped
    name = f"{ctx.settings.vm_name}/{GPU_EXTENSION_NAME}"
    handle = ctx.probe.describe(ResourceKind.VM_EXTENSION, name)
    if isinstance(handle, ResourceHandle) and handle.state == "Succeeded":
        return "GPU driver extension already installed"
    return None


def _install_gpu_driver(ctx: RunContext) -> None:
    s = ctx.settings
    ctx.run(
        "Install NVIDIA GPU driver extension",
        "vm", "extension", "set",
        "--resource-group", s.resource_group,
        "--vm-name", s.vm_name,
        "--name", GPU_EXTENSION_NAME,
        "--publisher", GPU_EXTENSION_PUBLISHER,
        "--version", GPU_EXTENSION_VERSION,
        "--no-wait",
    )  # fmt: skip
    ctx.wait_for_state(
        ResourceKind.VM_EXTENSION,
        f"{s.vm_name}/{GPU_EXTENSION_NAME}",
        label="GPU driver installation",
    )


def _install_container_runtime(ctx: RunContext) -> None:
    s = ctx.settings
    ctx.run(
        f"Install container runtime on VM {s.vm_name}",
        "vm", "run-command", "invoke",
        "--resource-group", s.resource_group,
        "--name", s.vm_name,
        "--command-id", "RunShellScript",
        "--scripts", runtime_install_script(s.os_profile),
    )  # fmt: skip


def _deallocate_vm(ctx: RunContext) -> None:
    s = ctx.settings
    ctx.run(
        f"Deallocate VM {s.vm_name}",
        "vm", "deallocate", "--resource-group", s.resource_group, "--name", s.vm_name,
    )  # fmt: skip


def _generalize_vm(ctx: RunContext) -> None:
    s = ctx.settings
    ctx.run(
        f"Generalize VM {s.vm_name}",
        "vm", "generalize", "--resource-group", s.resource_group, "--name", s.vm_name,
    )  # fmt: skip


def _vm_is_generalized(ctx: RunContext) -> bool:
    vm = _vm(ctx)
    return vm is not None and bool(vm.properties.get("generalized"))


# ---------------------------------------------------------------------------
# Container registry and image
# ---------------------------------------------------------------------------


def _registry_exists(ctx: RunContext) -> str | None:
    name = ctx.settings.registry_name
    if ctx.probe.exists(ResourceKind.REGISTRY, name):
        return f"registry {name} exists"
    return None


def _create_registry(ctx: RunContext) -> None:
    s = ctx.settings
    ctx.run(
        f"Create container registry {s.registry_name}",
        "acr", "create",
        "--resource-group", s.resource_group,
        "--name", s.registry_name,
        "--sku", s.registry_sku,
        "--location", s.location,
        "--admin-enabled", "true",
        "--output", "none",
    )  # fmt: skip


def _registry_image_exists(ctx: RunContext) -> str | None:
    s = ctx.settings
    name = f"{s.registry_name}/{s.container_image_name}:{s.container_image_tag}"
    if ctx.probe.exists(ResourceKind.REGISTRY_IMAGE, name):
        return f"container image {s.container_image} exists"
    return None


def _build_container_image(ctx: RunContext) -> None:
    s = ctx.settings
    dockerfile = Path(s.build_context) / s.os_profile.dockerfile
    ctx.run(f"Log in to registry {s.registry_name}", "acr", "login", "--name", s.registry_name)
    ctx.run_tool(
        f"Build container image {s.container_image}",
        "docker", "build", "-f", str(dockerfile), "-t", s.container_image, s.build_context,
    )  # fmt: skip
    ctx.run_tool(f"Push container image {s.container_image}", "docker", "push", s.container_image)


def _registry_login(ctx: RunContext) -> RegistryLogin:
    s = ctx.settings
    creds = ctx.query(
        f"Fetch credentials for registry {s.registry_name}",
        "acr", "credential", "show", "--name", s.registry_name,
    )  # fmt: skip
    try:
        return RegistryLogin(
            server=s.registry_login_server,
            username=creds["username"],
            password=creds["passwords"][0]["value"],
        )
    except (KeyError, IndexError, TypeError) as exc:
        raise StepFailedError(
            f"Unexpected credential output for registry {s.registry_name}", step=ctx.step_name
        ) from exc


def _preload_container_image(ctx: RunContext) -> None:
    s = ctx.settings
    login = _registry_login(ctx) if s.uses_registry_image else None
    script = preload_script([s.container_image], login)
    ctx.run(
        f"Preload {s.container_image} on VM {s.vm_name}",
        "vm", "run-command", "invoke",
        "--resource-group", s.resource_group,
        "--name", s.vm_name,
        "--command-id", "RunShellScript",
        "--scripts", script,
        secrets=(login.password,) if login else (),
    )  # fmt: skip


# ---------------------------------------------------------------------------
# Gallery capture
# ---------------------------------------------------------------------------


def _gallery_exists(ctx: RunContext) -> str | None:
    name = ctx.settings.gallery_name
    if ctx.probe.exists(ResourceKind.GALLERY, name):
        return f"gallery {name} exists"
    return None


def _create_gallery(ctx: RunContext) -> None:
    s = ctx.settings
    ctx.run(
        f"Create image gallery {s.gallery_name}",
        "sig", "create",
        "--resource-group", s.resource_group,
        "--gallery-name", s.gallery_name,
        "--location", s.location,
        "--output", "none",
    )  # fmt: skip


def _definition_exists(ctx: RunContext) -> str | None:
    name = f"{ctx.settings.gallery_name}/{ctx.settings.image_definition}"
    if ctx.probe.exists(ResourceKind.IMAGE_DEFINITION, name):
        return f"image definition {name} exists"
    return None


def _create_definition(ctx: RunContext) -> None:
    s = ctx.settings
    ctx.run(
        f"Create image definition {s.image_definition}",
        "sig", "image-definition", "create",
        "--resource-group", s.resource_group,
        "--gallery-name", s.gallery_name,
        "--gallery-image-definition", s.image_definition,
        "--publisher", s.image_publisher,
        "--offer", s.image_offer,
        "--sku", s.os_profile.image_sku,
        "--os-type", "Linux",
        "--os-state", "Generalized",
        "--hyper-v-generation", s.hyperv_generation,
        "--location", s.location,
        "--output", "none",
    )  # fmt: skip


def _managed_image_exists(ctx: RunContext) -> str | None:
    published = _image_published(ctx)
    if published:
        return published
    name = ctx.settings.managed_image_name
    if ctx.probe.exists(ResourceKind.MANAGED_IMAGE, name):
        return f"managed image {name} exists"
    return None


def _create_managed_image(ctx: RunContext) -> None:
    s = ctx.settings
    ctx.run(
        f"Create managed image {s.managed_image_name}",
        "image", "create",
        "--resource-group", s.resource_group,
        "--name", s.managed_image_name,
        "--source", s.vm_name,
        "--hyper-v-generation", s.hyperv_generation,
        "--location", s.location,
        "--output", "none",
    )  # fmt: skip


def _create_image_version(ctx: RunContext) -> None:
    s = ctx.settings
    path = s.image_version_path
    existing = ctx.probe.describe(ResourceKind.IMAGE_VERSION, path)
    if isinstance(existing, ResourceHandle):
        if existing.state in ("Failed", "Canceled"):
            raise StepFailedError(
                f"Image version {path} is in state {existing.state}; delete it and re-run",
                step=ctx.step_name,
            )
        ctx.log.info("Image version %s is %s; waiting for it", path, existing.state)
    else:
        managed = ctx.probe.describe(ResourceKind.MANAGED_IMAGE, s.managed_image_name)
        if not isinstance(managed, ResourceHandle) or not managed.identifier:
            raise StepFailedError(
                f"Managed image {s.managed_image_name} not found", step=ctx.step_name
            )
        ctx.run(
            f"Create image version {s.image_version}",
            "sig", "image-version", "create",
            "--resource-group", s.resource_group,
            "--gallery-name", s.gallery_name,
            "--gallery-image-definition", s.image_definition,
            "--gallery-image-version", s.image_version,
            "--managed-image", managed.identifier,
            "--replica-count", "1",
            "--location", s.location,
            "--no-wait",
            "--output", "none",
        )  # fmt: skip

    handle = ctx.wait_for_state(
        ResourceKind.IMAGE_VERSION, path, label=f"image version {s.image_version}"
    )
    ctx.values["image_version_id"] = handle.identifier


def _save_image_metadata(ctx: RunContext) -> None:
    s = ctx.settings
    image_id = ctx.values.get("image_version_id", "")
    if not image_id:
        handle = ctx.handles.get((ResourceKind.IMAGE_VERSION, s.image_version_path))
        image_id = handle.identifier if handle else ""
    if not image_id and ctx.values.get("subscription_id"):
        image_id = s.image_version_id(ctx.values["subscription_id"])
    if not image_id:
        raise StepFailedError("Could not determine the image version id", step=ctx.step_name)

    metadata = ImageMetadata(
        image_id=image_id,
        node_agent_sku=s.os_profile.node_agent_sku,
        gallery_name=s.gallery_name,
        image_name=s.image_definition,
        version=s.image_version,
        location=s.location,
        base_os=s.base_os,
        os_version=s.os_version,
        gpu_enabled=s.enable_gpu,
        vm_size=s.vm_size,
        resource_group=s.resource_group,
    )
    ctx.store.save_image(metadata)
    ctx.values["image_metadata"] = metadata


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


def build_image_plan(settings: PrepSettings) -> ProvisioningPlan:
    return ProvisioningPlan(
        name="image",
        steps=(
            ensure_resource_group_step(),
            ProvisioningStep(
                name="create-vm",
                description=f"Create VM {settings.vm_name}",
                action=_create_vm,
                precondition=_vm_exists,
            ),
            ProvisioningStep(
                name="wait-vm-running",
                description="Wait for VM to be running",
                action=_wait_vm_running,
                precondition=_vm_stopped,
                timeout_seconds=settings.vm_ready_timeout_seconds,
            ),
            ProvisioningStep(
                name="install-gpu-driver",
                description="Install NVIDIA GPU driver",
                action=_install_gpu_driver,
                precondition=_gpu_driver_installed,
                timeout_seconds=settings.gpu_driver_timeout_seconds,
                enabled=settings.enable_gpu,
                disabled_reason="GPU disabled",
            ),
            ProvisioningStep(
                name="install-container-runtime",
                description="Install container runtime on VM",
                action=_install_container_runtime,
                precondition=_vm_stopped,
            ),
            ProvisioningStep(
                name="ensure-registry",
                description=f"Ensure container registry {settings.registry_name}",
                action=_create_registry,
                precondition=_registry_exists,
                enabled=settings.create_registry,
                disabled_reason="registry disabled",
            ),
            ProvisioningStep(
                name="build-container-image",
                description=f"Build and push {settings.container_image}",
                action=_build_container_image,
                precondition=_registry_image_exists,
                enabled=settings.uses_registry_image,
                disabled_reason="container image build disabled",
            ),
            ProvisioningStep(
                name="preload-container-image",
                description=f"Preload {settings.container_image} on VM",
                action=_preload_container_image,
                precondition=_vm_stopped,
                enabled=settings.preload_images,
                disabled_reason="image preload disabled",
            ),
            ProvisioningStep(
                name="deallocate-vm",
                description="Deallocate VM",
                action=_deallocate_vm,
                precondition=_vm_stopped,
            ),
            ProvisioningStep(
                name="generalize-vm",
                description="Generalize VM",
                action=_generalize_vm,
                precondition=_vm_prepared,
                check=_vm_is_generalized,
            ),
            ProvisioningStep(
                name="ensure-gallery",
                description=f"Ensure image gallery {settings.gallery_name}",
                action=_create_gallery,
                precondition=_gallery_exists,
            ),
            ProvisioningStep(
                name="ensure-image-definition",
                description=f"Ensure image definition {settings.image_definition}",
                action=_create_definition,
                precondition=_definition_exists,
            ),
            ProvisioningStep(
                name="ensure-managed-image",
                description=f"Ensure managed image {settings.managed_image_name}",
                action=_create_managed_image,
                precondition=_managed_image_exists,
            ),
            ProvisioningStep(
                name="ensure-image-version",
                description=f"Ensure image version {settings.image_version}",
                action=_create_image_version,
                precondition=_image_published,
                timeout_seconds=settings.image_version_timeout_seconds,
            ),
            ProvisioningStep(
                name="save-image-metadata",
                description="Save image metadata",
                action=_save_image_metadata,
            ),
        ),
    )
