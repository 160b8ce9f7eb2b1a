"""Start-task commands, VM run-command scripts and the Batch pool spec.

The pool start task is assembled from validated shell fragments by
:class:`StartTaskBuilder` rather than by string concatenation, so the
quoting of the final ``/bin/bash -c '...'`` command line cannot be broken
by a fragment.
"""

from __future__ import annotations

import json
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Self

from batch_prep.exceptions import TemplateError

if TYPE_CHECKING:
    from batch_prep.settings import OsProfile, PrepSettings

GPU_POLL_SECONDS = 5
READY_MARKER = "Batch node ready"

_NVIDIA_KEYRING = "/usr/share/keyrings/nvidia-container-toolkit-keyring.gpg"
_NVIDIA_REPO = "https://nvidia.github.io/libnvidia-container"

_RUNTIME_INSTALL: dict[str, tuple[str, ...]] = {
    "apt": (
        "apt-get update -y",
        "apt-get install -y docker.io",
        "systemctl enable --now docker",
    ),
    "dnf": (
        "dnf install -y dnf-plugins-core",
        "dnf config-manager --add-repo https://download.docker.com/linux/centos/docker-ce.repo",
        "dnf install -y docker-ce docker-ce-cli containerd.io",
        "systemctl enable --now docker",
    ),
}

_GPU_TOOLKIT_INSTALL: dict[str, tuple[str, ...]] = {
    "apt": (
        f"curl -fsSL {_NVIDIA_REPO}/gpgkey | gpg --batch --yes --dearmor -o {_NVIDIA_KEYRING}",
        f"curl -s -L {_NVIDIA_REPO}/stable/deb/nvidia-container-toolkit.list"
        f' | sed "s#deb https://#deb [signed-by={_NVIDIA_KEYRING}] https://#g"'
        " | tee /etc/apt/sources.list.d/nvidia-container-toolkit.list",
        "apt-get update -y",
        "apt-get install -y nvidia-container-toolkit",
    ),
    "dnf": (
        f"curl -s -L {_NVIDIA_REPO}/stable/rpm/nvidia-container-toolkit.repo"
        " -o /etc/yum.repos.d/nvidia-container-toolkit.repo",
        "dnf install -y nvidia-container-toolkit",
    ),
}


# ---------------------------------------------------------------------------
# Start task
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StartTaskCommand:
    """A validated start-task command line."""

    fragments: tuple[str, ...]
    shell: str = "/bin/bash"

    @property
    def script(self) -> str:
        return "; ".join(self.fragments)

    def render(self) -> str:
        return f"{self.shell} -c '{self.script}'"

    def __str__(self) -> str:
        return self.render()


class StartTaskBuilder:
    """Composes the commands a pool node runs before accepting tasks."""

    def __init__(self, os_profile: OsProfile) -> None:
        self._package_manager = os_profile.package_manager
        self._fragments: list[str] = ["set -euo pipefail"]

    def step(self, fragment: str) -> Self:
        """Append one shell fragment.

        Fragments end up inside a single-quoted ``bash -c`` argument, so
        they may not contain single quotes or newlines.
        """
        fragment = fragment.strip()
        if not fragment:
            raise TemplateError("start task fragment is empty")
        if "'" in fragment or "\n" in fragment:
            raise TemplateError(f"start task fragment cannot contain quotes/newlines: {fragment!r}")
        self._fragments.append(fragment)
        return self

    def echo(self, message: str) -> Self:
        return self.step(f"echo {message}")

    def install_container_runtime(self) -> Self:
        self.echo("Installing container runtime...")
        for fragment in _RUNTIME_INSTALL[self._package_manager]:
            self.step(fragment)
        return self

    def install_gpu_container_toolkit(self) -> Self:
        self.echo("Installing NVIDIA container toolkit...")
        for fragment in _GPU_TOOLKIT_INSTALL[self._package_manager]:
            self.step(fragment)
        self.step("nvidia-ctk runtime configure --runtime=docker")
        self.step("systemctl restart docker")
        return self

    def wait_for_gpu(self, poll_seconds: int = GPU_POLL_SECONDS) -> Self:
        self.echo("Waiting for GPU...")
        self.step(f"until nvidia-smi >/dev/null 2>&1; do sleep {poll_seconds}; done")
        self.step("nvidia-smi")
        return self

    def report_ready(self) -> Self:
        self.step("docker --version")
        self.echo(READY_MARKER)
        return self

    def build(self) -> StartTaskCommand:
        return StartTaskCommand(fragments=tuple(self._fragments))


def build_start_task(settings: PrepSettings) -> StartTaskCommand:
    """Start task for the configured OS and GPU mode."""
    builder = StartTaskBuilder(settings.os_profile).install_container_runtime()
    if settings.enable_gpu:
        builder.install_gpu_container_toolkit().wait_for_gpu()
    return builder.report_ready().build()


# ---------------------------------------------------------------------------
# VM run-command scripts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegistryLogin:
    """Registry credentials fetched from ``az acr credential show``."""

    server: str
    username: str
    password: str


def runtime_install_script(os_profile: OsProfile) -> str:
    """Run-command script that installs the container runtime on the builder VM."""
    lines = ["set -euo pipefail"]
    lines.extend(f"sudo {cmd}" for cmd in _RUNTIME_INSTALL[os_profile.package_manager])
    lines.append("sudo docker --version")
    return "\n".join(lines)


def preload_script(images: list[str], login: RegistryLogin | None = None) -> str:
    """Run-command script that pulls *images* into the builder VM's runtime."""
    lines = ["set -euo pipefail"]
    if login is not None:
        lines.append(
            f"echo {shlex.quote(login.password)} | sudo docker login "
            f"{shlex.quote(login.server)} --username {shlex.quote(login.username)} "
            "--password-stdin"
        )
    lines.extend(f"sudo docker pull {shlex.quote(image)}" for image in images)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Pool specification
# ---------------------------------------------------------------------------


def render_pool_spec(
    settings: PrepSettings,
    *,
    image_id: str,
    node_agent_sku: str,
    start_task: StartTaskCommand,
) -> dict[str, Any]:
    """Batch pool JSON accepted by ``az batch pool create --json-file``."""
    for label, value in (
        ("pool id", settings.pool_id),
        ("vm size", settings.vm_size),
        ("image id", image_id),
        ("node agent sku", node_agent_sku),
    ):
        if not value.strip():
            raise TemplateError(f"pool specification needs a non-empty {label}")

    return {
        "id": settings.pool_id,
        "vmSize": settings.vm_size,
        "virtualMachineConfiguration": {
            "imageReference": {"virtualMachineImageId": image_id},
            "nodeAgentSKUId": node_agent_sku,
        },
        "targetDedicatedNodes": settings.node_count,
        "startTask": {
            "commandLine": start_task.render(),
            "waitForSuccess": True,
            "userIdentity": {
                "autoUser": {
                    "scope": "pool",
                    "elevationLevel": "admin",
                }
            },
            "maxTaskRetryCount": 0,
        },
    }


def write_pool_spec(path: Path, spec: dict[str, Any]) -> Path:
    """Write *spec* as JSON and read it back to make sure it parses."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(spec, indent=2) + "\n", encoding="utf-8")
    try:
        json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise TemplateError(f"invalid JSON in pool configuration {path}: {exc}") from exc
    return path
