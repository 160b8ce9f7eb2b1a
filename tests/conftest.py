"""Shared test fixtures: a scripted fake ``az`` backed by an in-memory cloud."""

from __future__ import annotations

import functools
import json
import subprocess
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from batch_prep.driver import RunContext, build_context
from batch_prep.settings import PrepSettings

SUBSCRIPTION_ID = "00000000-1111-2222-3333-444444444444"

# Verbs that change cloud state; everything else is a read.
MUTATING_VERBS = frozenset(
    {"create", "set", "deallocate", "generalize", "invoke", "register", "build", "push"}
)


def _opt(args: list[str], flag: str, default: str = "") -> str:
    if flag in args:
        return args[args.index(flag) + 1]
    return default


def _not_found(what: str) -> tuple[int, str, str]:
    return 3, "", f"(ResourceNotFound) The Resource '{what}' was not found."


@dataclass
class FakeClock:
    now: float = 1000.0
    sleeps: list[float] = field(default_factory=list)

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCloud:
    """Emulates the subset of ``az`` and ``docker`` that the plans call.

    Long-running resources (VM extensions, image versions, batch
    accounts) report the scripted state sequence on successive ``show``
    calls; the last state sticks.
    """

    def __init__(self) -> None:
        self.clock = FakeClock()
        self.calls: list[list[str]] = []
        self.missing_binary = False
        self.logged_in = True
        self.providers: dict[str, str] = {}
        self.skus: dict[str, list[dict[str, Any]]] = {
            "Standard_D2s_v3": [],
            "Standard_NC4as_T4_v3": [],
        }
        self.usages: list[dict[str, Any]] = [
            {
                "name": {"value": "standardNCASv3_T4Family", "localizedValue": "NCASv3_T4"},
                "currentValue": 0,
                "limit": 8,
            },
            {"name": {"value": "standardDSv3Family"}, "currentValue": 0, "limit": 10},
        ]
        self.failures: dict[tuple[str, ...], str] = {}

        self.groups: set[str] = set()
        self.vms: dict[str, dict[str, Any]] = {}
        self.extensions: dict[str, list[str]] = {}
        self.galleries: set[str] = set()
        self.definitions: set[str] = set()
        self.versions: dict[str, list[str]] = {}
        self.managed_images: set[str] = set()
        self.batch_accounts: dict[str, list[str]] = {}
        self.pools: dict[str, dict[str, Any]] = {}
        self.registries: set[str] = set()
        self.registry_images: set[str] = set()
        self.run_commands: list[str] = []

        self.extension_states = ["Succeeded"]
        self.version_states = ["Succeeded"]
        self.account_states = ["Succeeded"]

    # ------------------------------------------------------------------
    # Inspection helpers
    # ------------------------------------------------------------------

    @property
    def sleep(self) -> Callable[[float], None]:
        return self.clock.sleep

    def mutating_calls(self) -> list[list[str]]:
        return [c for c in self.calls if any(v in MUTATING_VERBS for v in c[1:4])]

    def called(self, *prefix: str) -> bool:
        return any(c[1 : 1 + len(prefix)] == list(prefix) for c in self.calls)

    def fail(self, *prefix: str, error: str = "ERROR: simulated failure") -> None:
        self.failures[prefix] = error

    # ------------------------------------------------------------------
    # subprocess.run replacement
    # ------------------------------------------------------------------

    def __call__(self, argv: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        if self.missing_binary and argv[0] == "az":
            raise FileNotFoundError(argv[0])
        self.calls.append(list(argv))
        args = list(argv[1:])
        for prefix, error in self.failures.items():
            if tuple(args[: len(prefix)]) == prefix:
                return subprocess.CompletedProcess(argv, 1, "", error)
        if argv[0] == "docker":
            code, out, err = self._docker(args)
        else:
            code, out, err = self._az(args)
        return subprocess.CompletedProcess(argv, code, out, err)

    @staticmethod
    def _next_state(states: list[str]) -> str:
        return states.pop(0) if len(states) > 1 else states[0]

    def _ok(self, payload: Any = None) -> tuple[int, str, str]:
        return 0, "" if payload is None else json.dumps(payload), ""

    def _docker(self, args: list[str]) -> tuple[int, str, str]:
        if args[0] == "push":
            server, _, image = args[1].partition("/")
            self.registry_images.add(f"{server.split('.')[0]}/{image}")
        return 0, "", ""

    def _az(self, args: list[str]) -> tuple[int, str, str]:  # noqa: C901
        rg = _opt(args, "--resource-group")
        match args[:3]:
            case ["version", *_]:
                return self._ok({"azure-cli": "2.61.0"})
            case ["account", "show", *_]:
                if not self.logged_in:
                    return 1, "", "ERROR: Please run 'az login' to setup account."
                return self._ok({"id": SUBSCRIPTION_ID, "name": "Test Subscription"})
            case ["provider", "show", *_]:
                ns = _opt(args, "--namespace")
                state = self.providers.get(ns, "Registered")
                return self._ok({"namespace": ns, "registrationState": state})
            case ["provider", "register", *_]:
                self.providers[_opt(args, "--namespace")] = "Registered"
                return self._ok()
            case ["vm", "list-skus", *_]:
                size = _opt(args, "--size")
                return self._ok(
                    [{"name": n, "restrictions": r} for n, r in self.skus.items() if n == size]
                )
            case ["vm", "list-usage", *_]:
                return self._ok(self.usages)
            case ["group", "show", *_]:
                name = _opt(args, "--name")
                if name not in self.groups:
                    return 3, "", f"(ResourceGroupNotFound) Group {name} could not be found."
                return self._ok({"name": name, "properties": {"provisioningState": "Succeeded"}})
            case ["group", "create", *_]:
                self.groups.add(_opt(args, "--name"))
                return self._ok()
            case ["vm", "create", *_]:
                self.vms[_opt(args, "--name")] = {
                    "power": "running",
                    "generalized": False,
                    "size": _opt(args, "--size"),
                    "image": _opt(args, "--image"),
                }
                return self._ok()
            case ["vm", "get-instance-view", *_]:
                name = _opt(args, "--name")
                vm = self.vms.get(name)
                if vm is None:
                    return _not_found(name)
                statuses = [
                    {"code": "ProvisioningState/succeeded"},
                    {"code": f"PowerState/{vm['power']}"},
                ]
                if vm["generalized"]:
                    statuses.append({"code": "OSState/generalized"})
                return self._ok(
                    {"id": f"/vms/{name}", "provisioningState": "Succeeded",
                     "instanceView": {"statuses": statuses}}
                )  # fmt: skip
            case ["vm", "extension", "set"]:
                key = f"{_opt(args, '--vm-name')}/{_opt(args, '--name')}"
                self.extensions[key] = list(self.extension_states)
                return self._ok()
            case ["vm", "extension", "show"]:
                key = f"{_opt(args, '--vm-name')}/{_opt(args, '--name')}"
                if key not in self.extensions:
                    return _not_found(key)
                return self._ok({"provisioningState": self._next_state(self.extensions[key])})
            case ["vm", "run-command", "invoke"]:
                self.run_commands.append(_opt(args, "--scripts"))
                return self._ok({"value": [{"code": "ProvisioningState/succeeded"}]})
            case ["vm", "deallocate", *_]:
                self.vms[_opt(args, "--name")]["power"] = "deallocated"
                return self._ok()
            case ["vm", "generalize", *_]:
                self.vms[_opt(args, "--name")]["generalized"] = True
                return self._ok()
            case ["sig", "show", *_]:
                name = _opt(args, "--gallery-name")
                if name not in self.galleries:
                    return _not_found(name)
                return self._ok({"name": name, "provisioningState": "Succeeded"})
            case ["sig", "create", *_]:
                self.galleries.add(_opt(args, "--gallery-name"))
                return self._ok()
            case ["sig", "image-definition", "show"]:
                key = f"{_opt(args, '--gallery-name')}/{_opt(args, '--gallery-image-definition')}"
                if key not in self.definitions:
                    return _not_found(key)
                return self._ok({"name": key, "provisioningState": "Succeeded"})
            case ["sig", "image-definition", "create"]:
                self.definitions.add(
                    f"{_opt(args, '--gallery-name')}/{_opt(args, '--gallery-image-definition')}"
                )
                return self._ok()
            case ["sig", "image-version", "show"]:
                key = self._version_key(args)
                if key not in self.versions:
                    return _not_found(key)
                gallery, definition, version = key.split("/")
                return self._ok(
                    {
                        "id": (
                            f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{rg}"
                            f"/providers/Microsoft.Compute/galleries/{gallery}"
                            f"/images/{definition}/versions/{version}"
                        ),
                        "provisioningState": self._next_state(self.versions[key]),
                    }
                )
            case ["sig", "image-version", "create"]:
                self.versions[self._version_key(args)] = list(self.version_states)
                return self._ok()
            case ["sig", "image-version", "list"]:
                gallery = _opt(args, "--gallery-name")
                prefix = f"{gallery}/{_opt(args, '--gallery-image-definition')}/"
                names = [k.removeprefix(prefix) for k in self.versions if k.startswith(prefix)]
                return 0, "\n".join(names), ""
            case ["image", "show", *_]:
                name = _opt(args, "--name")
                if name not in self.managed_images:
                    return _not_found(name)
                return self._ok({"id": f"/subscriptions/{SUBSCRIPTION_ID}/images/{name}",
                                 "provisioningState": "Succeeded"})  # fmt: skip
            case ["image", "create", *_]:
                self.managed_images.add(_opt(args, "--name"))
                return self._ok()
            case ["batch", "account", "show"]:
                name = _opt(args, "--name")
                if name not in self.batch_accounts:
                    return _not_found(name)
                state = self._next_state(self.batch_accounts[name])
                return self._ok({"id": f"/batchAccounts/{name}", "provisioningState": state})
            case ["batch", "account", "create"]:
                self.batch_accounts[_opt(args, "--name")] = list(self.account_states)
                return self._ok()
            case ["batch", "account", "login"]:
                return self._ok()
            case ["batch", "pool", "show"]:
                key = f"{_opt(args, '--account-name')}/{_opt(args, '--pool-id')}"
                if key not in self.pools:
                    return 1, "", "(PoolNotFound) The specified pool does not exist."
                return self._ok({**self.pools[key], "state": "active"})
            case ["batch", "pool", "create"]:
                spec = json.loads(Path(_opt(args, "--json-file")).read_text(encoding="utf-8"))
                self.pools[f"{_opt(args, '--account-name')}/{spec['id']}"] = spec
                return self._ok()
            case ["acr", "show", *_]:
                name = _opt(args, "--name")
                if name not in self.registries:
                    return _not_found(name)
                return self._ok({"name": name, "provisioningState": "Succeeded"})
            case ["acr", "create", *_]:
                self.registries.add(_opt(args, "--name"))
                return self._ok()
            case ["acr", "login", *_]:
                return self._ok()
            case ["acr", "credential", "show"]:
                return self._ok({"username": "acruser", "passwords": [{"value": "s3cr3t-pw"}]})
            case ["acr", "repository", "show"]:
                key = f"{_opt(args, '--name')}/{_opt(args, '--image')}"
                if key not in self.registry_images:
                    return _not_found(key)
                return self._ok({"name": key})
        return 2, "", f"fake az: unsupported command {' '.join(args)}"

    @staticmethod
    def _version_key(args: list[str]) -> str:
        return "/".join(
            (
                _opt(args, "--gallery-name"),
                _opt(args, "--gallery-image-definition"),
                _opt(args, "--gallery-image-version"),
            )
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Drop BATCHPREP_* variables and run each test inside its own directory."""
    import os

    for key in list(os.environ):
        if key.upper().startswith("BATCHPREP_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    yield


@pytest.fixture
def runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def fake_cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., PrepSettings]:
    """Factory for settings anchored at the test's temporary directory."""

    def _make(**overrides: Any) -> PrepSettings:
        overrides.setdefault("work_dir", tmp_path)
        return PrepSettings(**overrides)

    return _make


@pytest.fixture
def make_context(fake_cloud: FakeCloud) -> Callable[..., RunContext]:
    """Factory for a RunContext wired to the fake cloud."""

    def _make(settings: PrepSettings, *, dry_run: bool = False) -> RunContext:
        return build_context(
            settings,
            dry_run=dry_run,
            runner=fake_cloud,
            sleep=fake_cloud.sleep,
            clock=fake_cloud.clock,
        )

    return _make


@pytest.fixture
def patch_cloud(monkeypatch: pytest.MonkeyPatch, fake_cloud: FakeCloud) -> FakeCloud:
    """Route the CLI's command execution to the fake cloud."""
    import batch_prep.cli.main as main_module

    monkeypatch.setattr(
        main_module,
        "build_context",
        functools.partial(
            build_context,
            runner=fake_cloud,
            sleep=fake_cloud.sleep,
            clock=fake_cloud.clock,
        ),
    )
    return fake_cloud
