"""Provisioning steps, plans, and the per-step state machine.

Step lifecycle::

    pending -> running -> succeeded
                       -> failed
    pending -> skipped
    pending -> not_run          (an earlier step failed)
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from batch_prep.exceptions import InvalidStepTransition

if TYPE_CHECKING:
    from batch_prep.driver import RunContext

StepAction = Callable[["RunContext"], Any]
Precondition = Callable[["RunContext"], str | None]
SuccessCheck = Callable[["RunContext"], bool]


class StepState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_RUN = "not_run"


TERMINAL_STATES = frozenset(
    {StepState.SUCCEEDED, StepState.FAILED, StepState.SKIPPED, StepState.NOT_RUN}
)

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        StepState.PENDING: frozenset({StepState.RUNNING, StepState.SKIPPED, StepState.NOT_RUN}),
        StepState.RUNNING: frozenset({StepState.SUCCEEDED, StepState.FAILED}),
        StepState.SUCCEEDED: frozenset(),
        StepState.FAILED: frozenset(),
        StepState.SKIPPED: frozenset(),
        StepState.NOT_RUN: frozenset(),
    }
)


@dataclass(frozen=True)
class ProvisioningStep:
    """One named unit of provisioning work.

    ``precondition`` returns a reason string when the step's outcome
    already holds (the resource exists, the VM is generalized, ...) and
    ``None`` when the action must run.  ``check`` is evaluated after the
    action; returning False fails the step.  ``mutating`` steps are
    skipped in dry-run mode.  ``retryable`` steps re-attempt their
    read-only queries a few times before failing.
    """

    name: str
    action: StepAction
    description: str = ""
    precondition: Precondition | None = None
    check: SuccessCheck | None = None
    timeout_seconds: float | None = None
    retryable: bool = False
    mutating: bool = True
    enabled: bool = True
    disabled_reason: str = "not enabled"

    @property
    def label(self) -> str:
        return self.description or self.name


@dataclass
class StepRecord:
    """Mutable progress record for one step of one driver run."""

    name: str
    state: StepState = StepState.PENDING
    reason: str = ""
    error: str = ""
    duration_seconds: float = 0.0

    def transition(self, to_state: StepState, *, reason: str = "", error: str = "") -> None:
        if to_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStepTransition(self.state.value, to_state.value)
        self.state = to_state
        if reason:
            self.reason = reason
        if error:
            self.error = error

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.name,
            "state": self.state.value,
            "reason": self.reason,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 1),
        }


@dataclass(frozen=True)
class ProvisioningPlan:
    """An ordered, uniquely-named sequence of steps."""

    name: str
    steps: tuple[ProvisioningStep, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for step in self.steps:
            if step.name in seen:
                raise ValueError(f"duplicate step name {step.name!r} in plan {self.name!r}")
            seen.add(step.name)

    def __iter__(self) -> Iterator[ProvisioningStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def names(self) -> list[str]:
        return [step.name for step in self.steps]

    def get(self, name: str) -> ProvisioningStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)


@dataclass
class PlanReport:
    """What happened to each step of a plan."""

    plan: str
    records: list[StepRecord] = field(default_factory=list)
    dry_run: bool = False

    @property
    def succeeded(self) -> bool:
        return not any(r.state is StepState.FAILED for r in self.records)

    @property
    def failed_step(self) -> str | None:
        for record in self.records:
            if record.state is StepState.FAILED:
                return record.name
        return None

    def record(self, name: str) -> StepRecord:
        for rec in self.records:
            if rec.name == name:
                return rec
        raise KeyError(name)

    def names_in(self, state: StepState) -> list[str]:
        return [r.name for r in self.records if r.state is state]

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan,
            "succeeded": self.succeeded,
            "dry_run": self.dry_run,
            "steps": [r.to_dict() for r in self.records],
        }
