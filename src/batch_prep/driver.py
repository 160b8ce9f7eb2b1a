"""Runs a :class:`ProvisioningPlan` top to bottom, fail-fast.

The driver owns no Azure knowledge: steps carry their own actions,
preconditions and success checks.  It decides, per step, whether to skip
(disabled, dry-run, already done), runs the action, enforces the step
state machine, and stops at the first failure.  Nothing is rolled back;
resources created before a failure stay in place and are reused by the
next run.
"""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from batch_prep.azure_cli import AzureCli
from batch_prep.exceptions import (
    BatchPrepError,
    CommandFailedError,
    HandoffError,
    PreconditionError,
    StepFailedError,
    StepTimeoutError,
)
from batch_prep.executor import CommandExecutor
from batch_prep.metadata import MetadataStore
from batch_prep.plan import PlanReport, StepRecord, StepState
from batch_prep.probe import ResourceHandle, ResourceProbe
from batch_prep.waiter import PollingWaiter

if TYPE_CHECKING:
    from batch_prep.executor import CommandResult
    from batch_prep.plan import ProvisioningPlan, ProvisioningStep
    from batch_prep.probe import ResourceKind
    from batch_prep.settings import PrepSettings

logger = logging.getLogger(__name__)

_QUERY_RETRIES = 2


@dataclass
class RunContext:
    """Everything a step action can reach during one invocation."""

    settings: PrepSettings
    cli: AzureCli
    probe: ResourceProbe
    waiter: PollingWaiter
    store: MetadataStore
    dry_run: bool = False
    log: logging.Logger = field(default=logger)
    values: dict[str, Any] = field(default_factory=dict)
    reports: list[PlanReport] = field(default_factory=list)
    current_step: ProvisioningStep | None = None

    @property
    def handles(self) -> dict[tuple[ResourceKind, str], ResourceHandle]:
        return self.probe.handles

    @property
    def step_name(self) -> str:
        return self.current_step.name if self.current_step else ""

    # ------------------------------------------------------------------
    # Helpers for step actions
    # ------------------------------------------------------------------

    def run(
        self,
        description: str,
        *args: str,
        mutating: bool = True,
        timeout_seconds: float | None = None,
        secrets: tuple[str, ...] = (),
    ) -> CommandResult:
        """Run an ``az`` command; a failed command fails the current step."""
        result = self.cli.run(
            description,
            *args,
            mutating=mutating,
            timeout_seconds=timeout_seconds,
            secrets=secrets,
        )
        if not result.succeeded:
            raise StepFailedError(
                f"{description} failed: {result.error_summary}",
                step=self.step_name,
                details={"returncode": result.returncode},
            )
        return result

    def run_tool(self, description: str, *argv: str) -> CommandResult:
        result = self.cli.run_tool(description, *argv)
        if not result.succeeded:
            raise StepFailedError(
                f"{description} failed: {result.error_summary}",
                step=self.step_name,
                details={"returncode": result.returncode},
            )
        return result

    def query(self, description: str, *args: str) -> Any:
        """Read-only ``az`` query; retryable steps re-attempt before failing."""
        retries = _QUERY_RETRIES if self.current_step and self.current_step.retryable else 0
        return self.cli.query(description, *args, retries=retries)

    def wait_for[T](
        self,
        predicate: Callable[[], T | None],
        *,
        label: str,
        timeout: float | None = None,
    ) -> T:
        """Poll *predicate*; raise :class:`StepTimeoutError` at the deadline."""
        if timeout is None:
            timeout = (
                self.current_step.timeout_seconds
                if self.current_step and self.current_step.timeout_seconds
                else self.settings.command_timeout_seconds
            )
        result = self.waiter.wait_until(
            predicate,
            interval=self.settings.poll_interval_seconds,
            timeout=timeout,
            label=label,
        )
        if result.timed_out or result.value is None:
            raise StepTimeoutError(
                f"Timed out after {timeout:.0f}s waiting for {label}",
                step=self.step_name,
                timeout_seconds=timeout,
            )
        return result.value

    def describe_while_polling(self, kind: ResourceKind, name: str) -> ResourceHandle | None:
        """Probe lookup inside a wait loop; a failed lookup just means "not yet"."""
        try:
            handle = self.probe.describe(kind, name)
        except CommandFailedError as exc:
            self.log.warning("%s; polling again", exc)
            return None
        return handle if isinstance(handle, ResourceHandle) else None

    def wait_for_state(
        self,
        kind: ResourceKind,
        name: str,
        *,
        success: Collection[str] = ("Succeeded",),
        failure: Collection[str] = ("Failed", "Canceled"),
        label: str = "",
        timeout: float | None = None,
    ) -> ResourceHandle:
        """Poll the probe until *name* reaches a terminal state.

        A state in *failure* fails the step immediately instead of
        waiting for the deadline.
        """
        label = label or f"{kind.value} {name}"
        terminal = {s.lower() for s in (*success, *failure)}

        def observe() -> ResourceHandle | None:
            handle = self.describe_while_polling(kind, name)
            if isinstance(handle, ResourceHandle) and handle.state.lower() in terminal:
                return handle
            return None

        handle = self.wait_for(observe, label=label, timeout=timeout)
        if handle.state.lower() not in {s.lower() for s in success}:
            raise StepFailedError(
                f"{label} reached state {handle.state}",
                step=self.step_name,
                details={"state": handle.state},
            )
        self.log.info("%s is %s", label, handle.state)
        return handle


def build_context(
    settings: PrepSettings,
    *,
    dry_run: bool = False,
    log: logging.Logger | None = None,
    runner: Callable[..., Any] = subprocess.run,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> RunContext:
    """Wire executor, CLI adapter, probe, waiter and store for one invocation."""
    log = log or logger
    executor = CommandExecutor(
        dry_run=dry_run,
        default_timeout_seconds=settings.command_timeout_seconds,
        log=log,
        runner=runner,
        sleep=sleep,
        clock=clock,
    )
    cli = AzureCli(executor, binary=settings.az_binary)
    return RunContext(
        settings=settings,
        cli=cli,
        probe=ResourceProbe(cli, settings.resource_group, log=log),
        waiter=PollingWaiter(clock=clock, sleep=sleep, log=log),
        store=MetadataStore(
            settings.resolve_path(settings.image_metadata_file),
            settings.resolve_path(settings.pool_metadata_file),
            log=log,
        ),
        dry_run=dry_run,
        log=log,
    )


class OrchestrationDriver:
    """Executes plans against a :class:`RunContext`."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock

    def run(self, plan: ProvisioningPlan, ctx: RunContext) -> PlanReport:
        """Run every step of *plan* in order.

        The report is appended to ``ctx.reports`` before the first step
        runs and returned when every step succeeded or was skipped.  On
        the first failure the remaining steps are marked ``not_run`` and
        the error is raised:
        :class:`StepFailedError` / :class:`StepTimeoutError` naming the
        step, or the :class:`PreconditionError` /
        :class:`HandoffError` unchanged so callers can tell those apart.
        """
        report = PlanReport(plan=plan.name, dry_run=ctx.dry_run)
        report.records = [StepRecord(name=step.name) for step in plan]
        ctx.reports.append(report)
        ctx.log.info(
            "=== %s plan (%d steps)%s ===",
            plan.name,
            len(plan),
            " [dry-run]" if ctx.dry_run else "",
        )

        for index, step in enumerate(plan):
            record = report.records[index]
            try:
                self._run_step(step, record, ctx)
            except BatchPrepError as exc:
                for later in report.records[index + 1 :]:
                    later.transition(StepState.NOT_RUN, reason=f"{step.name} failed")
                error = self._as_step_error(step, exc)
                if error is exc:
                    raise
                raise error from exc
            finally:
                ctx.current_step = None

        ctx.log.info("=== %s plan complete ===", plan.name)
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_step(self, step: ProvisioningStep, record: StepRecord, ctx: RunContext) -> None:
        log = ctx.log
        if not step.enabled:
            record.transition(StepState.SKIPPED, reason=step.disabled_reason)
            log.info("[%s] skipped: %s", step.name, step.disabled_reason)
            return
        if ctx.dry_run and step.mutating:
            record.transition(StepState.SKIPPED, reason="dry-run")
            log.info("[DRY-RUN] [%s] %s", step.name, step.label)
            return

        ctx.current_step = step
        if step.precondition is not None:
            already = self._evaluate(step, record, ctx, step.precondition)
            if already:
                record.transition(StepState.SKIPPED, reason=already)
                log.info("[%s] skipped: %s", step.name, already)
                return

        record.transition(StepState.RUNNING)
        log.info("[%s] %s", step.name, step.label)
        started = self._clock()
        try:
            step.action(ctx)
            if step.check is not None and not step.check(ctx):
                raise StepFailedError(f"{step.label}: success check failed", step=step.name)
        except Exception as exc:
            record.duration_seconds = self._clock() - started
            record.transition(StepState.FAILED, error=str(exc))
            log.error("[%s] failed: %s", step.name, exc)
            if isinstance(exc, BatchPrepError):
                raise
            raise _unexpected(step, exc) from exc
        record.duration_seconds = self._clock() - started
        record.transition(StepState.SUCCEEDED)
        log.info("[%s] succeeded (%.0fs)", step.name, record.duration_seconds)

    @staticmethod
    def _evaluate(
        step: ProvisioningStep,
        record: StepRecord,
        ctx: RunContext,
        precondition: Callable[[RunContext], str | None],
    ) -> str | None:
        try:
            return precondition(ctx)
        except Exception as exc:
            record.transition(StepState.RUNNING)
            record.transition(StepState.FAILED, error=str(exc))
            ctx.log.error("[%s] precondition failed: %s", step.name, exc)
            if isinstance(exc, BatchPrepError):
                raise
            raise _unexpected(step, exc) from exc

    @staticmethod
    def _as_step_error(step: ProvisioningStep, exc: BatchPrepError) -> BatchPrepError:
        match exc:
            case PreconditionError() | HandoffError():
                return exc
            case StepFailedError() if exc.step:
                return exc
            case StepTimeoutError():
                return StepTimeoutError(
                    str(exc), step=step.name, timeout_seconds=exc.timeout_seconds
                )
        return StepFailedError(str(exc), step=step.name, details=exc.details)


def _unexpected(step: ProvisioningStep, exc: Exception) -> StepFailedError:
    return StepFailedError(
        f"{type(exc).__name__}: {exc}",
        step=step.name,
        details={"exception": type(exc).__name__},
    )
