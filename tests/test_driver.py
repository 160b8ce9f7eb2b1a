"""Tests for batch_prep.plan and batch_prep.driver."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import pytest

from batch_prep.driver import OrchestrationDriver, RunContext
from batch_prep.exceptions import (
    CommandFailedError,
    InvalidStepTransition,
    MetadataNotFoundError,
    PreconditionError,
    StepFailedError,
    StepTimeoutError,
)
from batch_prep.plan import ProvisioningPlan, ProvisioningStep, StepRecord, StepState
from batch_prep.probe import ResourceKind
from batch_prep.settings import PrepSettings

if TYPE_CHECKING:
    from conftest import FakeCloud


def _noop(ctx: RunContext) -> None:
    return None


def _recorder(calls: list[str], name: str) -> Callable[[RunContext], None]:
    def action(ctx: RunContext) -> None:
        calls.append(name)

    return action


def _fail(exc: Exception) -> Callable[[RunContext], None]:
    def action(ctx: RunContext) -> None:
        raise exc

    return action


@pytest.fixture
def ctx(
    make_settings: Callable[..., PrepSettings], make_context: Callable[..., RunContext]
) -> RunContext:
    return make_context(make_settings(poll_interval_seconds=10))


@pytest.fixture
def driver(fake_cloud: FakeCloud) -> OrchestrationDriver:
    return OrchestrationDriver(clock=fake_cloud.clock)


class TestStepRecord:
    def test_happy_path(self) -> None:
        record = StepRecord("s")
        record.transition(StepState.RUNNING)
        record.transition(StepState.SUCCEEDED)
        assert record.finished

    @pytest.mark.parametrize(
        ("path", "bad"),
        [
            ([], StepState.SUCCEEDED),
            ([], StepState.FAILED),
            ([StepState.RUNNING], StepState.SKIPPED),
            ([StepState.SKIPPED], StepState.RUNNING),
            ([StepState.RUNNING, StepState.SUCCEEDED], StepState.FAILED),
            ([StepState.RUNNING, StepState.FAILED], StepState.RUNNING),
        ],
    )
    def test_invalid_transitions(self, path: list[StepState], bad: StepState) -> None:
        record = StepRecord("s")
        for state in path:
            record.transition(state)
        with pytest.raises(InvalidStepTransition):
            record.transition(bad)


class TestProvisioningPlan:
    def test_duplicate_names_rejected(self) -> None:
        with pytest.raises(ValueError, match="duplicate step name"):
            ProvisioningPlan("p", (ProvisioningStep("a", _noop), ProvisioningStep("a", _noop)))

    def test_order_preserved(self) -> None:
        plan = ProvisioningPlan("p", tuple(ProvisioningStep(n, _noop) for n in "cab"))
        assert plan.names() == ["c", "a", "b"]
        assert len(plan) == 3
        assert plan.get("a").name == "a"


class TestOrchestrationDriver:
    def test_runs_in_order(self, driver: OrchestrationDriver, ctx: RunContext) -> None:
        calls: list[str] = []
        plan = ProvisioningPlan(
            "p", tuple(ProvisioningStep(n, _recorder(calls, n)) for n in ("one", "two", "three"))
        )
        report = driver.run(plan, ctx)
        assert calls == ["one", "two", "three"]
        assert report.succeeded
        assert report.names_in(StepState.SUCCEEDED) == ["one", "two", "three"]
        assert ctx.reports == [report]

    def test_disabled_step_skipped(self, driver: OrchestrationDriver, ctx: RunContext) -> None:
        calls: list[str] = []
        plan = ProvisioningPlan(
            "p",
            (
                ProvisioningStep(
                    "gpu", _recorder(calls, "gpu"), enabled=False, disabled_reason="GPU disabled"
                ),
            ),
        )
        report = driver.run(plan, ctx)
        assert calls == []
        assert report.record("gpu").state is StepState.SKIPPED
        assert report.record("gpu").reason == "GPU disabled"

    def test_precondition_skips(self, driver: OrchestrationDriver, ctx: RunContext) -> None:
        calls: list[str] = []
        plan = ProvisioningPlan(
            "p",
            (
                ProvisioningStep(
                    "create", _recorder(calls, "create"), precondition=lambda c: "already there"
                ),
            ),
        )
        report = driver.run(plan, ctx)
        assert calls == []
        assert report.record("create").reason == "already there"

    def test_dry_run_skips_mutating_only(
        self,
        driver: OrchestrationDriver,
        make_settings: Callable[..., PrepSettings],
        make_context: Callable[..., RunContext],
    ) -> None:
        ctx = make_context(make_settings(), dry_run=True)
        calls: list[str] = []
        plan = ProvisioningPlan(
            "p",
            (
                ProvisioningStep("read", _recorder(calls, "read"), mutating=False),
                ProvisioningStep("write", _recorder(calls, "write")),
            ),
        )
        report = driver.run(plan, ctx)
        assert calls == ["read"]
        assert report.record("write").reason == "dry-run"
        assert report.dry_run

    def test_fail_fast(self, driver: OrchestrationDriver, ctx: RunContext) -> None:
        calls: list[str] = []
        plan = ProvisioningPlan(
            "p",
            (
                ProvisioningStep("a", _recorder(calls, "a")),
                ProvisioningStep("b", _fail(StepFailedError("boom"))),
                ProvisioningStep("c", _recorder(calls, "c")),
                ProvisioningStep("d", _recorder(calls, "d")),
            ),
        )
        with pytest.raises(StepFailedError, match="boom") as exc_info:
            driver.run(plan, ctx)
        assert exc_info.value.step == "b"
        assert calls == ["a"]
        report = ctx.reports[-1]
        assert report.failed_step == "b"
        assert report.record("b").error == "boom"
        assert report.names_in(StepState.NOT_RUN) == ["c", "d"]

    def test_command_failure_becomes_step_failure(
        self, driver: OrchestrationDriver, ctx: RunContext
    ) -> None:
        plan = ProvisioningPlan("p", (ProvisioningStep("q", _fail(CommandFailedError("bad"))),))
        with pytest.raises(StepFailedError) as exc_info:
            driver.run(plan, ctx)
        assert exc_info.value.step == "q"
        assert isinstance(exc_info.value.__cause__, CommandFailedError)

    def test_precondition_error_keeps_its_type(
        self, driver: OrchestrationDriver, ctx: RunContext
    ) -> None:
        plan = ProvisioningPlan("p", (ProvisioningStep("s", _fail(PreconditionError("no login"))),))
        with pytest.raises(PreconditionError):
            driver.run(plan, ctx)
        assert ctx.reports[-1].record("s").state is StepState.FAILED

    def test_handoff_error_keeps_its_type(
        self, driver: OrchestrationDriver, ctx: RunContext
    ) -> None:
        error = MetadataNotFoundError(ctx.store.image_path)
        plan = ProvisioningPlan("p", (ProvisioningStep("s", _fail(error)),))
        with pytest.raises(MetadataNotFoundError):
            driver.run(plan, ctx)

    def test_success_check_failure(self, driver: OrchestrationDriver, ctx: RunContext) -> None:
        plan = ProvisioningPlan("p", (ProvisioningStep("s", _noop, check=lambda c: False),))
        with pytest.raises(StepFailedError, match="success check failed"):
            driver.run(plan, ctx)

    def test_precondition_error_fails_step(
        self, driver: OrchestrationDriver, ctx: RunContext
    ) -> None:
        def broken(c: RunContext) -> str | None:
            raise StepFailedError("probe exploded", step="s")

        plan = ProvisioningPlan(
            "p", (ProvisioningStep("s", _noop, precondition=broken), ProvisioningStep("t", _noop))
        )
        with pytest.raises(StepFailedError):
            driver.run(plan, ctx)
        report = ctx.reports[-1]
        assert report.record("s").state is StepState.FAILED
        assert report.record("t").state is StepState.NOT_RUN

    def test_records_duration(
        self, driver: OrchestrationDriver, ctx: RunContext, fake_cloud: FakeCloud
    ) -> None:
        def slow(c: RunContext) -> None:
            fake_cloud.clock.now += 42

        report = driver.run(ProvisioningPlan("p", (ProvisioningStep("s", slow),)), ctx)
        assert report.record("s").duration_seconds == 42
        assert report.to_dict()["steps"][0]["duration_seconds"] == 42

    def test_unexpected_exception_fails_named_step(
        self, driver: OrchestrationDriver, ctx: RunContext
    ) -> None:
        plan = ProvisioningPlan(
            "p",
            (
                ProvisioningStep("save", _fail(NotADirectoryError("image_metadata.json"))),
                ProvisioningStep("after", _noop),
            ),
        )
        with pytest.raises(StepFailedError, match="NotADirectoryError") as exc_info:
            driver.run(plan, ctx)
        assert exc_info.value.step == "save"
        assert isinstance(exc_info.value.__cause__, NotADirectoryError)
        report = ctx.reports[-1]
        assert report.record("save").state is StepState.FAILED
        assert report.record("after").state is StepState.NOT_RUN

    def test_unexpected_precondition_exception_fails_step(
        self, driver: OrchestrationDriver, ctx: RunContext
    ) -> None:
        def malformed(c: RunContext) -> str | None:
            raise ValueError("pool name must have 2 parts")

        plan = ProvisioningPlan("p", (ProvisioningStep("s", _noop, precondition=malformed),))
        with pytest.raises(StepFailedError, match="2 parts") as exc_info:
            driver.run(plan, ctx)
        assert exc_info.value.step == "s"
        assert ctx.reports[-1].record("s").state is StepState.FAILED


class TestRunContextWaits:
    def test_wait_for_state_polls_until_success(
        self, driver: OrchestrationDriver, ctx: RunContext, fake_cloud: FakeCloud
    ) -> None:
        fake_cloud.batch_accounts["acct"] = ["Creating", "Creating", "Succeeded"]

        def wait(c: RunContext) -> None:
            c.wait_for_state(ResourceKind.BATCH_ACCOUNT, "acct")

        driver.run(ProvisioningPlan("p", (ProvisioningStep("w", wait, timeout_seconds=600),)), ctx)
        assert fake_cloud.clock.sleeps == [10, 10]

    def test_wait_for_state_failure_is_immediate(
        self, driver: OrchestrationDriver, ctx: RunContext, fake_cloud: FakeCloud
    ) -> None:
        fake_cloud.batch_accounts["acct"] = ["Creating", "Failed"]

        def wait(c: RunContext) -> None:
            c.wait_for_state(ResourceKind.BATCH_ACCOUNT, "acct")

        with pytest.raises(StepFailedError, match="reached state Failed") as exc_info:
            driver.run(ProvisioningPlan("p", (ProvisioningStep("w", wait),)), ctx)
        assert not isinstance(exc_info.value, StepTimeoutError)
        assert fake_cloud.clock.sleeps == [10]

    def test_step_timeout(
        self, driver: OrchestrationDriver, ctx: RunContext, fake_cloud: FakeCloud
    ) -> None:
        fake_cloud.batch_accounts["acct"] = ["Creating"]

        def wait(c: RunContext) -> None:
            c.wait_for_state(ResourceKind.BATCH_ACCOUNT, "acct")

        with pytest.raises(StepTimeoutError) as exc_info:
            driver.run(
                ProvisioningPlan("p", (ProvisioningStep("w", wait, timeout_seconds=35),)), ctx
            )
        assert exc_info.value.step == "w"
        assert exc_info.value.timeout_seconds == 35
        assert sum(fake_cloud.clock.sleeps) >= 35

    def test_query_retries_for_retryable_steps(
        self, driver: OrchestrationDriver, ctx: RunContext, fake_cloud: FakeCloud
    ) -> None:
        fake_cloud.fail("account", "show", error="ERROR: transient")

        def query(c: RunContext) -> None:
            c.query("Account", "account", "show")

        with pytest.raises(StepFailedError):
            driver.run(ProvisioningPlan("p", (ProvisioningStep("q", query, retryable=True),)), ctx)
        assert len([c for c in fake_cloud.calls if c[1:3] == ["account", "show"]]) == 3

    def test_failed_lookup_while_polling_is_not_terminal(
        self, ctx: RunContext, fake_cloud: FakeCloud
    ) -> None:
        fake_cloud.batch_accounts["acct"] = ["Succeeded"]
        fake_cloud.fail("batch", "account", "show", error="(TooManyRequests) Rate limit exceeded")
        assert ctx.describe_while_polling(ResourceKind.BATCH_ACCOUNT, "acct") is None

        fake_cloud.failures.clear()
        handle = ctx.describe_while_polling(ResourceKind.BATCH_ACCOUNT, "acct")
        assert handle is not None
        assert handle.state == "Succeeded"
