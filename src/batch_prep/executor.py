"""Run one external provisioning command and report what happened.

The executor never raises for a failed command, a missing binary or a
per-command timeout: it returns a :class:`CommandResult` and leaves the
abort decision to the driver.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

_NOT_FOUND_EXIT = 127
_NOT_EXECUTABLE_EXIT = 126
_TIMEOUT_EXIT = 124


@dataclass(frozen=True)
class CommandAction:
    """A single external command plus its execution policy."""

    description: str
    argv: tuple[str, ...]
    mutating: bool = True
    timeout_seconds: float | None = None
    retries: int = 0
    retry_delay_seconds: float = 5.0
    secrets: tuple[str, ...] = ()

    def display(self) -> str:
        """Shell-quoted command line with secret values masked."""
        text = shlex.join(self.argv)
        for secret in self.secrets:
            if secret:
                text = text.replace(secret, "***")
        return text


@dataclass(frozen=True)
class CommandResult:
    """Outcome of :meth:`CommandExecutor.execute`."""

    succeeded: bool
    output: str = ""
    error: str = ""
    returncode: int = 0
    duration_seconds: float = 0.0
    dry_run: bool = False
    attempts: int = 1

    @property
    def error_summary(self) -> str:
        """First non-empty line of stderr, for log lines and error messages."""
        for line in self.error.splitlines():
            if line.strip():
                return line.strip()
        return f"exit code {self.returncode}"


@dataclass
class CommandExecutor:
    """Runs :class:`CommandAction` objects through ``subprocess``.

    In dry-run mode, mutating actions are logged and reported as
    succeeded without running; read-only actions still run so that
    existence checks reflect reality.
    """

    dry_run: bool = False
    default_timeout_seconds: float | None = None
    log: logging.Logger = field(default=logger)
    runner: Callable[..., Any] = subprocess.run
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    history: list[CommandAction] = field(default_factory=list)

    def execute(self, action: CommandAction) -> CommandResult:
        """Run *action*, applying its retry and timeout policy."""
        if self.dry_run and action.mutating:
            self.log.info("[DRY-RUN] %s. Would run: %s", action.description, action.display())
            return CommandResult(succeeded=True, dry_run=True, attempts=0)

        self.history.append(action)
        self.log.debug("Running: %s", action.display())

        attempts = 0
        while True:
            attempts += 1
            result = self._run_once(action, attempts)
            if result.succeeded or attempts > action.retries:
                break
            self.log.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.0fs",
                action.description,
                attempts,
                action.retries + 1,
                result.error_summary,
                action.retry_delay_seconds,
            )
            self.sleep(action.retry_delay_seconds)

        if result.succeeded:
            self.log.info("[SUCCESS] %s", action.description)
        elif action.mutating:
            self.log.error("[ERROR] Failed: %s (%s)", action.description, result.error_summary)
        else:
            self.log.info("[FAILED] %s (%s)", action.description, result.error_summary)
        return result

    def _run_once(self, action: CommandAction, attempt: int) -> CommandResult:
        timeout = action.timeout_seconds or self.default_timeout_seconds
        started = self.clock()
        try:
            completed = self.runner(
                list(action.argv),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError:
            return CommandResult(
                succeeded=False,
                error=f"command not found: {action.argv[0]}",
                returncode=_NOT_FOUND_EXIT,
                duration_seconds=self.clock() - started,
                attempts=attempt,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                succeeded=False,
                error=f"timed out after {timeout:.0f}s",
                returncode=_TIMEOUT_EXIT,
                duration_seconds=self.clock() - started,
                attempts=attempt,
            )
        except OSError as exc:
            return CommandResult(
                succeeded=False,
                error=str(exc),
                returncode=_NOT_EXECUTABLE_EXIT,
                duration_seconds=self.clock() - started,
                attempts=attempt,
            )

        return CommandResult(
            succeeded=completed.returncode == 0,
            output=completed.stdout or "",
            error=completed.stderr or "",
            returncode=completed.returncode,
            duration_seconds=self.clock() - started,
            attempts=attempt,
        )
