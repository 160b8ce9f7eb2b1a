"""Thin adapter that turns ``az`` subcommands into executor actions."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from batch_prep.exceptions import CommandFailedError
from batch_prep.executor import CommandAction

if TYPE_CHECKING:
    from batch_prep.executor import CommandExecutor, CommandResult


class AzureCli:
    """Builds ``az`` argv lists and hands them to a :class:`CommandExecutor`.

    ``run`` returns the raw :class:`CommandResult` (never raises);
    ``query`` is for read-only lookups and raises
    :class:`CommandFailedError` so callers can treat a failed lookup as a
    step failure.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        binary: str = "az",
        timeout_seconds: float | None = None,
    ) -> None:
        self.executor = executor
        self.binary = binary
        self._timeout = timeout_seconds

    def run(
        self,
        description: str,
        *args: str,
        mutating: bool = True,
        timeout_seconds: float | None = None,
        retries: int = 0,
        secrets: tuple[str, ...] = (),
    ) -> CommandResult:
        """Run ``az <args>`` and return the result."""
        return self.executor.execute(
            CommandAction(
                description=description,
                argv=(self.binary, *args),
                mutating=mutating,
                timeout_seconds=timeout_seconds or self._timeout,
                retries=retries,
                secrets=secrets,
            )
        )

    def run_tool(self, description: str, *argv: str, mutating: bool = True) -> CommandResult:
        """Run a non-``az`` command (``docker`` for image builds)."""
        return self.executor.execute(
            CommandAction(
                description=description,
                argv=tuple(argv),
                mutating=mutating,
                timeout_seconds=self._timeout,
            )
        )

    def query(self, description: str, *args: str, retries: int = 0) -> Any:
        """Run a read-only ``az`` command and decode its JSON output."""
        result = self.run(
            description,
            *args,
            "--output",
            "json",
            mutating=False,
            retries=retries,
        )
        if not result.succeeded:
            raise CommandFailedError(
                f"{description} failed: {result.error_summary}", result=result
            )
        return decode_json(result.output, description=description)


def decode_json(output: str, *, description: str = "command") -> Any:
    """Decode ``az --output json`` text; empty output decodes to None."""
    if not output.strip():
        return None
    try:
        return json.loads(output)
    except json.JSONDecodeError as exc:
        raise CommandFailedError(f"{description} returned invalid JSON: {exc}") from exc
