"""CLI context object shared by the command and the output helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rich.console import Console


@dataclass
class CliContext:
    """Holds the consoles and output mode for one invocation."""

    console: Console
    err_console: Console
    json_mode: bool
