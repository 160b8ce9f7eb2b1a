"""Per-invocation logging: rich console output plus an append-only run log.

Call :func:`setup_run_logging` once at the start of an invocation.  Every
record emitted under the ``batch_prep`` logger is written to the console
and to ``<log_dir>/batch_prep_<run_id>.log``, where ``run_id`` is the
invocation start timestamp.  A filter stamps ``run_id`` onto each record
so lines from several invocations appended to one file stay separable.
"""

from __future__ import annotations

import datetime
import json
import logging
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.logging import RichHandler

if TYPE_CHECKING:
    from rich.console import Console

ROOT_LOGGER = "batch_prep"

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] [run %(run_id)s] %(name)s: %(message)s"


class RunIdFilter(logging.Filter):
    """Inject ``run_id`` into every log record."""

    def __init__(self, run_id: str) -> None:
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self.run_id
        return True


class RunJsonFormatter(logging.Formatter):
    """Format log records as single-line JSON objects.

    Output schema::

        {
            "timestamp": "2025-06-15T12:34:56.789012+00:00",
            "level": "INFO",
            "logger": "batch_prep.driver",
            "message": "[create-vm] succeeded",
            "run_id": "20250615_123456",
            "exception": null
        }
    """

    def format(self, record: logging.LogRecord) -> str:
        exc_text: str | None = None
        if record.exc_info and record.exc_info[0] is not None:
            exc_text = "".join(traceback.format_exception(*record.exc_info))

        payload: dict[str, Any] = {
            "timestamp": datetime.datetime.fromtimestamp(
                record.created,
                tz=datetime.UTC,
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, "run_id", ""),
            "exception": exc_text,
        }
        return json.dumps(payload, default=str)


@dataclass(frozen=True)
class RunLog:
    """Where this invocation is logging to."""

    run_id: str
    path: Path


def new_run_id(now: datetime.datetime | None = None) -> str:
    """Timestamp tag used for the log file name and every log line."""
    return (now or datetime.datetime.now()).strftime("%Y%m%d_%H%M%S")


def setup_run_logging(
    log_dir: Path,
    *,
    run_id: str | None = None,
    json_format: bool = False,
    console: Console | None = None,
    level: int = logging.INFO,
) -> RunLog:
    """Configure the ``batch_prep`` logger for one invocation.

    Parameters
    ----------
    log_dir:
        Directory for the run log; created if missing.
    run_id:
        Invocation tag, defaults to the current timestamp.
    json_format:
        Write the file log as JSON lines instead of plain text.
    console:
        Rich console for the terminal handler (stderr by default).
    """
    run_id = run_id or new_run_id()
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / f"batch_prep_{run_id}.log"

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    run_filter = RunIdFilter(run_id)

    console_handler = RichHandler(console=console, show_path=False, markup=False)
    console_handler.setLevel(level)
    console_handler.addFilter(run_filter)
    logger.addHandler(console_handler)

    file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    file_handler.setLevel(level)
    file_formatter = RunJsonFormatter() if json_format else logging.Formatter(_TEXT_FORMAT)
    file_handler.setFormatter(file_formatter)
    file_handler.addFilter(run_filter)
    logger.addHandler(file_handler)

    return RunLog(run_id=run_id, path=path)


def close_run_logging() -> None:
    """Detach and close the handlers installed by :func:`setup_run_logging`."""
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
