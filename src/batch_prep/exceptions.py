"""Exception hierarchy for batch-prep.

All exceptions inherit from BatchPrepError so the CLI can catch
provisioning errors with a single except clause.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path

    from batch_prep.executor import CommandResult


class BatchPrepError(Exception):
    """Base exception for all batch-prep errors."""

    def __init__(self, message: str = "", *, details: dict[str, Any] | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(BatchPrepError):
    """Raised when settings cannot be resolved or fail validation."""


# =============================================================================
# Precondition Errors
# =============================================================================


class PreconditionError(BatchPrepError):
    """Raised when the environment is not ready: missing CLI, no login, bad SKU."""

    def __init__(
        self,
        message: str = "",
        *,
        check: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        self.check = check
        super().__init__(message, details=details)


# =============================================================================
# Step Errors
# =============================================================================


class StepFailedError(BatchPrepError):
    """Raised when a provisioning step fails. The remaining plan is abandoned."""

    def __init__(
        self,
        message: str = "",
        *,
        step: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        self.step = step
        super().__init__(message, details=details)


class StepTimeoutError(StepFailedError):
    """Raised when a step exceeds its deadline while polling."""

    def __init__(
        self,
        message: str = "",
        *,
        step: str = "",
        timeout_seconds: float = 0.0,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(message, step=step, details=details)


class InvalidStepTransition(BatchPrepError):
    """Raised for invalid step state transitions."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"invalid step transition: {from_state!r} -> {to_state!r}")


class CommandFailedError(BatchPrepError):
    """Raised by query helpers when an external command reports failure."""

    def __init__(self, message: str = "", *, result: CommandResult | None = None) -> None:
        self.result = result
        details = {"returncode": result.returncode, "error": result.error} if result else None
        super().__init__(message, details=details)


# =============================================================================
# Hand-off Errors
# =============================================================================


class HandoffError(BatchPrepError):
    """Base for errors reading the image-to-pool hand-off record."""


class MetadataNotFoundError(HandoffError):
    """Raised when the image metadata file does not exist."""

    def __init__(self, path: Path, *, details: dict[str, Any] | None = None) -> None:
        self.path = path
        super().__init__(
            f"Image metadata file not found: {path}. "
            "Run with --image-only first or pass --image-id.",
            details=details,
        )


class MetadataInvalidError(HandoffError):
    """Raised when the image metadata file is present but unusable."""

    def __init__(
        self,
        path: Path,
        *,
        missing_fields: list[str] | None = None,
        reason: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        self.path = path
        self.missing_fields = missing_fields or []
        if self.missing_fields:
            message = (
                f"Metadata file {path} is missing required field(s): "
                + ", ".join(self.missing_fields)
            )
        else:
            message = f"Metadata file {path} is malformed: {reason}"
        super().__init__(message, details=details)


# =============================================================================
# Template Errors
# =============================================================================


class TemplateError(BatchPrepError):
    """Raised when a start-task fragment or pool specification is invalid."""
