"""CLI entry point: the ``batch-prep`` command."""

from __future__ import annotations

import functools
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console

from batch_prep import __version__
from batch_prep.cli._context import CliContext
from batch_prep.cli._output import print_reports, print_result, print_success
from batch_prep.driver import OrchestrationDriver, build_context
from batch_prep.exceptions import (
    BatchPrepError,
    ConfigError,
    HandoffError,
    PreconditionError,
    StepFailedError,
    StepTimeoutError,
)
from batch_prep.plans import build_image_plan, build_pool_plan, build_validation_plan
from batch_prep.run_log import close_run_logging, setup_run_logging
from batch_prep.settings import load_settings

if TYPE_CHECKING:
    from batch_prep.driver import RunContext
    from batch_prep.run_log import RunLog

EXIT_STEP_FAILED = 1
EXIT_PRECONDITION = 3
EXIT_HANDOFF = 4

_SENSITIVE_KEYWORDS = ("password", "secret", "token", "accesskey", "credential")


class Mode(StrEnum):
    FULL = "full"
    IMAGE = "image"
    POOL = "pool"
    VALIDATE = "validate"


# ---------------------------------------------------------------------------
# Error-handling decorator
# ---------------------------------------------------------------------------


def handle_errors(fn: Any) -> Any:
    """Turn batch-prep exceptions into a message and a mode-specific exit code."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except click.exceptions.Exit:
            raise
        except click.ClickException:
            raise
        except (ConfigError, PreconditionError) as exc:
            _die(str(exc), EXIT_PRECONDITION)
        except HandoffError as exc:
            _die(str(exc), EXIT_HANDOFF)
        except StepTimeoutError as exc:
            _die(f"Step {exc.step} timed out: {exc}", EXIT_STEP_FAILED)
        except StepFailedError as exc:
            _die(f"Step {exc.step} failed: {exc}", EXIT_STEP_FAILED)
        except BatchPrepError as exc:
            _die(str(exc), EXIT_STEP_FAILED)
        except Exception as exc:
            msg = str(exc)
            if any(kw in msg.lower() for kw in _SENSITIVE_KEYWORDS):
                msg = "An unexpected error occurred."
            _die(f"Unexpected error: {msg}", EXIT_STEP_FAILED)

    return wrapper


def _die(message: str, exit_code: int = EXIT_STEP_FAILED) -> None:
    exc = click.ClickException(message)
    exc.exit_code = exit_code
    raise exc


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _execute(mode: Mode, driver: OrchestrationDriver, ctx: RunContext) -> None:
    settings = ctx.settings
    driver.run(build_validation_plan(settings), ctx)
    if mode is Mode.VALIDATE:
        return
    if mode in (Mode.FULL, Mode.IMAGE):
        driver.run(build_image_plan(settings), ctx)
    if mode in (Mode.FULL, Mode.POOL):
        driver.run(build_pool_plan(settings, from_previous_stage=mode is Mode.FULL), ctx)


def _summary(mode: Mode, ctx: RunContext, run_log: RunLog) -> dict[str, Any]:
    settings = ctx.settings
    summary: dict[str, Any] = {
        "mode": mode.value,
        "dry_run": ctx.dry_run,
        "run_id": run_log.run_id,
        "log_file": str(run_log.path),
        "resource_group": settings.resource_group,
        "location": settings.location,
        "vm_size": settings.vm_size,
    }
    if "image_id" in ctx.values:
        summary["image_id"] = ctx.values["image_id"]
    if "image_metadata" in ctx.values:
        summary["image_metadata_file"] = str(ctx.store.image_path)
    if "pool_metadata" in ctx.values:
        summary["batch_account"] = settings.batch_account_name
        summary["pool_id"] = settings.pool_id
        summary["pool_metadata_file"] = str(ctx.store.pool_path)
    return summary


def _report(cli_ctx: CliContext, mode: Mode, ctx: RunContext, run_log: RunLog) -> None:
    summary = _summary(mode, ctx, run_log)
    if cli_ctx.json_mode:
        summary["plans"] = [report.to_dict() for report in ctx.reports]
        print_result(cli_ctx, summary)
        return
    print_reports(cli_ctx, ctx.reports)
    print_result(cli_ctx, summary, title="Summary")


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------


@click.command(name="batch-prep")
@click.option(
    "--full",
    "mode",
    flag_value=Mode.FULL.value,
    default=True,
    help="Build the image, then create the pool (default).",
)
@click.option("--image-only", "mode", flag_value=Mode.IMAGE.value, help="Build the image only.")
@click.option(
    "--pool-only",
    "--batch-only",
    "mode",
    flag_value=Mode.POOL.value,
    help="Create the Batch pool from an existing image.",
)
@click.option("--validate", "mode", flag_value=Mode.VALIDATE.value, help="Preflight checks only.")
@click.option("--dry-run", is_flag=True, default=False, help="Log mutating commands, run none.")
@click.option("--pool-id", default=None, help="Batch pool id.")
@click.option("--vm-size", default=None, help="VM size for the builder VM and pool nodes.")
@click.option("--nodes", "node_count", type=int, default=None, help="Dedicated node count.")
@click.option("--image-id", default=None, help="Image resource id; skips the metadata file.")
@click.option("--gpu/--cpu", "enable_gpu", default=None, help="GPU or CPU nodes.")
@click.option("--os", "base_os", type=click.Choice(["ubuntu", "almalinux"]), default=None)
@click.option("--os-version", default=None, help="Base OS version, e.g. 22.04 or 8.")
@click.option("--resource-group", default=None, help="Azure resource group.")
@click.option("--location", default=None, help="Azure region.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="TOML config file (default: batch-prep.toml).",
)
@click.option("--profile", default=None, help="Config profile name.")
@click.option(
    "--no-register-providers",
    is_flag=True,
    default=False,
    help="Fail instead of registering missing resource providers.",
)
@click.option("--json", "json_mode", is_flag=True, default=False, help="Output raw JSON.")
@click.option("--log-json", is_flag=True, default=False, help="Write the run log as JSON lines.")
@click.version_option(version=__version__, prog_name="batch-prep")
@handle_errors
def cli(
    mode: str,
    dry_run: bool,
    pool_id: str | None,
    vm_size: str | None,
    node_count: int | None,
    image_id: str | None,
    enable_gpu: bool | None,
    base_os: str | None,
    os_version: str | None,
    resource_group: str | None,
    location: str | None,
    config_path: Path | None,
    profile: str | None,
    no_register_providers: bool,
    json_mode: bool,
    log_json: bool,
) -> None:
    """Provision a VM image and an Azure Batch pool."""
    selected = Mode(mode)
    cli_ctx = CliContext(
        console=Console(),
        err_console=Console(stderr=True),
        json_mode=json_mode,
    )
    settings = load_settings(
        {
            "pool_id": pool_id,
            "vm_size": vm_size,
            "node_count": node_count,
            "image_id": image_id,
            "enable_gpu": enable_gpu,
            "base_os": base_os,
            "os_version": os_version,
            "resource_group": resource_group,
            "location": location,
            "register_providers": False if no_register_providers else None,
        },
        config_path=config_path,
        profile=profile,
    )

    run_log = setup_run_logging(
        settings.resolve_path(settings.log_dir),
        json_format=log_json,
        console=cli_ctx.err_console,
    )
    ctx = build_context(settings, dry_run=dry_run)
    try:
        _execute(selected, OrchestrationDriver(), ctx)
    except BatchPrepError:
        _report(cli_ctx, selected, ctx, run_log)
        raise
    finally:
        close_run_logging()

    _report(cli_ctx, selected, ctx, run_log)
    if not json_mode:
        suffix = " (dry-run, nothing was changed)" if dry_run else ""
        print_success(cli_ctx, f"{selected.value} run complete{suffix}. Log: {run_log.path}")
