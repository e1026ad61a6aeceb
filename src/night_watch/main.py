"""CLI entrypoint for night-watch."""

import logging
import os
from pathlib import Path

import rich_click as click

from night_watch import __version__
from night_watch.actions import CANCEL_TYPES
from night_watch.controllers import (
    CancelCommand,
    ClearLockCommand,
    CommandResult,
    HistoryCheckCommand,
    HistoryRecordCommand,
    HistoryShowCommand,
    KeyCommand,
    MigrateCommand,
    NightWatchCliController,
    PrdStateCommand,
    ProjectsCommand,
    RetryCommand,
    RunCommand,
    StatusCommand,
)
from night_watch.errors import (
    LockConflictError,
    MigrationPartialFailureError,
    NightWatchError,
)
from night_watch.models import ExecutionOutcome, Role

click.rich_click.USE_MARKDOWN = True
CONTROLLER = NightWatchCliController()

ROLE_CHOICES = [role.value for role in Role]


class LockConflictExit(click.ClickException):
    """Printed as an HTTP-style conflict and exits with status 2."""

    exit_code = 2


def _project_dir_option(function):
    return click.option(
        "--project-dir",
        type=click.Path(path_type=Path, file_okay=False),
        default=Path.cwd,
        show_default="current directory",
        help="Project root containing night-watch.config.json.",
    )(function)


def _db_path_option(function):
    return click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help="SQLite DB path.",
    )(function)


@click.group()
@click.version_option(version=__version__, prog_name="night-watch")
def night_watch() -> None:
    """Night Watch coordination CLI.

    Runs one role per project at a time, tracks work item status, and keeps
    execution history in a shared SQLite store.
    """

    level = os.getenv("NIGHT_WATCH_LOG_LEVEL", "WARNING").strip().upper() or "WARNING"
    logging.basicConfig(
        level=level if isinstance(logging.getLevelName(level), int) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@night_watch.command("status")
@_project_dir_option
@_db_path_option
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON.")
@click.option(
    "--log-lines",
    type=click.IntRange(min=0, max=500),
    default=0,
    show_default=True,
    help="Include the last N lines of each role log.",
)
def status(project_dir: Path, db_path: Path | None, as_json: bool, log_lines: int) -> None:
    """Show work item statuses, running roles, and cleaned orphaned claims."""

    _emit_lines(
        _call(
            CONTROLLER.status,
            StatusCommand(
                project_dir=project_dir,
                db_path=db_path,
                as_json=as_json,
                log_lines=log_lines,
            ),
        ),
    )


@night_watch.command("clear-lock")
@_project_dir_option
@click.option(
    "--role",
    type=click.Choice(ROLE_CHOICES, case_sensitive=False),
    default=Role.EXECUTOR.value,
    show_default=True,
)
def clear_lock(project_dir: Path, role: str) -> None:
    """Remove a stale role lock. Refuses while the owning process is alive."""

    _emit_lines(
        _call(CONTROLLER.clear_lock, ClearLockCommand(project_dir=project_dir, role=Role(role))),
    )


@night_watch.command("cancel")
@_project_dir_option
@click.option(
    "--type",
    "cancel_type",
    type=click.Choice(sorted(CANCEL_TYPES), case_sensitive=False),
    default="run",
    show_default=True,
    help="Which role to stop.",
)
@click.option(
    "--grace-seconds",
    type=click.FloatRange(min=0),
    default=3.0,
    show_default=True,
    help="Wait after SIGTERM before sending SIGKILL.",
)
def cancel(project_dir: Path, cancel_type: str, grace_seconds: float) -> None:
    """Stop running roles, release their locks, and clean orphaned claims."""

    _emit_result(
        _call(
            CONTROLLER.cancel,
            CancelCommand(
                project_dir=project_dir,
                cancel_type=cancel_type.lower(),
                grace_seconds=grace_seconds,
            ),
        ),
    )


@night_watch.command("retry")
@_project_dir_option
@click.argument("item")
def retry(project_dir: Path, item: str) -> None:
    """Move a finished work item from `done/` back to pending."""

    _emit_lines(_call(CONTROLLER.retry, RetryCommand(project_dir=project_dir, item=item)))


@night_watch.command("migrate")
@_db_path_option
@click.option("--dry-run", is_flag=True, help="Report what would be imported; write nothing.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
def migrate(db_path: Path | None, dry_run: bool, as_json: bool) -> None:
    """Import legacy JSON state files into the SQLite store once."""

    _emit_lines(
        _call(
            CONTROLLER.migrate,
            MigrateCommand(db_path=db_path, dry_run=dry_run, as_json=as_json),
        ),
    )


@night_watch.command("run")
@_project_dir_option
@_db_path_option
@click.option(
    "--role",
    type=click.Choice(ROLE_CHOICES, case_sensitive=False),
    default=Role.EXECUTOR.value,
    show_default=True,
)
@click.option(
    "--command",
    "command_template",
    required=True,
    help="Command template; supports {prd_file}, {prd_name} and {project_dir}.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Task timeout. Defaults to the project's maxRuntime.",
)
def run(
    project_dir: Path,
    db_path: Path | None,
    role: str,
    command_template: str,
    timeout_seconds: int | None,
) -> None:
    """Run one worker cycle for a role."""

    _emit_result(
        _call(
            CONTROLLER.run,
            RunCommand(
                project_dir=project_dir,
                db_path=db_path,
                role=Role(role),
                command_template=command_template,
                timeout_seconds=timeout_seconds,
            ),
        ),
    )


@night_watch.command("key")
@_project_dir_option
@click.option(
    "--role",
    type=click.Choice(ROLE_CHOICES, case_sensitive=False),
    default=None,
    help="Print this role's lock path instead of the runtime key.",
)
@click.option("--verbose", is_flag=True, help="Print the key, version and every lock path.")
def key(project_dir: Path, role: str | None, verbose: bool) -> None:
    """Print the project's runtime key for shell launchers."""

    command = KeyCommand(project_dir=project_dir, role=Role(role) if role else None)
    if verbose:
        _emit_lines(CONTROLLER.key_details(command))
        return
    _emit_lines(CONTROLLER.key(command))


@night_watch.group()
def history() -> None:
    """Execution history ledger commands."""


@history.command("record")
@_project_dir_option
@_db_path_option
@click.argument("item")
@click.argument(
    "outcome",
    type=click.Choice([outcome.value for outcome in ExecutionOutcome], case_sensitive=False),
)
@click.option("--exit-code", type=int, default=0, show_default=True)
@click.option("--attempt", type=click.IntRange(min=1), default=1, show_default=True)
def history_record(  # noqa: PLR0913
    project_dir: Path,
    db_path: Path | None,
    item: str,
    outcome: str,
    exit_code: int,
    attempt: int,
) -> None:
    """Append one execution record and trim old ones."""

    _emit_lines(
        _call(
            CONTROLLER.history_record,
            HistoryRecordCommand(
                project_dir=project_dir,
                db_path=db_path,
                item=item,
                outcome=ExecutionOutcome(outcome.lower()),
                exit_code=exit_code,
                attempt=attempt,
            ),
        ),
    )


@history.command("check")
@_project_dir_option
@_db_path_option
@click.argument("item")
@click.option(
    "--cooldown-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Cooldown period. Defaults to the project's maxRuntime.",
)
def history_check(
    project_dir: Path,
    db_path: Path | None,
    item: str,
    cooldown_seconds: int | None,
) -> None:
    """Exit 0 if the item is in cooldown, 1 if it is eligible, 2 on bad input."""

    try:
        result = CONTROLLER.history_check(
            HistoryCheckCommand(
                project_dir=project_dir,
                db_path=db_path,
                item=item,
                cooldown_seconds=cooldown_seconds,
            ),
        )
    except (NightWatchError, ValueError) as error:
        raise click.UsageError(str(error)) from error
    _emit_result(result)


@history.command("show")
@_project_dir_option
@_db_path_option
@click.argument("item", required=False)
def history_show(project_dir: Path, db_path: Path | None, item: str | None) -> None:
    """Print stored execution records, newest first."""

    _emit_lines(
        _call(
            CONTROLLER.history_show,
            HistoryShowCommand(project_dir=project_dir, db_path=db_path, item=item),
        ),
    )


@night_watch.group("prd-state")
def prd_state() -> None:
    """Persisted work item status set by collaborators."""


@prd_state.command("set")
@_project_dir_option
@_db_path_option
@click.argument("item")
@click.argument("status")
@click.option("--branch", default="", help="Branch associated with the status.")
def prd_state_set(
    project_dir: Path,
    db_path: Path | None,
    item: str,
    status: str,
    branch: str,
) -> None:
    """Store a status such as `pending-review` for a work item."""

    _emit_lines(
        _call(
            CONTROLLER.prd_state_set,
            PrdStateCommand(
                project_dir=project_dir,
                db_path=db_path,
                item=item,
                status=status,
                branch=branch,
            ),
        ),
    )


@prd_state.command("clear")
@_project_dir_option
@_db_path_option
@click.argument("item")
def prd_state_clear(project_dir: Path, db_path: Path | None, item: str) -> None:
    """Remove the persisted status for a work item."""

    _emit_lines(
        _call(
            CONTROLLER.prd_state_clear,
            PrdStateCommand(project_dir=project_dir, db_path=db_path, item=item),
        ),
    )


@prd_state.command("list")
@_project_dir_option
@_db_path_option
@click.option("--status", default=None, help="Only list items with this status.")
def prd_state_list(project_dir: Path, db_path: Path | None, status: str | None) -> None:
    """List persisted statuses for the project."""

    _emit_lines(
        _call(
            CONTROLLER.prd_state_list,
            PrdStateCommand(project_dir=project_dir, db_path=db_path, status=status),
        ),
    )


@night_watch.group()
def projects() -> None:
    """Registry of projects on this host."""


@projects.command("register")
@_project_dir_option
@_db_path_option
@click.option("--name", default=None, help="Display name. Defaults to the directory name.")
def projects_register(project_dir: Path, db_path: Path | None, name: str | None) -> None:
    """Register a project directory."""

    _emit_lines(
        _call(
            CONTROLLER.projects_register,
            ProjectsCommand(db_path=db_path, project_dir=project_dir, name=name),
        ),
    )


@projects.command("unregister")
@_project_dir_option
@_db_path_option
def projects_unregister(project_dir: Path, db_path: Path | None) -> None:
    """Remove a project from the registry."""

    _emit_result(
        _call(
            CONTROLLER.projects_unregister,
            ProjectsCommand(db_path=db_path, project_dir=project_dir),
        ),
    )


@projects.command("list")
@_db_path_option
def projects_list(db_path: Path | None) -> None:
    """List registered projects; missing directories are flagged."""

    _emit_lines(_call(CONTROLLER.projects_list, ProjectsCommand(db_path=db_path)))


def _call(method, command):
    try:
        return method(command)
    except LockConflictError as error:
        raise LockConflictExit(f"409 Conflict: {error}") from error
    except MigrationPartialFailureError as error:
        raise click.ClickException(f"{error} (backup kept at {error.backup_dir})") from error
    except (NightWatchError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_result(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code:
        click.get_current_context().exit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    night_watch()
