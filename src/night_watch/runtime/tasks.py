"""Run a worker command as a supervised subprocess task."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from night_watch.runtime.locks import pid_alive

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True, frozen=True)
class TaskResult:
    """Outcome of one supervised command."""

    exit_code: int
    timed_out: bool
    duration_seconds: float
    interrupted: bool = False


def build_command(template: str, values: Mapping[str, str]) -> list[str]:
    """Split a shell-like template and fill ``{placeholders}`` per argument."""

    args = shlex.split(template)
    if not args:
        raise ValueError("Command template is empty.")
    try:
        return [arg.format_map(dict(values)) for arg in args]
    except KeyError as error:
        raise ValueError(f"Unknown placeholder in command template: {error.args[0]!r}") from error


def run_task(
    *,
    args: list[str],
    cwd: Path,
    timeout_seconds: int,
    log_path: Path,
    env: Mapping[str, str] | None = None,
    shutdown_requested: Callable[[], bool] | None = None,
    graceful_shutdown_seconds: int = 5,
    marker_path: Path | None = None,
) -> TaskResult:
    """Run ``args`` in its own process group, appending output to ``log_path``.

    Exceeding ``timeout_seconds`` terminates the group and reports exit
    code 124. A shutdown request gives the process ``graceful_shutdown_seconds``
    before it is terminated. While the task runs, ``marker_path`` holds its
    process group id so another process can stop it if this one dies.
    """

    log_path.parent.mkdir(parents=True, exist_ok=True)
    run_env = os.environ.copy()
    if env:
        run_env.update(env)

    started = time.monotonic()
    with log_path.open("a", encoding="utf-8") as log_handle:
        process = subprocess.Popen(  # noqa: S603
            args,
            cwd=cwd,
            env=run_env,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            text=True,
            start_new_session=True,
        )
        logger.info("Started task pid %s: %s", process.pid, shlex.join(args))
        try:
            if marker_path is not None:
                marker_path.write_text(f"{process.pid}\n", encoding="utf-8")
            return _supervise(
                process,
                started=started,
                timeout_seconds=timeout_seconds,
                shutdown_requested=shutdown_requested,
                graceful_shutdown_seconds=graceful_shutdown_seconds,
            )
        finally:
            if process.poll() is None:
                _terminate_process(process)
            if marker_path is not None:
                marker_path.unlink(missing_ok=True)


def _supervise(
    process: subprocess.Popen[str],
    *,
    started: float,
    timeout_seconds: int,
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: int,
) -> TaskResult:
    shutdown_deadline: float | None = None
    while True:
        returncode = process.poll()
        now = time.monotonic()
        if returncode is not None:
            return TaskResult(
                exit_code=returncode,
                timed_out=False,
                duration_seconds=now - started,
            )

        if now - started >= timeout_seconds:
            logger.warning("Task pid %s exceeded %ss", process.pid, timeout_seconds)
            _terminate_process(process)
            return TaskResult(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                duration_seconds=time.monotonic() - started,
            )

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + max(0, graceful_shutdown_seconds)
            if now >= shutdown_deadline:
                _terminate_process(process)
                return TaskResult(
                    exit_code=process.returncode if process.returncode is not None else 143,
                    timed_out=False,
                    duration_seconds=time.monotonic() - started,
                    interrupted=True,
                )

        time.sleep(0.1)


def terminate_pid(pid: int, *, grace_seconds: float = 3.0) -> bool:
    """SIGTERM, wait up to ``grace_seconds``, then SIGKILL. ``True`` if the process is gone."""

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True
    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.1)
    logger.warning("Pid %s ignored SIGTERM for %ss, sending SIGKILL", pid, grace_seconds)
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        return True
    deadline = time.monotonic() + 0.5
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return not pid_alive(pid)


def task_marker_path(lock_path: Path) -> Path:
    """File next to a role lock recording the process group of the running task."""

    return lock_path.with_name(f"{lock_path.name}.task")


def read_task_marker(path: Path) -> int | None:
    try:
        content = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        pgid = int(content)
    except ValueError:
        return None
    return pgid if pgid > 0 else None


def terminate_process_group(pgid: int, *, grace_seconds: float = 3.0) -> bool:
    """SIGTERM the group, wait up to ``grace_seconds``, then SIGKILL. ``True`` once it is gone."""

    if not _signal_group(pgid, signal.SIGTERM):
        return True
    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not _group_running(pgid):
            return True
        time.sleep(0.1)
    logger.warning("Task group %s ignored SIGTERM for %ss, sending SIGKILL", pgid, grace_seconds)
    if not _signal_group(pgid, signal.SIGKILL):
        return True
    deadline = time.monotonic() + 0.5
    while time.monotonic() < deadline:
        if not _group_running(pgid):
            return True
        time.sleep(0.05)
    return not _group_running(pgid)


def _terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    _signal_group(process.pid, signal.SIGTERM)
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        _signal_group(process.pid, signal.SIGKILL)
        process.wait(timeout=2)
    # members that outlived the leader
    _signal_group(process.pid, signal.SIGKILL)


def _signal_group(pgid: int, signum: int) -> bool:
    try:
        os.killpg(pgid, signum)
    except ProcessLookupError:
        return False
    return True


def _group_running(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    # killpg also succeeds while only zombies remain
    return _group_has_live_member(pgid)


def _group_has_live_member(pgid: int) -> bool:
    proc = Path("/proc")
    if not proc.is_dir():
        return True
    for entry in proc.iterdir():
        if not entry.name.isdigit():
            continue
        try:
            stat = (entry / "stat").read_text(encoding="utf-8")
        except OSError:
            continue
        _, _, rest = stat.rpartition(")")
        fields = rest.split()
        if len(fields) > 2 and fields[2] == str(pgid) and fields[0] != "Z":
            return True
    return False


@contextmanager
def stop_on_signals(request_stop: Callable[[str], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``request_stop`` for the duration of the block."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        request_stop(name)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
