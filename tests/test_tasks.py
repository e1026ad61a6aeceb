from __future__ import annotations

import sys
import time
from pathlib import Path

import allure
import pytest

from night_watch.runtime.locks import pid_alive
from night_watch.runtime.tasks import (
    TIMEOUT_EXIT_CODE,
    build_command,
    read_task_marker,
    run_task,
    task_marker_path,
)

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Supervised Tasks"),
]


def test_build_command_fills_placeholders_per_argument() -> None:
    args = build_command(
        "agent --file {prd_file} --name='{prd_name} run'",
        {"prd_file": "/p/a b.md", "prd_name": "a b"},
    )

    assert args == ["agent", "--file", "/p/a b.md", "--name=a b run"]


@pytest.mark.parametrize(
    ("template", "message"),
    [("   ", "empty"), ("agent {unknown}", "unknown")],
)
def test_build_command_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        build_command(template, {"prd_file": "x"})


def test_run_task_appends_output_and_exit_code(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "executor.log"
    log_path.parent.mkdir()
    log_path.write_text("previous run\n", encoding="utf-8")

    result = run_task(
        args=[sys.executable, "-c", "import os; print(os.environ['NW_TEST']); raise SystemExit(3)"],
        cwd=tmp_path,
        timeout_seconds=30,
        log_path=log_path,
        env={"NW_TEST": "hello"},
    )

    assert result.exit_code == 3
    assert not result.timed_out
    assert log_path.read_text(encoding="utf-8").splitlines() == ["previous run", "hello"]


def test_run_task_timeout_reports_124(tmp_path: Path) -> None:
    result = run_task(
        args=[sys.executable, "-c", "import time; time.sleep(30)"],
        cwd=tmp_path,
        timeout_seconds=1,
        log_path=tmp_path / "task.log",
    )

    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.duration_seconds < 10


def test_run_task_honours_shutdown_request(tmp_path: Path) -> None:
    result = run_task(
        args=[sys.executable, "-c", "import time; time.sleep(30)"],
        cwd=tmp_path,
        timeout_seconds=30,
        log_path=tmp_path / "task.log",
        shutdown_requested=lambda: True,
        graceful_shutdown_seconds=0,
    )

    assert result.interrupted
    assert not result.timed_out


def _wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def test_run_task_publishes_its_process_group_while_running(tmp_path: Path) -> None:
    marker = task_marker_path(tmp_path / "nw-demo-executor.lock")
    code = (
        "import os, pathlib, time\n"
        f"marker = pathlib.Path({str(marker)!r})\n"
        "for _ in range(200):\n"
        "    if marker.exists():\n"
        "        break\n"
        "    time.sleep(0.05)\n"
        "print(marker.read_text().strip() == str(os.getpgrp()))\n"
    )

    result = run_task(
        args=[sys.executable, "-c", code],
        cwd=tmp_path,
        timeout_seconds=30,
        log_path=tmp_path / "task.log",
        marker_path=marker,
    )

    assert result.exit_code == 0
    assert (tmp_path / "task.log").read_text(encoding="utf-8").strip() == "True"
    assert not marker.exists()
    assert marker.name == "nw-demo-executor.lock.task"


def test_timeout_terminates_the_whole_task_group(tmp_path: Path) -> None:
    grandchild_file = tmp_path / "grandchild.pid"

    result = run_task(
        args=["sh", "-c", f"sleep 60 & echo $! > {grandchild_file}; wait"],
        cwd=tmp_path,
        timeout_seconds=1,
        log_path=tmp_path / "task.log",
    )

    assert result.timed_out
    grandchild = int(grandchild_file.read_text(encoding="utf-8"))
    assert _wait_until(lambda: not pid_alive(grandchild))


def test_read_task_marker_ignores_garbage(tmp_path: Path) -> None:
    marker = tmp_path / "x.lock.task"

    assert read_task_marker(marker) is None
    marker.write_text("not a pid", encoding="utf-8")
    assert read_task_marker(marker) is None
    marker.write_text("4321\n", encoding="utf-8")
    assert read_task_marker(marker) == 4321
