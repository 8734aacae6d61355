"""Run a task as a local command inside its workspace."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from task_coordinator.coordination.worker import TaskExecution

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
STDOUT_LOG_NAME = "task_stdout.log"
STDERR_LOG_NAME = "task_stderr.log"
PLACEHOLDERS = ("task_id", "agent_type", "description", "workspace_path")


class CommandRunError(RuntimeError):
    """Command could not be started; ``transient`` hints whether a retry may help."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class CommandRunResult:
    exit_code: int
    timed_out: bool
    duration_ms: int
    stdout_path: Path
    stderr_path: Path


class CommandTaskHandler:
    """Task handler that runs a command template per claimed task.

    Placeholders ``{task_id}``, ``{agent_type}``, ``{description}`` and
    ``{workspace_path}`` are shell-quoted before the template is split into
    argv; no shell is involved.
    """

    def __init__(
        self,
        command_template: str,
        *,
        shutdown_requested: Callable[[], bool] | None = None,
        graceful_shutdown_seconds: float = 5.0,
    ) -> None:
        if not command_template.strip():
            raise ValueError("Command template is empty.")
        self.command_template = command_template
        self.shutdown_requested = shutdown_requested
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def __call__(self, task: dict[str, Any]) -> TaskExecution:
        workspace = Path(task["workspace_path"])
        workspace.mkdir(parents=True, exist_ok=True)
        config = task.get("config") or {}
        run_args = build_run_args(self.command_template, task)

        env = os.environ.copy()
        extra_env = config.get("environment") or {}
        env.update({str(key): str(value) for key, value in extra_env.items()})
        env["TASK_COORDINATOR_TASK_ID"] = str(task["id"])
        env["TASK_COORDINATOR_AGENT_TYPE"] = str(task.get("agent_type", ""))
        env["TASK_COORDINATOR_WORKSPACE"] = str(workspace)

        result = run_command(
            run_args,
            cwd=workspace,
            env=env,
            timeout_seconds=float(config.get("timeout_seconds") or 300),
            stdout_path=workspace / STDOUT_LOG_NAME,
            stderr_path=workspace / STDERR_LOG_NAME,
            shutdown_requested=self.shutdown_requested,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )
        payload = {
            "exit_code": result.exit_code,
            "timed_out": result.timed_out,
            "duration_ms": result.duration_ms,
            "stdout_path": str(result.stdout_path),
            "stderr_path": str(result.stderr_path),
        }
        if result.timed_out:
            return TaskExecution(
                success=False,
                result=payload,
                error_message=f"Command timed out after {config.get('timeout_seconds')}s",
            )
        if result.exit_code != 0:
            return TaskExecution(
                success=False,
                result=payload,
                error_message=f"Command exited with code {result.exit_code}",
            )
        return TaskExecution(
            success=True,
            result=payload,
            deliverables=[str(result.stdout_path)],
        )


def build_run_args(command_template: str, task: dict[str, Any]) -> list[str]:
    stripped = command_template.strip()
    values = {
        "task_id": str(task.get("id", "")),
        "agent_type": str(task.get("agent_type", "")),
        "description": str(task.get("description", "")),
        "workspace_path": str(task.get("workspace_path", "")),
    }
    try:
        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except (KeyError, IndexError) as error:
        raise CommandRunError(
            f"Unsupported command template placeholder: {error}; "
            f"allowed: {', '.join('{' + name + '}' for name in PLACEHOLDERS)}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise CommandRunError("Command template rendered empty command.", transient=False)
    return argv


def run_command(  # noqa: PLR0913
    run_args: list[str],
    *,
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: float,
    stdout_path: Path,
    stderr_path: Path,
    shutdown_requested: Callable[[], bool] | None = None,
    graceful_shutdown_seconds: float = 5.0,
) -> CommandRunResult:
    """Run to completion, timeout (exit 124) or requested shutdown."""

    try:
        with (
            stdout_path.open("w", encoding="utf-8") as stdout_handle,
            stderr_path.open("w", encoding="utf-8") as stderr_handle,
        ):
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=cwd,
                env=env,
                stdout=stdout_handle,
                stderr=stderr_handle,
                text=True,
            )
            return _wait_with_deadlines(
                process,
                timeout_seconds=timeout_seconds,
                shutdown_requested=shutdown_requested,
                graceful_shutdown_seconds=graceful_shutdown_seconds,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )
    except FileNotFoundError as error:
        raise CommandRunError(f"Command not found: {run_args[0]}", transient=False) from error
    except OSError as error:
        raise CommandRunError(f"Command failed to start: {error}", transient=True) from error


def _wait_with_deadlines(  # noqa: PLR0913
    process: subprocess.Popen[str],
    *,
    timeout_seconds: float,
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: float,
    stdout_path: Path,
    stderr_path: Path,
) -> CommandRunResult:
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None

    def _result(exit_code: int, *, timed_out: bool) -> CommandRunResult:
        return CommandRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            duration_ms=int((time.monotonic() - start_monotonic) * 1000),
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )

    while True:
        returncode = process.poll()
        if returncode is not None:
            return _result(returncode, timed_out=False)

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            logger.warning("Command pid=%s timed out after %ss", process.pid, timeout_seconds)
            _terminate_process(process)
            return _result(TIMEOUT_EXIT_CODE, timed_out=True)

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + max(0.0, graceful_shutdown_seconds)
            if now >= shutdown_deadline:
                _terminate_process(process)
                return _result(TIMEOUT_EXIT_CODE, timed_out=True)

        time.sleep(0.05)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
