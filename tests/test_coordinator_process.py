from __future__ import annotations

import os
import sys
import textwrap
import threading
import time
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from task_coordinator.config import Settings
from task_coordinator.protocol.process import (
    ConnectionState,
    CoordinatorNotConnectedError,
    CoordinatorProcess,
    HandshakeTimeoutError,
    ToolCallTimeoutError,
    default_server_command,
)

pytestmark = [
    allure.epic("Task Coordinator"),
    allure.feature("Coordinator Process"),
]

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"

_SILENT_SERVER = textwrap.dedent(
    """
    import json
    import sys

    while True:
        line = sys.stdin.readline()
        if not line:
            break
        message = json.loads(line)
        if message.get("method") == "initialize":
            response = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "result": {"serverInfo": {"name": "silent"}},
            }
            sys.stdout.write(json.dumps(response) + "\\n")
            sys.stdout.flush()
    """,
)


@pytest.fixture()
def child_pythonpath(monkeypatch: pytest.MonkeyPatch) -> None:
    existing = os.environ.get("PYTHONPATH")
    value = str(_SRC_DIR) if not existing else os.pathsep.join([str(_SRC_DIR), existing])
    monkeypatch.setenv("PYTHONPATH", value)


def _wait_for(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def _with_protocol(settings: Settings, **changes) -> Settings:
    return replace(settings, protocol=replace(settings.protocol, **changes))


def test_embedded_process_runs_dependency_scenario(settings: Settings) -> None:
    process = CoordinatorProcess(settings, embedded=True)
    assert process.state is ConnectionState.STOPPED

    with process:
        assert process.state is ConnectionState.CONNECTED
        assert process.server_info["name"] == "task-coordinator"
        assert process.ping() is True
        assert {tool["name"] for tool in process.list_tools()} >= {
            "enqueue_task",
            "get_next_task",
            "complete_task",
            "get_task_status",
        }

        process.enqueue_task(task_id="A", agent_type="backend", description="api", priority=5)
        process.enqueue_task(
            task_id="B",
            agent_type="backend",
            description="client",
            priority=7,
            dependencies=["A"],
        )
        claimed = process.get_next_task(worker_id="w1")
        assert claimed["task"]["id"] == "A"
        completed = process.complete_task(task_id="A", success=True)
        assert completed["triggered_tasks"] == ["B"]
        assert process.get_next_task()["task"]["id"] == "B"

        status = process.get_task_status(include_tasks=True)
        assert status["system_status"]["running_tasks"] == 1
        assert process.health_check()["status"] == "ok"
        assert process.last_health_check is not None
        assert [record.tool_name for record in process.history][:2] == [
            "enqueue_task",
            "enqueue_task",
        ]
        assert process.describe()["transport"]["mode"] == "embedded"

    assert process.state is ConnectionState.STOPPED
    with pytest.raises(CoordinatorNotConnectedError):
        process.call_tool("get_task_status", {})


def test_embedded_process_multiplexes_concurrent_calls(settings: Settings) -> None:
    errors: list[BaseException] = []
    responses: dict[str, dict] = {}
    lock = threading.Lock()

    with CoordinatorProcess(settings, embedded=True) as process:

        def _enqueue(task_id: str) -> None:
            try:
                response = process.enqueue_task(
                    task_id=task_id,
                    agent_type="backend",
                    description=f"task {task_id}",
                )
            except BaseException as error:  # noqa: BLE001
                errors.append(error)
                return
            with lock:
                responses[task_id] = response

        threads = [
            threading.Thread(target=_enqueue, args=(f"t-{index}",), daemon=True)
            for index in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
            assert thread.is_alive() is False

    assert errors == []
    assert sorted(responses) == sorted(f"t-{index}" for index in range(8))
    for task_id, response in responses.items():
        assert response["success"] is True
        assert response["task_id"] == task_id


def test_tool_validation_errors_come_back_as_envelopes(settings: Settings) -> None:
    with CoordinatorProcess(settings, embedded=True) as process:
        response = process.enqueue_task(task_id="A", agent_type="backend")

    assert response["success"] is False
    assert response["error_type"] == "validation"
    assert response["error"] == "description: required"


def test_health_checks_run_periodically(settings: Settings) -> None:
    fast = _with_protocol(settings, health_check_interval_seconds=0.1)

    with CoordinatorProcess(fast, embedded=True) as process:
        assert _wait_for(lambda: process.last_health_check is not None, timeout=10)
        assert process.last_health_check["success"] is True
        assert process.health_check_failures == 0


def test_subprocess_server_round_trip(settings: Settings, child_pythonpath: None) -> None:
    process = CoordinatorProcess(settings)
    assert process.command == default_server_command(settings)

    with process:
        assert process.describe()["transport"]["mode"] == "subprocess"
        assert process.describe()["transport"]["pid"] is not None
        enqueued = process.enqueue_task(task_id="ui", agent_type="frontend", description="x")
        assert enqueued["success"] is True
        assert Path(enqueued["workspace_path"]).parent == settings.store.workspace_root.resolve()
        assert process.get_next_task(agent_type="backend")["task"] is None
        assert process.get_next_task(agent_type="frontend")["task"]["id"] == "ui"

    assert process.state is ConnectionState.STOPPED
    assert settings.db_path.exists()


def test_handshake_timeout_fails_start(settings: Settings) -> None:
    quick = _with_protocol(
        settings,
        handshake_timeout_seconds=0.5,
        graceful_shutdown_seconds=0.2,
    )
    process = CoordinatorProcess(
        quick,
        command=[sys.executable, "-c", "import time; time.sleep(30)"],
    )

    started = time.monotonic()
    with pytest.raises(HandshakeTimeoutError, match="handshake timed out"):
        process.start()

    assert time.monotonic() - started < 10
    assert process.state is ConnectionState.ERROR
    with pytest.raises(CoordinatorNotConnectedError):
        process.call_tool("get_task_status", {})
    process.stop()
    assert process.state is ConnectionState.STOPPED


def test_call_timeout_does_not_drop_connection(settings: Settings) -> None:
    process = CoordinatorProcess(
        settings,
        command=[sys.executable, "-c", _SILENT_SERVER],
    )

    with process:
        assert process.server_info == {"name": "silent"}
        with pytest.raises(ToolCallTimeoutError, match="timed out"):
            process.call_tool("get_task_status", {}, timeout=0.3)
        assert process.state is ConnectionState.CONNECTED
        assert process.history[-1].success is False

    assert process.state is ConnectionState.STOPPED


def test_unexpected_server_exit_moves_to_error(settings: Settings) -> None:
    process = CoordinatorProcess(
        settings,
        command=[sys.executable, "-c", _SILENT_SERVER],
    )
    process.start()
    try:
        transport_process = process._transport.process  # type: ignore[union-attr]
        transport_process.kill()

        assert _wait_for(lambda: process.state is ConnectionState.ERROR)
        with pytest.raises(CoordinatorNotConnectedError):
            process.call_tool("get_task_status", {})
    finally:
        process.stop()
    assert process.state is ConnectionState.STOPPED


def test_process_can_restart_after_stop(settings: Settings) -> None:
    process = CoordinatorProcess(settings, embedded=True)

    with process:
        process.enqueue_task(task_id="persisted", agent_type="backend", description="x")
    with process:
        status = process.get_task_status(task_id="persisted")

    assert [task["id"] for task in status["tasks"]] == ["persisted"]


def test_restart_after_crash_releases_old_server(settings: Settings) -> None:
    process = CoordinatorProcess(
        settings,
        command=[sys.executable, "-c", _SILENT_SERVER],
    )
    process.start()
    try:
        crashed = process._transport.process  # type: ignore[union-attr]
        crashed.kill()
        assert _wait_for(lambda: process.state is ConnectionState.ERROR)

        process.start()
        assert process.state is ConnectionState.CONNECTED
        assert crashed.stdout.closed is True
        health_threads = [
            thread
            for thread in threading.enumerate()
            if thread.name == "coordinator-health" and thread.is_alive()
        ]
        assert len(health_threads) == 1
    finally:
        process.stop()
    assert process.state is ConnectionState.STOPPED


def test_failing_health_check_keeps_connection(settings: Settings) -> None:
    impatient = _with_protocol(
        settings,
        health_check_interval_seconds=0.1,
        call_timeout_seconds=0.2,
    )
    process = CoordinatorProcess(
        impatient,
        command=[sys.executable, "-c", _SILENT_SERVER],
    )

    with process:
        assert _wait_for(lambda: process.health_check_failures > 0, timeout=10)
        assert process.state is ConnectionState.CONNECTED
        assert process.history[-1].tool_name == "health_check"
        assert process.history[-1].success is False

    assert process.state is ConnectionState.STOPPED
