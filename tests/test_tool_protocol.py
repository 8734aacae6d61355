from __future__ import annotations

import json
import queue
import threading
from pathlib import Path

import allure
import pytest

from task_coordinator.coordination.repository import TaskRepository
from task_coordinator.protocol.requests import UnknownToolError
from task_coordinator.protocol.tools import TOOL_DEFINITIONS, TaskToolService

pytestmark = [
    allure.epic("Task Coordinator"),
    allure.feature("Tool Protocol"),
]


def _enqueue(service: TaskToolService, task_id: str, **arguments) -> dict:
    payload = {
        "task_id": task_id,
        "agent_type": arguments.pop("agent_type", "backend"),
        "description": arguments.pop("description", f"Work for {task_id}"),
        **arguments,
    }
    response = service.call_tool("enqueue_task", payload)
    assert response["success"] is True, response
    return response


def test_list_tools_advertises_schemas(service: TaskToolService) -> None:
    tools = {tool["name"]: tool for tool in service.list_tools()}

    assert set(tools) == {
        "enqueue_task",
        "get_next_task",
        "complete_task",
        "get_task_status",
        "health_check",
    }
    assert tools["enqueue_task"]["inputSchema"]["required"] == [
        "task_id",
        "agent_type",
        "description",
    ]
    assert tools["complete_task"]["inputSchema"]["required"] == ["task_id", "success"]
    assert len(TOOL_DEFINITIONS) == len(tools)


def test_dependency_chain_scenario(service: TaskToolService) -> None:
    _enqueue(service, "A", priority=5)
    enqueued_b = _enqueue(service, "B", priority=7, dependencies=["A"])
    assert enqueued_b["status"] == "blocked"
    assert Path(enqueued_b["workspace_path"]).is_dir()

    status = service.call_tool("get_task_status", {})
    assert status["success"] is True
    assert status["system_status"]["ready_tasks"] == 1
    assert status["system_status"]["blocked_tasks"] == 1
    assert status["queue_summary"]["blocked_tasks"] == 1
    assert status["queue_summary"]["next_ready_task"]["id"] == "A"

    first = service.call_tool("get_next_task", {})
    assert first["task"]["id"] == "A"
    assert first["task"]["status"] == "running"
    assert first["message"] == "Task A assigned"

    completed = service.call_tool("complete_task", {"task_id": "A", "success": True})
    assert completed["success"] is True
    assert completed["final_status"] == "completed"
    assert completed["triggered_tasks"] == ["B"]
    assert completed["message"] == (
        "Task A marked as completed and 1 dependent task(s) are now ready"
    )

    second = service.call_tool("get_next_task", {})
    assert second["task"]["id"] == "B"
    assert second["task"]["dependencies"] == ["A"]


def test_agent_type_filter_hides_other_agents_tasks(service: TaskToolService) -> None:
    _enqueue(service, "C", agent_type="frontend")

    response = service.call_tool("get_next_task", {"agent_type": "backend"})

    assert response["success"] is True
    assert response["task"] is None
    assert response["message"] == "No tasks available matching the requested filters"
    assert response["queue_status"]["ready_tasks"] == 1


def test_priority_eight_is_claimed_before_five(service: TaskToolService) -> None:
    _enqueue(service, "normal", priority=5)
    _enqueue(service, "urgent", priority=8)

    response = service.call_tool("get_next_task", {})

    assert response["task"]["id"] == "urgent"


def test_empty_queue_messages(service: TaskToolService) -> None:
    empty = service.call_tool("get_next_task", {})
    assert empty["task"] is None
    assert empty["message"] == "No tasks available"

    _enqueue(service, "A")
    _enqueue(service, "B", dependencies=["A"])
    assert service.call_tool("get_next_task", {})["task"]["id"] == "A"

    waiting = service.call_tool("get_next_task", {})
    assert waiting["task"] is None
    assert waiting["message"] == "No tasks available - pending tasks are waiting for dependencies"
    assert waiting["queue_status"] == {
        "total_tasks": 2,
        "pending_tasks": 1,
        "ready_tasks": 0,
        "blocked_tasks": 1,
        "running_tasks": 1,
    }


def test_duplicate_enqueue_is_a_conflict_not_validation(service: TaskToolService) -> None:
    _enqueue(service, "dup", description="original")

    response = service.call_tool(
        "enqueue_task",
        {"task_id": "dup", "agent_type": "backend", "description": "replacement"},
    )

    assert response["success"] is False
    assert response["error_type"] == "conflict"
    assert response["error"] == "Task dup already exists"
    stored = service.call_tool("get_task_status", {"task_id": "dup"})
    assert stored["tasks"][0]["description"] == "original"


def test_validation_failure_envelope(service: TaskToolService) -> None:
    response = service.call_tool(
        "enqueue_task",
        {"task_id": "bad", "agent_type": "", "description": "x", "priority": 42},
    )

    assert response == {
        "success": False,
        "task_id": "bad",
        "message": "Input validation failed",
        "error": "agent_type: must not be empty, priority: must be <= 10",
        "error_type": "validation",
    }

    missing_id = service.call_tool("complete_task", {"success": True})
    assert missing_id["success"] is False
    assert missing_id["task_id"] == "unknown"
    assert missing_id["error"] == "task_id: required"

    status = service.call_tool("get_task_status", {"status": "weird"})
    assert status["success"] is False
    assert "task_id" not in status


def test_unknown_tool_raises(service: TaskToolService) -> None:
    with pytest.raises(UnknownToolError):
        service.call_tool("delete_everything", {})


@pytest.mark.parametrize(
    ("success", "expected_status"),
    [(True, "completed"), (False, "failed")],
)
def test_complete_unknown_task_is_graceful_noop(
    service: TaskToolService,
    success: bool,
    expected_status: str,
) -> None:
    response = service.call_tool("complete_task", {"task_id": "ghost", "success": success})

    assert response["success"] is True
    assert response["final_status"] == expected_status
    assert service.repository.get_task("ghost") is None
    assert response["triggered_tasks"] == []
    assert response["message"] == "Task ghost not found - handling gracefully"


def test_complete_twice_does_not_double_trigger(service: TaskToolService) -> None:
    _enqueue(service, "root")
    for index in range(3):
        _enqueue(service, f"child-{index}", dependencies=["root"])
    _enqueue(service, "other-dep")
    _enqueue(service, "needs-both", dependencies=["root", "other-dep"])
    service.call_tool("complete_task", {"task_id": "other-dep", "success": True})
    service.call_tool("get_next_task", {"agent_type": "backend"})

    first = service.call_tool(
        "complete_task",
        {
            "task_id": "root",
            "success": True,
            "result": {"artifact": "api.py"},
            "execution_time_ms": 1200,
            "deliverables": ["api.py"],
        },
    )
    second = service.call_tool("complete_task", {"task_id": "root", "success": True})

    assert first["triggered_tasks"] == ["child-0", "child-1", "child-2", "needs-both"]
    assert first["metrics_recorded"] is True
    assert second["success"] is True
    assert second["triggered_tasks"] == []
    assert second["final_status"] == "completed"
    assert second["metrics_recorded"] is False
    assert second["message"] == "Task root already completed; no changes applied"


def test_failed_completion_leaves_dependents_blocked(service: TaskToolService) -> None:
    _enqueue(service, "A")
    _enqueue(service, "B", dependencies=["A"])
    service.call_tool("get_next_task", {})

    response = service.call_tool(
        "complete_task",
        {"task_id": "A", "success": False, "error_message": "compiler crashed"},
    )

    assert response["final_status"] == "failed"
    assert response["triggered_tasks"] == []
    assert response["message"] == "Task A marked as failed"
    status = service.call_tool(
        "get_task_status",
        {"include_tasks": True, "include_details": True},
    )
    tasks = {task["id"]: task for task in status["tasks"]}
    assert tasks["A"]["error"] == "compiler crashed"
    assert tasks["A"]["retry_count"] == 1
    assert tasks["B"]["status"] == "blocked"
    assert [event["event_type"] for event in tasks["A"]["events"]] == [
        "enqueued",
        "claimed",
        "failed",
    ]
    assert tasks["A"]["events"][-1]["details"]["error_message"] == "compiler crashed"


def test_completing_blocked_task_is_state_error(service: TaskToolService) -> None:
    _enqueue(service, "A")
    _enqueue(service, "B", dependencies=["A"])

    response = service.call_tool("complete_task", {"task_id": "B", "success": True})

    assert response["success"] is False
    assert response["error_type"] == "state"
    assert response["task_id"] == "B"


def test_status_reports_running_tasks_and_filters(service: TaskToolService) -> None:
    _enqueue(service, "long", description="d" * 120)
    _enqueue(service, "ui", agent_type="frontend")
    service.call_tool("get_next_task", {"agent_type": "backend", "worker_id": "w-9"})

    status = service.call_tool(
        "get_task_status",
        {"include_tasks": True, "agent_type": "frontend"},
    )

    running = status["running_tasks"]
    assert len(running) == 1
    assert running[0]["id"] == "long"
    assert running[0]["worker_id"] == "w-9"
    assert running[0]["description"] == "d" * 100 + "..."
    assert running[0]["elapsed_seconds"] >= 0
    assert [task["id"] for task in status["tasks"]] == ["ui"]
    assert "events" not in status["tasks"][0]
    assert status["queue_summary"]["by_agent_type"] == {
        "backend": {"running": 1},
        "frontend": {"ready": 1},
    }
    assert status["performance"] == {
        "avg_execution_time_ms": 0,
        "success_rate": 1.0,
        "efficiency": 0.0,
    }
    assert status["message"] == "Task status retrieved"
    json.dumps(status)


def test_status_for_unknown_task_id(service: TaskToolService) -> None:
    response = service.call_tool("get_task_status", {"task_id": "nope"})

    assert response["success"] is True
    assert response["tasks"] == []
    assert response["message"] == "Task nope not found"


def test_health_check_reports_wal_and_counts(service: TaskToolService) -> None:
    _enqueue(service, "A")

    response = service.call_tool("health_check", {})

    assert response["success"] is True
    assert response["status"] == "ok"
    assert response["journal_mode"].lower() == "wal"
    assert response["schema_revision"] == "20261017_0001"
    assert response["system_status"]["total_tasks"] == 1


def test_internal_errors_become_envelopes(service: TaskToolService, monkeypatch) -> None:
    def _broken(*_args, **_kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(service.repository, "get_system_status", _broken)

    response = service.call_tool("get_task_status", {})

    assert response["success"] is False
    assert response["error_type"] == "internal"
    assert response["error"] == "disk on fire"
    assert response["system_status"]["total_tasks"] == 0
    assert response["running_tasks"] == []
    assert response["queue_summary"]["next_ready_task"] is None


def _contend(
    db_path: str,
    start_event: threading.Event,
    results: queue.Queue[dict],
) -> None:  # pragma: no cover - timing-sensitive helper
    repository = TaskRepository(Path(db_path))
    try:
        start_event.wait(timeout=5)
        results.put(TaskToolService(repository).call_tool("get_next_task", {}))
    finally:
        repository.close()


def test_single_ready_task_goes_to_exactly_one_caller(repository: TaskRepository) -> None:
    service = TaskToolService(repository)
    _enqueue(service, "only")

    start_event = threading.Event()
    results: queue.Queue[dict] = queue.Queue()
    threads = [
        threading.Thread(
            target=_contend,
            args=(str(repository.db_path), start_event, results),
            daemon=True,
        )
        for _ in range(5)
    ]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=15)
        assert thread.is_alive() is False

    responses = [results.get(timeout=1) for _ in threads]
    assert all(response["success"] for response in responses)
    winners = [response for response in responses if response["task"] is not None]
    assert len(winners) == 1
    assert winners[0]["task"]["id"] == "only"
    assert winners[0]["task"]["status"] == "running"
    for response in responses:
        if response["task"] is None:
            assert response["message"].startswith("No tasks available")


def test_enqueue_rejects_integers_too_large_to_store(service: TaskToolService) -> None:
    response = service.call_tool(
        "enqueue_task",
        {
            "task_id": "huge",
            "agent_type": "backend",
            "description": "x",
            "timeout_seconds": 2**63,
        },
    )

    assert response["success"] is False
    assert response["error_type"] == "validation"
    assert "timeout_seconds: must be <= 2147483647" in response["error"]
    assert service.repository.get_task("huge") is None
