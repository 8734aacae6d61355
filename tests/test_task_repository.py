from __future__ import annotations

from pathlib import Path

import allure
import pytest

from task_coordinator.coordination.models import (
    DuplicateTaskError,
    StatusFilters,
    TaskConfig,
    TaskCreate,
    TaskNotFoundError,
    TaskStateError,
    TaskStatus,
    TaskValidationError,
)
from task_coordinator.coordination.repository import TaskRepository

pytestmark = [
    allure.epic("Task Coordinator"),
    allure.feature("Task Store"),
]


def _task(task_id: str, agent_type: str = "backend", **kwargs) -> TaskCreate:
    return TaskCreate(
        task_id=task_id,
        agent_type=agent_type,
        description=kwargs.pop("description", f"Work for {task_id}"),
        **kwargs,
    )


def _event_types(repository: TaskRepository, task_id: str) -> list[str]:
    details = repository.get_task_details(task_id)
    assert details is not None
    return [event.event_type for event in details.events]


def test_enqueue_without_dependencies_is_ready_with_workspace(repository: TaskRepository) -> None:
    task = repository.enqueue_task(
        _task(
            "api-1",
            priority=7,
            config=TaskConfig(tools=["git"], timeout_seconds=60, environment={"MODE": "ci"}),
            metadata={"ticket": 42},
            tags=["api"],
        ),
    )

    assert task.status is TaskStatus.READY
    assert task.priority == 7
    assert task.dependencies == []
    assert task.retry_count == 0
    assert Path(task.workspace_path).is_dir()
    assert Path(task.workspace_path).name == "api-1"
    assert task.config.tools == ["git"]
    assert task.config.timeout_seconds == 60
    assert task.config.environment == {"MODE": "ci"}
    assert task.metadata == {"ticket": 42}
    assert task.tags == ["api"]
    assert task.created_at.tzinfo is not None
    assert _event_types(repository, "api-1") == ["enqueued"]


def test_store_uses_wal_journal(repository: TaskRepository) -> None:
    assert repository.journal_mode().lower() == "wal"


def test_enqueue_with_unfinished_dependency_is_blocked(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("a"))
    blocked = repository.enqueue_task(_task("b", dependencies=["a"]))

    assert blocked.status is TaskStatus.BLOCKED
    assert blocked.dependencies == ["a"]
    details = repository.get_task_details("b")
    assert details is not None
    assert details.events[0].details["unmet_dependencies"] == ["a"]


def test_enqueue_with_completed_dependency_is_ready(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("a"))
    repository.complete_task("a", success=True)

    task = repository.enqueue_task(_task("b", dependencies=["a"]))

    assert task.status is TaskStatus.READY


def test_duplicate_enqueue_is_rejected_and_original_unchanged(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("dup", description="original", priority=3))

    with pytest.raises(DuplicateTaskError, match="Task dup already exists"):
        repository.enqueue_task(_task("dup", description="replacement", priority=9))

    stored = repository.get_task("dup")
    assert stored is not None
    assert stored.description == "original"
    assert stored.priority == 3
    assert repository.queue_counts().total_tasks == 1


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        (TaskCreate(task_id="x", agent_type="backend", priority=0), "priority"),
        (TaskCreate(task_id="x", agent_type="backend", priority=11), "priority"),
        (TaskCreate(task_id="x", agent_type="  "), "agent_type"),
        (TaskCreate(task_id=" ", agent_type="backend"), "task_id"),
        (TaskCreate(task_id="x", agent_type="backend", dependencies=["x"]), "itself"),
        (
            TaskCreate(task_id="x", agent_type="backend", config=TaskConfig(timeout_seconds=0)),
            "timeout_seconds",
        ),
    ],
)
def test_enqueue_validation_errors(
    repository: TaskRepository,
    payload: TaskCreate,
    message: str,
) -> None:
    with pytest.raises(TaskValidationError, match=message):
        repository.enqueue_task(payload)
    assert repository.queue_counts().total_tasks == 0


def test_dependency_may_name_task_enqueued_later(repository: TaskRepository) -> None:
    early = repository.enqueue_task(_task("report", dependencies=["data"]))
    assert early.status is TaskStatus.BLOCKED

    repository.enqueue_task(_task("data"))
    outcome = repository.complete_task("data", success=True)

    assert outcome.triggered_task_ids == ["report"]
    report = repository.get_task("report")
    assert report is not None
    assert report.status is TaskStatus.READY


def test_next_ready_orders_by_priority_then_fifo(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("low", priority=2))
    repository.enqueue_task(_task("high-first", priority=8))
    repository.enqueue_task(_task("high-second", priority=8))
    repository.enqueue_task(_task("other-agent", agent_type="frontend", priority=10))

    picked = []
    for _ in range(3):
        task = repository.get_next_ready_task(agent_type="backend")
        assert task is not None
        assert repository.mark_running(task.task_id, worker_id="w1")
        picked.append(task.task_id)

    assert picked == ["high-first", "high-second", "low"]
    assert repository.get_next_ready_task(agent_type="backend") is None


def test_next_ready_respects_priority_window(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("p3", priority=3))
    repository.enqueue_task(_task("p6", priority=6))
    repository.enqueue_task(_task("p9", priority=9))

    task = repository.get_next_ready_task(min_priority=4, max_priority=7)

    assert task is not None
    assert task.task_id == "p6"
    assert repository.get_next_ready_task(min_priority=10) is None


def test_mark_running_succeeds_once(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("one"))

    assert repository.mark_running("one", worker_id="w1") is True
    assert repository.mark_running("one", worker_id="w2") is False

    task = repository.get_task("one")
    assert task is not None
    assert task.status is TaskStatus.RUNNING
    assert task.worker_id == "w1"
    assert task.started_at is not None
    assert _event_types(repository, "one") == ["enqueued", "claimed"]


def test_complete_unblocks_only_fully_satisfied_dependents(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("b"))
    repository.enqueue_task(_task("c"))
    repository.enqueue_task(_task("d", dependencies=["b", "c"]))

    first = repository.complete_task("b", success=True)
    assert first.applied
    assert first.final_status is TaskStatus.COMPLETED
    assert first.triggered_task_ids == []
    task_d = repository.get_task("d")
    assert task_d is not None
    assert task_d.status is TaskStatus.BLOCKED

    second = repository.complete_task("c", success=True)
    assert second.triggered_task_ids == ["d"]
    task_d = repository.get_task("d")
    assert task_d is not None
    assert task_d.status is TaskStatus.READY
    assert _event_types(repository, "d") == ["enqueued", "unblocked"]


def test_complete_reports_dependents_in_creation_order(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("root"))
    for name in ("z-child", "a-child", "m-child"):
        repository.enqueue_task(_task(name, dependencies=["root"]))

    outcome = repository.complete_task("root", success=True, result={"ok": True})

    assert outcome.triggered_task_ids == ["z-child", "a-child", "m-child"]
    root = repository.get_task("root")
    assert root is not None
    assert root.result == {"ok": True}
    assert root.completed_at is not None


def test_complete_unknown_task_is_accepted_without_effect(repository: TaskRepository) -> None:
    outcome = repository.complete_task("ghost", success=True)

    assert outcome.found is False
    assert outcome.applied is False
    assert outcome.final_status is None
    assert repository.queue_counts().total_tasks == 0


def test_duplicate_completion_is_idempotent(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("a"))
    repository.enqueue_task(_task("b", dependencies=["a"]))
    repository.complete_task("a", success=True)
    claimed = repository.get_next_ready_task()
    assert claimed is not None
    assert repository.mark_running(claimed.task_id)

    again = repository.complete_task("a", success=False, error_message="late failure")

    assert again.found is True
    assert again.applied is False
    assert again.final_status is TaskStatus.COMPLETED
    assert again.triggered_task_ids == []
    task_a = repository.get_task("a")
    assert task_a is not None
    assert task_a.status is TaskStatus.COMPLETED
    assert task_a.error_message is None
    task_b = repository.get_task("b")
    assert task_b is not None
    assert task_b.status is TaskStatus.RUNNING
    assert _event_types(repository, "a")[-1] == "completion_ignored"


def test_failure_keeps_dependents_blocked_and_counts_retry(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("a"))
    repository.enqueue_task(_task("b", dependencies=["a"]))
    repository.mark_running("a")

    outcome = repository.complete_task("a", success=False, error_message="boom")

    assert outcome.final_status is TaskStatus.FAILED
    assert outcome.triggered_task_ids == []
    task_a = repository.get_task("a")
    assert task_a is not None
    assert task_a.retry_count == 1
    assert task_a.error_message == "boom"
    task_b = repository.get_task("b")
    assert task_b is not None
    assert task_b.status is TaskStatus.BLOCKED


def test_completing_blocked_task_is_a_state_error(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("a"))
    repository.enqueue_task(_task("b", dependencies=["a"]))

    with pytest.raises(TaskStateError, match="status=blocked"):
        repository.complete_task("b", success=True)


def test_manual_retry_requeues_failed_task(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("a"))
    repository.mark_running("a", worker_id="w1")
    repository.complete_task("a", success=False, error_message="boom")

    retried = repository.retry_task("a")

    assert retried.status is TaskStatus.READY
    assert retried.retry_count == 1
    assert retried.error_message is None
    assert retried.worker_id is None
    assert retried.completed_at is None
    assert _event_types(repository, "a")[-1] == "manual_retry"


def test_manual_retry_refuses_exhausted_or_unfinished_tasks(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("strict", config=TaskConfig(max_retries=0)))
    repository.complete_task("strict", success=False)
    with pytest.raises(TaskStateError, match="exhausted"):
        repository.retry_task("strict")

    repository.enqueue_task(_task("done"))
    repository.complete_task("done", success=True)
    with pytest.raises(TaskStateError, match="Only failed/cancelled"):
        repository.retry_task("done")

    with pytest.raises(TaskNotFoundError):
        repository.retry_task("missing")


def test_cancel_and_retry_cancelled_task_restores_blocked_state(
    repository: TaskRepository,
) -> None:
    repository.enqueue_task(_task("a"))
    repository.enqueue_task(_task("b", dependencies=["a"]))

    cancelled = repository.cancel_task("b")
    assert cancelled.status is TaskStatus.CANCELLED
    assert repository.complete_task("b", success=True).applied is False

    retried = repository.retry_task("b")
    assert retried.status is TaskStatus.BLOCKED

    repository.complete_task("a", success=True)
    with pytest.raises(TaskStateError, match="cannot be cancelled"):
        repository.cancel_task("a")


def test_list_tasks_filters_and_keeps_creation_order(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("b1"))
    repository.enqueue_task(_task("f1", agent_type="frontend"))
    repository.enqueue_task(_task("b2", dependencies=["b1"]))

    assert [task.task_id for task in repository.list_tasks()] == ["b1", "f1", "b2"]
    assert [task.task_id for task in repository.list_tasks(agent_type="backend")] == ["b1", "b2"]
    assert [task.task_id for task in repository.list_tasks(status=TaskStatus.BLOCKED)] == ["b2"]
    assert [task.task_id for task in repository.list_tasks(limit=1)] == ["b1"]
    assert [task.task_id for task in repository.list_tasks(task_id="f1")] == ["f1"]


def test_system_status_aggregates_queue(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("done", priority=2))
    repository.enqueue_task(_task("broken"))
    repository.enqueue_task(_task("busy", agent_type="frontend", description="x" * 150))
    repository.enqueue_task(_task("next", priority=9))
    repository.enqueue_task(_task("later", dependencies=["next"]))

    repository.mark_running("done")
    repository.complete_task("done", success=True)
    repository.complete_task("broken", success=False)
    repository.mark_running("busy", worker_id="w-front")

    status = repository.get_system_status()

    counts = status.counts
    assert counts.total_tasks == 5
    assert counts.pending_tasks == 2
    assert counts.ready_tasks == 1
    assert counts.blocked_tasks == 1
    assert counts.running_tasks == 1
    assert counts.completed_tasks == 1
    assert counts.failed_tasks == 1
    assert counts.cancelled_tasks == 0
    assert status.performance.success_rate == 0.5
    assert status.performance.efficiency == pytest.approx(0.1)
    assert status.performance.avg_execution_time_ms >= 0
    assert [running.task_id for running in status.running] == ["busy"]
    assert status.running[0].worker_id == "w-front"
    assert status.next_ready is not None
    assert status.next_ready.task_id == "next"
    assert status.by_agent_type["frontend"] == {"running": 1}
    assert status.by_agent_type["backend"]["blocked"] == 1
    assert status.tasks is None


def test_system_status_task_list_with_details(repository: TaskRepository) -> None:
    repository.enqueue_task(_task("a"))
    repository.enqueue_task(_task("b", agent_type="frontend"))

    status = repository.get_system_status(
        StatusFilters(include_tasks=True, include_details=True, agent_type="frontend"),
    )

    assert status.tasks is not None
    assert [task.task_id for task in status.tasks] == ["b"]
    assert [event.event_type for event in status.events["b"]] == ["enqueued"]
    assert status.counts.total_tasks == 2

    single = repository.get_system_status(StatusFilters(task_id="a"))
    assert single.tasks is not None
    assert [task.task_id for task in single.tasks] == ["a"]
    assert single.events == {}


def test_empty_queue_status(repository: TaskRepository) -> None:
    status = repository.get_system_status()

    assert status.counts.total_tasks == 0
    assert status.performance.success_rate == 1.0
    assert status.performance.efficiency == 0.0
    assert status.performance.avg_execution_time_ms == 0
    assert status.next_ready is None
    assert status.running == []
