"""Tool surface over the task store: enqueue, claim, complete, status."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from task_coordinator.coordination.claims import ClaimController
from task_coordinator.coordination.models import (
    MAX_PRIORITY,
    MAX_STORED_INTEGER,
    MIN_PRIORITY,
    DuplicateTaskError,
    PerformanceSummary,
    StatusCounts,
    SystemStatusView,
    TaskEventView,
    TaskStateError,
    TaskStatus,
    TaskValidationError,
    TaskView,
)
from task_coordinator.coordination.repository import TaskRepository
from task_coordinator.protocol.requests import (
    CompleteTaskRequest,
    EnqueueTaskRequest,
    GetNextTaskRequest,
    GetTaskStatusRequest,
    HealthCheckRequest,
    RequestValidationError,
    ToolRequest,
    parse_tool_request,
)

logger = logging.getLogger(__name__)

VALIDATION_FAILED_MESSAGE = "Input validation failed"
RUNNING_DESCRIPTION_LIMIT = 100


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """Tool name, description and JSON schema advertised by ``tools/list``."""

    name: str
    description: str
    input_schema: dict[str, Any]

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


_PRIORITY_SCHEMA = {"type": "integer", "minimum": MIN_PRIORITY, "maximum": MAX_PRIORITY}
_STRING_ARRAY_SCHEMA = {"type": "array", "items": {"type": "string"}}

TOOL_DEFINITIONS: tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name="enqueue_task",
        description="Add a task to the queue; it becomes ready once its dependencies complete.",
        input_schema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "minLength": 1},
                "agent_type": {"type": "string", "minLength": 1},
                "description": {"type": "string", "minLength": 1},
                "dependencies": _STRING_ARRAY_SCHEMA,
                "priority": {**_PRIORITY_SCHEMA, "default": 1},
                "workspace_path": {"type": "string"},
                "tools": _STRING_ARRAY_SCHEMA,
                "timeout_seconds": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": MAX_STORED_INTEGER,
                    "default": 300,
                },
                "max_retries": {
                    "type": "integer",
                    "minimum": 0,
                    "maximum": MAX_STORED_INTEGER,
                    "default": 3,
                },
                "environment": {"type": "object", "additionalProperties": {"type": "string"}},
                "metadata": {"type": "object"},
                "tags": _STRING_ARRAY_SCHEMA,
            },
            "required": ["task_id", "agent_type", "description"],
            "additionalProperties": False,
        },
    ),
    ToolDefinition(
        name="get_next_task",
        description="Atomically claim the highest-priority ready task matching the filters.",
        input_schema={
            "type": "object",
            "properties": {
                "agent_type": {"type": "string"},
                "min_priority": _PRIORITY_SCHEMA,
                "max_priority": _PRIORITY_SCHEMA,
                "worker_id": {"type": "string"},
            },
            "additionalProperties": False,
        },
    ),
    ToolDefinition(
        name="complete_task",
        description="Report a task outcome; success unblocks dependent tasks.",
        input_schema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "minLength": 1},
                "success": {"type": "boolean"},
                "result": {},
                "error_message": {"type": "string"},
                "deliverables": _STRING_ARRAY_SCHEMA,
                "execution_time_ms": {"type": "number", "minimum": 0},
                "tools_used": _STRING_ARRAY_SCHEMA,
            },
            "required": ["task_id", "success"],
            "additionalProperties": False,
        },
    ),
    ToolDefinition(
        name="get_task_status",
        description="Queue counts, running tasks, next ready task and optional task list.",
        input_schema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string"},
                "include_tasks": {"type": "boolean", "default": False},
                "include_details": {"type": "boolean", "default": False},
                "agent_type": {"type": "string"},
                "status": {"type": "string", "enum": [status.value for status in TaskStatus]},
            },
            "additionalProperties": False,
        },
    ),
    ToolDefinition(
        name="health_check",
        description="Liveness probe reporting journal mode, schema revision and queue counts.",
        input_schema={"type": "object", "properties": {}, "additionalProperties": False},
    ),
)


class TaskToolService:
    """Executes tool calls against an injected repository.

    Every call returns a JSON-serializable envelope with a ``success`` flag;
    only an unknown tool name raises.
    """

    def __init__(self, repository: TaskRepository, *, claim_attempts: int = 3) -> None:
        self.repository = repository
        self.claims = ClaimController(repository, max_attempts=claim_attempts)

    def list_tools(self) -> list[dict[str, Any]]:
        return [definition.to_payload() for definition in TOOL_DEFINITIONS]

    def call_tool(self, name: str, arguments: Any = None) -> dict[str, Any]:
        """Validate arguments for ``name`` and run the tool."""

        try:
            request = parse_tool_request(name, arguments)
        except RequestValidationError as exc:
            return _validation_failure(name, arguments, exc)
        return self.dispatch(request)

    def dispatch(self, request: ToolRequest) -> dict[str, Any]:
        if isinstance(request, EnqueueTaskRequest):
            return self.enqueue_task(request)
        if isinstance(request, GetNextTaskRequest):
            return self.get_next_task(request)
        if isinstance(request, CompleteTaskRequest):
            return self.complete_task(request)
        if isinstance(request, GetTaskStatusRequest):
            return self.get_task_status(request)
        return self.health_check(request)

    def enqueue_task(self, request: EnqueueTaskRequest) -> dict[str, Any]:
        try:
            task = self.repository.enqueue_task(request.to_task_create())
            counts = self.repository.queue_counts()
        except DuplicateTaskError as exc:
            return {
                "success": False,
                "task_id": request.task_id,
                "message": str(exc),
                "error": str(exc),
                "error_type": "conflict",
            }
        except TaskValidationError as exc:
            return {
                "success": False,
                "task_id": request.task_id,
                "message": VALIDATION_FAILED_MESSAGE,
                "error": str(exc),
                "error_type": "validation",
            }
        except Exception as exc:
            logger.exception("enqueue_task failed for %s", request.task_id)
            return _internal_failure("Failed to enqueue task", exc, task_id=request.task_id)

        return {
            "success": True,
            "task_id": task.task_id,
            "message": f"Task {task.task_id} enqueued successfully",
            "status": task.status.value,
            "workspace_path": task.workspace_path,
            "queue_status": _queue_status(counts),
        }

    def get_next_task(self, request: GetNextTaskRequest) -> dict[str, Any]:
        try:
            claim = self.claims.claim(
                agent_type=request.agent_type,
                min_priority=request.min_priority,
                max_priority=request.max_priority,
                worker_id=request.worker_id,
            )
            counts = self.repository.queue_counts()
        except Exception as exc:
            logger.exception("get_next_task failed")
            return _internal_failure("Failed to get next task", exc)

        if claim.task is not None:
            return {
                "success": True,
                "task": task_to_payload(claim.task),
                "message": f"Task {claim.task.task_id} assigned",
                "queue_status": _queue_status(counts),
            }

        if claim.contended:
            message = "No tasks available (concurrent access)"
        elif counts.ready_tasks > 0:
            message = "No tasks available matching the requested filters"
        elif counts.blocked_tasks > 0:
            message = "No tasks available - pending tasks are waiting for dependencies"
        else:
            message = "No tasks available"
        return {
            "success": True,
            "task": None,
            "message": message,
            "queue_status": _queue_status(counts),
        }

    def complete_task(self, request: CompleteTaskRequest) -> dict[str, Any]:
        metrics = request.metrics()
        try:
            outcome = self.repository.complete_task(
                request.task_id,
                success=request.success,
                result=request.result,
                error_message=request.error_message,
                details=metrics,
            )
            counts = self.repository.queue_counts()
        except TaskStateError as exc:
            return {
                "success": False,
                "task_id": request.task_id,
                "message": "Task cannot be completed in its current state",
                "error": str(exc),
                "error_type": "state",
            }
        except Exception as exc:
            logger.exception("complete_task failed for %s", request.task_id)
            return _internal_failure("Failed to complete task", exc, task_id=request.task_id)

        if outcome.final_status is not None:
            final_status = outcome.final_status.value
        else:
            final_status = "completed" if request.success else "failed"
        if not outcome.found:
            message = f"Task {request.task_id} not found - handling gracefully"
        elif not outcome.applied:
            message = f"Task {request.task_id} already {final_status}; no changes applied"
        elif outcome.triggered_task_ids:
            message = (
                f"Task {request.task_id} marked as {final_status} and "
                f"{len(outcome.triggered_task_ids)} dependent task(s) are now ready"
            )
        else:
            message = f"Task {request.task_id} marked as {final_status}"
        return {
            "success": True,
            "task_id": request.task_id,
            "final_status": final_status,
            "triggered_tasks": list(outcome.triggered_task_ids),
            "message": message,
            "metrics_recorded": bool(outcome.applied and request.has_metrics()),
            "queue_status": _queue_status(counts),
        }

    def get_task_status(self, request: GetTaskStatusRequest) -> dict[str, Any]:
        try:
            status = self.repository.get_system_status(request.to_filters())
        except Exception as exc:
            logger.exception("get_task_status failed")
            response = _internal_failure("Failed to get task status", exc)
            response.update(_empty_status_payload())
            return response

        payload = status_to_payload(status)
        if request.task_id is not None and not payload.get("tasks"):
            message = f"Task {request.task_id} not found"
        else:
            message = "Task status retrieved"
        return {"success": True, **payload, "message": message}

    def health_check(self, request: HealthCheckRequest | None = None) -> dict[str, Any]:
        try:
            journal_mode = self.repository.journal_mode()
            schema_revision = self.repository.schema_revision()
            counts = self.repository.queue_counts()
        except Exception as exc:
            logger.exception("health_check failed")
            return _internal_failure("Health check failed", exc)
        return {
            "success": True,
            "status": "ok",
            "journal_mode": journal_mode,
            "schema_revision": schema_revision,
            "system_status": _system_status(counts),
        }


def task_to_payload(task: TaskView) -> dict[str, Any]:
    """Wire representation of a task."""

    return {
        "id": task.task_id,
        "agent_type": task.agent_type,
        "description": task.description,
        "priority": task.priority,
        "dependencies": list(task.dependencies),
        "status": task.status.value,
        "workspace_path": task.workspace_path,
        "config": asdict(task.config),
        "metadata": dict(task.metadata),
        "tags": list(task.tags),
        "retry_count": task.retry_count,
        "worker_id": task.worker_id,
        "result": task.result,
        "error": task.error_message,
        "created_at": _iso(task.created_at),
        "started_at": _iso(task.started_at),
        "completed_at": _iso(task.completed_at),
    }


def event_to_payload(event: TaskEventView) -> dict[str, Any]:
    return {
        "event_type": event.event_type,
        "status_from": event.status_from.value if event.status_from is not None else None,
        "status_to": event.status_to.value if event.status_to is not None else None,
        "created_at": _iso(event.created_at),
        "details": dict(event.details),
    }


def status_to_payload(status: SystemStatusView) -> dict[str, Any]:
    """Wire representation of a status snapshot (everything but the envelope)."""

    next_ready = status.next_ready
    payload: dict[str, Any] = {
        "system_status": _system_status(status.counts),
        "performance": asdict(status.performance),
        "running_tasks": [
            {
                "id": running.task_id,
                "description": _truncate(running.description, RUNNING_DESCRIPTION_LIMIT),
                "agent_type": running.agent_type,
                "priority": running.priority,
                "worker_id": running.worker_id,
                "started_at": _iso(running.started_at),
                "elapsed_seconds": running.elapsed_seconds,
                "workspace_path": running.workspace_path,
            }
            for running in status.running
        ],
        "queue_summary": {
            "next_ready_task": (
                {
                    "id": next_ready.task_id,
                    "agent_type": next_ready.agent_type,
                    "priority": next_ready.priority,
                    "description": _truncate(next_ready.description, RUNNING_DESCRIPTION_LIMIT),
                }
                if next_ready is not None
                else None
            ),
            "blocked_tasks": status.counts.blocked_tasks,
            "by_agent_type": {
                agent_type: dict(counts) for agent_type, counts in status.by_agent_type.items()
            },
        },
    }
    if status.tasks is not None:
        tasks = []
        for task in status.tasks:
            task_payload = task_to_payload(task)
            if task.task_id in status.events:
                task_payload["events"] = [
                    event_to_payload(event) for event in status.events[task.task_id]
                ]
            tasks.append(task_payload)
        payload["tasks"] = tasks
    return payload


def _queue_status(counts: StatusCounts) -> dict[str, int]:
    return {
        "total_tasks": counts.total_tasks,
        "pending_tasks": counts.pending_tasks,
        "ready_tasks": counts.ready_tasks,
        "blocked_tasks": counts.blocked_tasks,
        "running_tasks": counts.running_tasks,
    }


def _system_status(counts: StatusCounts) -> dict[str, int]:
    return asdict(counts)


def _empty_status_payload() -> dict[str, Any]:
    return status_to_payload(
        SystemStatusView(
            counts=StatusCounts(),
            performance=_zero_performance(),
            running=[],
            next_ready=None,
            by_agent_type={},
        ),
    )


def _zero_performance() -> PerformanceSummary:
    return PerformanceSummary(avg_execution_time_ms=0, success_rate=0.0, efficiency=0.0)


def _validation_failure(
    name: str,
    arguments: Any,
    error: RequestValidationError,
) -> dict[str, Any]:
    response: dict[str, Any] = {
        "success": False,
        "message": VALIDATION_FAILED_MESSAGE,
        "error": str(error),
        "error_type": "validation",
    }
    if name in {"enqueue_task", "complete_task"}:
        raw_id = arguments.get("task_id") if isinstance(arguments, dict) else None
        response["task_id"] = raw_id if isinstance(raw_id, str) and raw_id else "unknown"
    return response


def _internal_failure(
    message: str,
    error: Exception,
    *,
    task_id: str | None = None,
) -> dict[str, Any]:
    response: dict[str, Any] = {
        "success": False,
        "message": message,
        "error": str(error) or error.__class__.__name__,
        "error_type": "internal",
    }
    if task_id is not None:
        response["task_id"] = task_id
    return response


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
