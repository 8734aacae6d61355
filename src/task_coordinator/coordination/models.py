"""Domain models for the dependency-aware task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
NOT_STARTED_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.BLOCKED, TaskStatus.READY})

MIN_PRIORITY = 1
MAX_PRIORITY = 10
MAX_STORED_INTEGER = 2**31 - 1
DEFAULT_PRIORITY = 1
DEFAULT_TIMEOUT_SECONDS = 300
DEFAULT_MAX_RETRIES = 3


class TaskValidationError(ValueError):
    """Task payload violates a field constraint."""


class DuplicateTaskError(RuntimeError):
    """Task id is already present in the store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} already exists")
        self.task_id = task_id


class TaskNotFoundError(RuntimeError):
    """Task id is unknown to the store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskStateError(RuntimeError):
    """Requested transition is not allowed from the task's current status."""


@dataclass(slots=True)
class TaskConfig:
    """Execution settings carried with a task; opaque to the store except max_retries."""

    tools: list[str] = field(default_factory=list)
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    task_id: str
    agent_type: str
    description: str = ""
    priority: int = DEFAULT_PRIORITY
    dependencies: list[str] = field(default_factory=list)
    workspace_path: str | None = None
    config: TaskConfig = field(default_factory=TaskConfig)
    metadata: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskView:
    """Readable task view for protocol, CLI and worker logic."""

    task_id: str
    agent_type: str
    description: str
    priority: int
    status: TaskStatus
    dependencies: list[str]
    workspace_path: str
    config: TaskConfig
    metadata: dict[str, Any]
    tags: list[str]
    retry_count: int
    worker_id: str | None
    result: Any
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details and event stream."""

    task: TaskView
    events: list[TaskEventView] = field(default_factory=list)


@dataclass(slots=True)
class CompletionOutcome:
    """Result of a completion request.

    ``found`` is False for unknown ids; ``applied`` is False when the task was
    already terminal and nothing changed.
    """

    task_id: str
    found: bool
    applied: bool
    final_status: TaskStatus | None
    triggered_task_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ClaimResult:
    """Outcome of one claim attempt sequence."""

    task: TaskView | None
    contended: bool = False


@dataclass(slots=True)
class StatusCounts:
    """Task counts by lifecycle group."""

    total_tasks: int = 0
    pending_tasks: int = 0
    ready_tasks: int = 0
    blocked_tasks: int = 0
    running_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    cancelled_tasks: int = 0


@dataclass(slots=True)
class PerformanceSummary:
    avg_execution_time_ms: int = 0
    success_rate: float = 1.0
    efficiency: float = 0.0


@dataclass(slots=True)
class RunningTaskView:
    task_id: str
    description: str
    agent_type: str
    priority: int
    started_at: datetime | None
    elapsed_seconds: int
    workspace_path: str
    worker_id: str | None


@dataclass(slots=True)
class NextReadyPreview:
    """Highest-priority ready task, reported without claiming it."""

    task_id: str
    agent_type: str
    priority: int
    description: str


@dataclass(slots=True)
class StatusFilters:
    """Filters for the task list section of a status report."""

    task_id: str | None = None
    agent_type: str | None = None
    status: TaskStatus | None = None
    include_tasks: bool = False
    include_details: bool = False


@dataclass(slots=True)
class SystemStatusView:
    """Aggregate queue snapshot."""

    counts: StatusCounts
    performance: PerformanceSummary
    running: list[RunningTaskView]
    next_ready: NextReadyPreview | None
    by_agent_type: dict[str, dict[str, int]]
    tasks: list[TaskView] | None = None
    events: dict[str, list[TaskEventView]] = field(default_factory=dict)
