"""Typed, immutable tool requests and the schema layer that builds them.

Raw JSON arguments never reach the store: each tool name maps to one frozen
request dataclass, and ``parse_tool_request`` either returns that object or
raises ``RequestValidationError`` listing every ``field: problem`` found.
Unknown argument names are rejected.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from task_coordinator.coordination.models import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    DEFAULT_TIMEOUT_SECONDS,
    MAX_PRIORITY,
    MAX_STORED_INTEGER,
    MIN_PRIORITY,
    StatusFilters,
    TaskConfig,
    TaskCreate,
    TaskStatus,
)


class RequestValidationError(ValueError):
    """Tool arguments failed schema validation."""

    def __init__(self, issues: list[str]) -> None:
        super().__init__(", ".join(issues))
        self.issues = issues


class UnknownToolError(LookupError):
    """Tool name is not part of the tool surface."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


@dataclass(frozen=True, slots=True)
class EnqueueTaskRequest:
    task_id: str
    agent_type: str
    description: str
    dependencies: tuple[str, ...] = ()
    priority: int = DEFAULT_PRIORITY
    workspace_path: str | None = None
    tools: tuple[str, ...] = ()
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    environment: Mapping[str, str] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)
    tags: tuple[str, ...] = ()

    def to_task_create(self) -> TaskCreate:
        return TaskCreate(
            task_id=self.task_id,
            agent_type=self.agent_type,
            description=self.description,
            priority=self.priority,
            dependencies=list(self.dependencies),
            workspace_path=self.workspace_path,
            config=TaskConfig(
                tools=list(self.tools),
                timeout_seconds=self.timeout_seconds,
                max_retries=self.max_retries,
                environment=dict(self.environment),
            ),
            metadata=dict(self.metadata),
            tags=list(self.tags),
        )


@dataclass(frozen=True, slots=True)
class GetNextTaskRequest:
    agent_type: str | None = None
    min_priority: int | None = None
    max_priority: int | None = None
    worker_id: str | None = None


@dataclass(frozen=True, slots=True)
class CompleteTaskRequest:
    task_id: str
    success: bool
    result: Any = None
    error_message: str | None = None
    deliverables: tuple[str, ...] = ()
    execution_time_ms: float | None = None
    tools_used: tuple[str, ...] = ()

    def has_metrics(self) -> bool:
        return bool(self.deliverables or self.tools_used or self.execution_time_ms is not None)

    def metrics(self) -> dict[str, Any]:
        metrics: dict[str, Any] = {}
        if self.deliverables:
            metrics["deliverables"] = list(self.deliverables)
        if self.execution_time_ms is not None:
            metrics["execution_time_ms"] = self.execution_time_ms
        if self.tools_used:
            metrics["tools_used"] = list(self.tools_used)
        return metrics


@dataclass(frozen=True, slots=True)
class GetTaskStatusRequest:
    task_id: str | None = None
    include_tasks: bool = False
    include_details: bool = False
    agent_type: str | None = None
    status: TaskStatus | None = None

    def to_filters(self) -> StatusFilters:
        return StatusFilters(
            task_id=self.task_id,
            agent_type=self.agent_type,
            status=self.status,
            include_tasks=self.include_tasks,
            include_details=self.include_details,
        )


@dataclass(frozen=True, slots=True)
class HealthCheckRequest:
    pass


ToolRequest = (
    EnqueueTaskRequest
    | GetNextTaskRequest
    | CompleteTaskRequest
    | GetTaskStatusRequest
    | HealthCheckRequest
)


class _ArgumentReader:
    """Collects typed values and validation issues from one arguments object."""

    def __init__(self, arguments: Any, allowed: set[str]) -> None:
        self.issues: list[str] = []
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, Mapping):
            self.issues.append("arguments: must be an object")
            arguments = {}
        self.arguments: Mapping[str, Any] = arguments
        for name in sorted(set(arguments) - allowed):
            self.issues.append(f"{name}: unknown field")

    def raise_for_issues(self) -> None:
        if self.issues:
            raise RequestValidationError(self.issues)

    def string(self, name: str, *, required: bool = False, non_empty: bool = False) -> str | None:
        value = self.arguments.get(name)
        if value is None:
            if required:
                self.issues.append(f"{name}: required")
            return None
        if not isinstance(value, str):
            self.issues.append(f"{name}: expected string")
            return None
        if non_empty and not value.strip():
            self.issues.append(f"{name}: must not be empty")
            return None
        return value

    def integer(
        self,
        name: str,
        *,
        minimum: int | None = None,
        maximum: int | None = None,
    ) -> int | None:
        value = self.arguments.get(name)
        if value is None:
            return None
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, bool) or not isinstance(value, int):
            self.issues.append(f"{name}: expected integer")
            return None
        if minimum is not None and value < minimum:
            self.issues.append(f"{name}: must be >= {minimum}")
            return None
        if maximum is not None and value > maximum:
            self.issues.append(f"{name}: must be <= {maximum}")
            return None
        return value

    def number(self, name: str, *, minimum: float | None = None) -> float | None:
        value = self.arguments.get(name)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int | float):
            self.issues.append(f"{name}: expected number")
            return None
        if minimum is not None and value < minimum:
            self.issues.append(f"{name}: must be >= {minimum}")
            return None
        return float(value)

    def boolean(self, name: str, *, required: bool = False) -> bool | None:
        value = self.arguments.get(name)
        if value is None:
            if required:
                self.issues.append(f"{name}: required")
            return None
        if not isinstance(value, bool):
            self.issues.append(f"{name}: expected boolean")
            return None
        return value

    def string_list(self, name: str) -> tuple[str, ...]:
        value = self.arguments.get(name)
        if value is None:
            return ()
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            self.issues.append(f"{name}: expected array of strings")
            return ()
        return tuple(value)

    def string_map(self, name: str) -> dict[str, str]:
        value = self.arguments.get(name)
        if value is None:
            return {}
        if not isinstance(value, Mapping) or not all(
            isinstance(key, str) and isinstance(item, str) for key, item in value.items()
        ):
            self.issues.append(f"{name}: expected object with string values")
            return {}
        return dict(value)

    def mapping(self, name: str) -> dict[str, Any]:
        value = self.arguments.get(name)
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            self.issues.append(f"{name}: expected object")
            return {}
        return dict(value)

    def status(self, name: str) -> TaskStatus | None:
        value = self.string(name)
        if value is None:
            return None
        try:
            return TaskStatus(value)
        except ValueError:
            allowed = ", ".join(status.value for status in TaskStatus)
            self.issues.append(f"{name}: must be one of {allowed}")
            return None


def parse_enqueue_task(arguments: Any) -> EnqueueTaskRequest:
    reader = _ArgumentReader(
        arguments,
        {
            "task_id",
            "agent_type",
            "description",
            "dependencies",
            "priority",
            "workspace_path",
            "tools",
            "timeout_seconds",
            "max_retries",
            "environment",
            "metadata",
            "tags",
        },
    )
    task_id = reader.string("task_id", required=True, non_empty=True)
    agent_type = reader.string("agent_type", required=True, non_empty=True)
    description = reader.string("description", required=True, non_empty=True)
    dependencies = reader.string_list("dependencies")
    priority = reader.integer("priority", minimum=MIN_PRIORITY, maximum=MAX_PRIORITY)
    workspace_path = reader.string("workspace_path", non_empty=True)
    tools = reader.string_list("tools")
    timeout_seconds = reader.integer("timeout_seconds", minimum=1, maximum=MAX_STORED_INTEGER)
    max_retries = reader.integer("max_retries", minimum=0, maximum=MAX_STORED_INTEGER)
    environment = reader.string_map("environment")
    metadata = reader.mapping("metadata")
    tags = reader.string_list("tags")
    if task_id is not None and task_id.strip() in {dep.strip() for dep in dependencies}:
        reader.issues.append("dependencies: task cannot depend on itself")
    if any(not dep.strip() for dep in dependencies):
        reader.issues.append("dependencies: dependency id must not be empty")
    reader.raise_for_issues()
    return EnqueueTaskRequest(
        task_id=str(task_id).strip(),
        agent_type=str(agent_type).strip(),
        description=str(description),
        dependencies=dependencies,
        priority=priority if priority is not None else DEFAULT_PRIORITY,
        workspace_path=workspace_path,
        tools=tools,
        timeout_seconds=timeout_seconds if timeout_seconds is not None else DEFAULT_TIMEOUT_SECONDS,
        max_retries=max_retries if max_retries is not None else DEFAULT_MAX_RETRIES,
        environment=environment,
        metadata=metadata,
        tags=tags,
    )


def parse_get_next_task(arguments: Any) -> GetNextTaskRequest:
    reader = _ArgumentReader(
        arguments,
        {"agent_type", "min_priority", "max_priority", "worker_id"},
    )
    agent_type = reader.string("agent_type", non_empty=True)
    min_priority = reader.integer("min_priority", minimum=MIN_PRIORITY, maximum=MAX_PRIORITY)
    max_priority = reader.integer("max_priority", minimum=MIN_PRIORITY, maximum=MAX_PRIORITY)
    worker_id = reader.string("worker_id", non_empty=True)
    if min_priority is not None and max_priority is not None and min_priority > max_priority:
        reader.issues.append("min_priority: must be <= max_priority")
    reader.raise_for_issues()
    return GetNextTaskRequest(
        agent_type=agent_type.strip() if agent_type is not None else None,
        min_priority=min_priority,
        max_priority=max_priority,
        worker_id=worker_id,
    )


def parse_complete_task(arguments: Any) -> CompleteTaskRequest:
    reader = _ArgumentReader(
        arguments,
        {
            "task_id",
            "success",
            "result",
            "error_message",
            "deliverables",
            "execution_time_ms",
            "tools_used",
        },
    )
    task_id = reader.string("task_id", required=True, non_empty=True)
    success = reader.boolean("success", required=True)
    error_message = reader.string("error_message")
    deliverables = reader.string_list("deliverables")
    execution_time_ms = reader.number("execution_time_ms", minimum=0)
    tools_used = reader.string_list("tools_used")
    reader.raise_for_issues()
    return CompleteTaskRequest(
        task_id=str(task_id).strip(),
        success=bool(success),
        result=reader.arguments.get("result"),
        error_message=error_message,
        deliverables=deliverables,
        execution_time_ms=execution_time_ms,
        tools_used=tools_used,
    )


def parse_get_task_status(arguments: Any) -> GetTaskStatusRequest:
    reader = _ArgumentReader(
        arguments,
        {"task_id", "include_tasks", "include_details", "agent_type", "status"},
    )
    task_id = reader.string("task_id", non_empty=True)
    include_tasks = reader.boolean("include_tasks")
    include_details = reader.boolean("include_details")
    agent_type = reader.string("agent_type", non_empty=True)
    status = reader.status("status")
    reader.raise_for_issues()
    return GetTaskStatusRequest(
        task_id=task_id.strip() if task_id is not None else None,
        include_tasks=bool(include_tasks),
        include_details=bool(include_details),
        agent_type=agent_type.strip() if agent_type is not None else None,
        status=status,
    )


def parse_health_check(arguments: Any) -> HealthCheckRequest:
    reader = _ArgumentReader(arguments, set())
    reader.raise_for_issues()
    return HealthCheckRequest()


_PARSERS = {
    "enqueue_task": parse_enqueue_task,
    "get_next_task": parse_get_next_task,
    "complete_task": parse_complete_task,
    "get_task_status": parse_get_task_status,
    "health_check": parse_health_check,
}


def parse_tool_request(name: str, arguments: Any) -> ToolRequest:
    """Validate raw tool arguments into the request type for ``name``."""

    parser = _PARSERS.get(name)
    if parser is None:
        raise UnknownToolError(name)
    return parser(arguments)
