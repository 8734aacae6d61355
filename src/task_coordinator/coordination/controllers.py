"""Controllers for task coordinator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from task_coordinator.config import Settings, configure_logging
from task_coordinator.coordination.executor import CommandTaskHandler
from task_coordinator.coordination.models import TaskStatus
from task_coordinator.coordination.repository import TaskRepository
from task_coordinator.coordination.worker import TaskWorker, ToolClient, WorkerRunSummary
from task_coordinator.protocol.process import CoordinatorProcess
from task_coordinator.protocol.server import run_stdio_server
from task_coordinator.protocol.tools import TOOL_DEFINITIONS, TaskToolService


class CommandFailedError(RuntimeError):
    """A tool call returned ``success: false``; message is printable."""


@dataclass(slots=True)
class EnqueueTaskCommand:
    """CLI input for task enqueue."""

    db_path: Path | None
    task_id: str
    agent_type: str
    description: str
    dependencies: tuple[str, ...] = ()
    priority: int | None = None
    workspace_path: str | None = None
    tools: tuple[str, ...] = ()
    timeout_seconds: int | None = None
    max_retries: int | None = None
    environment: tuple[str, ...] = ()
    metadata_json: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(slots=True)
class NextTaskCommand:
    """CLI input for claiming the next ready task."""

    db_path: Path | None
    agent_type: str | None = None
    min_priority: int | None = None
    max_priority: int | None = None
    worker_id: str | None = None
    output_json: bool = False


@dataclass(slots=True)
class CompleteTaskCommand:
    """CLI input for reporting a task outcome."""

    db_path: Path | None
    task_id: str
    success: bool = True
    result_json: str | None = None
    error_message: str | None = None


@dataclass(slots=True)
class StatusCommand:
    """CLI input for queue status."""

    db_path: Path | None
    task_id: str | None = None
    include_tasks: bool = False
    include_details: bool = False
    agent_type: str | None = None
    status: str | None = None
    output_json: bool = False


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None = None
    agent_type: str | None = None
    limit: int = 50


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class MutateTaskCommand:
    """CLI input for retry/cancel operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class CallToolCommand:
    """CLI input for a raw tool call."""

    db_path: Path | None
    tool_name: str
    arguments_json: str | None = None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for the polling worker."""

    db_path: Path | None
    command_template: str
    agent_type: str | None = None
    min_priority: int | None = None
    max_priority: int | None = None
    once: bool = False
    max_tasks: int | None = None
    max_idle_polls: int | None = 1
    via_process: bool = False


class CoordinatorCliController:
    """Coordinates queue, worker, server and inspection CLI operations."""

    def enqueue_task(self, command: EnqueueTaskCommand) -> list[str]:
        arguments: dict[str, Any] = {
            "task_id": command.task_id,
            "agent_type": command.agent_type,
            "description": command.description,
        }
        optional: dict[str, Any] = {
            "dependencies": list(command.dependencies) or None,
            "priority": command.priority,
            "workspace_path": command.workspace_path,
            "tools": list(command.tools) or None,
            "timeout_seconds": command.timeout_seconds,
            "max_retries": command.max_retries,
            "environment": _parse_environment(command.environment) or None,
            "metadata": _parse_json_object(command.metadata_json, option="--metadata"),
            "tags": list(command.tags) or None,
        }
        arguments.update({key: value for key, value in optional.items() if value is not None})

        settings = Settings.from_env(db_path=command.db_path)
        with _tool_service(settings) as service:
            response = service.call_tool("enqueue_task", arguments)
        _raise_for_failure(response)
        return [
            f"Task enqueued: task_id={response['task_id']} status={response['status']}",
            f"Workspace: {response['workspace_path']}",
            _render_queue_status(response["queue_status"]),
        ]

    def next_task(self, command: NextTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        arguments: dict[str, Any] = {"worker_id": command.worker_id or settings.worker.worker_id}
        if command.agent_type is not None:
            arguments["agent_type"] = command.agent_type
        if command.min_priority is not None:
            arguments["min_priority"] = command.min_priority
        if command.max_priority is not None:
            arguments["max_priority"] = command.max_priority
        with _tool_service(settings) as service:
            response = service.call_tool("get_next_task", arguments)
        _raise_for_failure(response)
        if command.output_json:
            return [json.dumps(response, indent=2, ensure_ascii=False)]

        task = response.get("task")
        if task is None:
            return [response["message"], _render_queue_status(response["queue_status"])]
        return [
            f"Claimed task: task_id={task['id']} agent_type={task['agent_type']} "
            f"priority={task['priority']}",
            f"Description: {task['description']}",
            f"Workspace: {task['workspace_path']}",
            _render_queue_status(response["queue_status"]),
        ]

    def complete_task(self, command: CompleteTaskCommand) -> list[str]:
        arguments: dict[str, Any] = {"task_id": command.task_id, "success": command.success}
        if command.result_json is not None:
            try:
                arguments["result"] = json.loads(command.result_json)
            except json.JSONDecodeError as error:
                raise ValueError(f"--result must be valid JSON: {error}") from error
        if command.error_message is not None:
            arguments["error_message"] = command.error_message

        settings = Settings.from_env(db_path=command.db_path)
        with _tool_service(settings) as service:
            response = service.call_tool("complete_task", arguments)
        _raise_for_failure(response)
        lines = [response["message"]]
        if response["triggered_tasks"]:
            lines.append(f"Now ready: {', '.join(response['triggered_tasks'])}")
        lines.append(_render_queue_status(response["queue_status"]))
        return lines

    def status(self, command: StatusCommand) -> list[str]:
        arguments: dict[str, Any] = {
            "include_tasks": command.include_tasks,
            "include_details": command.include_details,
        }
        if command.task_id is not None:
            arguments["task_id"] = command.task_id
        if command.agent_type is not None:
            arguments["agent_type"] = command.agent_type
        if command.status is not None:
            arguments["status"] = command.status

        settings = Settings.from_env(db_path=command.db_path)
        with _tool_service(settings) as service:
            response = service.call_tool("get_task_status", arguments)
        _raise_for_failure(response)
        if command.output_json:
            return [json.dumps(response, indent=2, ensure_ascii=False)]
        return render_status_lines(response)

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                agent_type=command.agent_type,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            depends = ",".join(task.dependencies) or "-"
            lines.append(
                f"  {task.task_id} agent_type={task.agent_type} status={task.status.value} "
                f"priority={task.priority} depends_on={depends} retries={task.retry_count}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Agent type: {task.agent_type}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Dependencies: {', '.join(task.dependencies) or '-'}",
            f"Workspace: {task.workspace_path}",
            f"Worker: {task.worker_id or '-'}",
            f"Retries: {task.retry_count}/{task.config.max_retries}",
            f"Error: {task.error_message or '-'}",
            f"Result: {_render_result(task.result)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.retry_task(command.task_id)
        return [f"Task re-queued: {task.task_id} status={task.status.value}"]

    def cancel_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.cancel_task(command.task_id)
        return [f"Task cancelled: {command.task_id}"]

    def call_tool(self, command: CallToolCommand) -> list[str]:
        arguments = _parse_json_object(command.arguments_json, option="--args") or {}
        settings = Settings.from_env(db_path=command.db_path)
        with _tool_service(settings) as service:
            response = service.call_tool(command.tool_name, arguments)
        return [json.dumps(response, indent=2, ensure_ascii=False)]

    def list_tools(self) -> list[str]:
        return [f"{definition.name}: {definition.description}" for definition in TOOL_DEFINITIONS]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        configure_logging(settings.log_level)
        if command.via_process:
            with CoordinatorProcess(settings) as process:
                summary = _run_worker(process, command=command, settings=settings)
        else:
            with _tool_service(settings) as service:
                summary = _run_worker(service, command=command, settings=settings)
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} idle_polls={summary.idle_polls} "
            f"completion_errors={summary.completion_errors}",
        ]

    def serve(self, db_path: Path | None) -> None:
        settings = Settings.from_env(db_path=db_path)
        settings.validate()
        run_stdio_server(settings)


def render_status_lines(response: dict[str, Any]) -> list[str]:
    system = response["system_status"]
    performance = response["performance"]
    summary = response["queue_summary"]
    lines = [
        "Queue: "
        f"total={system['total_tasks']} pending={system['pending_tasks']} "
        f"ready={system['ready_tasks']} blocked={system['blocked_tasks']} "
        f"running={system['running_tasks']} completed={system['completed_tasks']} "
        f"failed={system['failed_tasks']} cancelled={system['cancelled_tasks']}",
        "Performance: "
        f"avg_execution_time_ms={performance['avg_execution_time_ms']} "
        f"success_rate={performance['success_rate']:.2f} "
        f"efficiency={performance['efficiency']:.2f}",
    ]
    next_ready = summary["next_ready_task"]
    lines.append(
        f"Next ready: {next_ready['id']} (priority={next_ready['priority']})"
        if next_ready
        else "Next ready: -",
    )
    for agent_type, counts in sorted(summary["by_agent_type"].items()):
        rendered = " ".join(f"{status}={count}" for status, count in sorted(counts.items()))
        lines.append(f"  agent_type={agent_type} {rendered}")
    if response["running_tasks"]:
        lines.append(f"Running: {len(response['running_tasks'])}")
        for running in response["running_tasks"]:
            lines.append(
                f"  {running['id']} agent_type={running['agent_type']} "
                f"elapsed={running['elapsed_seconds']}s worker={running['worker_id'] or '-'}",
            )
    if "tasks" in response:
        lines.append(f"Tasks: {len(response['tasks'])}")
        for task in response["tasks"]:
            lines.append(
                f"  {task['id']} agent_type={task['agent_type']} status={task['status']} "
                f"priority={task['priority']}",
            )
            for event in task.get("events", []):
                lines.append(
                    f"    {event['created_at']} {event['event_type']} "
                    f"{event['status_from'] or '-'} -> {event['status_to'] or '-'}",
                )
    if response.get("message") and response["message"] != "Task status retrieved":
        lines.append(response["message"])
    return lines


def _run_worker(
    client: ToolClient,
    *,
    command: WorkerCommand,
    settings: Settings,
) -> WorkerRunSummary:
    worker: TaskWorker | None = None
    handler = CommandTaskHandler(
        command.command_template,
        shutdown_requested=lambda: worker is not None and worker.stop_requested,
        graceful_shutdown_seconds=settings.protocol.graceful_shutdown_seconds,
    )
    worker = TaskWorker(
        client,
        handler,
        worker_id=settings.worker.worker_id,
        agent_type=command.agent_type,
        min_priority=command.min_priority,
        max_priority=command.max_priority,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        poll_backoff_max_seconds=settings.worker.poll_backoff_max_seconds,
    )
    if command.once:
        return worker.run_once()
    return worker.run_loop(max_tasks=command.max_tasks, max_idle_polls=command.max_idle_polls)


def _render_queue_status(queue_status: dict[str, int]) -> str:
    return (
        "Queue: "
        f"total={queue_status['total_tasks']} pending={queue_status['pending_tasks']} "
        f"ready={queue_status['ready_tasks']} blocked={queue_status['blocked_tasks']} "
        f"running={queue_status['running_tasks']}"
    )


def _raise_for_failure(response: dict[str, Any]) -> None:
    if response.get("success"):
        return
    message = response.get("message", "Tool call failed")
    error = response.get("error")
    raise CommandFailedError(f"{message}: {error}" if error and error != message else message)


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.lower())
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {value!r}") from error


def _parse_environment(pairs: tuple[str, ...]) -> dict[str, str]:
    environment: dict[str, str] = {}
    for pair in pairs:
        key, separator, value = pair.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"--env expects KEY=VALUE, got {pair!r}")
        environment[key.strip()] = value
    return environment


def _parse_json_object(raw: str | None, *, option: str) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"{option} must be valid JSON: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError(f"{option} must be a JSON object")
    return parsed


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        busy_timeout_ms=settings.store.busy_timeout_ms,
        workspace_root=settings.store.workspace_root,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _tool_service(settings: Settings) -> Iterator[TaskToolService]:
    with _repository(settings) as repository:
        yield TaskToolService(repository, claim_attempts=settings.store.claim_attempts)


def _render_result(result: Any) -> str:
    if result is None:
        return "-"
    return json.dumps(result, ensure_ascii=False)
