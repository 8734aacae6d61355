"""CLI entrypoint for task-coordinator."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from task_coordinator import __version__
from task_coordinator.coordination.controllers import (
    CallToolCommand,
    CompleteTaskCommand,
    CoordinatorCliController,
    EnqueueTaskCommand,
    InspectTaskCommand,
    ListTasksCommand,
    MutateTaskCommand,
    NextTaskCommand,
    StatusCommand,
    WorkerCommand,
)
from task_coordinator.coordination.models import (
    MAX_PRIORITY,
    MAX_STORED_INTEGER,
    MIN_PRIORITY,
    TaskStatus,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CoordinatorCliController()
STATUS_CHOICES = [status.value for status in TaskStatus]
T = TypeVar("T")


@click.group()
@click.version_option(version=__version__, prog_name="task-coordinator")
def task_coordinator() -> None:
    """Persistent, dependency-aware task queue for agent workers."""


@task_coordinator.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def serve(db_path: Path | None) -> None:
    """Serve the coordinator tools as JSON-RPC over stdin/stdout.

    One JSON message per line. Logs go to stderr.
    """

    _run(lambda: CONTROLLER.serve(db_path))


@task_coordinator.command("tools")
def tools() -> None:
    """List coordinator tools."""

    _emit_lines(CONTROLLER.list_tools())


@task_coordinator.command("call")
@click.argument("tool_name")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--args",
    "arguments_json",
    default=None,
    help="Tool arguments as a JSON object.",
)
def call(tool_name: str, db_path: Path | None, arguments_json: str | None) -> None:
    """Call one tool in-process and print its JSON envelope."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.call_tool(
                CallToolCommand(
                    db_path=db_path,
                    tool_name=tool_name,
                    arguments_json=arguments_json,
                ),
            ),
        ),
    )


@task_coordinator.group()
def task() -> None:
    """Queue operations and diagnostics."""


@task.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Unique task id.")
@click.option("--agent-type", required=True, help="Agent type that may claim this task.")
@click.option("--description", required=True, help="What the task should do.")
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Task id that must complete first. Can be repeated.",
)
@click.option(
    "--priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=None,
    help="Priority 1-10, higher is claimed first.",
)
@click.option("--workspace-path", default=None, help="Explicit workspace directory.")
@click.option("--tool", "tools", multiple=True, help="Tool the agent may use. Can be repeated.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=1, max=MAX_STORED_INTEGER),
    default=None,
)
@click.option("--max-retries", type=click.IntRange(min=0, max=MAX_STORED_INTEGER), default=None)
@click.option(
    "--env",
    "environment",
    multiple=True,
    help="KEY=VALUE passed to the task command. Can be repeated.",
)
@click.option("--metadata", "metadata_json", default=None, help="Metadata as a JSON object.")
@click.option("--tag", "tags", multiple=True, help="Task tag. Can be repeated.")
def task_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    agent_type: str,
    description: str,
    dependencies: tuple[str, ...],
    priority: int | None,
    workspace_path: str | None,
    tools: tuple[str, ...],
    timeout_seconds: int | None,
    max_retries: int | None,
    environment: tuple[str, ...],
    metadata_json: str | None,
    tags: tuple[str, ...],
) -> None:
    """Enqueue a task with optional dependencies."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.enqueue_task(
                EnqueueTaskCommand(
                    db_path=db_path,
                    task_id=task_id,
                    agent_type=agent_type,
                    description=description,
                    dependencies=dependencies,
                    priority=priority,
                    workspace_path=workspace_path,
                    tools=tools,
                    timeout_seconds=timeout_seconds,
                    max_retries=max_retries,
                    environment=environment,
                    metadata_json=metadata_json,
                    tags=tags,
                ),
            ),
        ),
    )


@task.command("next")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--agent-type", default=None, help="Only claim tasks of this agent type.")
@click.option(
    "--min-priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=None,
)
@click.option(
    "--max-priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=None,
)
@click.option("--worker-id", default=None, help="Worker id recorded on the claimed task.")
@click.option("--json", "output_json", is_flag=True, default=False, help="Print raw envelope.")
def task_next(  # noqa: PLR0913
    db_path: Path | None,
    agent_type: str | None,
    min_priority: int | None,
    max_priority: int | None,
    worker_id: str | None,
    output_json: bool,
) -> None:
    """Claim the next ready task (non-blocking)."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.next_task(
                NextTaskCommand(
                    db_path=db_path,
                    agent_type=agent_type,
                    min_priority=min_priority,
                    max_priority=max_priority,
                    worker_id=worker_id,
                    output_json=output_json,
                ),
            ),
        ),
    )


@task.command("complete")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--success/--failure",
    default=True,
    show_default=True,
    help="Report the task as succeeded or failed.",
)
@click.option("--result", "result_json", default=None, help="Result as JSON.")
@click.option("--error", "error_message", default=None, help="Failure message.")
def task_complete(
    task_id: str,
    db_path: Path | None,
    success: bool,
    result_json: str | None,
    error_message: str | None,
) -> None:
    """Report a task outcome and unblock dependents."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.complete_task(
                CompleteTaskCommand(
                    db_path=db_path,
                    task_id=task_id,
                    success=success,
                    result_json=result_json,
                    error_message=error_message,
                ),
            ),
        ),
    )


@task.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", default=None, help="Restrict the task list to this id.")
@click.option("--tasks", "include_tasks", is_flag=True, default=False, help="Include tasks.")
@click.option(
    "--details",
    "include_details",
    is_flag=True,
    default=False,
    help="Include per-task event history.",
)
@click.option("--agent-type", default=None, help="Filter the task list by agent type.")
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None)
@click.option("--json", "output_json", is_flag=True, default=False, help="Print raw envelope.")
def task_status(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str | None,
    include_tasks: bool,
    include_details: bool,
    agent_type: str | None,
    status: str | None,
    output_json: bool,
) -> None:
    """Show queue counts, performance and running tasks."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.status(
                StatusCommand(
                    db_path=db_path,
                    task_id=task_id,
                    include_tasks=include_tasks,
                    include_details=include_details,
                    agent_type=agent_type,
                    status=status,
                    output_json=output_json,
                ),
            ),
        ),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None)
@click.option("--agent-type", default=None)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def task_list(
    db_path: Path | None,
    status: str | None,
    agent_type: str | None,
    limit: int,
) -> None:
    """List tasks in creation order."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.list_tasks(
                ListTasksCommand(
                    db_path=db_path,
                    status=status,
                    agent_type=agent_type,
                    limit=limit,
                ),
            ),
        ),
    )


@task.command("inspect")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def task_inspect(task_id: str, db_path: Path | None) -> None:
    """Show task details and event history."""

    _emit_lines(
        CONTROLLER.inspect_task(InspectTaskCommand(db_path=db_path, task_id=task_id)),
    )


@task.command("retry")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def task_retry(task_id: str, db_path: Path | None) -> None:
    """Re-queue a failed or cancelled task."""

    _emit_lines(
        _run(lambda: CONTROLLER.retry_task(MutateTaskCommand(db_path=db_path, task_id=task_id))),
    )


@task.command("cancel")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def task_cancel(task_id: str, db_path: Path | None) -> None:
    """Cancel a task that has not finished."""

    _emit_lines(
        _run(lambda: CONTROLLER.cancel_task(MutateTaskCommand(db_path=db_path, task_id=task_id))),
    )


@task_coordinator.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--command",
    "command_template",
    required=True,
    help=(
        "Command run per task inside its workspace. Placeholders: "
        "{task_id}, {agent_type}, {description}, {workspace_path}."
    ),
)
@click.option("--agent-type", default=None, help="Only claim tasks of this agent type.")
@click.option(
    "--min-priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=None,
)
@click.option(
    "--max-priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=None,
)
@click.option("--once/--loop", default=False, show_default=True)
@click.option("--max-tasks", type=click.IntRange(min=1), default=None)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls. Polls forever if omitted.",
)
@click.option(
    "--via-process/--in-process",
    default=False,
    show_default=True,
    help="Talk to a spawned `task-coordinator serve` instead of the DB directly.",
)
def worker(  # noqa: PLR0913
    db_path: Path | None,
    command_template: str,
    agent_type: str | None,
    min_priority: int | None,
    max_priority: int | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    via_process: bool,
) -> None:
    """Poll for ready tasks and run a command for each."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    command_template=command_template,
                    agent_type=agent_type,
                    min_priority=min_priority,
                    max_priority=max_priority,
                    once=once,
                    max_tasks=max_tasks,
                    max_idle_polls=max_idle_polls,
                    via_process=via_process,
                ),
            ),
        ),
    )


def _run(action: Callable[[], T]) -> T:
    try:
        return action()
    except (LookupError, ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_coordinator()
