"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import func, literal_column
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from task_coordinator.coordination.dependencies import (
    find_newly_ready,
    initial_status,
    normalize_dependencies,
    unmet_dependencies,
)
from task_coordinator.coordination.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    NOT_STARTED_STATUSES,
    TERMINAL_STATUSES,
    CompletionOutcome,
    DuplicateTaskError,
    NextReadyPreview,
    PerformanceSummary,
    RunningTaskView,
    StatusCounts,
    StatusFilters,
    SystemStatusView,
    TaskConfig,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskNotFoundError,
    TaskStateError,
    TaskStatus,
    TaskValidationError,
    TaskView,
)
from task_coordinator.coordination.workspace import TaskWorkspaceManager
from task_coordinator.storage.alembic_runner import current_revision, upgrade_head
from task_coordinator.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_coordinator.storage.sqlmodel_models import CoordinatorTask, TaskDependency, TaskEvent

logger = logging.getLogger(__name__)

_ROWID = literal_column("tasks.rowid")
_COMPLETABLE_STATUSES = frozenset({TaskStatus.READY, TaskStatus.RUNNING})
_CANCELLABLE_STATUSES = frozenset(
    {TaskStatus.PENDING, TaskStatus.BLOCKED, TaskStatus.READY, TaskStatus.RUNNING},
)
_RETRYABLE_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED})


class TaskRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every status transition is a conditional ``UPDATE ... WHERE status = <expected>``
    so concurrent writers (threads or processes sharing the database file)
    never apply the same transition twice.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        workspace_root: Path | None = None,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self.workspaces = TaskWorkspaceManager(
            workspace_root if workspace_root is not None else db_path.parent / "workspaces",
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def journal_mode(self) -> str:
        with self.engine.connect() as connection:
            return str(connection.exec_driver_sql("PRAGMA journal_mode").scalar())

    def schema_revision(self) -> str | None:
        return current_revision(self.engine)

    def enqueue_task(self, payload: TaskCreate) -> TaskView:
        """Insert a task and resolve it to ``ready`` or ``blocked``.

        The insert and the readiness check share one write transaction, so a
        dependency completing concurrently cannot be missed.
        """

        task_id = _validate_create(payload)
        dependencies = normalize_dependencies(task_id, payload.dependencies)
        if self.get_task(task_id) is not None:
            raise DuplicateTaskError(task_id)

        workspace = self.workspaces.resolve(
            task_id=task_id,
            requested_path=payload.workspace_path,
        )
        now = utc_now()
        with Session(self.engine) as session:
            row = CoordinatorTask(
                task_id=task_id,
                agent_type=payload.agent_type.strip(),
                description=payload.description,
                priority=payload.priority,
                status=TaskStatus.PENDING.value,
                workspace_path=str(workspace),
                timeout_seconds=payload.config.timeout_seconds,
                max_retries=payload.config.max_retries,
                tools_json=_dump_json(payload.config.tools),
                environment_json=_dump_json(payload.config.environment),
                metadata_json=_dump_json(payload.metadata),
                tags_json=_dump_json(payload.tags),
                retry_count=0,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateTaskError(task_id) from exc
            for position, dependency in enumerate(dependencies):
                session.add(
                    TaskDependency(task_id=task_id, depends_on=dependency, position=position),
                )

            statuses = self._load_statuses(session, dependencies)
            status = initial_status(dependencies, statuses)
            row.status = status.value
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=status,
                details={
                    "agent_type": row.agent_type,
                    "priority": row.priority,
                    "dependencies": dependencies,
                    "unmet_dependencies": unmet_dependencies(dependencies, statuses),
                },
            )
            session.commit()
            session.refresh(row)
            logger.info("Enqueued task %s as %s", task_id, status.value)
            return _to_task_view(row, dependencies)

    def get_next_ready_task(
        self,
        *,
        agent_type: str | None = None,
        min_priority: int | None = None,
        max_priority: int | None = None,
    ) -> TaskView | None:
        """Highest-priority ready task, FIFO among equal priorities. Does not claim."""

        with Session(self.engine) as session:
            statement = select(CoordinatorTask).where(
                CoordinatorTask.status == TaskStatus.READY.value,
            )
            if agent_type is not None:
                statement = statement.where(CoordinatorTask.agent_type == agent_type)
            if min_priority is not None:
                statement = statement.where(col(CoordinatorTask.priority) >= min_priority)
            if max_priority is not None:
                statement = statement.where(col(CoordinatorTask.priority) <= max_priority)
            row = session.exec(
                statement.order_by(
                    col(CoordinatorTask.priority).desc(),
                    col(CoordinatorTask.created_at).asc(),
                    _ROWID.asc(),
                ).limit(1),
            ).one_or_none()
            if row is None:
                return None
            dependencies = self._load_dependencies(session, [row.task_id])
            return _to_task_view(row, dependencies.get(row.task_id, []))

    def mark_running(self, task_id: str, *, worker_id: str | None = None) -> bool:
        """Conditionally move ``ready -> running``; True only for the single winner."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CoordinatorTask)
                .where(
                    col(CoordinatorTask.task_id) == task_id,
                    col(CoordinatorTask.status) == TaskStatus.READY.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    worker_id=worker_id,
                    started_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="claimed",
                status_from=TaskStatus.READY,
                status_to=TaskStatus.RUNNING,
                details={"worker_id": worker_id} if worker_id else {},
            )
            session.commit()
            return True

    def complete_task(
        self,
        task_id: str,
        *,
        success: bool,
        result: Any = None,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> CompletionOutcome:
        """Record a terminal outcome and unblock dependents on success.

        Unknown ids and already-terminal tasks are accepted without effect.
        """

        target = TaskStatus.COMPLETED if success else TaskStatus.FAILED
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.exec(
                    select(CoordinatorTask).where(CoordinatorTask.task_id == task_id),
                ).one_or_none()
                if row is None:
                    logger.warning("Completion for unknown task %s ignored", task_id)
                    return CompletionOutcome(
                        task_id=task_id,
                        found=False,
                        applied=False,
                        final_status=None,
                    )

                previous = TaskStatus(row.status)
                if previous in TERMINAL_STATUSES:
                    self._add_event(
                        session=session,
                        task_id=task_id,
                        event_type="completion_ignored",
                        status_from=previous,
                        status_to=previous,
                        details={"requested_status": target.value},
                    )
                    session.commit()
                    return CompletionOutcome(
                        task_id=task_id,
                        found=True,
                        applied=False,
                        final_status=previous,
                    )
                if previous not in _COMPLETABLE_STATUSES:
                    raise TaskStateError(
                        f"Task {task_id} cannot be completed from status={previous.value}",
                    )

                update_result = session.exec(
                    sa_update(CoordinatorTask)
                    .where(
                        col(CoordinatorTask.task_id) == task_id,
                        col(CoordinatorTask.status) == previous.value,
                    )
                    .values(
                        status=target.value,
                        result_json=_dump_json(result) if result is not None else None,
                        error_message=error_message,
                        retry_count=col(CoordinatorTask.retry_count) + (0 if success else 1),
                        completed_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if update_result.rowcount != 1:
                    session.rollback()
                    continue

                event_details: dict[str, Any] = dict(details or {})
                if error_message:
                    event_details["error_message"] = error_message
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type=target.value,
                    status_from=previous,
                    status_to=target,
                    details=event_details,
                )
                triggered = (
                    self._promote_dependents(session=session, completed_task_id=task_id)
                    if success
                    else []
                )
                session.commit()
                logger.info(
                    "Task %s %s; %d dependent task(s) unblocked",
                    task_id,
                    target.value,
                    len(triggered),
                )
                return CompletionOutcome(
                    task_id=task_id,
                    found=True,
                    applied=True,
                    final_status=target,
                    triggered_task_ids=triggered,
                )

    def retry_task(self, task_id: str) -> TaskView:
        """Manual operator retry for failed/cancelled tasks."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in _RETRYABLE_STATUSES:
                raise TaskStateError(
                    f"Only failed/cancelled tasks can be retried manually, got {row.status}.",
                )
            if row.retry_count > row.max_retries:
                raise TaskStateError(
                    f"Task {task_id} exhausted its retries "
                    f"({row.retry_count} failures, max_retries={row.max_retries}).",
                )

            dependencies = self._load_dependencies(session, [task_id]).get(task_id, [])
            status = initial_status(dependencies, self._load_statuses(session, dependencies))
            result = session.exec(
                sa_update(CoordinatorTask)
                .where(
                    col(CoordinatorTask.task_id) == task_id,
                    col(CoordinatorTask.status) == previous.value,
                )
                .values(
                    status=status.value,
                    result_json=None,
                    error_message=None,
                    worker_id=None,
                    started_at=None,
                    completed_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskStateError(
                    "Task state changed concurrently while retrying; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="manual_retry",
                status_from=previous,
                status_to=status,
                details={"retry_count": row.retry_count},
            )
            session.commit()
        view = self.get_task(task_id)
        if view is None:
            raise TaskNotFoundError(task_id)
        return view

    def cancel_task(self, task_id: str) -> TaskView:
        """Cancel a task that has not reached a terminal status."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in _CANCELLABLE_STATUSES:
                raise TaskStateError(f"Task cannot be cancelled from status={row.status}")

            result = session.exec(
                sa_update(CoordinatorTask)
                .where(
                    col(CoordinatorTask.task_id) == task_id,
                    col(CoordinatorTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.CANCELLED.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskStateError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancelled",
                status_from=previous,
                status_to=TaskStatus.CANCELLED,
                details={},
            )
            session.commit()
        view = self.get_task(task_id)
        if view is None:
            raise TaskNotFoundError(task_id)
        return view

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(CoordinatorTask).where(CoordinatorTask.task_id == task_id),
            ).one_or_none()
            if row is None:
                return None
            dependencies = self._load_dependencies(session, [task_id])
            return _to_task_view(row, dependencies.get(task_id, []))

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        agent_type: str | None = None,
        task_id: str | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """List tasks in creation order, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(CoordinatorTask)
            if status is not None:
                statement = statement.where(CoordinatorTask.status == status.value)
            if agent_type is not None:
                statement = statement.where(CoordinatorTask.agent_type == agent_type)
            if task_id is not None:
                statement = statement.where(CoordinatorTask.task_id == task_id)
            statement = statement.order_by(col(CoordinatorTask.created_at).asc(), _ROWID.asc())
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            dependencies = self._load_dependencies(session, [row.task_id for row in rows])
        return [_to_task_view(row, dependencies.get(row.task_id, [])) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        task = self.get_task(task_id)
        if task is None:
            return None
        return TaskDetails(task=task, events=self._load_events([task_id]).get(task_id, []))

    def queue_counts(self) -> StatusCounts:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CoordinatorTask.status, func.count()).group_by(CoordinatorTask.status),
            ).all()
        return _build_counts({TaskStatus(status): count for status, count in rows})

    def get_system_status(
        self,
        filters: StatusFilters | None = None,
        *,
        now: datetime | None = None,
    ) -> SystemStatusView:
        """Aggregate counts, running tasks, next ready task and performance."""

        filters = filters or StatusFilters()
        now = now or utc_now()
        with Session(self.engine) as session:
            grouped = session.exec(
                select(CoordinatorTask.agent_type, CoordinatorTask.status, func.count()).group_by(
                    CoordinatorTask.agent_type,
                    CoordinatorTask.status,
                ),
            ).all()
            running_rows = session.exec(
                select(CoordinatorTask)
                .where(CoordinatorTask.status == TaskStatus.RUNNING.value)
                .order_by(col(CoordinatorTask.started_at).asc(), _ROWID.asc()),
            ).all()
            durations = session.exec(
                select(CoordinatorTask.started_at, CoordinatorTask.completed_at).where(
                    CoordinatorTask.status == TaskStatus.COMPLETED.value,
                    col(CoordinatorTask.started_at).is_not(None),
                    col(CoordinatorTask.completed_at).is_not(None),
                ),
            ).all()

        by_status: dict[TaskStatus, int] = {}
        by_agent_type: dict[str, dict[str, int]] = {}
        for agent_type, status, count in grouped:
            by_status[TaskStatus(status)] = by_status.get(TaskStatus(status), 0) + count
            by_agent_type.setdefault(agent_type, {})[status] = count
        counts = _build_counts(by_status)

        running = [
            RunningTaskView(
                task_id=row.task_id,
                description=row.description,
                agent_type=row.agent_type,
                priority=row.priority,
                started_at=(
                    to_utc_aware_datetime(row.started_at) if row.started_at is not None else None
                ),
                elapsed_seconds=(
                    max(0, int((now - to_utc_aware_datetime(row.started_at)).total_seconds()))
                    if row.started_at is not None
                    else 0
                ),
                workspace_path=row.workspace_path,
                worker_id=row.worker_id,
            )
            for row in running_rows
        ]

        next_task = self.get_next_ready_task()
        next_ready = (
            NextReadyPreview(
                task_id=next_task.task_id,
                agent_type=next_task.agent_type,
                priority=next_task.priority,
                description=next_task.description,
            )
            if next_task is not None
            else None
        )

        tasks: list[TaskView] | None = None
        events: dict[str, list[TaskEventView]] = {}
        if filters.include_tasks or filters.task_id is not None:
            tasks = self.list_tasks(
                status=filters.status,
                agent_type=filters.agent_type,
                task_id=filters.task_id,
            )
            if filters.include_details and tasks:
                events = self._load_events([task.task_id for task in tasks])

        return SystemStatusView(
            counts=counts,
            performance=_build_performance(counts, durations),
            running=running,
            next_ready=next_ready,
            by_agent_type=by_agent_type,
            tasks=tasks,
            events=events,
        )

    def _promote_dependents(self, *, session: Session, completed_task_id: str) -> list[str]:
        dependent_ids = list(
            session.exec(
                select(TaskDependency.task_id)
                .join(CoordinatorTask, col(CoordinatorTask.task_id) == TaskDependency.task_id)
                .where(
                    TaskDependency.depends_on == completed_task_id,
                    CoordinatorTask.status == TaskStatus.BLOCKED.value,
                )
                .order_by(col(CoordinatorTask.created_at).asc(), _ROWID.asc()),
            ).all(),
        )
        if not dependent_ids:
            return []

        dependency_map = self._load_dependencies(session, dependent_ids)
        referenced = set(dependent_ids)
        for dependencies in dependency_map.values():
            referenced.update(dependencies)
        statuses = self._load_statuses(session, referenced)
        candidates = {task_id: dependency_map.get(task_id, []) for task_id in dependent_ids}

        now = utc_now()
        triggered: list[str] = []
        for task_id in find_newly_ready(candidates, statuses):
            result = session.exec(
                sa_update(CoordinatorTask)
                .where(
                    col(CoordinatorTask.task_id) == task_id,
                    col(CoordinatorTask.status) == TaskStatus.BLOCKED.value,
                )
                .values(status=TaskStatus.READY.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                continue
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="unblocked",
                status_from=TaskStatus.BLOCKED,
                status_to=TaskStatus.READY,
                details={"completed_dependency": completed_task_id},
            )
            triggered.append(task_id)
        return triggered

    def _get_task_row(self, *, session: Session, task_id: str) -> CoordinatorTask:
        row = session.exec(
            select(CoordinatorTask).where(CoordinatorTask.task_id == task_id),
        ).one_or_none()
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    @staticmethod
    def _load_statuses(session: Session, task_ids: Iterable[str]) -> dict[str, TaskStatus]:
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return {}
        rows = session.exec(
            select(CoordinatorTask.task_id, CoordinatorTask.status).where(
                col(CoordinatorTask.task_id).in_(ids),
            ),
        ).all()
        return {task_id: TaskStatus(status) for task_id, status in rows}

    @staticmethod
    def _load_dependencies(session: Session, task_ids: Iterable[str]) -> dict[str, list[str]]:
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return {}
        rows = session.exec(
            select(TaskDependency)
            .where(col(TaskDependency.task_id).in_(ids))
            .order_by(col(TaskDependency.task_id), col(TaskDependency.position)),
        ).all()
        mapping: dict[str, list[str]] = {}
        for row in rows:
            mapping.setdefault(row.task_id, []).append(row.depends_on)
        return mapping

    def _load_events(self, task_ids: list[str]) -> dict[str, list[TaskEventView]]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEvent)
                .where(col(TaskEvent.task_id).in_(task_ids))
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()

        events: dict[str, list[TaskEventView]] = {}
        for row in rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.setdefault(row.task_id, []).append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _validate_create(payload: TaskCreate) -> str:
    issues: list[str] = []
    task_id = payload.task_id.strip()
    if not task_id:
        issues.append("task_id: must not be empty")
    if not payload.agent_type.strip():
        issues.append("agent_type: must not be empty")
    if (
        isinstance(payload.priority, bool)
        or not isinstance(payload.priority, int)
        or not MIN_PRIORITY <= payload.priority <= MAX_PRIORITY
    ):
        issues.append(f"priority: must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}")
    if payload.config.timeout_seconds <= 0:
        issues.append("timeout_seconds: must be > 0")
    if payload.config.max_retries < 0:
        issues.append("max_retries: must be >= 0")
    if issues:
        raise TaskValidationError(", ".join(issues))
    return task_id


def _build_counts(by_status: dict[TaskStatus, int]) -> StatusCounts:
    return StatusCounts(
        total_tasks=sum(by_status.values()),
        pending_tasks=sum(by_status.get(status, 0) for status in NOT_STARTED_STATUSES),
        ready_tasks=by_status.get(TaskStatus.READY, 0),
        blocked_tasks=by_status.get(TaskStatus.BLOCKED, 0),
        running_tasks=by_status.get(TaskStatus.RUNNING, 0),
        completed_tasks=by_status.get(TaskStatus.COMPLETED, 0),
        failed_tasks=by_status.get(TaskStatus.FAILED, 0),
        cancelled_tasks=by_status.get(TaskStatus.CANCELLED, 0),
    )


def _build_performance(
    counts: StatusCounts,
    durations: Iterable[tuple[datetime | None, datetime | None]],
) -> PerformanceSummary:
    elapsed_ms = [
        (to_utc_aware_datetime(finished) - to_utc_aware_datetime(started)).total_seconds() * 1000
        for started, finished in durations
        if started is not None and finished is not None
    ]
    finished_total = counts.completed_tasks + counts.failed_tasks
    success_rate = counts.completed_tasks / finished_total if finished_total else 1.0
    return PerformanceSummary(
        avg_execution_time_ms=round(sum(elapsed_ms) / len(elapsed_ms)) if elapsed_ms else 0,
        success_rate=round(success_rate, 4),
        efficiency=round(success_rate * counts.completed_tasks / max(counts.total_tasks, 1), 4),
    )


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(raw: str | None, default: Any) -> Any:
    if raw is None:
        return default
    return json.loads(raw)


def _to_task_view(row: CoordinatorTask, dependencies: list[str]) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        agent_type=row.agent_type,
        description=row.description,
        priority=row.priority,
        status=TaskStatus(row.status),
        dependencies=list(dependencies),
        workspace_path=row.workspace_path,
        config=TaskConfig(
            tools=_load_json(row.tools_json, []),
            timeout_seconds=row.timeout_seconds,
            max_retries=row.max_retries,
            environment=_load_json(row.environment_json, {}),
        ),
        metadata=_load_json(row.metadata_json, {}),
        tags=_load_json(row.tags_json, []),
        retry_count=row.retry_count,
        worker_id=row.worker_id,
        result=_load_json(row.result_json, None),
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )
