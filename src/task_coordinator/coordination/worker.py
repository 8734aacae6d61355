"""Polling worker: claim a task, run a handler, report the outcome."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ToolClient(Protocol):
    """Anything that runs coordinator tools by name (in-process service or process)."""

    def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]: ...


@dataclass(slots=True)
class TaskExecution:
    """Handler outcome reported through ``complete_task``."""

    success: bool
    result: Any = None
    error_message: str | None = None
    deliverables: list[str] = field(default_factory=list)
    tools_used: list[str] = field(default_factory=list)


TaskHandler = Callable[[dict[str, Any]], TaskExecution]


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    idle_polls: int = 0
    completion_errors: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.idle_polls += other.idle_polls
        self.completion_errors += other.completion_errors


class TaskWorker:
    """Explicit poll loop over the non-blocking ``get_next_task`` tool.

    Idle polls back off exponentially from ``poll_interval_seconds`` up to
    ``poll_backoff_max_seconds``; any claimed task resets the backoff.
    """

    def __init__(  # noqa: PLR0913
        self,
        client: ToolClient,
        handler: TaskHandler,
        *,
        worker_id: str,
        agent_type: str | None = None,
        min_priority: int | None = None,
        max_priority: int | None = None,
        poll_interval_seconds: float = 2.0,
        poll_backoff_max_seconds: float = 30.0,
    ) -> None:
        self.client = client
        self.handler = handler
        self.worker_id = worker_id
        self.agent_type = agent_type
        self.min_priority = min_priority
        self.max_priority = max_priority
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_backoff_max_seconds = max(poll_backoff_max_seconds, poll_interval_seconds)
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def run_once(self) -> WorkerRunSummary:
        """Claim and execute at most one task."""

        summary = WorkerRunSummary()
        arguments: dict[str, Any] = {"worker_id": self.worker_id}
        if self.agent_type is not None:
            arguments["agent_type"] = self.agent_type
        if self.min_priority is not None:
            arguments["min_priority"] = self.min_priority
        if self.max_priority is not None:
            arguments["max_priority"] = self.max_priority

        response = self.client.call_tool("get_next_task", arguments)
        task = response.get("task") if response.get("success") else None
        if not response.get("success"):
            logger.warning("get_next_task failed: %s", response.get("error"))
        if task is None:
            summary.idle_polls = 1
            return summary

        task_id = task["id"]
        logger.info("Worker %s claimed task %s", self.worker_id, task_id)
        started = time.monotonic()
        try:
            execution = self.handler(task)
        except Exception as exc:
            logger.exception("Task %s handler failed", task_id)
            execution = TaskExecution(success=False, error_message=str(exc) or type(exc).__name__)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        completion: dict[str, Any] = {
            "task_id": task_id,
            "success": execution.success,
            "execution_time_ms": elapsed_ms,
        }
        if execution.result is not None:
            completion["result"] = execution.result
        if execution.error_message is not None:
            completion["error_message"] = execution.error_message
        if execution.deliverables:
            completion["deliverables"] = list(execution.deliverables)
        if execution.tools_used:
            completion["tools_used"] = list(execution.tools_used)

        reply = self.client.call_tool("complete_task", completion)
        if not reply.get("success"):
            summary.completion_errors = 1
            logger.error("complete_task failed for %s: %s", task_id, reply.get("error"))
        elif reply.get("triggered_tasks"):
            logger.info("Task %s unblocked %s", task_id, ", ".join(reply["triggered_tasks"]))

        summary.processed = 1
        if execution.success:
            summary.succeeded = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until idle, ``max_tasks`` reached or a stop signal.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = poll forever).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.idle_delay(consecutive_idle))
                    continue
                consecutive_idle = 0

    def idle_delay(self, consecutive_idle: int) -> float:
        """Backoff before the next poll after ``consecutive_idle`` empty polls."""

        exponent = max(0, consecutive_idle - 1)
        return min(self.poll_interval_seconds * (2**exponent), self.poll_backoff_max_seconds)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Worker %s received %s; stopping after current task", self.worker_id, name)
            self.request_stop(signal_name=name)

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
