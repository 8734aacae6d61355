"""Atomic task claiming on top of the task store."""

from __future__ import annotations

import logging

from task_coordinator.coordination.models import ClaimResult
from task_coordinator.coordination.repository import TaskRepository

logger = logging.getLogger(__name__)


class ClaimController:
    """Select-then-conditionally-update claim loop.

    ``mark_running`` only succeeds for the one caller that still sees the task
    as ``ready``; losers re-select, up to ``max_attempts`` times.
    """

    def __init__(self, repository: TaskRepository, *, max_attempts: int = 3) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self.repository = repository
        self.max_attempts = max_attempts

    def claim(
        self,
        *,
        agent_type: str | None = None,
        min_priority: int | None = None,
        max_priority: int | None = None,
        worker_id: str | None = None,
    ) -> ClaimResult:
        contended = False
        for attempt in range(1, self.max_attempts + 1):
            candidate = self.repository.get_next_ready_task(
                agent_type=agent_type,
                min_priority=min_priority,
                max_priority=max_priority,
            )
            if candidate is None:
                return ClaimResult(task=None, contended=contended)
            if self.repository.mark_running(candidate.task_id, worker_id=worker_id):
                claimed = self.repository.get_task(candidate.task_id)
                return ClaimResult(task=claimed, contended=contended)
            contended = True
            logger.debug(
                "Lost claim race for task %s (attempt %d/%d)",
                candidate.task_id,
                attempt,
                self.max_attempts,
            )
        return ClaimResult(task=None, contended=True)
