"""Readiness rules for task dependencies.

A task is ready exactly when every task it depends on has status
``completed``. Unknown ids and ``failed``/``cancelled`` dependencies are
unsatisfied, so dependents stay blocked rather than failing in cascade.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from task_coordinator.coordination.models import TaskStatus, TaskValidationError


def normalize_dependencies(task_id: str, dependencies: Iterable[str]) -> list[str]:
    """Strip, de-duplicate (keeping declaration order) and validate dependency ids."""

    normalized: list[str] = []
    seen: set[str] = set()
    for raw in dependencies:
        dependency = raw.strip()
        if not dependency:
            raise TaskValidationError("dependencies: dependency id must not be empty")
        if dependency == task_id:
            raise TaskValidationError(f"dependencies: task {task_id} cannot depend on itself")
        if dependency in seen:
            continue
        seen.add(dependency)
        normalized.append(dependency)
    return normalized


def unmet_dependencies(
    dependencies: Iterable[str],
    statuses: Mapping[str, TaskStatus],
) -> list[str]:
    return [
        dependency
        for dependency in dependencies
        if statuses.get(dependency) is not TaskStatus.COMPLETED
    ]


def is_ready(dependencies: Iterable[str], statuses: Mapping[str, TaskStatus]) -> bool:
    """True when every dependency is known and completed (vacuously true for none)."""

    return not unmet_dependencies(dependencies, statuses)


def initial_status(dependencies: Iterable[str], statuses: Mapping[str, TaskStatus]) -> TaskStatus:
    """Status a freshly enqueued task resolves to."""

    if is_ready(dependencies, statuses):
        return TaskStatus.READY
    return TaskStatus.BLOCKED


def find_newly_ready(
    dependents: Mapping[str, Iterable[str]],
    current_statuses: Mapping[str, TaskStatus],
) -> list[str]:
    """Blocked dependents whose dependencies are now all completed.

    ``dependents`` maps each candidate task id to its full dependency list;
    ``current_statuses`` must hold both the candidates and their dependencies.
    """

    ready: list[str] = []
    for task_id, dependencies in dependents.items():
        if current_statuses.get(task_id) is not TaskStatus.BLOCKED:
            continue
        if is_ready(dependencies, current_statuses):
            ready.append(task_id)
    return ready
