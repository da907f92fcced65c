from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from foreman.errors import ValidationError
from foreman.models import SATISFIED_TASK_STATUSES, Task

logger = logging.getLogger(__name__)

MIN_RECOMMENDED_TASKS = 3
MAX_RECOMMENDED_TASKS = 25


@dataclass(slots=True)
class FileConflict:
    first: str
    second: str
    paths: list[str]
    has_dependency: bool


@dataclass(slots=True)
class GraphValidation:
    order: list[Task] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    conflicts: list[FileConflict] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def order_ids(self) -> list[str]:
        return [task.id for task in self.order]

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationError(
                "Task graph is invalid: " + "; ".join(self.errors), errors=self.errors
            )


def topological_sort(tasks: list[Task]) -> list[Task]:
    """Order tasks so every task follows all of its known dependencies.

    Depth-first with a recursion stack; unknown dependency ids are ignored here
    and reported by ``validate_task_graph``. Raises ``ValidationError`` naming a
    task on the first cycle found.
    """
    by_id = {task.id: task for task in tasks}
    visited: set[str] = set()
    on_stack: set[str] = set()
    ordered: list[Task] = []

    def visit(task_id: str) -> None:
        if task_id in on_stack:
            raise ValidationError(f"Circular dependency detected involving task {task_id}")
        if task_id in visited:
            return
        on_stack.add(task_id)
        task = by_id[task_id]
        for dep_id in task.depends_on:
            if dep_id in by_id:
                visit(dep_id)
        on_stack.discard(task_id)
        visited.add(task_id)
        ordered.append(task)

    for task in tasks:
        visit(task.id)
    return ordered


def find_conflicts(tasks: list[Task]) -> list[FileConflict]:
    conflicts: list[FileConflict] = []
    for index, first in enumerate(tasks):
        first_files = set(first.files_to_modify)
        if not first_files:
            continue
        for second in tasks[index + 1 :]:
            overlap = [path for path in second.files_to_modify if path in first_files]
            if not overlap:
                continue
            has_dependency = first.id in second.depends_on or second.id in first.depends_on
            conflicts.append(
                FileConflict(
                    first=first.id,
                    second=second.id,
                    paths=sorted(set(overlap)),
                    has_dependency=has_dependency,
                )
            )
    return conflicts


def conflict_map(conflicts: Iterable[FileConflict]) -> dict[str, set[str]]:
    mapping: dict[str, set[str]] = {}
    for conflict in conflicts:
        mapping.setdefault(conflict.first, set()).add(conflict.second)
        mapping.setdefault(conflict.second, set()).add(conflict.first)
    return mapping


def validate_task_graph(tasks: list[Task]) -> GraphValidation:
    result = GraphValidation()
    known_ids = {task.id for task in tasks}

    seen: set[str] = set()
    for task in tasks:
        if task.id in seen:
            result.errors.append(f"Duplicate task id {task.id}")
        seen.add(task.id)

    for task in tasks:
        for dep_id in task.depends_on:
            if dep_id not in known_ids:
                result.errors.append(f"Task {task.id} depends on non-existent task {dep_id}")

    try:
        order = topological_sort(tasks)
    except ValidationError as exc:
        result.errors.append(str(exc))
    else:
        if not result.errors:
            result.order = order

    result.conflicts = find_conflicts(tasks)
    for conflict in result.conflicts:
        if conflict.has_dependency:
            continue
        result.warnings.append(
            f"Tasks {conflict.first} and {conflict.second} both modify "
            f"{', '.join(conflict.paths)} but have no dependency"
        )

    if len(tasks) < MIN_RECOMMENDED_TASKS:
        result.warnings.append(
            f"Only {len(tasks)} task(s); documents usually decompose into at least "
            f"{MIN_RECOMMENDED_TASKS}"
        )
    elif len(tasks) > MAX_RECOMMENDED_TASKS:
        result.warnings.append(
            f"{len(tasks)} tasks exceeds the recommended maximum of {MAX_RECOMMENDED_TASKS}; "
            "consider splitting the document"
        )

    for task in tasks:
        if not task.files_to_modify:
            result.warnings.append(f'Task {task.id} "{task.title}": no files_to_modify predicted')

    for message in result.errors:
        logger.debug("graph error: %s", message)
    return result


def dependencies_met(task: Task, by_id: dict[str, Task]) -> bool:
    """True when every known dependency is completed or skipped."""
    for dep_id in task.depends_on:
        dep = by_id.get(dep_id)
        if dep is None:
            continue
        if dep.status not in SATISFIED_TASK_STATUSES:
            return False
    return True


def plan_waves(
    tasks: list[Task],
    *,
    concurrency: int,
    conflicts: Iterable[FileConflict] = (),
) -> list[list[str]]:
    """Simulate team scheduling assuming every pending task succeeds.

    Each wave holds at most ``concurrency`` tasks whose dependencies finished in
    an earlier wave and which do not conflict on files with each other.
    """
    width = max(1, concurrency)
    conflicting = conflict_map(conflicts)
    order = topological_sort(tasks)
    done = {task.id for task in tasks if task.status in SATISFIED_TASK_STATUSES}
    remaining = [task for task in order if task.status in {"pending", "in_progress"}]
    known_ids = {task.id for task in tasks}
    waves: list[list[str]] = []

    while remaining:
        wave: list[str] = []
        for task in remaining:
            if len(wave) >= width:
                break
            deps_done = all(dep not in known_ids or dep in done for dep in task.depends_on)
            if not deps_done:
                continue
            if any(other in conflicting.get(task.id, set()) for other in wave):
                continue
            wave.append(task.id)
        if not wave:
            # Dependencies on failed tasks; those dependents would be skipped.
            break
        waves.append(wave)
        done.update(wave)
        remaining = [task for task in remaining if task.id not in done]
    return waves
