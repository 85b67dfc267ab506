"""Pure project reducers: status cascade, sweeps, scans and planning helpers.

Nothing here touches storage. ``apply_status_update`` returns a new project;
``auto_update_task_statuses`` mutates the project it is given and leaves
persistence to the caller.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from mdtasks.tasks.common import utc_now
from mdtasks.tasks.errors import AllTasksCompleted, NotFoundError
from mdtasks.tasks.models import (
    AttentionType,
    Project,
    Subtask,
    Task,
    TaskAttention,
    TaskComplexity,
    TaskPriority,
    TaskStatus,
)

logger = logging.getLogger(__name__)

STALE_IN_PROGRESS_AFTER = timedelta(days=7)
UNSTARTED_TODO_AFTER = timedelta(days=14)
STALE_SUBTASK_AFTER = timedelta(days=5)

_PRIORITY_SCORES = {
    TaskPriority.P0: 100,
    TaskPriority.P1: 75,
    TaskPriority.P2: 50,
    TaskPriority.P3: 25,
}
DEFAULT_MAX_SUGGESTIONS = 5


@dataclass(slots=True)
class StatusUpdate:
    project: Project
    changes: list[str] = field(default_factory=list)


def subtask_completed_message(subtask: Subtask) -> str:
    return f"Auto-completed subtask '{subtask.title}'"


def task_completed_message(task: Task) -> str:
    return f"Auto-completed main task '{task.title}' (all subtasks done)"


def require_task(project: Project, task_title: str) -> Task:
    """Task with exactly this title, or ``NotFoundError`` naming the project."""

    task = project.find_task(task_title)
    if task is None:
        raise NotFoundError("task", task_title, scope=f"project '{project.name}'")
    return task


def require_subtask(task: Task, subtask_title: str) -> Subtask:
    subtask = task.find_subtask(subtask_title)
    if subtask is None:
        raise NotFoundError("subtask", subtask_title, scope=f"task '{task.title}'")
    return subtask


def apply_status_update(  # noqa: PLR0913
    project: Project,
    task_title: str,
    subtask_title: str | None,
    status: TaskStatus,
    *,
    now: datetime | None = None,
) -> StatusUpdate:
    """Set a task or subtask status on a copy of ``project`` and cascade.

    Marking a task done forces every subtask done. Marking a subtask done
    promotes the parent when that was the last open subtask.
    """

    now = now or utc_now()
    updated = copy.deepcopy(project)
    task = require_task(updated, task_title)
    changes: list[str] = []

    if not subtask_title:
        task.status = status
        task.updated_at = now
        if status == TaskStatus.DONE:
            for subtask in task.subtasks:
                if subtask.is_done:
                    continue
                subtask.status = TaskStatus.DONE
                subtask.updated_at = now
                changes.append(subtask_completed_message(subtask))
        return StatusUpdate(project=updated, changes=changes)

    subtask = require_subtask(task, subtask_title)
    subtask.status = status
    subtask.updated_at = now
    task.updated_at = now
    if status == TaskStatus.DONE and task.can_be_marked_complete and not task.is_completed:
        task.status = TaskStatus.DONE
        changes.append(task_completed_message(task))
    return StatusUpdate(project=updated, changes=changes)


def auto_update_task_statuses(
    project: Project,
    *,
    now: datetime | None = None,
) -> tuple[list[str], bool]:
    """Reconcile task and subtask completion in place.

    A task with subtasks that are all done is promoted to done; a done task
    drags its open subtasks along. Tasks without subtasks keep whatever
    status they hold.
    """

    now = now or utc_now()
    changes: list[str] = []
    for task in project.tasks:
        if not task.is_completed and task.subtasks and task.can_be_marked_complete:
            task.status = TaskStatus.DONE
            task.updated_at = now
            changes.append(task_completed_message(task))
        if task.is_completed:
            for subtask in task.subtasks:
                if subtask.is_done:
                    continue
                subtask.status = TaskStatus.DONE
                subtask.updated_at = now
                task.updated_at = now
                changes.append(subtask_completed_message(subtask))
    return changes, bool(changes)


def get_tasks_needing_attention(
    project: Project,
    *,
    now: datetime | None = None,
) -> list[TaskAttention]:
    """Flag overrun, stale and never-started work. Never mutates the project."""

    now = now or utc_now()
    items: list[TaskAttention] = []
    for task in project.tasks:
        if task.status in {TaskStatus.DONE, TaskStatus.BLOCKED}:
            continue
        item = _task_attention(task, now)
        if item is not None:
            items.append(item)

    for task in project.tasks:
        if task.is_completed:
            continue
        for subtask in task.subtasks:
            if subtask.status != TaskStatus.IN_PROGRESS:
                continue
            idle = now - subtask.updated_at
            if idle > STALE_SUBTASK_AFTER:
                items.append(
                    TaskAttention(
                        task_id=task.id,
                        task_title=task.title,
                        task_status=task.status,
                        reason=f"Subtask in progress for {idle.days} days without an update",
                        type=AttentionType.STALE,
                        severity=2,
                        subtask_title=subtask.title,
                        subtask_status=subtask.status,
                    ),
                )
    return items


def _task_attention(task: Task, now: datetime) -> TaskAttention | None:
    if task.status == TaskStatus.IN_PROGRESS:
        idle = now - task.updated_at
        if task.estimated_hours > 0 and idle > timedelta(hours=task.estimated_hours):
            return _attention(
                task,
                f"In progress for {idle.total_seconds() / 3600:.1f} hours, "
                f"over the {task.estimated_hours} hour estimate",
                AttentionType.OVERDUE,
                4,
            )
        if idle > STALE_IN_PROGRESS_AFTER:
            return _attention(
                task,
                f"In progress with no update for {idle.days} days",
                AttentionType.STALE,
                3,
            )
        return None

    if task.status == TaskStatus.TODO and not task.subtasks:
        age = now - task.created_at
        if age > UNSTARTED_TODO_AFTER:
            return _attention(
                task,
                f"Created {age.days} days ago and not started; needs breakdown or action",
                AttentionType.STALE,
                2,
            )
    return None


def _attention(task: Task, reason: str, kind: AttentionType, severity: int) -> TaskAttention:
    return TaskAttention(
        task_id=task.id,
        task_title=task.title,
        task_status=task.status,
        reason=reason,
        type=kind,
        severity=severity,
    )


def find_next_work(project: Project) -> tuple[Task, Subtask | None]:
    """First task, in document order, that is not fully completed.

    Returns its first open subtask when it has one. Raises
    ``AllTasksCompleted`` when nothing is left, including an empty project.
    """

    for task in project.tasks:
        if task.is_fully_completed:
            continue
        return task, task.first_incomplete_subtask()
    raise AllTasksCompleted(project.name)


def detect_circular_dependencies(tasks: Sequence[Task]) -> list[str]:
    """Titles of every task lying on a dependency cycle, in document order.

    Strongly connected components (Tarjan). A task is cyclic when its
    component has more than one member or it depends on itself. Dependencies
    on unknown ids are ignored. The walk keeps its own stack, so chains of any
    depth are fine.
    """

    by_id = {task.id: task for task in tasks}
    index_of: dict[int, int] = {}
    lowlink: dict[int, int] = {}
    on_stack: set[int] = set()
    stack: list[int] = []
    cyclic: set[int] = set()
    work: list[tuple[int, Iterator[int]]] = []

    def enter(task_id: int) -> None:
        index_of[task_id] = lowlink[task_id] = len(index_of)
        stack.append(task_id)
        on_stack.add(task_id)
        work.append((task_id, iter(by_id[task_id].dependencies)))

    def leave(task_id: int) -> None:
        if lowlink[task_id] != index_of[task_id]:
            return
        component: list[int] = []
        while True:
            member = stack.pop()
            on_stack.discard(member)
            component.append(member)
            if member == task_id:
                break
        if len(component) > 1 or task_id in by_id[task_id].dependencies:
            cyclic.update(component)

    for root in tasks:
        if root.id in index_of:
            continue
        enter(root.id)
        while work:
            task_id, dependencies = work[-1]
            for dependency in dependencies:
                if dependency not in by_id:
                    continue
                if dependency not in index_of:
                    enter(dependency)
                    break
                if dependency in on_stack:
                    lowlink[task_id] = min(lowlink[task_id], index_of[dependency])
            else:
                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[task_id])
                leave(task_id)

    return [task.title for task in tasks if task.id in cyclic]


def _task_ref(task: Task) -> dict[str, Any]:
    return {"id": task.id, "title": task.title, "status": task.status.value}


def dependency_report(
    project: Project,
    task_title: str | None = None,
    *,
    include_dependents: bool = False,
) -> dict[str, Any]:
    """Dependency view of one task, or of the whole project when no title is given."""

    by_id = {task.id: task for task in project.tasks}

    if task_title:
        target = require_task(project, task_title)
        dependents: list[dict[str, Any]] = []
        if include_dependents:
            dependents = [
                _task_ref(task) for task in project.tasks if target.id in task.dependencies
            ]
        return {
            "task": target.title,
            "dependencies": [
                _task_ref(by_id[dependency])
                for dependency in target.dependencies
                if dependency in by_id
            ],
            "dependents": dependents,
        }

    entries = [
        {
            **_task_ref(task),
            "dependencies": [
                _task_ref(by_id[dependency]) for dependency in task.dependencies if dependency in by_id
            ],
        }
        for task in project.tasks
        if task.dependencies
    ]
    return {
        "project": project.name,
        "dependencies": entries,
        "summary": {
            "total_tasks": len(project.tasks),
            "tasks_with_dependencies": len(entries),
            "circular_dependencies": detect_circular_dependencies(project.tasks),
        },
    }


def is_task_ready(task: Task, by_id: dict[int, Task]) -> bool:
    """All existing dependencies are done; unknown ids do not block."""

    return all(
        by_id[dependency].is_completed for dependency in task.dependencies if dependency in by_id
    )


def score_task(task: Task, *, ready: bool) -> int:
    """Priority base plus readiness, progress and planning adjustments; higher is sooner."""

    score = _PRIORITY_SCORES.get(task.priority, 0)
    score += 50 if ready else -25
    if task.status == TaskStatus.IN_PROGRESS:
        score += 30
    if task.pending_choice_count():
        score += 20
    if task.complexity == TaskComplexity.HIGH:
        score -= 10
    if task.subtasks:
        score += 10
    return score


def suggestion_reason(task: Task, *, ready: bool) -> str:
    reasons: list[str] = []
    if task.priority == TaskPriority.P0:
        reasons.append("Critical priority")
    elif task.priority == TaskPriority.P1:
        reasons.append("High priority")
    if task.status == TaskStatus.IN_PROGRESS:
        reasons.append("Already in progress")
    reasons.append("All dependencies completed" if ready else "Waiting for dependencies")
    if task.pending_choice_count():
        reasons.append("Has pending decisions")
    if task.complexity == TaskComplexity.HIGH:
        reasons.append("High complexity - consider breaking down")
    return ", ".join(reasons) if reasons else "Available for work"


def suggest_next_actions(
    project: Project,
    focus_area: str = "",
    *,
    max_suggestions: int = DEFAULT_MAX_SUGGESTIONS,
    include_blocked: bool = False,
) -> list[dict[str, Any]]:
    """Rank open tasks by priority, readiness and planning signals.

    ``focus_area`` filters on the category tag (``MVP``, ``AI``...).
    """

    by_id = {task.id: task for task in project.tasks}
    suggestions: list[dict[str, Any]] = []
    for task in project.tasks:
        if task.is_completed:
            continue
        if task.status == TaskStatus.BLOCKED and not include_blocked:
            continue
        category = task.category.value if task.category else ""
        if focus_area and category != focus_area:
            continue

        ready = is_task_ready(task, by_id)
        suggestion: dict[str, Any] = {
            "task_id": task.id,
            "title": task.title,
            "category": category,
            "priority": task.priority.value,
            "status": task.status.value,
            "complexity": task.complexity.value if task.complexity else "",
            "estimated_hours": task.estimated_hours,
            "is_ready": ready,
            "score": score_task(task, ready=ready),
            "reason": suggestion_reason(task, ready=ready),
        }
        if task.subtasks:
            next_subtask = task.first_incomplete_subtask()
            suggestion["subtasks_total"] = len(task.subtasks)
            suggestion["subtasks_completed"] = task.completed_subtask_count()
            suggestion["next_subtask"] = next_subtask.title if next_subtask else ""
        pending = task.pending_choices()
        if pending:
            suggestion["pending_choices"] = [choice.question for choice in pending]
        suggestions.append(suggestion)

    suggestions.sort(key=lambda item: item["score"], reverse=True)
    logger.debug(
        "Ranked %d candidate tasks in project %s",
        len(suggestions),
        project.name,
    )
    return suggestions[: max(max_suggestions, 0)]
