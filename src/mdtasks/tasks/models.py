"""Domain models for projects, tasks, subtasks and choices."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from mdtasks.tasks.common import utc_now


class TaskStatus(str, Enum):
    """Lifecycle states shared by tasks and subtasks."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


class TaskCategory(str, Enum):
    """Task category tags, rendered bracketed in documents."""

    MVP = "MVP"
    AI = "AI"
    UX = "UX"
    INFRA = "INFRA"


class TaskPriority(str, Enum):
    """Priority levels, P0 being a blocker."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class TaskComplexity(str, Enum):
    """Coarse complexity estimate."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AttentionType(str, Enum):
    """Why a task was flagged for human review."""

    COMPLETION = "completion"
    STALE = "stale"
    OVERDUE = "overdue"
    BLOCKED = "blocked"


CATEGORY_LEGEND: dict[TaskCategory, str] = {
    TaskCategory.MVP: "Core functionality tasks",
    TaskCategory.AI: "AI-related features",
    TaskCategory.UX: "User experience improvements",
    TaskCategory.INFRA: "Infrastructure and setup",
}

PRIORITY_LEGEND: dict[TaskPriority, str] = {
    TaskPriority.P0: "Blocker/Critical",
    TaskPriority.P1: "High Priority",
    TaskPriority.P2: "Medium Priority",
    TaskPriority.P3: "Low Priority",
}


@dataclass(slots=True)
class Choice:
    """A recorded decision point; resolved once ``resolved_at`` is set."""

    id: str
    question: str
    options: list[str] = field(default_factory=list)
    selected: str | None = None
    reasoning: str = ""
    created_at: datetime = field(default_factory=utc_now)
    resolved_at: datetime | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


@dataclass(slots=True)
class Subtask:
    """Unit of work owned by exactly one task."""

    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    estimated_hours: int = 0
    complexity: TaskComplexity | None = None
    choices: list[Choice] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_done(self) -> bool:
        return self.status == TaskStatus.DONE


@dataclass(slots=True)
class Task:
    """Top-level unit of work inside a project."""

    id: int
    title: str
    description: str = ""
    category: TaskCategory | None = None
    priority: TaskPriority = TaskPriority.P2
    status: TaskStatus = TaskStatus.TODO
    complexity: TaskComplexity | None = None
    estimated_hours: int = 0
    dependencies: list[int] = field(default_factory=list)
    subtasks: list[Subtask] = field(default_factory=list)
    choices: list[Choice] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.DONE

    @property
    def is_fully_completed(self) -> bool:
        """Task is done and so is every subtask."""

        return self.is_completed and all(subtask.is_done for subtask in self.subtasks)

    @property
    def can_be_marked_complete(self) -> bool:
        """True when the task has no subtasks or all of them are done."""

        return all(subtask.is_done for subtask in self.subtasks)

    def find_subtask(self, title: str) -> Subtask | None:
        for subtask in self.subtasks:
            if subtask.title == title:
                return subtask
        return None

    def completed_subtask_count(self) -> int:
        return sum(1 for subtask in self.subtasks if subtask.is_done)

    def subtask_progress(self) -> tuple[int, int, float]:
        """Return ``(completed, total, percentage)``; no subtasks counts as 100%."""

        total = len(self.subtasks)
        if total == 0:
            return 0, 0, 100.0
        completed = self.completed_subtask_count()
        return completed, total, completed / total * 100.0

    def pending_choices(self) -> list[Choice]:
        pending = [choice for choice in self.choices if not choice.is_resolved]
        for subtask in self.subtasks:
            pending.extend(choice for choice in subtask.choices if not choice.is_resolved)
        return pending

    def pending_choice_count(self) -> int:
        return len(self.pending_choices())

    def first_incomplete_subtask(self) -> Subtask | None:
        for subtask in self.subtasks:
            if not subtask.is_done:
                return subtask
        return None

    def to_summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "category": self.category.value if self.category else None,
            "priority": self.priority.value,
            "complexity": self.complexity.value if self.complexity else None,
            "estimated_hours": self.estimated_hours,
            "subtask_count": len(self.subtasks),
            "completed_subtasks": self.completed_subtask_count(),
            "pending_choices": self.pending_choice_count(),
        }


@dataclass(slots=True)
class Project:
    """Named collection of tasks backed by one markdown document."""

    name: str
    description: str = ""
    tasks: list[Task] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def find_task(self, title: str) -> Task | None:
        for task in self.tasks:
            if task.title == title:
                return task
        return None

    def next_task_id(self) -> int:
        return max((task.id for task in self.tasks), default=0) + 1

    def completed_task_count(self) -> int:
        return sum(1 for task in self.tasks if task.is_completed)

    def total_item_count(self) -> int:
        """Tasks plus subtasks."""

        return len(self.tasks) + sum(len(task.subtasks) for task in self.tasks)

    def completed_item_count(self) -> int:
        return self.completed_task_count() + sum(
            task.completed_subtask_count() for task in self.tasks
        )

    def progress_percentage(self) -> float:
        total = self.total_item_count()
        if total == 0:
            return 0.0
        return self.completed_item_count() / total * 100.0

    def pending_choice_count(self) -> int:
        return sum(task.pending_choice_count() for task in self.tasks)

    def progress_summary(self) -> dict[str, Any]:
        total_tasks = len(self.tasks)
        completed_tasks = self.completed_task_count()
        return {
            "total_tasks": total_tasks,
            "completed_tasks": completed_tasks,
            "total_items": self.total_item_count(),
            "completed_items": self.completed_item_count(),
            "task_progress": completed_tasks / total_tasks * 100.0 if total_tasks else 0.0,
            "overall_progress": self.progress_percentage(),
            "pending_choices": self.pending_choice_count(),
        }

    def to_summary(self, *, include_tasks: bool = False) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "task_count": len(self.tasks),
            "completed_tasks": self.completed_task_count(),
            "pending_choices": self.pending_choice_count(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_tasks:
            summary["tasks"] = [task.to_summary() for task in self.tasks]
        return summary


@dataclass(slots=True)
class TaskAttention:
    """A task or subtask flagged by the staleness and overrun heuristics."""

    task_id: int
    task_title: str
    task_status: TaskStatus
    reason: str
    type: AttentionType
    severity: int
    subtask_title: str | None = None
    subtask_status: TaskStatus | None = None

    def to_dict(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "task_id": self.task_id,
            "task_title": self.task_title,
            "task_status": self.task_status.value,
            "reason": self.reason,
            "type": self.type.value,
            "severity": self.severity,
        }
        if self.subtask_title is not None:
            item["subtask_title"] = self.subtask_title
            item["subtask_status"] = self.subtask_status.value if self.subtask_status else None
        return item
