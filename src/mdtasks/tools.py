"""Named-operation dispatch over the task store.

Each operation takes a mapping of named arguments and returns a
``ToolResult``. Store failures never escape ``ToolDispatcher.call``: they
become error results reading ``"<operation> failed: <cause>"``.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from mdtasks import __version__
from mdtasks.evaluation.middleware import EvaluationMiddleware
from mdtasks.tasks.errors import AllTasksCompleted, TaskStoreError
from mdtasks.tasks.manager import TaskManager
from mdtasks.tasks.models import Subtask, Task
from mdtasks.tasks.rules import (
    DEFAULT_MAX_SUGGESTIONS,
    auto_update_task_statuses,
    dependency_report,
    get_tasks_needing_attention,
    suggest_next_actions,
)
from mdtasks.tasks.validation import (
    validate_category,
    validate_complexity,
    validate_priority,
    validate_project_name,
    validate_status,
)

logger = logging.getLogger(__name__)

Arguments = Mapping[str, Any]
Handler = Callable[[Arguments], "ToolResult"]


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Operation outcome: structured or plain-text payload."""

    payload: dict[str, Any] | str
    is_error: bool = False

    def text(self) -> str:
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload, ensure_ascii=False, indent=2)


class ToolArgumentError(ValueError):
    """Missing or mistyped operation argument."""


class ToolDispatcher:
    """Registry of named operations, optionally wrapped by the evaluation middleware."""

    def __init__(
        self,
        manager: TaskManager,
        middleware: EvaluationMiddleware | None = None,
    ) -> None:
        self._manager = manager
        self._middleware = middleware
        self._handlers: dict[str, Callable[..., ToolResult]] = {}
        for name, handler in self._builtin_handlers().items():
            self.register(name, handler)

    @property
    def operations(self) -> list[str]:
        return sorted(self._handlers)

    def register(self, operation: str, handler: Handler) -> None:
        if self._middleware is not None:
            self._handlers[operation] = self._middleware.wrap(operation, handler)
            return

        def direct(arguments: Arguments, *, cancel: threading.Event | None = None) -> ToolResult:
            return handler(arguments)

        self._handlers[operation] = direct

    def call(
        self,
        operation: str,
        arguments: Arguments | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> ToolResult:
        handler = self._handlers.get(operation)
        if handler is None:
            return ToolResult(f"{operation} failed: unknown operation", is_error=True)
        try:
            return handler(arguments or {}, cancel=cancel)
        except (TaskStoreError, ValueError) as error:
            logger.debug("Operation %s failed: %s", operation, error)
            return ToolResult(f"{operation} failed: {error}", is_error=True)

    def _builtin_handlers(self) -> dict[str, Handler]:
        return {
            "create_project": self.create_project,
            "add_task": self.add_task,
            "update_task_status": self.update_task_status,
            "get_next_task": self.get_next_task,
            "expand_task": self.expand_task,
            "get_task_dependencies": self.get_task_dependencies,
            "estimate_task_complexity": self.estimate_task_complexity,
            "suggest_next_actions": self.suggest_next_actions,
            "auto_update_tasks": self.auto_update_tasks,
            "get_tasks_needing_attention": self.get_tasks_needing_attention,
            "add_choice": self.add_choice,
            "resolve_choice": self.resolve_choice,
            "list_projects": self.list_projects,
            "get_project_summary": self.get_project_summary,
            "debug_info": self.debug_info,
        }

    # -- handlers --------------------------------------------------------------

    def create_project(self, arguments: Arguments) -> ToolResult:
        name = _require_str(arguments, "project_name")
        project = self._manager.create_project(name, _optional_str(arguments, "description"))
        path = self._manager.task_file_path(project.name)
        return ToolResult(f"Created project '{project.name}' at {path}")

    def add_task(self, arguments: Arguments) -> ToolResult:
        project_name = _require_str(arguments, "project_name")
        validate_project_name(project_name)
        task = Task(
            id=0,
            title=_require_str(arguments, "title").strip(),
            description=_require_str(arguments, "description").strip(),
            dependencies=[int(value) for value in _optional_list(arguments, "dependencies")],
            subtasks=[
                Subtask(title=str(title).strip())
                for title in _optional_list(arguments, "subtasks")
            ],
            estimated_hours=_optional_int(arguments, "estimated_hours", 0),
        )
        if category := _optional_str(arguments, "category"):
            task.category = validate_category(category)
        if priority := _optional_str(arguments, "priority"):
            task.priority = validate_priority(priority)
        if complexity := _optional_str(arguments, "complexity"):
            task.complexity = validate_complexity(complexity)

        added = self._manager.add_task(project_name, task)
        message = f"Added task '{added.title}' (ID {added.id}) to project '{project_name}'"
        if added.subtasks:
            message += f" with {len(added.subtasks)} subtasks"
        return ToolResult(message)

    def update_task_status(self, arguments: Arguments) -> ToolResult:
        project_name = _require_str(arguments, "project_name")
        task_title = _require_str(arguments, "task_title")
        status = validate_status(_require_str(arguments, "status"))
        subtask_title = _optional_str(arguments, "subtask_title") or None

        changes = self._manager.update_task_status(project_name, task_title, subtask_title, status)
        target = f"task '{task_title}'"
        if subtask_title:
            target = f"subtask '{subtask_title}' of {target}"
        lines = [f"Updated {target} to {status.value}"]
        lines.extend(f"- {change}" for change in changes)
        return ToolResult("\n".join(lines))

    def get_next_task(self, arguments: Arguments) -> ToolResult:
        project_name = _require_str(arguments, "project_name")
        try:
            task, subtask = self._manager.get_next_task(project_name)
        except AllTasksCompleted:
            return ToolResult(
                {
                    "project": project_name,
                    "all_completed": True,
                    "message": "All tasks completed.",
                },
            )
        payload: dict[str, Any] = {
            "project": project_name,
            "all_completed": False,
            "task": task.to_summary(),
            "description": task.description,
            "subtask": None,
        }
        if subtask is not None:
            payload["subtask"] = {"title": subtask.title, "status": subtask.status.value}
        return ToolResult(payload)

    def expand_task(self, arguments: Arguments) -> ToolResult:
        project_name = _require_str(arguments, "project_name")
        task_title = _require_str(arguments, "task_title")
        subtask_titles = [str(title).strip() for title in _optional_list(arguments, "new_subtasks")]
        reasoning = _optional_str(arguments, "reasoning")

        self._manager.expand_task(project_name, task_title, subtask_titles, reasoning)
        message = f"Expanded task '{task_title}' with {len(subtask_titles)} new subtasks"
        if reasoning:
            message += f" (Reasoning: {reasoning})"
        return ToolResult(message)

    def get_task_dependencies(self, arguments: Arguments) -> ToolResult:
        project = self._manager.load_project(_require_str(arguments, "project_name"))
        report = dependency_report(
            project,
            _optional_str(arguments, "task_title") or None,
            include_dependents=_optional_bool(arguments, "include_dependents", default=False),
        )
        return ToolResult(report)

    def estimate_task_complexity(self, arguments: Arguments) -> ToolResult:
        project_name = _require_str(arguments, "project_name")
        task_title = _require_str(arguments, "task_title")
        complexity = validate_complexity(_require_str(arguments, "complexity"))
        estimated_hours = _optional_int(arguments, "estimated_hours", 0)
        suggested = [str(title).strip() for title in _optional_list(arguments, "suggested_subtasks")]

        _, created = self._manager.record_complexity(
            project_name,
            task_title,
            complexity,
            estimated_hours=estimated_hours,
            reasoning=_optional_str(arguments, "reasoning"),
            suggested_subtasks=suggested,
            auto_create_subtasks=_optional_bool(arguments, "auto_create_subtasks", default=False),
        )
        message = f"Updated task '{task_title}' with complexity: {complexity.value}"
        if estimated_hours > 0:
            message += f" ({estimated_hours} hours)"
        if created:
            message += f", created {created} subtasks"
        return ToolResult(message)

    def suggest_next_actions(self, arguments: Arguments) -> ToolResult:
        project = self._manager.load_project(_require_str(arguments, "project_name"))
        focus_area = _optional_str(arguments, "focus_area")
        suggestions = suggest_next_actions(
            project,
            focus_area,
            max_suggestions=_optional_int(arguments, "max_suggestions", DEFAULT_MAX_SUGGESTIONS),
            include_blocked=_optional_bool(arguments, "include_blocked", default=False),
        )
        summary = project.progress_summary()
        summary["suggestions_count"] = len(suggestions)
        summary["focus_area"] = focus_area
        return ToolResult(
            {
                "project": project.name,
                "focus_area": focus_area,
                "suggestions": suggestions,
                "summary": summary,
            },
        )

    def auto_update_tasks(self, arguments: Arguments) -> ToolResult:
        project_name = _require_str(arguments, "project_name")
        dry_run = _optional_bool(arguments, "dry_run", default=False)
        project = self._manager.load_project(project_name)
        if not project.tasks:
            return ToolResult("No tasks found in project to update.")

        updates, changed = auto_update_task_statuses(project)
        if not changed:
            return ToolResult("No automatic updates needed. All tasks are up to date.")

        payload: dict[str, Any] = {
            "project": project_name,
            "dry_run": dry_run,
            "updates": updates,
            "update_count": len(updates),
            "saved": not dry_run,
        }
        if dry_run:
            payload["message"] = "Dry run - no changes were saved"
        else:
            self._manager.save_project(project)
        return ToolResult(payload)

    def get_tasks_needing_attention(self, arguments: Arguments) -> ToolResult:
        project_name = _require_str(arguments, "project_name")
        attention_type = _optional_str(arguments, "attention_type")
        items = get_tasks_needing_attention(self._manager.load_project(project_name))
        if attention_type:
            items = [item for item in items if item.type.value == attention_type]
        message = (
            f"Found {len(items)} tasks that need attention"
            if items
            else "No tasks need attention."
        )
        return ToolResult(
            {
                "project": project_name,
                "attention_items": len(items),
                "filter": attention_type,
                "tasks": [item.to_dict() for item in items],
                "message": message,
            },
        )

    def add_choice(self, arguments: Arguments) -> ToolResult:
        choice = self._manager.add_choice(
            _require_str(arguments, "project_name"),
            _require_str(arguments, "task_title"),
            _require_str(arguments, "question"),
            [str(option) for option in _optional_list(arguments, "options")],
            subtask_title=_optional_str(arguments, "subtask_title") or None,
        )
        return ToolResult({"choice_id": choice.id, "question": choice.question})

    def resolve_choice(self, arguments: Arguments) -> ToolResult:
        choice = self._manager.resolve_choice(
            _require_str(arguments, "project_name"),
            _require_str(arguments, "task_title"),
            _require_str(arguments, "choice_id"),
            _require_str(arguments, "selected"),
            reasoning=_optional_str(arguments, "reasoning"),
            subtask_title=_optional_str(arguments, "subtask_title") or None,
        )
        return ToolResult(f"Resolved '{choice.question}' with '{choice.selected}'")

    def list_projects(self, arguments: Arguments) -> ToolResult:
        projects = self._manager.list_projects()
        return ToolResult({"projects": projects, "count": len(projects)})

    def get_project_summary(self, arguments: Arguments) -> ToolResult:
        project = self._manager.load_project(_require_str(arguments, "project_name"))
        summary = project.to_summary(include_tasks=True)
        summary["progress"] = project.progress_summary()
        return ToolResult(summary)

    def debug_info(self, arguments: Arguments) -> ToolResult:
        payload: dict[str, Any] = {
            "version": __version__,
            "tasks_dir": str(self._manager.tasks_dir.resolve()),
            "projects": self._manager.list_projects(),
            "operations": self.operations,
        }
        if self._middleware is not None:
            payload["evaluation"] = self._middleware.stats()
        return ToolResult(payload)


def _require_str(arguments: Arguments, key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolArgumentError(f"missing {key}")
    return value


def _optional_str(arguments: Arguments, key: str) -> str:
    value = arguments.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ToolArgumentError(f"{key} must be a string")
    return value.strip()


def _optional_int(arguments: Arguments, key: str, default: int) -> int:
    value = arguments.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ToolArgumentError(f"{key} must be a number")
    return int(value)


def _optional_bool(arguments: Arguments, key: str, *, default: bool) -> bool:
    value = arguments.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ToolArgumentError(f"{key} must be a boolean")
    return value


def _optional_list(arguments: Arguments, key: str) -> Sequence[Any]:
    value = arguments.get(key)
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise ToolArgumentError(f"{key} must be a list")
    return value

