"""Controllers for task CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mdtasks.config import Settings
from mdtasks.evaluation.middleware import EVALUATION_KEY, EvaluationMiddleware
from mdtasks.tasks.manager import TaskManager
from mdtasks.tools import ToolDispatcher, ToolResult

logger = logging.getLogger(__name__)


class TaskCommandError(RuntimeError):
    """Operation reported a failure that the CLI should surface."""


@dataclass(slots=True)
class ListProjectsCommand:
    """CLI inputs for projects command."""

    tasks_dir: Path | None


@dataclass(slots=True)
class CreateProjectCommand:
    """CLI inputs for create command."""

    tasks_dir: Path | None
    project_name: str
    description: str


@dataclass(slots=True)
class AddTaskCommand:
    """CLI inputs for add command."""

    tasks_dir: Path | None
    project_name: str
    title: str
    description: str
    category: str | None
    priority: str | None
    complexity: str | None
    estimated_hours: int
    subtasks: tuple[str, ...]
    dependencies: tuple[int, ...]


@dataclass(slots=True)
class UpdateStatusCommand:
    """CLI inputs for status command."""

    tasks_dir: Path | None
    project_name: str
    task_title: str
    status: str
    subtask_title: str | None


@dataclass(slots=True)
class ProjectCommand:
    """CLI inputs for commands that only target a project."""

    tasks_dir: Path | None
    project_name: str


@dataclass(slots=True)
class AttentionCommand:
    """CLI inputs for attention command."""

    tasks_dir: Path | None
    project_name: str
    attention_type: str | None


@dataclass(slots=True)
class DependenciesCommand:
    """CLI inputs for deps command."""

    tasks_dir: Path | None
    project_name: str
    task_title: str | None
    include_dependents: bool


@dataclass(slots=True)
class SuggestCommand:
    """CLI inputs for suggest command."""

    tasks_dir: Path | None
    project_name: str
    focus_area: str | None
    limit: int
    include_blocked: bool


class TaskCliController:
    """Coordinates task command execution through the operation dispatcher."""

    def list_projects(self, command: ListProjectsCommand) -> list[str]:
        """One line per stored project document."""

        with _dispatcher(command.tasks_dir) as (dispatcher, _):
            payload = _structured(dispatcher.call("list_projects"))
        projects = payload["projects"]
        if not projects:
            return ["No projects found."]
        return [f"Projects: {len(projects)}", *(f"- {name}" for name in projects)]

    def create_project(self, command: CreateProjectCommand) -> list[str]:
        """Create an empty project document."""

        with _dispatcher(command.tasks_dir) as (dispatcher, _):
            result = dispatcher.call(
                "create_project",
                {"project_name": command.project_name, "description": command.description},
            )
        return _text_lines(result)

    def add_task(self, command: AddTaskCommand) -> list[str]:
        """Append a task, optionally with subtasks, and report its id."""

        arguments: dict[str, Any] = {
            "project_name": command.project_name,
            "title": command.title,
            "description": command.description,
            "estimated_hours": command.estimated_hours,
            "subtasks": list(command.subtasks),
            "dependencies": list(command.dependencies),
        }
        for key in ("category", "priority", "complexity"):
            value = getattr(command, key)
            if value:
                arguments[key] = value
        with _dispatcher(command.tasks_dir) as (dispatcher, _):
            return _text_lines(dispatcher.call("add_task", arguments))

    def update_status(self, command: UpdateStatusCommand) -> list[str]:
        """Set a task or subtask status and list the cascaded changes."""

        arguments = {
            "project_name": command.project_name,
            "task_title": command.task_title,
            "status": command.status,
        }
        if command.subtask_title:
            arguments["subtask_title"] = command.subtask_title
        with _dispatcher(command.tasks_dir) as (dispatcher, _):
            return _text_lines(dispatcher.call("update_task_status", arguments))

    def next_task(self, command: ProjectCommand) -> list[str]:
        """Report the next open task and subtask, or that all work is done."""

        with _dispatcher(command.tasks_dir) as (dispatcher, _):
            payload = _structured(
                dispatcher.call("get_next_task", {"project_name": command.project_name}),
            )
        if payload["all_completed"]:
            return [f"All tasks in project '{command.project_name}' are completed."]

        task = payload["task"]
        lines = [
            f"Next task: #{task['id']} {task['title']} "
            f"priority={task['priority']} status={task['status']} "
            f"subtasks={task['completed_subtasks']}/{task['subtask_count']}",
        ]
        if payload["description"]:
            lines.append(f"  {payload['description']}")
        subtask = payload["subtask"]
        if subtask is not None:
            lines.append(f"Next subtask: {subtask['title']} status={subtask['status']}")
        return lines

    def attention(self, command: AttentionCommand) -> list[str]:
        """List overdue and stale work, optionally filtered by attention type."""

        arguments = {"project_name": command.project_name}
        if command.attention_type:
            arguments["attention_type"] = command.attention_type
        with _dispatcher(command.tasks_dir) as (dispatcher, _):
            payload = _structured(dispatcher.call("get_tasks_needing_attention", arguments))

        lines = [payload["message"]]
        for item in payload["tasks"]:
            target = item["task_title"]
            if "subtask_title" in item:
                target += f" / {item['subtask_title']}"
            lines.append(
                f"- [{item['type']}] severity={item['severity']} {target}: {item['reason']}",
            )
        return lines

    def dependencies(self, command: DependenciesCommand) -> list[str]:
        """Render the dependency report for one task or the whole project."""

        arguments: dict[str, Any] = {
            "project_name": command.project_name,
            "include_dependents": command.include_dependents,
        }
        if command.task_title:
            arguments["task_title"] = command.task_title
        with _dispatcher(command.tasks_dir) as (dispatcher, _):
            payload = _structured(dispatcher.call("get_task_dependencies", arguments))

        if command.task_title:
            lines = [f"Task: {payload['task']}"]
            lines.extend(_ref_lines("Depends on", payload["dependencies"]))
            if command.include_dependents:
                lines.extend(_ref_lines("Required by", payload["dependents"]))
            return lines

        summary = payload["summary"]
        lines = [
            f"Project: {payload['project']} tasks={summary['total_tasks']} "
            f"with_dependencies={summary['tasks_with_dependencies']}",
        ]
        for entry in payload["dependencies"]:
            refs = ", ".join(f"#{ref['id']} ({ref['status']})" for ref in entry["dependencies"])
            lines.append(f"- #{entry['id']} {entry['title']} <- {refs or '-'}")
        cycles = summary["circular_dependencies"]
        if cycles:
            lines.append(f"Circular dependencies: {', '.join(cycles)}")
        return lines

    def suggest(self, command: SuggestCommand) -> list[str]:
        """Ranked next actions with their scores and reasons."""

        arguments: dict[str, Any] = {
            "project_name": command.project_name,
            "max_suggestions": command.limit,
            "include_blocked": command.include_blocked,
        }
        if command.focus_area:
            arguments["focus_area"] = command.focus_area
        with _dispatcher(command.tasks_dir) as (dispatcher, _):
            payload = _structured(dispatcher.call("suggest_next_actions", arguments))

        suggestions = payload["suggestions"]
        if not suggestions:
            return ["No open tasks to suggest."]
        return [
            f"{index}. #{item['task_id']} {item['title']} score={item['score']} "
            f"ready={'yes' if item['is_ready'] else 'no'} ({item['reason']})"
            for index, item in enumerate(suggestions, start=1)
        ]

    def evaluate(self, command: ProjectCommand) -> list[str]:
        with _dispatcher(command.tasks_dir) as (_, middleware):
            evaluation = middleware.evaluate_project(command.project_name)
        return evaluation.to_markdown().rstrip("\n").splitlines()

    def show(self, command: ProjectCommand) -> list[str]:
        with _dispatcher(command.tasks_dir) as (dispatcher, _):
            payload = _structured(
                dispatcher.call("get_project_summary", {"project_name": command.project_name}),
            )
        progress = payload["progress"]
        lines = [
            f"Project: {payload['name']}",
            f"Tasks: {progress['completed_tasks']}/{progress['total_tasks']} done "
            f"overall={progress['overall_progress']:.1f}% "
            f"pending_choices={progress['pending_choices']}",
        ]
        if payload["description"]:
            lines.append(payload["description"])
        for task in payload["tasks"]:
            category = f"[{task['category']}] " if task["category"] else ""
            lines.append(
                f"- #{task['id']} {category}{task['title']} ({task['priority']}) "
                f"status={task['status']} "
                f"subtasks={task['completed_subtasks']}/{task['subtask_count']}",
            )
        return lines


@contextmanager
def _dispatcher(tasks_dir: Path | None) -> Iterator[tuple[ToolDispatcher, EvaluationMiddleware]]:
    settings = Settings.from_env(tasks_dir=tasks_dir)
    settings.validate()
    manager = TaskManager(settings.tasks_dir)
    with EvaluationMiddleware(manager, settings) as middleware:
        yield ToolDispatcher(manager, middleware), middleware


def _structured(result: ToolResult) -> dict[str, Any]:
    if result.is_error:
        raise TaskCommandError(result.text())
    if not isinstance(result.payload, dict):
        raise TaskCommandError(f"Unexpected text result: {result.payload}")
    evaluation = result.payload.get(EVALUATION_KEY)
    if evaluation:
        logger.info(
            "Auto-evaluation for %s: updates=%d attention=%d",
            evaluation["project_name"],
            len(evaluation["updates_applied"]),
            evaluation["attention_count"],
        )
    return result.payload


def _text_lines(result: ToolResult) -> list[str]:
    if result.is_error:
        raise TaskCommandError(result.text())
    return result.text().splitlines()


def _ref_lines(label: str, refs: list[dict[str, Any]]) -> list[str]:
    if not refs:
        return [f"{label}: -"]
    return [f"{label}:", *(f"  - #{ref['id']} {ref['title']} ({ref['status']})" for ref in refs)]
