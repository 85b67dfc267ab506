"""Markdown-backed task store."""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Sequence
from pathlib import Path

from mdtasks.tasks.common import generate_choice_id, utc_now
from mdtasks.tasks.errors import (
    AlreadyExistsError,
    InvalidChoiceError,
    InvalidSubtaskCountError,
    InvalidTitleError,
    NotFoundError,
    StorageError,
)
from mdtasks.tasks.locks import ReadWriteLock
from mdtasks.tasks.markdown import decode_project, encode_project
from mdtasks.tasks.models import (
    Choice,
    Project,
    Subtask,
    Task,
    TaskComplexity,
    TaskStatus,
)
from mdtasks.tasks.rules import (
    apply_status_update,
    find_next_work,
    require_subtask,
    require_task,
)
from mdtasks.tasks.validation import (
    default_task_priority,
    default_task_status,
    sanitize_project_name,
    validate_choice,
    validate_description,
    validate_estimated_hours,
    validate_project_name,
    validate_subtask_count,
    validate_title,
)

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIX = ".md"
BREAKDOWN_QUESTION = "Task breakdown reasoning"
BREAKDOWN_OPTION = "Accepted breakdown"
COMPLEXITY_QUESTION = "Complexity Analysis"


class TaskManager:
    """One markdown document per project inside ``tasks_dir``.

    Every document read or write goes through a single directory-wide
    reader-writer lock. Loads take the read side and saves the write side,
    so a load-modify-save sequence is not atomic: two concurrent updates to
    the same project can lose one of them (last writer wins).
    """

    def __init__(self, tasks_dir: Path | str) -> None:
        self.tasks_dir = Path(tasks_dir)
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        self._lock = ReadWriteLock()

    def task_file_path(self, project_name: str) -> Path:
        """Document path for a project; the name is sanitized, not validated."""

        return self.tasks_dir / f"{sanitize_project_name(project_name)}{DOCUMENT_SUFFIX}"

    def project_exists(self, project_name: str) -> bool:
        with self._lock.read_locked():
            return self.task_file_path(project_name).is_file()

    def create_project(self, project_name: str, description: str = "") -> Project:
        """Write an empty project document; fails if one already exists."""

        validate_project_name(project_name)
        path = self.task_file_path(project_name)
        now = utc_now()
        project = Project(
            name=project_name,
            description=description.strip(),
            created_at=now,
            updated_at=now,
        )
        with self._lock.write_locked():
            if path.exists():
                raise AlreadyExistsError(project_name, str(path))
            self._write_document(path, project, operation="create")
        logger.info("Created project %s at %s", project_name, path)
        return project

    def load_project(self, project_name: str) -> Project:
        """Decode the stored document; the requested name always wins over the title line."""

        path = self.task_file_path(project_name)
        with self._lock.read_locked():
            if not path.is_file():
                raise NotFoundError("project", project_name)
            try:
                text = path.read_text("utf-8")
            except OSError as error:
                raise StorageError("load", project_name, error) from error

        project = decode_project(text)
        project.name = project_name
        logger.debug("Loaded project %s with %d tasks", project_name, len(project.tasks))
        return project

    def save_project(self, project: Project) -> None:
        """Stamp ``updated_at`` and replace the whole document."""

        validate_project_name(project.name)
        project.updated_at = utc_now()
        path = self.task_file_path(project.name)
        with self._lock.write_locked():
            self._write_document(path, project, operation="save")
        logger.debug("Saved project %s with %d tasks", project.name, len(project.tasks))

    def _write_document(self, path: Path, project: Project, *, operation: str) -> None:
        content = encode_project(project)
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.stem}.",
                suffix=".tmp",
                dir=self.tasks_dir,
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as error:
            raise StorageError(operation, project.name, error) from error

    def list_projects(self) -> list[str]:
        """Sorted document stems, which are the sanitized project names."""

        with self._lock.read_locked():
            try:
                return sorted(
                    path.stem
                    for path in self.tasks_dir.iterdir()
                    if path.is_file() and path.suffix == DOCUMENT_SUFFIX
                )
            except FileNotFoundError:
                return []
            except OSError as error:
                raise StorageError("list", str(self.tasks_dir), error) from error

    def add_task(self, project_name: str, task: Task) -> Task:
        """Append ``task`` with the next free id and fresh timestamps."""

        validate_title(task.title)
        validate_description(task.description)
        validate_estimated_hours(task.estimated_hours)
        validate_subtask_count(len(task.subtasks))
        for index, subtask in enumerate(task.subtasks, start=1):
            try:
                validate_title(subtask.title)
            except InvalidTitleError as error:
                raise InvalidTitleError(f"invalid subtask {index}: {error}") from error

        project = self.load_project(project_name)
        if project.find_task(task.title) is not None:
            raise InvalidTitleError(f"task with title '{task.title}' already exists")

        now = utc_now()
        task.id = project.next_task_id()
        task.created_at = now
        task.updated_at = now
        task.status = task.status or default_task_status()
        task.priority = task.priority or default_task_priority()
        for subtask in task.subtasks:
            subtask.created_at = now
            subtask.updated_at = now
        project.tasks.append(task)
        self.save_project(project)
        logger.info("Added task %d '%s' to project %s", task.id, task.title, project_name)
        return task

    def update_task_status(
        self,
        project_name: str,
        task_title: str,
        subtask_title: str | None,
        status: TaskStatus,
    ) -> list[str]:
        """Set a status and save; returns the descriptions of cascaded changes."""

        project = self.load_project(project_name)
        update = apply_status_update(project, task_title, subtask_title, status)
        self.save_project(update.project)
        target = f"{task_title} / {subtask_title}" if subtask_title else task_title
        logger.info("Set %s to %s in project %s", target, status.value, project_name)
        return update.changes

    def get_next_task(self, project_name: str) -> tuple[Task, Subtask | None]:
        """Next open task and subtask; raises ``AllTasksCompleted`` when none is left."""

        return find_next_work(self.load_project(project_name))

    def expand_task(
        self,
        project_name: str,
        task_title: str,
        subtask_titles: Sequence[str],
        reasoning: str = "",
    ) -> Task:
        """Append subtasks; a non-empty reasoning is kept as a resolved choice."""

        if not subtask_titles:
            raise InvalidSubtaskCountError("at least one new subtask is required")
        for title in subtask_titles:
            validate_title(title)

        project = self.load_project(project_name)
        task = require_task(project, task_title)
        validate_subtask_count(len(task.subtasks) + len(subtask_titles))
        now = utc_now()
        task.subtasks.extend(
            Subtask(title=title, status=default_task_status(), created_at=now, updated_at=now)
            for title in subtask_titles
        )
        task.updated_at = now
        if reasoning:
            task.choices.append(
                _resolved_choice(BREAKDOWN_QUESTION, BREAKDOWN_OPTION, reasoning),
            )
        self.save_project(project)
        return task

    def record_complexity(  # noqa: PLR0913
        self,
        project_name: str,
        task_title: str,
        complexity: TaskComplexity,
        *,
        estimated_hours: int = 0,
        reasoning: str = "",
        suggested_subtasks: Sequence[str] = (),
        auto_create_subtasks: bool = False,
    ) -> tuple[Task, int]:
        """Store a complexity analysis; returns the task and how many subtasks were created."""

        validate_estimated_hours(estimated_hours)
        for title in suggested_subtasks:
            validate_title(title)

        project = self.load_project(project_name)
        task = require_task(project, task_title)
        now = utc_now()
        task.complexity = complexity
        task.estimated_hours = estimated_hours
        task.updated_at = now
        if reasoning:
            summary = f"Complexity: {complexity.value} ({estimated_hours} hours)"
            task.choices.append(_resolved_choice(COMPLEXITY_QUESTION, summary, reasoning))

        created = 0
        if (
            auto_create_subtasks
            and suggested_subtasks
            and complexity in {TaskComplexity.MEDIUM, TaskComplexity.HIGH}
        ):
            validate_subtask_count(len(task.subtasks) + len(suggested_subtasks))
            task.subtasks.extend(
                Subtask(title=title, status=default_task_status(), created_at=now, updated_at=now)
                for title in suggested_subtasks
            )
            created = len(suggested_subtasks)

        self.save_project(project)
        return task, created

    def add_choice(  # noqa: PLR0913
        self,
        project_name: str,
        task_title: str,
        question: str,
        options: Sequence[str],
        *,
        subtask_title: str | None = None,
    ) -> Choice:
        """Attach a pending choice to a task, or to one of its subtasks."""

        choice = Choice(
            id=generate_choice_id(),
            question=question.strip(),
            options=[option.strip() for option in options],
        )
        validate_choice(choice)

        project = self.load_project(project_name)
        task = require_task(project, task_title)
        owner = require_subtask(task, subtask_title) if subtask_title else task
        owner.choices.append(choice)
        owner.updated_at = choice.created_at
        self.save_project(project)
        return choice

    def resolve_choice(  # noqa: PLR0913
        self,
        project_name: str,
        task_title: str,
        choice_id: str,
        selected: str,
        *,
        reasoning: str = "",
        subtask_title: str | None = None,
    ) -> Choice:
        """Select an option by choice id; new reasoning replaces the old one."""

        project = self.load_project(project_name)
        task = require_task(project, task_title)
        owner = require_subtask(task, subtask_title) if subtask_title else task
        choice = next((item for item in owner.choices if item.id == choice_id), None)
        if choice is None:
            raise NotFoundError("choice", choice_id, scope=f"task '{task.title}'")
        if selected not in choice.options:
            raise InvalidChoiceError(
                f"selected option '{selected}' is not in the available options",
            )

        now = utc_now()
        choice.selected = selected
        choice.reasoning = reasoning.strip() or choice.reasoning
        choice.resolved_at = now
        owner.updated_at = now
        self.save_project(project)
        return choice


def _resolved_choice(question: str, option: str, reasoning: str) -> Choice:
    now = utc_now()
    return Choice(
        id=generate_choice_id(),
        question=question,
        options=[option],
        selected=option,
        reasoning=reasoning.strip(),
        created_at=now,
        resolved_at=now,
    )
