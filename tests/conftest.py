"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from mdtasks.tasks.manager import TaskManager
from mdtasks.tasks.models import Project, Subtask, Task, TaskStatus

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep host MDTASKS_* variables out of the tests."""
    for name in (
        "MDTASKS_TASKS_DIR",
        "MDTASKS_LOG_LEVEL",
        "MDTASKS_EVAL_ENABLED",
        "MDTASKS_EVAL_CACHE_TTL_SECONDS",
        "MDTASKS_EVAL_MAX_CONCURRENT",
        "MDTASKS_EVAL_SKIP_READ_ONLY",
        "MDTASKS_EVAL_VERBOSE",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture()
def manager(tmp_path: Path) -> TaskManager:
    return TaskManager(tmp_path / "tasks")


@pytest.fixture()
def make_task() -> Callable[..., Task]:
    def _make(
        task_id: int,
        title: str,
        *,
        status: TaskStatus = TaskStatus.TODO,
        subtasks: tuple[tuple[str, TaskStatus], ...] = (),
        **fields,
    ) -> Task:
        fields.setdefault("created_at", FIXED_NOW)
        fields.setdefault("updated_at", FIXED_NOW)
        return Task(
            id=task_id,
            title=title,
            description=f"{title} description",
            status=status,
            subtasks=[
                Subtask(
                    title=sub_title,
                    status=sub_status,
                    created_at=FIXED_NOW,
                    updated_at=FIXED_NOW,
                )
                for sub_title, sub_status in subtasks
            ],
            **fields,
        )

    return _make


@pytest.fixture()
def make_project() -> Callable[..., Project]:
    def _make(*tasks: Task, name: str = "demo") -> Project:
        return Project(
            name=name,
            tasks=list(tasks),
            created_at=FIXED_NOW,
            updated_at=FIXED_NOW,
        )

    return _make
