"""CLI entrypoint for mdtasks."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from mdtasks import __version__
from mdtasks.config import Settings
from mdtasks.controllers import (
    AddTaskCommand,
    AttentionCommand,
    CreateProjectCommand,
    DependenciesCommand,
    ListProjectsCommand,
    ProjectCommand,
    SuggestCommand,
    TaskCliController,
    TaskCommandError,
    UpdateStatusCommand,
)
from mdtasks.tasks.errors import TaskStoreError
from mdtasks.tasks.models import (
    AttentionType,
    TaskCategory,
    TaskComplexity,
    TaskPriority,
    TaskStatus,
)

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()

_tasks_dir_option = click.option(
    "--tasks-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding project documents (default: MDTASKS_TASKS_DIR or ./tasks).",
)


def _choices(enum_type: type) -> click.Choice:
    return click.Choice([member.value for member in enum_type])


@click.group()
@click.version_option(version=__version__, prog_name="mdtasks")
def mdtasks() -> None:
    """Markdown task tracker CLI."""

    try:
        settings = Settings.from_env()
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    logging.basicConfig(
        level=settings.log_level,
        format="%(levelname)s %(name)s: %(message)s",
    )


@mdtasks.command("projects")
@_tasks_dir_option
def list_projects(tasks_dir: Path | None) -> None:
    """List projects in the tasks directory."""

    _run(lambda: TASK_CONTROLLER.list_projects(ListProjectsCommand(tasks_dir=tasks_dir)))


@mdtasks.command("create")
@_tasks_dir_option
@click.argument("project_name")
@click.option("--description", default="", help="Optional project description.")
def create_project(tasks_dir: Path | None, project_name: str, description: str) -> None:
    """Create an empty project document."""

    _run(
        lambda: TASK_CONTROLLER.create_project(
            CreateProjectCommand(
                tasks_dir=tasks_dir,
                project_name=project_name,
                description=description,
            ),
        ),
    )


@mdtasks.command("add")
@_tasks_dir_option
@click.argument("project_name")
@click.argument("title")
@click.option("--description", "-d", required=True, help="Task description.")
@click.option("--category", type=_choices(TaskCategory), default=None, help="Category tag.")
@click.option("--priority", type=_choices(TaskPriority), default=None, help="Priority (P2).")
@click.option("--complexity", type=_choices(TaskComplexity), default=None, help="Complexity.")
@click.option(
    "--hours",
    "estimated_hours",
    type=click.IntRange(min=0, max=1000),
    default=0,
    show_default=True,
    help="Estimated hours.",
)
@click.option("--subtask", "subtasks", multiple=True, help="Subtask title. Can be repeated.")
@click.option(
    "--depends-on",
    "dependencies",
    type=int,
    multiple=True,
    help="ID of a task this one depends on. Can be repeated.",
)
def add_task(  # noqa: PLR0913
    tasks_dir: Path | None,
    project_name: str,
    title: str,
    description: str,
    category: str | None,
    priority: str | None,
    complexity: str | None,
    estimated_hours: int,
    subtasks: tuple[str, ...],
    dependencies: tuple[int, ...],
) -> None:
    """Append a task to a project."""

    _run(
        lambda: TASK_CONTROLLER.add_task(
            AddTaskCommand(
                tasks_dir=tasks_dir,
                project_name=project_name,
                title=title,
                description=description,
                category=category,
                priority=priority,
                complexity=complexity,
                estimated_hours=estimated_hours,
                subtasks=subtasks,
                dependencies=dependencies,
            ),
        ),
    )


@mdtasks.command("status")
@_tasks_dir_option
@click.argument("project_name")
@click.argument("task_title")
@click.argument("status", type=_choices(TaskStatus))
@click.option("--subtask", "subtask_title", default=None, help="Update this subtask instead.")
def update_status(
    tasks_dir: Path | None,
    project_name: str,
    task_title: str,
    status: str,
    subtask_title: str | None,
) -> None:
    """Set the status of a task or subtask, cascading completion."""

    _run(
        lambda: TASK_CONTROLLER.update_status(
            UpdateStatusCommand(
                tasks_dir=tasks_dir,
                project_name=project_name,
                task_title=task_title,
                status=status,
                subtask_title=subtask_title,
            ),
        ),
    )


@mdtasks.command("next")
@_tasks_dir_option
@click.argument("project_name")
def next_task(tasks_dir: Path | None, project_name: str) -> None:
    """Show the next task or subtask to work on."""

    _run(
        lambda: TASK_CONTROLLER.next_task(
            ProjectCommand(tasks_dir=tasks_dir, project_name=project_name),
        ),
    )


@mdtasks.command("attention")
@_tasks_dir_option
@click.argument("project_name")
@click.option(
    "--type",
    "attention_type",
    type=_choices(AttentionType),
    default=None,
    help="Only show this attention type.",
)
def attention(tasks_dir: Path | None, project_name: str, attention_type: str | None) -> None:
    """List overrun, stale and never-started work."""

    _run(
        lambda: TASK_CONTROLLER.attention(
            AttentionCommand(
                tasks_dir=tasks_dir,
                project_name=project_name,
                attention_type=attention_type,
            ),
        ),
    )


@mdtasks.command("deps")
@_tasks_dir_option
@click.argument("project_name")
@click.option("--task", "task_title", default=None, help="Inspect a single task.")
@click.option(
    "--dependents/--no-dependents",
    "include_dependents",
    default=False,
    show_default=True,
    help="Also list tasks that depend on --task.",
)
def dependencies(
    tasks_dir: Path | None,
    project_name: str,
    task_title: str | None,
    include_dependents: bool,
) -> None:
    """Show task dependencies and circular references."""

    _run(
        lambda: TASK_CONTROLLER.dependencies(
            DependenciesCommand(
                tasks_dir=tasks_dir,
                project_name=project_name,
                task_title=task_title,
                include_dependents=include_dependents,
            ),
        ),
    )


@mdtasks.command("suggest")
@_tasks_dir_option
@click.argument("project_name")
@click.option("--focus", "focus_area", type=_choices(TaskCategory), default=None)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=50),
    default=5,
    show_default=True,
    help="How many suggestions to print.",
)
@click.option(
    "--include-blocked/--skip-blocked",
    default=False,
    show_default=True,
    help="Consider blocked tasks too.",
)
def suggest(
    tasks_dir: Path | None,
    project_name: str,
    focus_area: str | None,
    limit: int,
    include_blocked: bool,
) -> None:
    """Rank open tasks by priority and readiness."""

    _run(
        lambda: TASK_CONTROLLER.suggest(
            SuggestCommand(
                tasks_dir=tasks_dir,
                project_name=project_name,
                focus_area=focus_area,
                limit=limit,
                include_blocked=include_blocked,
            ),
        ),
    )


@mdtasks.command("evaluate")
@_tasks_dir_option
@click.argument("project_name")
def evaluate(tasks_dir: Path | None, project_name: str) -> None:
    """Reconcile task statuses and report work needing attention."""

    _run(
        lambda: TASK_CONTROLLER.evaluate(
            ProjectCommand(tasks_dir=tasks_dir, project_name=project_name),
        ),
    )


@mdtasks.command("show")
@_tasks_dir_option
@click.argument("project_name")
def show(tasks_dir: Path | None, project_name: str) -> None:
    """Print a project overview."""

    _run(
        lambda: TASK_CONTROLLER.show(
            ProjectCommand(tasks_dir=tasks_dir, project_name=project_name),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (TaskCommandError, TaskStoreError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    mdtasks()
