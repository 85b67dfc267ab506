"""Markdown serialization of projects.

The document is meant to be read and edited by humans, so the visible layout
stays close to a hand-written task list::

    # Project: demo
    <!-- project: {"created_at": "...", "updated_at": "..."} -->

    ## Task 1: [MVP] Write spec (P1) [in_progress]
    <!-- task: {"created_at": "...", "updated_at": "..."} -->

    Description paragraph.

    ### Subtasks:

    - [x] design
      <!-- subtask: {"status": "done", ...} -->

    ---

Fields without a natural markdown rendering (timestamps, choice ids, subtask
status and details, reasoning that does not fit on one line) travel in
``<!-- kind: {json} -->`` comments so that ``decode_project(encode_project(p)) == p``.
Documents written without those comments still decode; the missing values
default to decode time.

Decoding is lenient: the only hard failure is an unparsable task id, every
other malformed line is skipped.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from mdtasks.tasks.common import from_iso, generate_choice_id, utc_now
from mdtasks.tasks.errors import CorruptDocumentError
from mdtasks.tasks.models import (
    CATEGORY_LEGEND,
    PRIORITY_LEGEND,
    Choice,
    Project,
    Subtask,
    Task,
    TaskCategory,
    TaskComplexity,
    TaskPriority,
    TaskStatus,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

TITLE_PREFIX = "Project:"
UNCATEGORIZED_TAG = "GENERAL"
TASK_SEPARATOR = "---"

_TASK_HEADING = re.compile(
    r"^##\s+Task\s+(?P<id>[^:\s]+):\s*"
    r"(?:\[(?P<category>\w+)\]\s+)?"
    r"(?P<title>.+?)\s*"
    r"\((?P<priority>[^()]*)\)"
    r"(?:\s*\[(?P<status>\w+)\])?$",
)
_LEADING_TAG = re.compile(r"^\[\w+\]\s")
_CHECKBOX = re.compile(r"^-\s*\[(?P<mark>.)\]\s*(?P<text>.+)$")
_DEPENDENCY = re.compile(r"^-\s+Task\s+(?P<id>-?\d+)$")
_META = re.compile(r"^<!--\s*(?P<kind>[a-z_]+):\s*(?P<payload>\{.*\})\s*-->$")

_CHOICE_PREFIX = "**Choice:**"
_REASONING_PREFIX = "Reasoning:"
_OPTIONS_LINE = "Options:"
_HOURS_PREFIX = "Estimated hours:"
_ESCAPE = "\\"
_STRUCTURAL_PREFIXES = (
    "#",
    "-",
    _CHOICE_PREFIX,
    _OPTIONS_LINE,
    _REASONING_PREFIX,
    _HOURS_PREFIX,
    "<!--",
    _ESCAPE,
)
_SUBTASK_INDENT = "  "


# -- encoding ------------------------------------------------------------------


def encode_project(project: Project) -> str:
    """Render a project as a markdown document."""

    lines = [
        f"# {TITLE_PREFIX} {project.name}",
        _meta_line(
            "project",
            {
                "created_at": project.created_at.isoformat(),
                "updated_at": project.updated_at.isoformat(),
            },
        ),
        "",
    ]
    if project.description:
        lines.extend(_escape_block(project.description))
        lines.append("")

    lines.append("## Categories")
    lines.extend(f"- [{category.value}] {text}" for category, text in CATEGORY_LEGEND.items())
    lines.append("")
    lines.append("## Priority Levels")
    lines.extend(f"- {priority.value}: {text}" for priority, text in PRIORITY_LEGEND.items())
    lines.append("")

    for task in project.tasks:
        lines.extend(_encode_task(task))
        lines.append(TASK_SEPARATOR)
        lines.append("")

    return "\n".join(lines)


def _encode_task(task: Task) -> list[str]:
    lines = [
        task_heading(task),
        _meta_line(
            "task",
            {
                "created_at": task.created_at.isoformat(),
                "updated_at": task.updated_at.isoformat(),
            },
        ),
        "",
    ]
    if task.description:
        lines.extend(_escape_block(task.description))
        lines.append("")

    if task.dependencies:
        lines.append("### Dependencies:")
        lines.extend(f"- Task {dependency}" for dependency in task.dependencies)
        lines.append("")

    if task.complexity is not None or task.estimated_hours > 0:
        if task.complexity is not None:
            lines.append(f"### Complexity: {task.complexity.value}")
        if task.estimated_hours > 0:
            lines.append(f"{_HOURS_PREFIX} {task.estimated_hours}")
        lines.append("")

    if task.choices:
        lines.append("### Choices:")
        for choice in task.choices:
            lines.extend(_encode_choice(choice, indent=""))

    if task.subtasks:
        lines.append("### Subtasks:")
        lines.append("")
        for subtask in task.subtasks:
            mark = "x" if subtask.is_done else " "
            lines.append(f"- [{mark}] {subtask.title}")
            lines.append(
                _SUBTASK_INDENT
                + _meta_line(
                    "subtask",
                    {
                        "status": subtask.status.value,
                        "description": subtask.description,
                        "estimated_hours": subtask.estimated_hours,
                        "complexity": subtask.complexity.value if subtask.complexity else None,
                        "created_at": subtask.created_at.isoformat(),
                        "updated_at": subtask.updated_at.isoformat(),
                    },
                ),
            )
            for choice in subtask.choices:
                lines.extend(_encode_choice(choice, indent=_SUBTASK_INDENT))
        lines.append("")

    return lines


def task_heading(task: Task) -> str:
    """Heading line that opens a task block; the decoder inverts this exactly."""

    if task.category is not None:
        tag = f"[{task.category.value}] "
    elif _LEADING_TAG.match(task.title):
        tag = f"[{UNCATEGORIZED_TAG}] "
    else:
        tag = ""
    return f"## Task {task.id}: {tag}{task.title} ({task.priority.value}) [{task.status.value}]"


def _encode_choice(choice: Choice, *, indent: str) -> list[str]:
    meta: dict[str, Any] = {
        "id": choice.id,
        "created_at": choice.created_at.isoformat(),
        "resolved_at": choice.resolved_at.isoformat() if choice.resolved_at else None,
    }
    # The visible reasoning line is collapsed; the exact text rides in the metadata.
    visible_reasoning = " ".join(choice.reasoning.split())
    if visible_reasoning != choice.reasoning:
        meta["reasoning"] = choice.reasoning

    lines = [
        f"{indent}{_CHOICE_PREFIX} {choice.question}",
        indent + _meta_line("choice", meta),
        f"{indent}{_OPTIONS_LINE}",
    ]
    for option in choice.options:
        mark = "x" if choice.selected == option else " "
        lines.append(f"{indent}- [{mark}] {option}")
    if choice.reasoning:
        lines.append(f"{indent}{_REASONING_PREFIX} {visible_reasoning}".rstrip())
    lines.append("")
    return lines


def _meta_line(kind: str, payload: dict[str, Any]) -> str:
    # ASCII escapes keep line separators out of the comment; "\u003e" keeps "-->" out too.
    body = json.dumps(payload).replace(">", "\\u003e")
    return f"<!-- {kind}: {body} -->"


def _escape_block(text: str) -> list[str]:
    lines = text.split("\n")
    filled = [index for index, line in enumerate(lines) if line.strip()]
    first, last = (filled[0], filled[-1]) if filled else (len(lines), -1)
    escaped: list[str] = []
    for index, line in enumerate(lines):
        if line.strip():
            escaped.append(_escape_line(line))
        elif line or not first <= index <= last:
            # Whitespace-only lines and blank edges would be dropped by the decoder.
            escaped.append(f"{line}{_ESCAPE}")
        else:
            escaped.append(line)
    return escaped


def _escape_line(line: str) -> str:
    stripped = line.lstrip()
    if not stripped.startswith(_STRUCTURAL_PREFIXES):
        return line
    indent = len(line) - len(stripped)
    return f"{line[:indent]}{_ESCAPE}{stripped}"


def _unescape_line(raw: str) -> str:
    stripped = raw.lstrip()
    if not stripped.startswith(_ESCAPE):
        return raw
    indent = len(raw) - len(stripped)
    return raw[:indent] + stripped[1:]


# -- decoding ------------------------------------------------------------------


def decode_project(text: str, *, now: datetime | None = None) -> Project:
    """Parse a markdown document back into a project.

    Raises ``CorruptDocumentError`` only for an unparsable task id.
    """

    return _DocumentParser(now=now or utc_now()).parse(text)


class ParserState(str, Enum):
    """Where the forward scan currently is."""

    PREAMBLE = "preamble"
    REFERENCE = "reference"
    OUTSIDE_TASK = "outside_task"
    TASK_BODY = "task_body"
    IN_SUBTASKS = "in_subtasks"
    IN_CHOICES = "in_choices"


@dataclass(slots=True)
class _OpenChoice:
    choice: Choice
    owner: list[Choice]
    indented: bool
    resolved_at: datetime | None = None
    reasoning: str | None = None


class _DocumentParser:
    """Single forward scan with one handler per parser state."""

    def __init__(self, *, now: datetime) -> None:
        self._now = now
        self.project = Project(name="", created_at=now, updated_at=now)
        self.state = ParserState.PREAMBLE
        self._task: Task | None = None
        self._task_description = _TextBlock()
        self._project_description = _TextBlock()
        self._open_choice: _OpenChoice | None = None
        self._handlers: dict[ParserState, Callable[[str, str, int], None]] = {
            ParserState.PREAMBLE: self._on_preamble,
            ParserState.REFERENCE: self._on_ignored,
            ParserState.OUTSIDE_TASK: self._on_ignored,
            ParserState.TASK_BODY: self._on_task_body,
            ParserState.IN_SUBTASKS: self._on_subtasks,
            ParserState.IN_CHOICES: self._on_choices,
        }

    def parse(self, text: str) -> Project:
        for line_no, raw in enumerate(text.split("\n"), start=1):
            self._feed(raw.rstrip("\r"), line_no)
        self._finish_task()
        self.project.description = self._project_description.text()
        return self.project

    def _feed(self, raw: str, line_no: int) -> None:
        stripped = raw.strip()

        heading = _TASK_HEADING.match(stripped)
        if heading is not None:
            self._start_task(heading, line_no)
            return

        if self._open_choice is not None and self._feed_open_choice(raw, stripped):
            return

        if self._task is not None and self._feed_task_structure(stripped, line_no):
            return

        self._handlers[self.state](raw, stripped, line_no)

    # -- transitions shared by every in-task state -----------------------------

    def _start_task(self, heading: re.Match[str], line_no: int) -> None:
        self._finish_task()
        raw_id = heading.group("id")
        try:
            task_id = int(raw_id)
        except ValueError as error:
            raise CorruptDocumentError(f"invalid task ID: {raw_id}", line_no=line_no) from error

        self._task = Task(
            id=task_id,
            title=heading.group("title").strip(),
            category=_parse_enum(TaskCategory, heading.group("category"), None),
            priority=_parse_enum(TaskPriority, heading.group("priority").strip(), TaskPriority.P2),
            status=_parse_enum(TaskStatus, heading.group("status"), TaskStatus.TODO),
            created_at=self._now,
            updated_at=self._now,
        )
        self._task_description = _TextBlock()
        self.state = ParserState.TASK_BODY

    def _finish_task(self) -> None:
        self._close_choice()
        if self._task is None:
            return
        self._task.description = self._task_description.text()
        self.project.tasks.append(self._task)
        self._task = None
        self._task_description = _TextBlock()

    def _feed_task_structure(self, stripped: str, line_no: int) -> bool:
        if stripped.startswith("### "):
            self._enter_section(stripped[4:], line_no)
            return True
        if stripped == TASK_SEPARATOR:
            self._finish_task()
            self.state = ParserState.OUTSIDE_TASK
            return True
        if stripped.startswith(_HOURS_PREFIX):
            value = stripped[len(_HOURS_PREFIX) :].strip()
            try:
                self._current_task.estimated_hours = int(value)
            except ValueError:
                logger.debug("Skipping unparsable estimated hours at line %d: %r", line_no, value)
            return True
        return False

    def _enter_section(self, section: str, line_no: int) -> None:
        if section.startswith("Subtasks"):
            self.state = ParserState.IN_SUBTASKS
        elif section.startswith("Choices"):
            self.state = ParserState.IN_CHOICES
        else:
            if section.startswith("Complexity") and ":" in section:
                value = section.split(":", 1)[1].strip()
                complexity = _parse_enum(TaskComplexity, value, None)
                if complexity is None and value:
                    logger.debug("Skipping unknown complexity at line %d: %r", line_no, value)
                self._current_task.complexity = complexity
            self.state = ParserState.TASK_BODY

    @property
    def _current_task(self) -> Task:
        if self._task is None:  # pragma: no cover - guarded by callers
            raise RuntimeError("No task is open.")
        return self._task

    # -- per-state handlers ----------------------------------------------------

    def _on_preamble(self, raw: str, stripped: str, line_no: int) -> None:
        if stripped.startswith("## "):
            self.state = ParserState.REFERENCE
            return
        if stripped.startswith("# "):
            title = stripped[2:].strip()
            if title.startswith(TITLE_PREFIX):
                self.project.name = title[len(TITLE_PREFIX) :].strip()
            return
        meta = _parse_meta(stripped, "project")
        if meta is not None:
            self.project.created_at = _meta_datetime(meta, "created_at", self.project.created_at)
            self.project.updated_at = _meta_datetime(meta, "updated_at", self.project.updated_at)
            return
        self._project_description.feed(raw, stripped)

    def _on_ignored(self, raw: str, stripped: str, line_no: int) -> None:
        if stripped and self.state == ParserState.OUTSIDE_TASK:
            logger.debug("Skipping line %d outside any task: %r", line_no, stripped)

    def _on_task_body(self, raw: str, stripped: str, line_no: int) -> None:
        task = self._current_task
        meta = _parse_meta(stripped, "task")
        if meta is not None:
            task.created_at = _meta_datetime(meta, "created_at", task.created_at)
            task.updated_at = _meta_datetime(meta, "updated_at", task.updated_at)
            return
        dependency = _DEPENDENCY.match(stripped)
        if dependency is not None:
            task.dependencies.append(int(dependency.group("id")))
            return
        if stripped.startswith(_CHOICE_PREFIX):
            self._open(stripped, owner=task.choices, indented=False)
            return
        if stripped.startswith(("#", "-", "<!--")):
            logger.debug("Skipping unrecognized task line %d: %r", line_no, stripped)
            return
        self._task_description.feed(raw, stripped)

    def _on_subtasks(self, raw: str, stripped: str, line_no: int) -> None:
        task = self._current_task
        indented = raw[:1].isspace()
        checkbox = _CHECKBOX.match(stripped)
        if checkbox is not None and not indented:
            task.subtasks.append(
                Subtask(
                    title=checkbox.group("text").strip(),
                    status=TaskStatus.DONE if _is_checked(checkbox) else TaskStatus.TODO,
                    created_at=self._now,
                    updated_at=self._now,
                ),
            )
            return
        meta = _parse_meta(stripped, "subtask")
        if meta is not None and task.subtasks:
            _apply_subtask_meta(task.subtasks[-1], meta)
            return
        if stripped.startswith(_CHOICE_PREFIX):
            if indented and task.subtasks:
                self._open(stripped, owner=task.subtasks[-1].choices, indented=True)
            else:
                self._open(stripped, owner=task.choices, indented=False)
            return
        if stripped:
            logger.debug("Skipping unrecognized subtask line %d: %r", line_no, stripped)

    def _on_choices(self, raw: str, stripped: str, line_no: int) -> None:
        if stripped.startswith(_CHOICE_PREFIX):
            self._open(stripped, owner=self._current_task.choices, indented=False)
            return
        if stripped:
            logger.debug("Skipping unrecognized choice line %d: %r", line_no, stripped)

    # -- open choice -----------------------------------------------------------

    def _open(self, stripped: str, *, owner: list[Choice], indented: bool) -> None:
        self._close_choice()
        self._open_choice = _OpenChoice(
            choice=Choice(
                id=generate_choice_id(),
                question=stripped[len(_CHOICE_PREFIX) :].strip(),
                created_at=self._now,
            ),
            owner=owner,
            indented=indented,
        )

    def _feed_open_choice(self, raw: str, stripped: str) -> bool:
        """Consume a line belonging to the open choice; False closes the choice."""

        open_choice = self._open_choice
        if open_choice is None:  # pragma: no cover - guarded by caller
            return False

        meta = _parse_meta(stripped, "choice")
        if meta is not None:
            choice = open_choice.choice
            choice.id = str(meta.get("id") or choice.id)
            choice.created_at = _meta_datetime(meta, "created_at", choice.created_at)
            open_choice.resolved_at = _meta_datetime(meta, "resolved_at", None)
            reasoning = meta.get("reasoning")
            if isinstance(reasoning, str):
                open_choice.reasoning = reasoning
            return True
        if stripped == _OPTIONS_LINE:
            return True
        checkbox = _CHECKBOX.match(stripped)
        if checkbox is not None and (raw[:1].isspace() or not open_choice.indented):
            option = checkbox.group("text").strip()
            open_choice.choice.options.append(option)
            if _is_checked(checkbox):
                open_choice.choice.selected = option
            return True
        if stripped.startswith(_REASONING_PREFIX):
            open_choice.choice.reasoning = stripped[len(_REASONING_PREFIX) :].strip()
            self._close_choice()
            return True

        self._close_choice()
        return False

    def _close_choice(self) -> None:
        open_choice = self._open_choice
        if open_choice is None:
            return
        choice = open_choice.choice
        if choice.selected is not None:
            choice.resolved_at = open_choice.resolved_at or self._now
        if open_choice.reasoning is not None:
            choice.reasoning = open_choice.reasoning
        open_choice.owner.append(choice)
        self._open_choice = None


# -- helpers -------------------------------------------------------------------


def _parse_enum(
    enum_type: type[E],
    raw: str | None,
    default: E | None,
) -> E | None:
    if not raw:
        return default
    try:
        return enum_type(raw)
    except ValueError:
        return default


def _is_checked(checkbox: re.Match[str]) -> bool:
    return checkbox.group("mark") in {"x", "X"}


def _parse_meta(stripped: str, kind: str) -> dict[str, Any] | None:
    match = _META.match(stripped)
    if match is None or match.group("kind") != kind:
        return None
    try:
        payload = json.loads(match.group("payload"))
    except json.JSONDecodeError:
        logger.debug("Skipping malformed %s metadata comment", kind)
        return None
    return payload if isinstance(payload, dict) else None


def _meta_datetime(
    meta: dict[str, Any],
    key: str,
    default: datetime | None,
) -> datetime | None:
    value = meta.get(key)
    if not isinstance(value, str):
        return default
    try:
        return from_iso(value)
    except ValueError:
        return default


def _apply_subtask_meta(subtask: Subtask, meta: dict[str, Any]) -> None:
    # The checkbox wins: a ticked box is done, an un-ticked one is never done.
    status = _parse_enum(TaskStatus, meta.get("status"), None)
    if not subtask.is_done and status is not None and status != TaskStatus.DONE:
        subtask.status = status
    description = meta.get("description")
    if isinstance(description, str):
        subtask.description = description
    hours = meta.get("estimated_hours")
    if isinstance(hours, int):
        subtask.estimated_hours = hours
    subtask.complexity = _parse_enum(TaskComplexity, meta.get("complexity"), None)
    subtask.created_at = _meta_datetime(meta, "created_at", subtask.created_at) or subtask.created_at
    subtask.updated_at = _meta_datetime(meta, "updated_at", subtask.updated_at) or subtask.updated_at


@dataclass(slots=True)
class _TextBlock:
    """Free-text lines; blank lines count only once followed by more text."""

    lines: list[str] = field(default_factory=list)
    pending_blanks: int = 0

    def feed(self, raw: str, stripped: str) -> None:
        if not stripped:
            if self.lines:
                self.pending_blanks += 1
            return
        self.lines.extend([""] * self.pending_blanks)
        self.pending_blanks = 0
        self.lines.append(_unescape_line(raw))

    def text(self) -> str:
        return "\n".join(self.lines)
