"""Pure validation helpers and canonical defaults."""

from __future__ import annotations

import re
import time
import unicodedata
from enum import Enum
from typing import TypeVar

from mdtasks.tasks.errors import (
    InvalidChoiceError,
    InvalidDescriptionError,
    InvalidEnumValueError,
    InvalidEstimateError,
    InvalidNameError,
    InvalidSubtaskCountError,
    InvalidTitleError,
)
from mdtasks.tasks.models import (
    Choice,
    TaskCategory,
    TaskComplexity,
    TaskPriority,
    TaskStatus,
)

MAX_TITLE_CHARS = 200
MAX_DESCRIPTION_CHARS = 5_000
MAX_ESTIMATED_HOURS = 1_000
MAX_SUBTASKS_PER_TASK = 50

FORBIDDEN_NAME_CHARS = ("/", "\\", ":", "*", "?", '"', "<", ">", "|")
_SANITIZE_CHARS = (*FORBIDDEN_NAME_CHARS, " ")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")
# Control characters plus the Unicode line and paragraph separators.
_LINE_BREAKING_CATEGORIES = frozenset({"Cc", "Zl", "Zp"})

E = TypeVar("E", bound=Enum)


def _validate_enum(enum_type: type[E], field: str, raw: str) -> E:
    try:
        return enum_type(raw)
    except ValueError as error:
        raise InvalidEnumValueError(
            field,
            raw,
            (member.value for member in enum_type),
        ) from error


def validate_status(raw: str) -> TaskStatus:
    return _validate_enum(TaskStatus, "status", raw)


def validate_category(raw: str) -> TaskCategory:
    return _validate_enum(TaskCategory, "category", raw)


def validate_priority(raw: str) -> TaskPriority:
    return _validate_enum(TaskPriority, "priority", raw)


def validate_complexity(raw: str) -> TaskComplexity:
    return _validate_enum(TaskComplexity, "complexity", raw)


def validate_project_name(name: str) -> None:
    """Raise ``InvalidNameError`` for blank names or filesystem-hostile characters."""

    if not name.strip():
        raise InvalidNameError("project name cannot be empty")
    for char in FORBIDDEN_NAME_CHARS:
        if char in name:
            raise InvalidNameError(f"project name contains invalid character: {char}")


def sanitize_project_name(name: str) -> str:
    """Best-effort filesystem-safe name; never fails and never returns ''."""

    sanitized = name
    for char in _SANITIZE_CHARS:
        sanitized = sanitized.replace(char, "_")
    sanitized = _REPEATED_UNDERSCORES.sub("_", sanitized).strip("_")
    if not sanitized:
        sanitized = f"project_{int(time.time())}"
    return sanitized


def has_line_breaks(text: str) -> bool:
    """True when ``text`` holds a newline, carriage return or other control character."""

    return any(unicodedata.category(char) in _LINE_BREAKING_CATEGORIES for char in text)


def validate_title(title: str) -> None:
    """Titles live on a single markdown line and are looked up by exact match.

    Raises ``InvalidTitleError`` for blank, overlong or multi-line titles and
    for titles with surrounding whitespace.
    """

    if not title.strip():
        raise InvalidTitleError("task title cannot be empty")
    if len(title) > MAX_TITLE_CHARS:
        raise InvalidTitleError(f"task title too long (max {MAX_TITLE_CHARS} characters)")
    if has_line_breaks(title):
        raise InvalidTitleError("task title cannot contain line breaks or control characters")
    if title != title.strip():
        raise InvalidTitleError("task title cannot start or end with whitespace")


def validate_description(description: str) -> None:
    if not description.strip():
        raise InvalidDescriptionError("task description cannot be empty")
    if "\r" in description:
        raise InvalidDescriptionError("task description cannot contain carriage returns")
    if len(description) > MAX_DESCRIPTION_CHARS:
        raise InvalidDescriptionError(
            f"task description too long (max {MAX_DESCRIPTION_CHARS} characters)",
        )


def is_valid_estimated_hours(hours: int) -> bool:
    return 0 <= hours <= MAX_ESTIMATED_HOURS


def validate_estimated_hours(hours: int) -> None:
    if not is_valid_estimated_hours(hours):
        raise InvalidEstimateError(
            f"estimated hours must be between 0 and {MAX_ESTIMATED_HOURS}, got {hours}",
        )


def validate_subtask_count(count: int) -> None:
    if count > MAX_SUBTASKS_PER_TASK:
        raise InvalidSubtaskCountError(
            f"too many subtasks (max {MAX_SUBTASKS_PER_TASK}, got {count})",
        )


def validate_choice(choice: Choice) -> None:
    """Question and options are single lines; a selection must be one of the options."""

    if not choice.question.strip():
        raise InvalidChoiceError("choice question cannot be empty")
    if has_line_breaks(choice.question):
        raise InvalidChoiceError("choice question cannot contain line breaks")
    if len(choice.options) < 2:
        raise InvalidChoiceError("choice must have at least 2 options")
    for index, option in enumerate(choice.options, start=1):
        if not option.strip():
            raise InvalidChoiceError(f"choice option {index} cannot be empty")
        if has_line_breaks(option):
            raise InvalidChoiceError(f"choice option {index} cannot contain line breaks")
    if choice.selected and choice.selected not in choice.options:
        raise InvalidChoiceError(
            f"selected option '{choice.selected}' is not in the available options",
        )


def default_task_status() -> TaskStatus:
    return TaskStatus.TODO


def default_task_priority() -> TaskPriority:
    return TaskPriority.P2
