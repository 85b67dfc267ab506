"""Error taxonomy for the task store and evaluation layer."""

from __future__ import annotations

from collections.abc import Iterable


class TaskStoreError(RuntimeError):
    """Base class for every failure reported by the task store."""


class ValidationError(TaskStoreError, ValueError):
    """Caller-correctable bad field value, detected before any I/O."""


class InvalidNameError(ValidationError):
    """Project name is empty or contains filesystem-hostile characters."""


class InvalidTitleError(ValidationError):
    """Task or subtask title is empty, too long or not a single clean line."""


class InvalidSubtaskCountError(ValidationError):
    """No subtasks where some are required, or more than a task may hold."""


class InvalidDescriptionError(ValidationError):
    """Task description is empty or too long."""


class InvalidChoiceError(ValidationError):
    """Choice question, options or selection are inconsistent."""


class InvalidEstimateError(ValidationError):
    """Estimated hours outside the accepted range."""


class InvalidEnumValueError(ValidationError):
    """Raw value does not belong to the fixed value set of a field."""

    def __init__(self, field: str, value: str, legal_values: Iterable[str]) -> None:
        self.field = field
        self.value = value
        self.legal_values = tuple(legal_values)
        super().__init__(
            f"invalid task {field}: {value}. Valid options: {', '.join(self.legal_values)}",
        )


class AlreadyExistsError(TaskStoreError):
    """Project document already exists."""

    def __init__(self, project_name: str, path: str) -> None:
        super().__init__(f"project file already exists: {path}")
        self.project_name = project_name
        self.path = path


class NotFoundError(TaskStoreError):
    """Missing project, task or subtask."""

    def __init__(self, kind: str, name: str, *, scope: str | None = None) -> None:
        message = f"{kind} '{name}' not found"
        if scope:
            message += f" in {scope}"
        super().__init__(message)
        self.kind = kind
        self.name = name


class CorruptDocumentError(TaskStoreError):
    """Stored document cannot be decoded."""

    def __init__(self, message: str, *, line_no: int | None = None) -> None:
        if line_no is not None:
            message = f"line {line_no}: {message}"
        super().__init__(message)
        self.line_no = line_no


class StorageError(TaskStoreError):
    """Underlying filesystem failure, annotated with project and operation."""

    def __init__(self, operation: str, project_name: str, cause: OSError) -> None:
        super().__init__(f"{operation} failed for project '{project_name}': {cause}")
        self.operation = operation
        self.project_name = project_name


class AllTasksCompleted(TaskStoreError):  # noqa: N818
    """Terminal signal: every task in the project is fully completed.

    Reported through the error channel but callers must treat it as a
    successful, empty result.
    """

    def __init__(self, project_name: str) -> None:
        super().__init__(f"all tasks completed in project '{project_name}'")
        self.project_name = project_name


class EvaluationCancelled(TaskStoreError):  # noqa: N818
    """Evaluation aborted while waiting for a concurrency slot."""

    def __init__(self, project_name: str) -> None:
        super().__init__(f"evaluation of project '{project_name}' was cancelled")
        self.project_name = project_name
