"""Runtime configuration for the task store and evaluation middleware."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

READ_ONLY_OPERATIONS: frozenset[str] = frozenset(
    {
        "get_next_task",
        "get_task_dependencies",
        "get_tasks_needing_attention",
        "suggest_next_actions",
        "list_projects",
        "get_project_summary",
        "debug_info",
    },
)


@dataclass(slots=True)
class EvaluationSettings:
    """Automatic re-evaluation around mutating operations."""

    enabled: bool = True
    cache_ttl_seconds: float = 300.0
    max_concurrent: int = 3
    skip_read_only: bool = True
    verbose_logging: bool = False
    read_only_operations: frozenset[str] = READ_ONLY_OPERATIONS


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    tasks_dir: Path = Path("tasks")
    log_level: str = "INFO"
    evaluation: EvaluationSettings = field(default_factory=EvaluationSettings)

    @classmethod
    def from_env(cls, tasks_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        return cls(
            tasks_dir=tasks_dir or Path(os.getenv("MDTASKS_TASKS_DIR", "tasks")),
            log_level=os.getenv("MDTASKS_LOG_LEVEL", "INFO").strip().upper(),
            evaluation=EvaluationSettings(
                enabled=_env_bool("MDTASKS_EVAL_ENABLED", default=True),
                cache_ttl_seconds=float(os.getenv("MDTASKS_EVAL_CACHE_TTL_SECONDS", "300")),
                max_concurrent=int(os.getenv("MDTASKS_EVAL_MAX_CONCURRENT", "3")),
                skip_read_only=_env_bool("MDTASKS_EVAL_SKIP_READ_ONLY", default=True),
                verbose_logging=_env_bool("MDTASKS_EVAL_VERBOSE", default=False),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the middleware cannot run with."""

        if self.evaluation.cache_ttl_seconds <= 0:
            raise ValueError("MDTASKS_EVAL_CACHE_TTL_SECONDS must be > 0.")
        if self.evaluation.max_concurrent <= 0:
            raise ValueError("MDTASKS_EVAL_MAX_CONCURRENT must be a positive integer.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid MDTASKS_LOG_LEVEL: {self.log_level!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
