"""Automatic project re-evaluation around mutating operations.

Before a mutating operation runs, the middleware reconciles task statuses for
the target project (persisting only when something changed) and scans for
work needing attention. Results are memoized per project for a TTL, and at
most ``max_concurrent`` fresh evaluations run at once. Evaluation is a
best-effort enhancement: its failures are logged and never fail the wrapped
operation.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from mdtasks.config import Settings
from mdtasks.tasks.common import utc_now
from mdtasks.tasks.errors import EvaluationCancelled, NotFoundError, TaskStoreError
from mdtasks.tasks.manager import TaskManager
from mdtasks.tasks.models import TaskAttention
from mdtasks.tasks.rules import auto_update_task_statuses, get_tasks_needing_attention

if TYPE_CHECKING:
    from mdtasks.tools import ToolResult

logger = logging.getLogger(__name__)

PROJECT_NAME_ARGUMENT = "project_name"
EVALUATION_KEY = "auto_evaluation"
_SLOT_POLL_SECONDS = 0.05

ToolHandler = Callable[..., "ToolResult"]


@dataclass(slots=True)
class EvaluationResult:
    """Outcome of one evaluation pass over a project."""

    project_name: str
    updates_applied: list[str] = field(default_factory=list)
    attention_items: list[TaskAttention] = field(default_factory=list)
    evaluation_time: datetime = field(default_factory=utc_now)
    processing_time: float = 0.0
    cache_hit: bool = False

    def as_cache_hit(self) -> EvaluationResult:
        return dataclasses.replace(
            self,
            updates_applied=list(self.updates_applied),
            attention_items=list(self.attention_items),
            cache_hit=True,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "project_name": self.project_name,
            "updates_applied": list(self.updates_applied),
            "attention_count": len(self.attention_items),
            "processing_time": _format_duration(self.processing_time),
            "cache_hit": self.cache_hit,
            "evaluation_time": self.evaluation_time.isoformat(timespec="seconds"),
        }
        if self.attention_items:
            payload["attention_items"] = [
                {"task_title": item.task_title, "reason": item.reason, "type": item.type.value}
                for item in self.attention_items
            ]
        return payload

    def to_markdown(self) -> str:
        lines = [
            "**Auto-Evaluation Summary**",
            f"Project: {self.project_name}",
            f"Processing Time: {_format_duration(self.processing_time)}",
            f"Source: {'Cache' if self.cache_hit else 'Fresh evaluation'}",
        ]
        if self.updates_applied:
            lines.append("")
            lines.append(f"**Updates Applied ({len(self.updates_applied)}):**")
            lines.extend(f"- {update}" for update in self.updates_applied)
        if self.attention_items:
            lines.append("")
            lines.append(f"**Tasks Needing Attention ({len(self.attention_items)}):**")
            lines.extend(f"- {item.task_title}: {item.reason}" for item in self.attention_items)
        if not self.updates_applied and not self.attention_items:
            lines.append("")
            lines.append("All tasks are up-to-date and no attention needed.")
        return "\n".join(lines) + "\n"


@dataclass(slots=True)
class _CacheEntry:
    result: EvaluationResult
    stored_at: float


class EvaluationMiddleware:
    """Wraps operation handlers with a cached, rate-limited evaluation pass.

    The cache lock and the store lock are never held at the same time: store
    I/O happens outside ``_cache_lock`` and the cache is only touched before
    and after it.
    """

    def __init__(
        self,
        manager: TaskManager,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manager = manager
        self._settings = settings.evaluation
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._cache_lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(self._settings.max_concurrent)
        self._sweep_stop = threading.Event()
        self._sweep_thread: threading.Thread | None = None

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if self._sweep_thread is not None:
            return
        self._sweep_stop.clear()
        self._sweep_thread = threading.Thread(
            target=self._sweep_loop,
            daemon=True,
            name="mdtasks-eval-sweep",
        )
        self._sweep_thread.start()
        logger.debug("Evaluation cache sweep thread started")

    def close(self) -> None:
        if self._sweep_thread is None:
            return
        self._sweep_stop.set()
        self._sweep_thread.join(timeout=5)
        self._sweep_thread = None
        logger.debug("Evaluation cache sweep thread stopped")

    def __enter__(self) -> EvaluationMiddleware:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _sweep_loop(self) -> None:
        while not self._sweep_stop.wait(timeout=self._settings.cache_ttl_seconds):
            evicted = self.sweep_expired()
            if evicted:
                logger.debug("Evicted %d expired evaluation cache entries", evicted)

    def sweep_expired(self) -> int:
        """Drop cache entries older than the TTL; returns how many were evicted."""

        now = self._clock()
        ttl = self._settings.cache_ttl_seconds
        with self._cache_lock:
            expired = [
                name for name, entry in self._cache.items() if now - entry.stored_at > ttl
            ]
            for name in expired:
                del self._cache[name]
        return len(expired)

    # -- wrapping --------------------------------------------------------------

    def should_evaluate(self, operation: str) -> bool:
        if not self._settings.enabled:
            return False
        return not (
            self._settings.skip_read_only and operation in self._settings.read_only_operations
        )

    def wrap(self, operation: str, handler: ToolHandler) -> ToolHandler:
        """Return ``handler`` guarded by an evaluation of the target project."""

        def wrapped(
            arguments: Mapping[str, Any],
            *,
            cancel: threading.Event | None = None,
        ) -> ToolResult:
            if not self.should_evaluate(operation):
                return handler(arguments)
            project_name = arguments.get(PROJECT_NAME_ARGUMENT)
            if not isinstance(project_name, str) or not project_name:
                return handler(arguments)

            evaluation = self._evaluate_quietly(operation, project_name, cancel)
            result = handler(arguments)
            if evaluation is None or result.is_error:
                return result
            return self.enhance_result(result, evaluation)

        wrapped.__name__ = getattr(handler, "__name__", operation)
        wrapped.__doc__ = handler.__doc__
        return wrapped

    def _evaluate_quietly(
        self,
        operation: str,
        project_name: str,
        cancel: threading.Event | None,
    ) -> EvaluationResult | None:
        try:
            return self.evaluate_project(project_name, cancel=cancel)
        except (TaskStoreError, OSError) as error:
            log = logger.warning if self._settings.verbose_logging else logger.debug
            log("Auto-evaluation before %s failed for %s: %s", operation, project_name, error)
            return None

    @staticmethod
    def enhance_result(result: ToolResult, evaluation: EvaluationResult) -> ToolResult:
        """Attach the evaluation summary to a successful result."""

        if isinstance(result.payload, Mapping):
            payload: dict[str, Any] | str = {
                **result.payload,
                EVALUATION_KEY: evaluation.to_dict(),
            }
        else:
            payload = f"{result.payload}\n\n{evaluation.to_markdown()}"
        return dataclasses.replace(result, payload=payload)

    # -- evaluation ------------------------------------------------------------

    def evaluate_project(
        self,
        project_name: str,
        *,
        cancel: threading.Event | None = None,
    ) -> EvaluationResult:
        """Reconcile and scan a project, or serve the memoized result within the TTL.

        Raises ``EvaluationCancelled`` when ``cancel`` fires while waiting for
        a concurrency slot, and ``NotFoundError`` for an unknown project.
        """

        cached = self._cached(project_name)
        if cached is not None:
            return cached

        self._acquire_slot(project_name, cancel)
        try:
            result = self._evaluate_fresh(project_name)
        finally:
            self._slots.release()

        with self._cache_lock:
            self._cache[project_name] = _CacheEntry(result=result, stored_at=self._clock())
        return result

    def _cached(self, project_name: str) -> EvaluationResult | None:
        with self._cache_lock:
            entry = self._cache.get(project_name)
            if entry is None:
                return None
            if self._clock() - entry.stored_at >= self._settings.cache_ttl_seconds:
                return None
            return entry.result.as_cache_hit()

    def _acquire_slot(self, project_name: str, cancel: threading.Event | None) -> None:
        if cancel is None:
            self._slots.acquire()
            return
        while not self._slots.acquire(timeout=_SLOT_POLL_SECONDS):
            if cancel.is_set():
                raise EvaluationCancelled(project_name)

    def _evaluate_fresh(self, project_name: str) -> EvaluationResult:
        started = self._clock()
        evaluation_time = utc_now()
        if not self._manager.project_exists(project_name):
            raise NotFoundError("project", project_name)

        project = self._manager.load_project(project_name)
        changes, changed = auto_update_task_statuses(project)
        if changed:
            self._manager.save_project(project)
            logger.info(
                "Auto-evaluation applied %d updates to project %s",
                len(changes),
                project_name,
            )
        attention = get_tasks_needing_attention(project)
        return EvaluationResult(
            project_name=project_name,
            updates_applied=changes,
            attention_items=attention,
            evaluation_time=evaluation_time,
            processing_time=max(self._clock() - started, 0.0),
        )

    def stats(self) -> dict[str, Any]:
        with self._cache_lock:
            cached_projects = sorted(self._cache)
        return {
            "enabled": self._settings.enabled,
            "cache_ttl_seconds": self._settings.cache_ttl_seconds,
            "max_concurrent": self._settings.max_concurrent,
            "skip_read_only": self._settings.skip_read_only,
            "cached_projects": cached_projects,
            "sweeping": self._sweep_thread is not None,
        }


def _format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.1f}ms"
    return f"{seconds:.2f}s"
