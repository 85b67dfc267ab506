"""Cached auto-evaluation of projects around mutating operations."""

from mdtasks.evaluation.middleware import EvaluationMiddleware, EvaluationResult

__all__ = ["EvaluationMiddleware", "EvaluationResult"]
