"""Markdown-backed hierarchical task tracking for LLM clients."""

__version__ = "0.1.0"
