"""Markdown-backed task store: models, serialization, rules and manager."""
