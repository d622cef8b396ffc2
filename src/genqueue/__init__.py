"""Asynchronous job orchestration for AI generation work."""

__version__ = "0.1.0"
