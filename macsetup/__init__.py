"""Parallel Homebrew application installer with retries and rollback."""

__version__ = "0.1.0"
