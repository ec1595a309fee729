"""Terminal-side storage."""

from .local_store import LocalStore

__all__ = ["LocalStore"]
