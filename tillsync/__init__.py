"""Offline-first sync and customer display relay for point-of-sale terminals."""

__version__ = "0.1.0"
