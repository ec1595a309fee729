"""Sync gateway server: shared store, push/pull gateway and HTTP surface."""

from .app import create_app
from .gateway import SyncGateway
from .shared_store import ChangeRejectedError, SharedStore

__all__ = ["ChangeRejectedError", "SharedStore", "SyncGateway", "create_app"]
