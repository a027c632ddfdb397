"""Alias synchronization: reconciliation, user actions and scheduling."""

from .aliases import AliasService
from .coordinator import SyncCoordinator
from .engine import ReconciliationEngine

__all__ = ["AliasService", "ReconciliationEngine", "SyncCoordinator"]
