"""Sync state and worker scheduling."""

from sync.state import SyncStateManager
from sync.workers import KeyedWorkerPool, WorkOutcome

__all__ = ["SyncStateManager", "KeyedWorkerPool", "WorkOutcome"]
