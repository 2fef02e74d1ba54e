"""Storage module."""

from storage.sqlite import SQLiteVersionStore, version_id_for

__all__ = ["SQLiteVersionStore", "version_id_for"]
