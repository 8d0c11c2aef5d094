"""
shomer/store — SQLite storage boundary.
"""

from shomer.store.sqlite_store import SqliteStore, alert_dedupe_key

__all__ = ["SqliteStore", "alert_dedupe_key"]
