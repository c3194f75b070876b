"""Data access layer for healing run storage."""

from .repository import HealingRepository, SqliteHealingRepository, counter_increments
from .memory import InMemoryHealingRepository
from .snapshot_store import (
    FileSnapshotStore, InMemorySnapshotStore, SnapshotStore, snapshot_name,
)


def create_repository(database_url: str) -> HealingRepository:
    """Build the repository named by the DATABASE_URL setting."""
    if not database_url or database_url == "memory":
        return InMemoryHealingRepository()
    repository = SqliteHealingRepository(database_url)
    repository.initialize_schema()
    return repository


def create_snapshot_store(snapshot_dir: str) -> SnapshotStore:
    """Build the snapshot store named by the SNAPSHOT_DIR setting."""
    if not snapshot_dir:
        return InMemorySnapshotStore()
    return FileSnapshotStore(snapshot_dir)


__all__ = [
    "HealingRepository",
    "SqliteHealingRepository",
    "InMemoryHealingRepository",
    "SnapshotStore",
    "InMemorySnapshotStore",
    "FileSnapshotStore",
    "snapshot_name",
    "counter_increments",
    "create_repository",
    "create_snapshot_store",
]
