"""Persistence backends."""

from typing import Optional

from wamux.store.base import Store, strip_unknown_column
from wamux.store.memory import MemoryStore


def create_store(database_url: Optional[str]) -> Store:
    """
    Build the store for the configured database URL.

    Without a URL the process keeps everything in memory.
    """
    if database_url:
        from wamux.store.postgres import PostgresStore

        return PostgresStore(database_url)
    return MemoryStore()


__all__ = ["Store", "MemoryStore", "create_store", "strip_unknown_column"]
