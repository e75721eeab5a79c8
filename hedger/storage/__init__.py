"""Persistence backends for positions and orders."""

from hedger.storage.memory import InMemoryStore

__all__ = ["InMemoryStore", "create_store"]


def create_store(backend: str):
    """Build the store named by *backend* ("memory" or "clickhouse")."""
    if backend == "memory":
        return InMemoryStore()
    if backend == "clickhouse":
        from hedger.storage.clickhouse_store import ClickHouseStore

        return ClickHouseStore()
    raise ValueError(f"Unknown storage backend: {backend}")
