"""Persistence layer for procflow instances.

Backends are chosen by the scheme of a database URL:

* no URL or ``memory://`` keeps instances in process memory
* ``sqlite://<path>`` stores them in a SQLite file
* ``postgres://`` and ``postgresql://`` use asyncpg
"""

from __future__ import annotations

from typing import Callable, Optional

from ..config import ProcflowConfig, load_config
from .inmemory import InMemoryInstanceStore
from .repository import InstanceStore
from .sqlite import SQLiteInstanceStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresInstanceStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresInstanceStore = None  # type: ignore

_store_instance: InstanceStore | None = None


def _open_postgres(url: str, _location: str) -> InstanceStore:
    if PostgresInstanceStore is None:
        raise RuntimeError("Postgres support not available, install asyncpg")
    return PostgresInstanceStore(url)


_BACKENDS: dict[str, Callable[[str, str], InstanceStore]] = {
    "memory": lambda _url, _location: InMemoryInstanceStore(),
    "sqlite": lambda _url, location: SQLiteInstanceStore(location),
    "postgres": _open_postgres,
    "postgresql": _open_postgres,
}


def open_store(database_url: Optional[str]) -> InstanceStore:
    """Build a new store for ``database_url``.

    Raises:
        ValueError: The URL scheme names no known backend.
    """
    if not database_url:
        return InMemoryInstanceStore()
    scheme, sep, location = database_url.partition("://")
    backend = _BACKENDS.get(scheme.lower()) if sep else None
    if backend is None:
        raise ValueError(f"Unsupported database backend: {database_url}")
    return backend(database_url, location)


def get_store(
    database_url: Optional[str] = None, config: Optional[ProcflowConfig] = None
) -> InstanceStore:
    """Return the process-wide store, opening it on first use.

    An explicit ``database_url`` or ``config`` always opens a fresh store
    that then becomes the shared one. Otherwise the URL comes from
    :func:`~procflow.config.load_config`, which applies the
    ``PROCFLOW_DATABASE_URL``/``DATABASE_URL`` overrides.
    """
    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance
    if database_url is None:
        database_url = (config or load_config()).database_url
    _store_instance = open_store(database_url)
    return _store_instance


__all__ = [
    "InstanceStore",
    "InMemoryInstanceStore",
    "SQLiteInstanceStore",
    "PostgresInstanceStore",
    "get_store",
    "open_store",
]
