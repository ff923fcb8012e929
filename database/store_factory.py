"""
Process-wide CRM store selection.

`database.store_backend` picks the backend:

    sql     SqlCrmStore, on `database.url`
    file    FileCrmStore, JSON snapshots under `database.store_file_dir`
    memory  InMemoryCrmStore (also the fallback for unknown names)

The first `create_store` call wins; later calls return the same instance
until `reset_store()`.
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from database.store_base import BaseCrmStore

logger = structlog.get_logger()

_instance: Optional[BaseCrmStore] = None


def _sql(config: dict) -> BaseCrmStore:
    from database.store import SqlCrmStore
    return SqlCrmStore()


def _file(config: dict) -> BaseCrmStore:
    from database.store_file import FileCrmStore
    return FileCrmStore(data_dir=config.get("store_file_dir", "./data"))


def _memory(config: dict) -> BaseCrmStore:
    from database.store_memory import InMemoryCrmStore
    return InMemoryCrmStore()


_BACKENDS: dict[str, Callable[[dict], BaseCrmStore]] = {
    "sql": _sql,
    "file": _file,
    "memory": _memory,
}


def create_store(config: dict = None) -> BaseCrmStore:
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    requested = config.get("store_backend", "memory")
    backend = requested if requested in _BACKENDS else "memory"
    if backend != requested:
        logger.warning("store_backend_unknown", requested=requested, using=backend)

    _instance = _BACKENDS[backend](config)
    logger.info("store_created", backend=backend, store=type(_instance).__name__)
    return _instance


def get_store() -> BaseCrmStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    global _instance
    _instance = None
