"""
Process-wide store selection.

`database.store_backend` in settings.yaml picks where flows,
conversations and contacts live:
  sql     the database at `database.url` (production)
  file    JSON files under `database.store_file_dir` (single host)
  memory  dicts, lost on restart (development, tests)

    store = create_store(settings.database)   # once, at startup
    store = get_store()                        # anywhere afterwards
"""
from __future__ import annotations

import structlog
from typing import Any, Callable, Optional, Union

from config.settings import DatabaseConfig, get_settings
from database.store_base import BaseStore

logger = structlog.get_logger()

_instance: Optional[BaseStore] = None


def _sql(cfg: DatabaseConfig) -> BaseStore:
    from database.store import SqlStore
    return SqlStore()


def _file(cfg: DatabaseConfig) -> BaseStore:
    from database.store_file import FileStore
    return FileStore(data_dir=cfg.store_file_dir)


def _memory(cfg: DatabaseConfig) -> BaseStore:
    from database.store_memory import InMemoryStore
    return InMemoryStore()


BACKENDS: dict[str, Callable[[DatabaseConfig], BaseStore]] = {
    "sql": _sql,
    "file": _file,
    "memory": _memory,
}


def _as_config(config: Union[DatabaseConfig, dict[str, Any], None]) -> DatabaseConfig:
    if isinstance(config, DatabaseConfig):
        return config
    known = {k: v for k, v in (config or {}).items() if k in DatabaseConfig.__dataclass_fields__}
    return DatabaseConfig(**known)


def create_store(config: Union[DatabaseConfig, dict[str, Any], None] = None) -> BaseStore:
    """Build the configured backend once; later calls return the same store.

    Raises ValueError for an unknown backend name.
    """
    global _instance
    if _instance is not None:
        return _instance

    cfg = _as_config(config)
    builder = BACKENDS.get(cfg.store_backend)
    if builder is None:
        raise ValueError(
            f"Unknown store_backend '{cfg.store_backend}' (expected one of {sorted(BACKENDS)})"
        )

    _instance = builder(cfg)
    logger.info("store_created", backend=cfg.store_backend, store=type(_instance).__name__)
    return _instance


def get_store() -> BaseStore:
    """The process store, built from settings on first use."""
    if _instance is None:
        return create_store(get_settings().database)
    return _instance


def reset_store() -> None:
    global _instance
    _instance = None
