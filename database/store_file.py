"""
FileStore: JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    flows.json
    flow_versions.json
    conversations.json
    contacts.json
    messages.json
    settings.json
    appointments.json

Features:
  - Survives process restarts (unlike InMemoryStore)
  - No external dependencies (no database server)
  - Writes are flushed on every mutation, or batched with flush_interval_s
  - Single-process only (no cross-process write safety)

Best for: small clinics, demos, single-host deployments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryStore

logger = structlog.get_logger()

_COLLECTIONS = [
    "flows", "flow_versions", "conversations", "contacts",
    "messages", "settings", "appointments",
]


class FileStore(InMemoryStore):
    """
    Extends InMemoryStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))
                continue
            if not isinstance(data, dict):
                logger.warning("file_store_bad_collection", collection=collection)
                continue
            self._set_collection(collection, data)
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    def _set_collection(self, collection: str, data: dict):
        if collection == "messages":
            self._messages = defaultdict(list, data)
        else:
            setattr(self, f"_{collection}", data)

    def _get_collection_data(self, collection: str) -> Any:
        if collection == "messages":
            return dict(self._messages)
        return getattr(self, f"_{collection}", {})

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._get_collection_data(collection), f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def _mark_dirty(self, *collections: str):
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")
