"""
FileStorage — JSON file-backed storage with persistence across restarts.

Data layout:
  {data_dir}/
    users.json
    channels.json
    teams.json
    attributes.json

Features:
  - Survives process restarts (unlike InMemoryStorage)
  - Writes are flushed on every mutation, or batched with flush_interval_s
  - Single-process only (no concurrent write safety)
"""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import structlog

from database.store_base import COLLECTIONS
from database.store_memory import InMemoryStorage
from models.schemas import UserAttribute

logger = structlog.get_logger()

_FILES = (*COLLECTIONS, "attributes")


class FileStorage(InMemoryStorage):
    """
    Extends InMemoryStorage with JSON file persistence.

    On init: loads every collection from disk into memory.
    On every write: flushes the changed collection.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_storage_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, name: str) -> Path:
        return self._data_dir / f"{name}.json"

    def _load_all(self):
        for name in _FILES:
            path = self._file_path(name)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_storage_load_error", collection=name, error=str(e))
                continue
            if not isinstance(data, dict):
                continue
            if name == "attributes":
                for user_id, by_key in data.items():
                    self._attributes[user_id] = {
                        key: [UserAttribute(**a) for a in series]
                        for key, series in by_key.items()
                    }
            else:
                self._records[name] = data

    def _serialize(self, name: str) -> Any:
        if name == "attributes":
            return {
                user_id: {key: [a.model_dump() for a in series] for key, series in by_key.items()}
                for user_id, by_key in self._attributes.items()
            }
        return self._records[name]

    def _flush(self, name: str):
        path = self._file_path(name)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._serialize(name), f, indent=2, default=str)
        tmp_path.replace(path)

    def _mark_dirty(self, name: str):
        if self._flush_interval <= 0:
            self._flush(name)
            return
        self._dirty.add(name)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for name in dirty:
            self._flush(name)

    def flush_all(self):
        for name in _FILES:
            self._flush(name)
        logger.info("file_storage_flushed_all")

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self._flush_task = None
        dirty = self._dirty.copy()
        self._dirty.clear()
        for name in dirty:
            self._flush(name)
        logger.info("file_storage_closed", flushed=sorted(dirty))

    # ── Writes trigger persistence ────────────────────────

    async def save_record(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        result = await super().save_record(collection, record)
        self._mark_dirty(collection)
        return result

    async def delete_record(self, collection: str, record_id: str) -> bool:
        removed = await super().delete_record(collection, record_id)
        if removed:
            self._mark_dirty(collection)
        return removed

    async def save_attribute(self, user_id: str, key: str, value: Any) -> UserAttribute:
        attr = await super().save_attribute(user_id, key, value)
        self._mark_dirty("attributes")
        return attr
