"""
Storage Factory — Create the right storage backend from configuration.

Configuration in settings.yaml:
    storage:
      # "memory" : In-memory dicts (development, testing)
      # "file"   : JSON files on disk (small deployments, demos)
      # "none"   : no persistence; attribute reads and writes are skipped
      backend: "memory"
      file_dir: "./data"

Usage:
    from database.store_factory import create_storage
    storage = create_storage(settings.storage)
"""
from __future__ import annotations

from typing import Optional

import structlog

from config.settings import StorageConfig
from database.store_base import BaseStorage

logger = structlog.get_logger()


def create_storage(config: Optional[StorageConfig] = None) -> Optional[BaseStorage]:
    """Factory: build a fresh storage backend. Returns None for "none"."""
    config = config or StorageConfig()
    backend = config.backend

    if backend == "none":
        logger.info("storage_disabled")
        return None

    if backend == "file":
        from database.store_file import FileStorage
        logger.info("storage_created", backend="file", data_dir=config.file_dir)
        return FileStorage(data_dir=config.file_dir)

    from database.store_memory import InMemoryStorage
    logger.info("storage_created", backend="memory")
    return InMemoryStorage()
