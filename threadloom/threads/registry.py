# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .store import SQLiteThreadStore

logger = logging.getLogger(__name__)

DB_FILE_NAME = "threadloom.db"


class StoreRegistry:
    """Hands out exactly one initialised store per backing-store root."""

    def __init__(self, *, busy_timeout_ms: int = 5000) -> None:
        self._busy_timeout_ms = busy_timeout_ms
        self._stores: dict[str, SQLiteThreadStore] = {}
        self._lock = asyncio.Lock()

    async def get(self, root: str | Path) -> SQLiteThreadStore:
        key = str(Path(root).resolve())
        async with self._lock:
            store = self._stores.get(key)
            if store is None:
                store = SQLiteThreadStore(Path(key) / DB_FILE_NAME, busy_timeout_ms=self._busy_timeout_ms)
                await store.init()
                self._stores[key] = store
            return store

    def __len__(self) -> int:
        return len(self._stores)

    async def close(self) -> None:
        async with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            try:
                await store.close()
            except Exception:  # pragma: no cover - best effort on shutdown
                logger.exception("Failed to close thread store %s", store.db_path)
