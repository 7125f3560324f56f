"""SQLite store for the persisted orchestrator state (registry + routing cache)."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Union

import aiosqlite

from .models.session import now_ms
from .types import PersistedState, RegistrySnapshot

logger = logging.getLogger(__name__)

STATE_KEY = "edge-worker"


class SnapshotStore:
    """
    Keeps one JSON document per state key.

    The document holds the serialized session registry and the routing cache;
    each save replaces the previous one wholesale.
    """

    def __init__(self, db_path: Union[str, Path], key: str = STATE_KEY):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.key = key
        self._initialized = False
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema (idempotent)."""
        async with self._lock:
            if self._initialized:
                return

            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS snapshots (
                        state_key TEXT PRIMARY KEY,
                        document TEXT NOT NULL,
                        saved_at INTEGER NOT NULL
                    )
                """)
                await db.commit()

            self._initialized = True
            logger.info(f"Snapshot store initialized at {self.db_path}")

    async def save(
        self, registry: RegistrySnapshot, routing_cache: Optional[Dict[str, str]] = None
    ) -> int:
        """
        Replace the stored document.

        Returns:
            The ``saved_at`` timestamp (epoch ms) written
        """
        await self.initialize()

        saved_at = now_ms()
        document: PersistedState = {
            "registry": registry,
            "routing_cache": dict(routing_cache or {}),
            "saved_at": saved_at,
        }

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO snapshots (state_key, document, saved_at)
                VALUES (?, ?, ?)
                ON CONFLICT(state_key) DO UPDATE SET
                    document = excluded.document,
                    saved_at = excluded.saved_at
                """,
                (self.key, json.dumps(document), saved_at),
            )
            await db.commit()

        logger.debug(
            f"Saved snapshot: {len(registry['sessions'])} session(s), "
            f"{len(document['routing_cache'])} cached route(s)"
        )
        return saved_at

    async def load(self) -> Optional[PersistedState]:
        """Return the stored document, or None if nothing was saved yet."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT document FROM snapshots WHERE state_key = ?", (self.key,)
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return None
        document: PersistedState = json.loads(row[0])
        return document

    async def clear(self) -> None:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM snapshots WHERE state_key = ?", (self.key,))
            await db.commit()
        logger.info(f"Cleared snapshot {self.key}")
