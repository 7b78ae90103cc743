# sentinel/db/store.py
from __future__ import annotations
import json, asyncio, logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, List

import aiosqlite

from sentinel.utils.helpers import now_ms

log = logging.getLogger(__name__)


class KeyValueStore:
    """
    Client-resident key/value persistence.

    Values are stored as JSON text; readers get the raw text back so that they
    can decide how to treat malformed content.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = str(Path(path)) if path else ":memory:"
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self, path: Optional[str] = None):
        """
        Initialize (or re-initialize) the DB connection.
        If `path` is provided and differs from the current path, the connection is reopened.
        """
        if path and str(Path(path)) != self.path:
            await self.close()
            self.path = str(Path(path))

        if self._conn is None:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(self.path)
            self._conn.row_factory = aiosqlite.Row
            if self.path != ":memory:":
                await self._conn.execute("PRAGMA journal_mode=WAL;")
            await self._conn.commit()

        await self.execscript("""
        CREATE TABLE IF NOT EXISTS kv (
          key TEXT PRIMARY KEY,                 -- storage key, e.g. 'sentinel_users'
          value TEXT NOT NULL,                  -- JSON text
          updated_at INTEGER NOT NULL           -- ms timestamp of last write
        );
        """)
        log.info("Key/value store ready at %s", self.path)

    async def close(self):
        if self._conn:
            await self._conn.close()
            self._conn = None

    # --- low-level helpers -------------------------------------------------

    async def exec(self, sql: str, params: Tuple | Dict | List = ()):
        if not self._conn:
            await self.init()
        async with self._lock:
            await self._conn.execute(sql, params)
            await self._conn.commit()

    async def execscript(self, script: str):
        if not self._conn:
            await self.init()
        async with self._lock:
            await self._conn.executescript(script)
            await self._conn.commit()

    async def fetchone(self, sql: str, params: Tuple | Dict = ()) -> Optional[aiosqlite.Row]:
        if not self._conn:
            await self.init()
        async with self._lock:
            cur = await self._conn.execute(sql, params)
            row = await cur.fetchone()
            await cur.close()
            return row

    # --- key/value API -----------------------------------------------------

    async def get_raw(self, key: str) -> Optional[str]:
        row = await self.fetchone("SELECT value FROM kv WHERE key=?", (key,))
        return row["value"] if row else None

    async def set_raw(self, key: str, value: str):
        await self.exec(
            "INSERT INTO kv(key, value, updated_at) VALUES(?,?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
            (key, value, now_ms()),
        )

    async def set_json(self, key: str, data: Any):
        await self.set_raw(key, json.dumps(data, separators=(",", ":")))

    async def delete(self, key: str):
        await self.exec("DELETE FROM kv WHERE key=?", (key,))
