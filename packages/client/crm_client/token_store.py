"""
SQLite persistence for the signed-in identity's token, one row per server.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone

import aiosqlite

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tokens (
    server_url  TEXT PRIMARY KEY,
    token       TEXT NOT NULL,
    user_id     TEXT NOT NULL,
    expires_at  TEXT NOT NULL,
    saved_at    TEXT NOT NULL
);
"""


@dataclass(frozen=True)
class StoredToken:
    server_url: str
    token: str
    user_id: str
    expires_at: datetime

    @property
    def expired(self) -> bool:
        return self.expires_at <= datetime.now(timezone.utc)


class TokenStore:
    """Async SQLite token store."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def save(self, server_url: str, token: str, user_id: str, expires_at: datetime) -> None:
        assert self._db
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        now = datetime.now(timezone.utc).isoformat()
        await self._db.execute(
            """INSERT INTO tokens (server_url, token, user_id, expires_at, saved_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(server_url) DO UPDATE SET
                   token=excluded.token, user_id=excluded.user_id,
                   expires_at=excluded.expires_at, saved_at=excluded.saved_at""",
            (server_url, token, user_id, expires_at.isoformat(), now),
        )
        await self._db.commit()

    async def load(self, server_url: str) -> StoredToken | None:
        """Return the stored token, or None if absent or expired."""
        assert self._db
        cursor = await self._db.execute(
            "SELECT * FROM tokens WHERE server_url = ?", (server_url,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        stored = StoredToken(
            server_url=row["server_url"],
            token=row["token"],
            user_id=row["user_id"],
            expires_at=datetime.fromisoformat(row["expires_at"]),
        )
        if stored.expired:
            await self.clear(server_url)
            return None
        return stored

    async def clear(self, server_url: str) -> None:
        assert self._db
        await self._db.execute("DELETE FROM tokens WHERE server_url = ?", (server_url,))
        await self._db.commit()
