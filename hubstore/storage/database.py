"""Async SQLite storage for the hub and the comparator.

Four logical stores, one table each: ``profile``, ``zcap``, ``queries``
and ``config``. Rows are JSON documents keyed by opaque IDs and are never
updated in place.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from hubstore.core.models import Profile, Query
from hubstore.exceptions import StorageError
from hubstore.zcap.models import Capability

logger = logging.getLogger("hubstore.storage")

STORES = ("profile", "zcap", "queries", "config")

SCHEMA_SQL = "\n".join(
    f"""
CREATE TABLE IF NOT EXISTS {store} (
    id TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""
    for store in STORES
)


class Database:
    """Async SQLite database wrapper."""

    def __init__(self, db_path: Path | str = "hubstore.db") -> None:
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._db

    # --- generic JSON documents ---

    async def put(self, store: str, key: str, value: dict[str, Any]) -> None:
        if store not in STORES:
            raise ValueError(f"unknown store {store}")
        try:
            await self.db.execute(
                f"INSERT INTO {store} (id, value, created_at) VALUES (?, ?, ?)",  # noqa: S608
                (key, json.dumps(value), datetime.now(timezone.utc).isoformat()),
            )
            await self.db.commit()
        except aiosqlite.IntegrityError as exc:
            raise StorageError(f"{store} entry {key} already exists") from exc
        except aiosqlite.Error as exc:
            raise StorageError(f"failed to write {store} entry") from exc

    async def put_many(self, entries: list[tuple[str, str, dict[str, Any]]]) -> None:
        """Insert ``(store, key, value)`` entries in one transaction; all or none."""
        for store, _, _ in entries:
            if store not in STORES:
                raise ValueError(f"unknown store {store}")
        now = datetime.now(timezone.utc).isoformat()
        try:
            for store, key, value in entries:
                await self.db.execute(
                    f"INSERT INTO {store} (id, value, created_at) VALUES (?, ?, ?)",  # noqa: S608
                    (key, json.dumps(value), now),
                )
            await self.db.commit()
        except aiosqlite.Error as exc:
            await self.db.rollback()
            if isinstance(exc, aiosqlite.IntegrityError):
                raise StorageError(f"duplicate entry among {len(entries)} writes") from exc
            raise StorageError("failed to write entries") from exc

    async def get(self, store: str, key: str) -> dict[str, Any] | None:
        if store not in STORES:
            raise ValueError(f"unknown store {store}")
        try:
            cursor = await self.db.execute(
                f"SELECT value FROM {store} WHERE id = ?", (key,)  # noqa: S608
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StorageError(f"failed to read {store} entry") from exc
        if row is None:
            return None
        return json.loads(row[0])

    async def count(self, store: str) -> int:
        if store not in STORES:
            raise ValueError(f"unknown store {store}")
        cursor = await self.db.execute(f"SELECT COUNT(*) FROM {store}")  # noqa: S608
        row = await cursor.fetchone()
        return row[0] if row else 0

    # --- Profile ---

    async def insert_profile(self, profile: Profile) -> None:
        await self.put("profile", profile.id, profile.model_dump())

    async def get_profile(self, profile_id: str) -> Profile | None:
        data = await self.get("profile", profile_id)
        return Profile.model_validate(data) if data is not None else None

    # --- Capability ---

    async def insert_capability(self, capability: Capability) -> None:
        await self.put("zcap", capability.id, capability.to_dict())

    async def get_capability(self, capability_id: str) -> Capability | None:
        data = await self.get("zcap", capability_id)
        return Capability.from_dict(data) if data is not None else None

    # --- Query ---

    async def insert_query(self, query: Query) -> None:
        await self.put("queries", query.id, query.model_dump(by_alias=True))

    async def get_query(self, query_id: str) -> Query | None:
        data = await self.get("queries", query_id)
        return Query.model_validate(data) if data is not None else None

    # --- Config (service identity) ---

    async def put_config(self, key: str, value: dict[str, Any]) -> None:
        await self.put("config", key, value)

    async def get_config(self, key: str) -> dict[str, Any] | None:
        return await self.get("config", key)
