"""SQLite warm-start snapshot of the last good value per key.

Purely an optimisation: the hub is correct with an empty or missing
snapshot, it just serves nothing until the first probes return.
"""

import json
import os
from datetime import UTC, datetime
from typing import Any, Optional

import aiosqlite

from uma.hub.cache import CacheEntry
from uma.hub.payloads import kind_of, parse_payload, to_wire


class SnapshotStore:
    """Persists cache payloads so a restarted hub can serve stale values."""

    def __init__(self, db_path: str):
        """Initialize snapshot store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def initialize(self):
        """Open the database and create the schema."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row

        # Enable WAL mode for concurrent reads + busy timeout for lock contention
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA busy_timeout=5000")

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS cache_snapshot (
                key TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                data TEXT NOT NULL,
                fetched_at TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                saved_at TEXT NOT NULL
            )
        """)
        await self._conn.commit()

    async def close(self):
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def save(self, entries: list[CacheEntry]) -> int:
        """Upsert the payload of every entry that has one.

        Returns:
            Number of rows written
        """
        if not self._conn:
            raise RuntimeError("Snapshot store not initialized")

        saved_at = datetime.now(tz=UTC).isoformat()
        rows = [
            (
                entry.key,
                kind_of(entry.payload),
                json.dumps(to_wire(entry.payload), default=str),
                entry.fetched_at.isoformat(),
                entry.sequence,
                saved_at,
            )
            for entry in entries
            if entry.has_value
        ]
        if not rows:
            return 0

        await self._conn.executemany(
            """
            INSERT INTO cache_snapshot (key, kind, data, fetched_at, sequence, saved_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                kind = excluded.kind,
                data = excluded.data,
                fetched_at = excluded.fetched_at,
                sequence = excluded.sequence,
                saved_at = excluded.saved_at
            """,
            rows,
        )
        await self._conn.commit()
        return len(rows)

    async def load(self) -> list[dict[str, Any]]:
        """Read every saved row, payloads rebuilt into snapshot models.

        Returns:
            Dicts with key, payload, fetched_at (aware datetime) and sequence
        """
        if not self._conn:
            raise RuntimeError("Snapshot store not initialized")

        rows = []
        async with self._conn.execute("SELECT key, kind, data, fetched_at, sequence FROM cache_snapshot") as cursor:
            async for row in cursor:
                data = json.loads(row["data"])
                if isinstance(data, dict) and data.get("kind") == row["kind"]:
                    data = parse_payload(data)
                fetched_at = datetime.fromisoformat(row["fetched_at"])
                if fetched_at.tzinfo is None:
                    fetched_at = fetched_at.replace(tzinfo=UTC)
                rows.append(
                    {
                        "key": row["key"],
                        "payload": data,
                        "fetched_at": fetched_at,
                        "sequence": row["sequence"],
                    }
                )
        return rows

    async def delete(self, key: str) -> bool:
        """Remove a saved key."""
        if not self._conn:
            raise RuntimeError("Snapshot store not initialized")

        cursor = await self._conn.execute("DELETE FROM cache_snapshot WHERE key = ?", (key,))
        await self._conn.commit()
        return cursor.rowcount > 0
