from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_connection


class VerificationSchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("VERIFICATION_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if has_tables and version != self.SCHEMA_VERSION:
                if not self._allow_destructive_reset_on_mismatch():
                    raise RuntimeError(
                        "SQLite schema version mismatch detected. "
                        f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                        "Set VERIFICATION_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                    )
                await self._reset_schema(db)

            await self._create_schema(db)
            await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        for table in ("verification_outcomes", "verification_records", "identities"):
            await db.execute(f"DROP TABLE IF EXISTS {table}")

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS identities (
                identity TEXT PRIMARY KEY,
                discord_id TEXT NOT NULL UNIQUE,
                discord_username TEXT NOT NULL DEFAULT '',
                linked_at TEXT NOT NULL,
                last_checked_at TEXT,
                attempts INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS verification_records (
                identity TEXT NOT NULL REFERENCES identities(identity) ON DELETE CASCADE,
                target_id TEXT NOT NULL,
                satisfied INTEGER NOT NULL DEFAULT 0,
                evidence_count INTEGER,
                evidence_detail TEXT NOT NULL DEFAULT '',
                first_satisfied_at TEXT,
                last_checked_at TEXT,
                PRIMARY KEY (identity, target_id)
            );

            CREATE INDEX IF NOT EXISTS idx_records_target_satisfied
                ON verification_records(target_id, satisfied);

            CREATE TABLE IF NOT EXISTS verification_outcomes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                status TEXT NOT NULL CHECK (status IN ('success', 'failure')),
                identity TEXT NOT NULL,
                discord_id TEXT NOT NULL DEFAULT '',
                discord_username TEXT NOT NULL DEFAULT '',
                target_id TEXT NOT NULL,
                target_name TEXT NOT NULL DEFAULT '',
                detail TEXT NOT NULL DEFAULT '',
                evidence_count INTEGER,
                role_assigned INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_outcomes_status_id
                ON verification_outcomes(status, id);
            """
        )
