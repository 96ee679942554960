from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Iterable, Optional

import aiosqlite

from ..verification.identity import normalize_identity, utc_now
from ..verification.models import VerificationRecord
from .utils import _sqlite_connection, from_iso, to_iso


def _row_to_record(row: aiosqlite.Row) -> VerificationRecord:
    count = row["evidence_count"]
    return VerificationRecord(
        target_id=str(row["target_id"]),
        satisfied=bool(row["satisfied"]),
        evidence_count=int(count) if count is not None else None,
        evidence_detail=str(row["evidence_detail"] or ""),
        first_satisfied_at=from_iso(row["first_satisfied_at"]),
        last_checked_at=from_iso(row["last_checked_at"]),
    )


class VerificationRecordsMixin:
    def identity_lock(self, identity: str) -> asyncio.Lock:
        return self._identity_locks[normalize_identity(identity)]

    async def get_records(self, identity: str) -> Dict[str, VerificationRecord]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT target_id, satisfied, evidence_count, evidence_detail, first_satisfied_at, last_checked_at
                FROM verification_records
                WHERE identity = ?
                """,
                (normalize_identity(identity),),
            ) as cursor:
                rows = await cursor.fetchall()
        records = [_row_to_record(row) for row in rows]
        return {record.target_id: record for record in records}

    async def get_record(self, identity: str, target_id: str) -> Optional[VerificationRecord]:
        records = await self.get_records(identity)
        return records.get(target_id)

    async def upsert_records(
        self,
        identity: str,
        records: Iterable[VerificationRecord],
        *,
        checked_at: datetime | None = None,
    ) -> None:
        """Write records and bump the identity's last check time in one transaction.

        A stored ``satisfied`` flag is never cleared here, and an existing
        ``first_satisfied_at`` is kept as written.
        """
        identity = normalize_identity(identity)
        checked = to_iso(checked_at or utc_now())
        async with _sqlite_connection(self.db_path) as db:
            await db.executemany(
                """
                INSERT INTO verification_records (
                    identity, target_id, satisfied, evidence_count, evidence_detail, first_satisfied_at, last_checked_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(identity, target_id) DO UPDATE SET
                    satisfied = MAX(verification_records.satisfied, excluded.satisfied),
                    evidence_count = excluded.evidence_count,
                    evidence_detail = excluded.evidence_detail,
                    first_satisfied_at = COALESCE(verification_records.first_satisfied_at, excluded.first_satisfied_at),
                    last_checked_at = excluded.last_checked_at
                """,
                [
                    (
                        identity,
                        record.target_id,
                        1 if record.satisfied else 0,
                        record.evidence_count,
                        record.evidence_detail,
                        to_iso(record.first_satisfied_at),
                        to_iso(record.last_checked_at) or checked,
                    )
                    for record in records
                ],
            )
            await db.execute(
                "UPDATE identities SET last_checked_at = ? WHERE identity = ?",
                (checked, identity),
            )
            await db.commit()

    async def upsert_record(self, identity: str, record: VerificationRecord) -> None:
        await self.upsert_records(identity, [record], checked_at=record.last_checked_at)

    async def count_satisfied_by_target(self) -> Dict[str, int]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT target_id, COUNT(*) AS total
                FROM verification_records
                WHERE satisfied = 1
                GROUP BY target_id
                """
            ) as cursor:
                rows = await cursor.fetchall()
        return {str(row["target_id"]): int(row["total"]) for row in rows}

    async def count_verified_identities(self) -> int:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(DISTINCT identity) FROM verification_records WHERE satisfied = 1"
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
