from __future__ import annotations

from typing import Any, Dict, List, Sequence

import aiosqlite

from ..verification.identity import utc_now
from ..verification.models import OutcomeEntry, Target
from .utils import _sqlite_connection, from_iso, to_iso

OUTCOME_STATUSES = ("success", "failure")


def _row_to_outcome(row: aiosqlite.Row) -> OutcomeEntry:
    count = row["evidence_count"]
    return OutcomeEntry(
        status=str(row["status"]),
        identity=str(row["identity"]),
        discord_id=str(row["discord_id"] or ""),
        discord_username=str(row["discord_username"] or ""),
        target_id=str(row["target_id"]),
        target_name=str(row["target_name"] or ""),
        detail=str(row["detail"] or ""),
        evidence_count=int(count) if count is not None else None,
        role_assigned=bool(row["role_assigned"]),
        created_at=from_iso(row["created_at"]),
    )


class VerificationOutcomesMixin:
    max_outcome_entries: int = 1000

    async def record_outcome(
        self,
        *,
        status: str,
        identity: str,
        target_id: str,
        target_name: str = "",
        detail: str = "",
        evidence_count: int | None = None,
        role_assigned: bool = False,
    ) -> None:
        if status not in OUTCOME_STATUSES:
            raise ValueError(f"unknown outcome status: {status}")
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO verification_outcomes (
                    status, identity, discord_id, discord_username, target_id, target_name,
                    detail, evidence_count, role_assigned, created_at
                )
                VALUES (
                    ?, ?,
                    COALESCE((SELECT discord_id FROM identities WHERE identity = ?), ''),
                    COALESCE((SELECT discord_username FROM identities WHERE identity = ?), ''),
                    ?, ?, ?, ?, ?, ?
                )
                """,
                (
                    status,
                    identity,
                    identity,
                    identity,
                    target_id,
                    target_name,
                    detail,
                    evidence_count,
                    1 if role_assigned else 0,
                    to_iso(utc_now()),
                ),
            )
            # Oldest entries beyond the cap are dropped per status.
            await db.execute(
                """
                DELETE FROM verification_outcomes
                WHERE status = ?
                  AND id NOT IN (
                      SELECT id FROM verification_outcomes
                      WHERE status = ?
                      ORDER BY id DESC
                      LIMIT ?
                  )
                """,
                (status, status, max(1, int(self.max_outcome_entries))),
            )
            await db.commit()

    async def recent_outcomes(self, status: str, limit: int = 10) -> List[OutcomeEntry]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT status, identity, discord_id, discord_username, target_id, target_name,
                       detail, evidence_count, role_assigned, created_at
                FROM verification_outcomes
                WHERE status = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (status, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_outcome(row) for row in rows]

    async def count_outcomes(self) -> Dict[str, int]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT status, COUNT(*) AS total FROM verification_outcomes GROUP BY status"
            ) as cursor:
                rows = await cursor.fetchall()
        counts = {status: 0 for status in OUTCOME_STATUSES}
        for row in rows:
            counts[str(row["status"])] = int(row["total"])
        return counts

    async def stats(self, targets: Sequence[Target]) -> Dict[str, Any]:
        total = await self.count_identities()
        verified = await self.count_verified_identities()
        by_target = await self.count_satisfied_by_target()
        outcomes = await self.count_outcomes()
        return {
            "total_identities": total,
            "verified_identities": verified,
            "targets": {target.id: by_target.get(target.id, 0) for target in targets},
            "successes": outcomes["success"],
            "failures": outcomes["failure"],
        }

    async def export_rows(self, targets: Sequence[Target]) -> List[Dict[str, Any]]:
        """One row per linked identity with every target's record, in target order."""
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT identity, discord_id, discord_username, linked_at, last_checked_at, attempts
                FROM identities
                ORDER BY linked_at ASC
                """
            ) as cursor:
                identities = await cursor.fetchall()
            async with db.execute(
                """
                SELECT identity, target_id, satisfied, evidence_count, evidence_detail, first_satisfied_at
                FROM verification_records
                """
            ) as cursor:
                records = await cursor.fetchall()

        by_identity: Dict[str, Dict[str, aiosqlite.Row]] = {}
        for row in records:
            by_identity.setdefault(str(row["identity"]), {})[str(row["target_id"])] = row

        rows: List[Dict[str, Any]] = []
        for row in identities:
            identity = str(row["identity"])
            stored = by_identity.get(identity, {})
            verifications: Dict[str, Dict[str, Any]] = {}
            for target in targets:
                record = stored.get(target.id)
                verifications[target.id] = {
                    "satisfied": bool(record["satisfied"]) if record is not None else False,
                    "evidence_count": record["evidence_count"] if record is not None else None,
                    "evidence_detail": str(record["evidence_detail"] or "") if record is not None else "",
                    "first_satisfied_at": record["first_satisfied_at"] if record is not None else None,
                }
            rows.append(
                {
                    "identity": identity,
                    "discord_id": str(row["discord_id"]),
                    "discord_username": str(row["discord_username"] or ""),
                    "linked_at": row["linked_at"],
                    "last_checked_at": row["last_checked_at"],
                    "attempts": int(row["attempts"] or 0),
                    "verifications": verifications,
                }
            )
        return rows
