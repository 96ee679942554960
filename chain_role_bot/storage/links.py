from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

import aiosqlite

from ..verification.errors import LinkConflictError
from ..verification.identity import normalize_identity, utc_now
from ..verification.models import IdentityLink
from .utils import _sqlite_connection, from_iso, to_iso


def _row_to_link(row: aiosqlite.Row) -> IdentityLink:
    return IdentityLink(
        identity=str(row["identity"]),
        discord_id=str(row["discord_id"]),
        discord_username=str(row["discord_username"] or ""),
        linked_at=from_iso(row["linked_at"]),
        last_checked_at=from_iso(row["last_checked_at"]),
        attempts=int(row["attempts"] or 0),
    )


_LINK_COLUMNS = "identity, discord_id, discord_username, linked_at, last_checked_at, attempts"


class VerificationLinksMixin:
    async def link_identity(
        self,
        discord_id: str,
        identity: str,
        discord_username: str = "",
        *,
        linked_at: datetime | None = None,
    ) -> IdentityLink:
        """Bind ``identity`` to ``discord_id``; relinking the same pair returns the existing link."""
        identity = normalize_identity(identity)
        discord_id = str(discord_id)
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            async with db.execute(
                f"SELECT {_LINK_COLUMNS} FROM identities WHERE identity = ?",
                (identity,),
            ) as cursor:
                by_identity = await cursor.fetchone()
            async with db.execute(
                f"SELECT {_LINK_COLUMNS} FROM identities WHERE discord_id = ?",
                (discord_id,),
            ) as cursor:
                by_account = await cursor.fetchone()

            if by_identity is not None and str(by_identity["discord_id"]) != discord_id:
                await db.rollback()
                raise LinkConflictError(
                    LinkConflictError.IDENTITY_TAKEN,
                    identity=identity,
                    discord_id=discord_id,
                    existing=str(by_identity["discord_id"]),
                )
            if by_account is not None and str(by_account["identity"]) != identity:
                await db.rollback()
                raise LinkConflictError(
                    LinkConflictError.ACCOUNT_HAS_IDENTITY,
                    identity=identity,
                    discord_id=discord_id,
                    existing=str(by_account["identity"]),
                )
            if by_identity is not None:
                await db.rollback()
                return _row_to_link(by_identity)

            await db.execute(
                """
                INSERT INTO identities (identity, discord_id, discord_username, linked_at, attempts)
                VALUES (?, ?, ?, ?, 0)
                """,
                (identity, discord_id, discord_username or "", to_iso(linked_at or utc_now())),
            )
            await db.commit()
        link = await self.get_link_by_identity(identity)
        assert link is not None
        return link

    async def get_link_by_identity(self, identity: str) -> Optional[IdentityLink]:
        identity = normalize_identity(identity)
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                f"SELECT {_LINK_COLUMNS} FROM identities WHERE identity = ?",
                (identity,),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_link(row) if row is not None else None

    async def get_link_by_discord_id(self, discord_id: str) -> Optional[IdentityLink]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                f"SELECT {_LINK_COLUMNS} FROM identities WHERE discord_id = ?",
                (str(discord_id),),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_link(row) if row is not None else None

    async def unlink_identity(
        self,
        identity: str,
        *,
        on_removed: Optional[Callable[[str], None]] = None,
    ) -> Optional[IdentityLink]:
        """Remove the link and its records under the identity lock; ``on_removed`` runs before release."""
        identity = normalize_identity(identity)
        async with self.identity_lock(identity):
            link = await self.get_link_by_identity(identity)
            if link is None:
                return None
            async with _sqlite_connection(self.db_path) as db:
                await db.execute("DELETE FROM identities WHERE identity = ?", (identity,))
                await db.commit()
            if on_removed is not None:
                on_removed(identity)
        self._identity_locks.pop(identity, None)
        return link

    async def unlink_discord_account(
        self,
        discord_id: str,
        *,
        on_removed: Optional[Callable[[str], None]] = None,
    ) -> Optional[IdentityLink]:
        link = await self.get_link_by_discord_id(discord_id)
        if link is None:
            return None
        return await self.unlink_identity(link.identity, on_removed=on_removed)

    async def update_discord_username(self, identity: str, discord_username: str) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                "UPDATE identities SET discord_username = ? WHERE identity = ?",
                (discord_username or "", normalize_identity(identity)),
            )
            await db.commit()

    async def increment_attempts(self, identity: str) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                "UPDATE identities SET attempts = attempts + 1 WHERE identity = ?",
                (normalize_identity(identity),),
            )
            await db.commit()

    async def all_identities(self) -> list[str]:
        """Linked identities, least recently checked first."""
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT identity
                FROM identities
                ORDER BY last_checked_at IS NOT NULL, last_checked_at ASC, linked_at ASC
                """
            ) as cursor:
                rows = await cursor.fetchall()
        return [str(row["identity"]) for row in rows]

    async def count_identities(self) -> int:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM identities") as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
