from __future__ import annotations

import asyncio
from collections import defaultdict
from pathlib import Path

from .storage.links import VerificationLinksMixin
from .storage.outcomes import VerificationOutcomesMixin
from .storage.records import VerificationRecordsMixin
from .storage.schema import VerificationSchemaMixin


class VerificationStore(
    VerificationSchemaMixin,
    VerificationLinksMixin,
    VerificationRecordsMixin,
    VerificationOutcomesMixin,
):
    """Durable identity links, per-target verification records and the bounded outcome log."""

    def __init__(self, db_path: Path, *, max_outcome_entries: int = 1000) -> None:
        super().__init__(db_path)
        self.max_outcome_entries = max(1, int(max_outcome_entries))
        self._identity_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
