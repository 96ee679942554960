from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterable

from .models import ErrorEvidence, Evidence


@dataclass(slots=True)
class EvidenceBundle:
    identity: str
    evidence: dict[str, Evidence]
    fetched_at: float

    def covers(self, target_ids: Iterable[str]) -> bool:
        return all(target_id in self.evidence for target_id in target_ids)


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    entries: int = 0


class EvidenceCache:
    """Per-identity evidence bundles with a fixed TTL.

    Only successful evidence is stored; error evidence is never cached so the
    next reconciliation retries the provider. Expired bundles are dropped
    lazily on read. A ``ttl_seconds`` of zero disables caching.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._bundles: dict[str, EvidenceBundle] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._bundles)

    def _is_fresh(self, bundle: EvidenceBundle) -> bool:
        return self._clock() - bundle.fetched_at < self.ttl_seconds

    def get(self, identity: str) -> EvidenceBundle | None:
        bundle = self._bundles.get(identity)
        if bundle is None:
            self._misses += 1
            return None
        if not self._is_fresh(bundle):
            del self._bundles[identity]
            self._evictions += 1
            self._misses += 1
            return None
        self._hits += 1
        return bundle

    def put(self, identity: str, evidence: Iterable[Evidence]) -> EvidenceBundle | None:
        if self.ttl_seconds <= 0:
            return None
        successful = {item.target_id: item for item in evidence if not isinstance(item, ErrorEvidence)}
        if not successful:
            return self._bundles.get(identity)
        bundle = self._bundles.get(identity)
        if bundle is not None and self._is_fresh(bundle):
            # Merged entries expire with the bundle they joined.
            bundle.evidence.update(successful)
            return bundle
        bundle = EvidenceBundle(identity=identity, evidence=successful, fetched_at=self._clock())
        self._bundles[identity] = bundle
        return bundle

    def invalidate(self, identity: str) -> None:
        self._bundles.pop(identity, None)

    def clear(self) -> None:
        self._bundles.clear()

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            entries=len(self._bundles),
        )
