from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Mapping, Sequence

from ..verification.errors import RequestError, RetryableRequestError
from ..verification.identity import shorten_identity
from ..verification.models import ErrorEvidence, Evidence, Target
from ..verification.throttle import RequestController

logger = logging.getLogger("chain_role_bot.services")


def error_evidence(target: Target, exc: RequestError) -> ErrorEvidence:
    return ErrorEvidence(target.id, exc.reason, retryable=isinstance(exc, RetryableRequestError))


class EvidenceProvider:
    source = ""

    def __init__(self, controller: RequestController) -> None:
        self.controller = controller

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def fetch_evidence(self, identity: str, target: Target) -> Evidence:
        raise NotImplementedError

    async def fetch_evidence_batch(self, identity: str, targets: Sequence[Target]) -> List[Evidence]:
        return list(await asyncio.gather(*(self._guarded_fetch(identity, target) for target in targets)))

    async def _guarded_fetch(self, identity: str, target: Target) -> Evidence:
        try:
            return await self.fetch_evidence(identity, target)
        except RequestError as exc:
            logger.info(
                "%s lookup failed for %s target=%s: %s",
                self.source,
                shorten_identity(identity),
                target.id,
                exc.reason,
            )
            return error_evidence(target, exc)


class ProviderRouter:
    """Dispatches each target to the provider registered for its ``source``."""

    def __init__(self, providers: Mapping[str, EvidenceProvider]) -> None:
        self.providers: Dict[str, EvidenceProvider] = dict(providers)

    async def start(self) -> None:
        for provider in self.providers.values():
            await provider.start()

    async def close(self) -> None:
        for provider in self.providers.values():
            try:
                await provider.close()
            except Exception:
                logger.exception("Failed to close %s provider", provider.source)

    async def fetch_evidence_batch(self, identity: str, targets: Sequence[Target]) -> List[Evidence]:
        groups: Dict[str, List[Target]] = {}
        collected: Dict[str, Evidence] = {}
        for target in targets:
            if target.source not in self.providers:
                collected[target.id] = ErrorEvidence(
                    target.id,
                    f"no provider configured for source '{target.source}'",
                    retryable=False,
                )
                continue
            groups.setdefault(target.source, []).append(target)

        sources = list(groups)
        results = await asyncio.gather(
            *(self.providers[source].fetch_evidence_batch(identity, groups[source]) for source in sources),
            return_exceptions=True,
        )
        for source, items in zip(sources, results):
            if isinstance(items, asyncio.CancelledError):
                raise items
            if isinstance(items, BaseException):
                logger.error(
                    "%s provider failed for %s: %s",
                    source,
                    shorten_identity(identity),
                    items,
                    exc_info=items,
                )
                for target in groups[source]:
                    collected[target.id] = ErrorEvidence(
                        target.id,
                        f"{source} lookup failed ({type(items).__name__})",
                        retryable=True,
                    )
                continue
            for item in items:
                collected[item.target_id] = item
        return [
            collected.get(target.id) or ErrorEvidence(target.id, "provider returned no evidence", retryable=True)
            for target in targets
        ]
