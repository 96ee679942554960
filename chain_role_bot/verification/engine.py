from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Protocol, Sequence

from .cache import EvidenceCache
from .errors import UnknownIdentityError
from .identity import normalize_identity, shorten_identity, utc_now
from .models import (
    BooleanEvidence,
    CountEvidence,
    ErrorEvidence,
    Evidence,
    ReconciliationResult,
    RoleGrantReport,
    Target,
    TargetKind,
    TargetOutcome,
    VerificationRecord,
    evidence_count,
)

logger = logging.getLogger("chain_role_bot.engine")


class EvidenceSource(Protocol):
    async def fetch_evidence_batch(self, identity: str, targets: Sequence[Target]) -> list[Evidence]:
        ...


class RoleGrantor(Protocol):
    async def has_role(self, identity: str, target: Target) -> bool:
        ...

    async def grant_role(self, identity: str, target: Target) -> bool:
        ...


def evaluate_evidence(target: Target, evidence: Evidence) -> tuple[bool, str, bool]:
    """Return ``(satisfied, reason, retryable)`` for one piece of fresh evidence."""
    if isinstance(evidence, ErrorEvidence):
        return False, evidence.reason, evidence.retryable
    if target.kind is TargetKind.COUNT:
        if not isinstance(evidence, CountEvidence):
            return False, f"expected count evidence, got {evidence.kind}", False
        count = evidence_count(evidence) or 0
        if count >= target.minimum_count:
            return True, "", False
        return False, f"{count}/{target.minimum_count} transactions", False
    if not isinstance(evidence, BooleanEvidence):
        return False, f"expected boolean evidence, got {evidence.kind}", False
    if evidence.eligible is True:
        return True, "", False
    return False, evidence.detail or "not eligible yet", False


class VerificationEngine:
    def __init__(
        self,
        *,
        store,
        source: EvidenceSource,
        cache: EvidenceCache,
        targets: Sequence[Target],
        role_grantor: RoleGrantor,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not targets:
            raise ValueError("at least one verification target is required")
        self.store = store
        self.source = source
        self.cache = cache
        self.targets: tuple[Target, ...] = tuple(targets)
        self.role_grantor = role_grantor
        self._clock = clock
        self._by_id = {target.id: target for target in self.targets}

    def find_target(self, query: str) -> Target | None:
        needle = (query or "").strip().casefold()
        if not needle:
            return None
        for target in self.targets:
            if target.id.casefold() == needle or target.display_name.casefold() == needle:
                return target
        return None

    def resolve_targets(self, target_ids: Iterable[str] | None = None) -> list[Target]:
        if target_ids is None:
            return list(self.targets)
        wanted = set(target_ids)
        unknown = wanted - set(self._by_id)
        if unknown:
            raise KeyError(f"unknown target(s): {', '.join(sorted(unknown))}")
        return [target for target in self.targets if target.id in wanted]

    async def collect_evidence(
        self,
        identity: str,
        targets: Sequence[Target],
        *,
        force_refresh: bool = False,
        use_cache: bool = True,
    ) -> dict[str, Evidence]:
        evidence: dict[str, Evidence] = {}
        bundle = None if force_refresh or not use_cache else self.cache.get(identity)
        if bundle is not None:
            for target in targets:
                cached = bundle.evidence.get(target.id)
                if cached is not None:
                    evidence[target.id] = cached
        missing = [target for target in targets if target.id not in evidence]
        if missing:
            fetched = await self.source.fetch_evidence_batch(identity, missing)
            if use_cache:
                self.cache.put(identity, fetched)
            for item in fetched:
                evidence[item.target_id] = item
        for target in targets:
            if target.id not in evidence:
                evidence[target.id] = ErrorEvidence(target.id, "provider returned no evidence", retryable=True)
        return evidence

    async def preview(self, identity: str, target_ids: Iterable[str] | None = None) -> dict[str, Evidence]:
        """Fetch fresh evidence without touching the cache or any verification state."""
        identity = normalize_identity(identity)
        targets = self.resolve_targets(target_ids)
        return await self.collect_evidence(identity, targets, use_cache=False)

    async def reconcile(
        self,
        identity: str,
        target_ids: Iterable[str] | None = None,
        *,
        count_attempt: bool = False,
        force_refresh: bool = False,
    ) -> ReconciliationResult:
        identity = normalize_identity(identity)
        targets = self.resolve_targets(target_ids)

        async with self.store.identity_lock(identity):
            link = await self.store.get_link_by_identity(identity)
            if link is None:
                raise UnknownIdentityError(f"identity {shorten_identity(identity)} is not linked")
            if count_attempt:
                await self.store.increment_attempts(identity)

            evidence = await self.collect_evidence(identity, targets, force_refresh=force_refresh)
            records = await self.store.get_records(identity)
            now = self._clock()
            result = ReconciliationResult(identity=identity, checked_at=now)
            for target in targets:
                outcome = await self._classify(identity, target, evidence[target.id], records.get(target.id), now)
                result.add(outcome)
            await self.store.upsert_records(identity, [o.record for o in result.outcomes], checked_at=now)

        logger.info(
            "Reconciled %s: newly=%s confirmed=%s role_missing=%s unsatisfied=%s",
            shorten_identity(identity),
            len(result.newly_satisfied),
            len(result.confirmed_satisfied),
            len(result.satisfied_role_missing),
            len(result.unsatisfied),
        )
        return result

    async def _classify(
        self,
        identity: str,
        target: Target,
        evidence: Evidence,
        prior: VerificationRecord | None,
        now: datetime,
    ) -> TargetOutcome:
        satisfied_now, reason, retryable = evaluate_evidence(target, evidence)
        record = replace(prior) if prior is not None else VerificationRecord(target_id=target.id)
        record.last_checked_at = now
        if not isinstance(evidence, ErrorEvidence):
            record.evidence_count = evidence_count(evidence)
            record.evidence_detail = evidence.detail

        if prior is not None and prior.satisfied:
            # Satisfaction is sticky; only the role is re-checked.
            held = await self.role_grantor.has_role(identity, target)
            category = "confirmed_satisfied" if held else "satisfied_role_missing"
            return TargetOutcome(target=target, evidence=evidence, record=record, category=category)

        if satisfied_now:
            record.satisfied = True
            if record.first_satisfied_at is None:
                record.first_satisfied_at = now
            return TargetOutcome(
                target=target,
                evidence=evidence,
                record=record,
                category="newly_satisfied",
                transitioned=True,
            )

        return TargetOutcome(
            target=target,
            evidence=evidence,
            record=record,
            category="unsatisfied",
            reason=reason,
            retryable=retryable,
        )


async def apply_role_grants(grantor: RoleGrantor, result: ReconciliationResult) -> RoleGrantReport:
    report = RoleGrantReport()
    for outcome in result.needs_role:
        try:
            granted = await grantor.grant_role(result.identity, outcome.target)
        except Exception:
            logger.exception(
                "Role grant raised for %s target=%s",
                shorten_identity(result.identity),
                outcome.target.id,
            )
            granted = False
        if granted:
            report.granted.append(outcome.target)
            if outcome.category == "satisfied_role_missing":
                logger.info(
                    "Restored missing role for %s target=%s",
                    shorten_identity(result.identity),
                    outcome.target.id,
                )
        else:
            report.failed.append(outcome.target)
            result.mark_role_missing(outcome)
    return report


async def log_outcomes(
    store,
    result: ReconciliationResult,
    grants: RoleGrantReport,
    *,
    include_failures: bool = False,
) -> None:
    for outcome in result.transitions:
        await store.record_outcome(
            status="success",
            identity=result.identity,
            target_id=outcome.target.id,
            target_name=outcome.target.display_name,
            detail=outcome.record.evidence_detail,
            evidence_count=outcome.record.evidence_count,
            role_assigned=grants.was_granted(outcome.target),
        )
    if not include_failures:
        return
    for outcome in result.unsatisfied:
        await store.record_outcome(
            status="failure",
            identity=result.identity,
            target_id=outcome.target.id,
            target_name=outcome.target.display_name,
            detail=outcome.reason,
            evidence_count=evidence_count(outcome.evidence),
        )
