from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chain_role_bot.store import VerificationStore  # noqa: E402
from chain_role_bot.verification.cache import EvidenceCache  # noqa: E402
from chain_role_bot.verification.engine import (  # noqa: E402
    VerificationEngine,
    apply_role_grants,
    evaluate_evidence,
    log_outcomes,
)
from chain_role_bot.verification.errors import UnknownIdentityError  # noqa: E402
from chain_role_bot.verification.models import (  # noqa: E402
    BooleanEvidence,
    CountEvidence,
    ErrorEvidence,
    Target,
    TargetKind,
)

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20

TARGET_A = Target("a", "Alpha", 11, TargetKind.COUNT, "explorer", "0x" + "0a" * 20, minimum_count=3)
TARGET_B = Target("b", "Beta", 12, TargetKind.COUNT, "explorer", "0x" + "0b" * 20, minimum_count=3)
TARGET_C = Target("c", "Gamma", 13, TargetKind.BOOLEAN, "dashboard", "users/{address}/stats")
TARGETS = [TARGET_A, TARGET_B, TARGET_C]


class _FakeSource:
    def __init__(self, evidence: dict) -> None:
        self.evidence = dict(evidence)
        self.calls: list[list[str]] = []

    async def fetch_evidence_batch(self, identity, targets):  # type: ignore[no-untyped-def]
        self.calls.append([target.id for target in targets])
        return [self.evidence[target.id] for target in targets]


class _FakeGrantor:
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.held: set[tuple[str, str]] = set()
        self.failing = set(failing or ())
        self.grant_calls: list[str] = []

    async def has_role(self, identity, target) -> bool:  # type: ignore[no-untyped-def]
        return (identity, target.id) in self.held

    async def grant_role(self, identity, target) -> bool:  # type: ignore[no-untyped-def]
        self.grant_calls.append(target.id)
        if target.id in self.failing:
            return False
        self.held.add((identity, target.id))
        return True


async def _engine(tmp_path: Path, source, grantor, *, cache: EvidenceCache | None = None):  # type: ignore[no-untyped-def]
    store = VerificationStore(tmp_path / "verification.db")
    await store.init()
    await store.link_identity("1001", ALICE, "alice")
    engine = VerificationEngine(
        store=store,
        source=source,
        cache=cache if cache is not None else EvidenceCache(0),
        targets=TARGETS,
        role_grantor=grantor,
    )
    return store, engine


def test_mixed_evidence_partitions_targets(tmp_path: Path) -> None:
    source = _FakeSource(
        {
            "a": CountEvidence("a", 5),
            "b": CountEvidence("b", 2),
            "c": ErrorEvidence("c", "HTTP 503", retryable=True),
        }
    )
    grantor = _FakeGrantor()

    async def scenario():  # type: ignore[no-untyped-def]
        store, engine = await _engine(tmp_path, source, grantor)
        result = await engine.reconcile(ALICE)
        grants = await apply_role_grants(grantor, result)
        records = await store.get_records(ALICE)
        return result, grants, records

    result, grants, records = asyncio.run(scenario())

    assert [o.target.id for o in result.newly_satisfied] == ["a"]
    assert [o.target.id for o in result.unsatisfied] == ["b", "c"]
    beta, gamma = result.unsatisfied
    assert beta.progress == "2/3"
    assert beta.retryable is False
    assert gamma.retryable is True
    assert result.has_retryable_failures is True
    assert [t.id for t in grants.granted] == ["a"]
    assert records["a"].satisfied is True
    assert records["a"].first_satisfied_at is not None
    assert records["b"].satisfied is False
    assert records["b"].evidence_count == 2


@pytest.mark.parametrize(("count", "expected"), [(2, False), (3, True), (4, True)])
def test_count_threshold_is_inclusive(count: int, expected: bool) -> None:
    satisfied, _, retryable = evaluate_evidence(TARGET_A, CountEvidence("a", count))
    assert satisfied is expected
    assert retryable is False


def test_boolean_requires_explicit_true() -> None:
    assert evaluate_evidence(TARGET_C, BooleanEvidence("c", True))[0] is True
    assert evaluate_evidence(TARGET_C, BooleanEvidence("c", False, "No participation found"))[0] is False


def test_kind_mismatch_is_terminal_unsatisfied() -> None:
    satisfied, reason, retryable = evaluate_evidence(TARGET_A, BooleanEvidence("a", True))
    assert satisfied is False
    assert retryable is False
    assert "count" in reason


def test_second_run_with_same_evidence_has_no_transitions(tmp_path: Path) -> None:
    source = _FakeSource(
        {"a": CountEvidence("a", 3), "b": CountEvidence("b", 0), "c": BooleanEvidence("c", True)}
    )
    grantor = _FakeGrantor()

    async def scenario():  # type: ignore[no-untyped-def]
        store, engine = await _engine(tmp_path, source, grantor)
        first = await engine.reconcile(ALICE)
        await apply_role_grants(grantor, first)
        first_records = await store.get_records(ALICE)
        second = await engine.reconcile(ALICE)
        second_grants = await apply_role_grants(grantor, second)
        second_records = await store.get_records(ALICE)
        return first, second, second_grants, first_records, second_records

    first, second, second_grants, first_records, second_records = asyncio.run(scenario())

    assert {o.target.id for o in first.newly_satisfied} == {"a", "c"}
    assert second.newly_satisfied == []
    assert second.transitions == []
    assert {o.target.id for o in second.confirmed_satisfied} == {"a", "c"}
    assert second_grants.granted == []
    assert second_records["a"].first_satisfied_at == first_records["a"].first_satisfied_at


def test_satisfied_record_survives_later_failing_evidence(tmp_path: Path) -> None:
    source = _FakeSource(
        {"a": CountEvidence("a", 4), "b": CountEvidence("b", 0), "c": BooleanEvidence("c", True, "Verified (participation: 2)")}
    )
    grantor = _FakeGrantor()

    async def scenario():  # type: ignore[no-untyped-def]
        store, engine = await _engine(tmp_path, source, grantor)
        first = await engine.reconcile(ALICE)
        await apply_role_grants(grantor, first)
        source.evidence["a"] = CountEvidence("a", 0)
        source.evidence["c"] = ErrorEvidence("c", "timed out", retryable=True)
        later = await engine.reconcile(ALICE)
        return later, await store.get_records(ALICE)

    later, records = asyncio.run(scenario())

    assert {o.target.id for o in later.confirmed_satisfied} == {"a", "c"}
    assert records["a"].satisfied is True
    assert records["c"].satisfied is True
    # Error evidence leaves the last successful snapshot in place.
    assert records["c"].evidence_detail == "Verified (participation: 2)"


def test_missing_role_is_detected_and_restored(tmp_path: Path) -> None:
    source = _FakeSource(
        {"a": CountEvidence("a", 3), "b": CountEvidence("b", 1), "c": BooleanEvidence("c", False)}
    )
    grantor = _FakeGrantor()

    async def scenario():  # type: ignore[no-untyped-def]
        _, engine = await _engine(tmp_path, source, grantor)
        first = await engine.reconcile(ALICE)
        await apply_role_grants(grantor, first)
        grantor.held.clear()
        drifted = await engine.reconcile(ALICE)
        repair = await apply_role_grants(grantor, drifted)
        return drifted, repair

    drifted, repair = asyncio.run(scenario())

    assert [o.target.id for o in drifted.satisfied_role_missing] == ["a"]
    assert drifted.newly_satisfied == []
    assert [t.id for t in repair.granted] == ["a"]
    assert (ALICE, "a") in grantor.held


def test_failed_grant_keeps_record_and_retries_next_run(tmp_path: Path) -> None:
    source = _FakeSource(
        {"a": CountEvidence("a", 3), "b": CountEvidence("b", 0), "c": BooleanEvidence("c", False)}
    )
    grantor = _FakeGrantor(failing={"a"})

    async def scenario():  # type: ignore[no-untyped-def]
        store, engine = await _engine(tmp_path, source, grantor)
        first = await engine.reconcile(ALICE)
        first_grants = await apply_role_grants(grantor, first)
        records = await store.get_records(ALICE)
        grantor.failing.clear()
        second = await engine.reconcile(ALICE)
        second_grants = await apply_role_grants(grantor, second)
        return first, first_grants, records, second, second_grants

    first, first_grants, records, second, second_grants = asyncio.run(scenario())

    assert first.newly_satisfied == []
    assert [o.target.id for o in first.satisfied_role_missing] == ["a"]
    assert first.satisfied_role_missing[0].transitioned is True
    assert [t.id for t in first_grants.failed] == ["a"]
    assert records["a"].satisfied is True
    assert [o.target.id for o in second.satisfied_role_missing] == ["a"]
    assert [t.id for t in second_grants.granted] == ["a"]


def test_single_target_verify_only_touches_that_target(tmp_path: Path) -> None:
    source = _FakeSource(
        {"a": CountEvidence("a", 9), "b": CountEvidence("b", 9), "c": BooleanEvidence("c", True)}
    )
    grantor = _FakeGrantor()

    async def scenario():  # type: ignore[no-untyped-def]
        store, engine = await _engine(tmp_path, source, grantor)
        result = await engine.reconcile(ALICE, ["b"], count_attempt=True)
        link = await store.get_link_by_identity(ALICE)
        return result, await store.get_records(ALICE), link

    result, records, link = asyncio.run(scenario())

    assert [o.target.id for o in result.outcomes] == ["b"]
    assert source.calls == [["b"]]
    assert set(records) == {"b"}
    assert link is not None
    assert link.attempts == 1
    assert link.last_checked_at is not None


def test_cached_evidence_skips_provider_but_errors_are_refetched(tmp_path: Path) -> None:
    now = [100.0]
    cache = EvidenceCache(300, clock=lambda: now[0])
    source = _FakeSource(
        {
            "a": CountEvidence("a", 1),
            "b": CountEvidence("b", 0),
            "c": ErrorEvidence("c", "HTTP 502", retryable=True),
        }
    )
    grantor = _FakeGrantor()

    async def scenario() -> None:
        _, engine = await _engine(tmp_path, source, grantor, cache=cache)
        await engine.reconcile(ALICE)
        await engine.reconcile(ALICE)
        now[0] += 301
        await engine.reconcile(ALICE)
        await engine.reconcile(ALICE, force_refresh=True)

    asyncio.run(scenario())

    assert source.calls == [["a", "b", "c"], ["c"], ["a", "b", "c"], ["a", "b", "c"]]


def test_unlinked_identity_is_rejected(tmp_path: Path) -> None:
    source = _FakeSource({})

    async def scenario() -> None:
        _, engine = await _engine(tmp_path, source, _FakeGrantor())
        await engine.reconcile(BOB)

    with pytest.raises(UnknownIdentityError):
        asyncio.run(scenario())
    assert source.calls == []


def test_log_outcomes_records_successes_and_optional_failures(tmp_path: Path) -> None:
    source = _FakeSource(
        {"a": CountEvidence("a", 3, "3 transactions"), "b": CountEvidence("b", 1), "c": BooleanEvidence("c", False)}
    )
    grantor = _FakeGrantor()

    async def scenario():  # type: ignore[no-untyped-def]
        store, engine = await _engine(tmp_path, source, grantor)
        result = await engine.reconcile(ALICE)
        grants = await apply_role_grants(grantor, result)
        await log_outcomes(store, result, grants, include_failures=True)
        return await store.recent_outcomes("success"), await store.recent_outcomes("failure")

    successes, failures = asyncio.run(scenario())

    assert [(e.target_id, e.role_assigned, e.discord_id) for e in successes] == [("a", True, "1001")]
    assert successes[0].evidence_count == 3
    assert sorted(e.target_id for e in failures) == ["b", "c"]


class _GatedSource(_FakeSource):
    def __init__(self, evidence: dict) -> None:
        super().__init__(evidence)
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def fetch_evidence_batch(self, identity, targets):  # type: ignore[no-untyped-def]
        self.entered.set()
        await self.gate.wait()
        return await super().fetch_evidence_batch(identity, targets)


def test_concurrent_reconcile_of_one_identity_transitions_once(tmp_path: Path) -> None:
    source = _FakeSource(
        {"a": CountEvidence("a", 5), "b": CountEvidence("b", 0), "c": BooleanEvidence("c", True)}
    )
    grantor = _FakeGrantor()

    async def scenario():  # type: ignore[no-untyped-def]
        _, engine = await _engine(tmp_path, source, grantor)
        return await asyncio.gather(engine.reconcile(ALICE), engine.reconcile(ALICE))

    first, second = asyncio.run(scenario())

    newly = [o.target.id for result in (first, second) for o in result.newly_satisfied]
    assert sorted(newly) == ["a", "c"]
    assert len(source.calls) == 2


def test_boolean_target_transitions_when_eligibility_turns_true(tmp_path: Path) -> None:
    source = _FakeSource(
        {"a": CountEvidence("a", 0), "b": CountEvidence("b", 0), "c": BooleanEvidence("c", False, "No participation found")}
    )
    grantor = _FakeGrantor()

    async def scenario():  # type: ignore[no-untyped-def]
        store, engine = await _engine(tmp_path, source, grantor)
        before = await engine.reconcile(ALICE, ["c"])
        source.evidence["c"] = BooleanEvidence("c", True, "Verified (participation: 1)")
        after = await engine.reconcile(ALICE, ["c"])
        return before, after, await store.get_records(ALICE)

    before, after, records = asyncio.run(scenario())

    assert [o.target.id for o in before.unsatisfied] == ["c"]
    assert before.unsatisfied[0].reason == "No participation found"
    assert before.newly_satisfied == []
    assert [o.target.id for o in after.newly_satisfied] == ["c"]
    assert records["c"].satisfied is True
    assert records["c"].evidence_detail == "Verified (participation: 1)"


def test_preview_does_not_populate_the_cache(tmp_path: Path) -> None:
    cache = EvidenceCache(300)
    source = _FakeSource(
        {"a": CountEvidence("a", 7), "b": CountEvidence("b", 0), "c": BooleanEvidence("c", True)}
    )

    async def scenario():  # type: ignore[no-untyped-def]
        store, engine = await _engine(tmp_path, source, _FakeGrantor(), cache=cache)
        preview = await engine.preview(ALICE, ["a"])
        cached_after_preview = len(cache)
        await engine.reconcile(ALICE, ["a"])
        return preview, cached_after_preview, await store.get_records(ALICE)

    preview, cached_after_preview, records = asyncio.run(scenario())

    assert preview["a"] == CountEvidence("a", 7)
    assert cached_after_preview == 0
    assert source.calls == [["a"], ["a"]]
    assert records["a"].satisfied is True


def test_unlink_waits_for_in_flight_reconcile(tmp_path: Path) -> None:
    source = _GatedSource(
        {"a": CountEvidence("a", 5), "b": CountEvidence("b", 0), "c": BooleanEvidence("c", True)}
    )
    invalidated: list[str] = []

    async def scenario():  # type: ignore[no-untyped-def]
        store, engine = await _engine(tmp_path, source, _FakeGrantor())
        running = asyncio.create_task(engine.reconcile(ALICE))
        await source.entered.wait()
        unlinking = asyncio.create_task(store.unlink_identity(ALICE, on_removed=invalidated.append))
        queued = asyncio.create_task(engine.reconcile(ALICE))
        await asyncio.sleep(0)
        assert not unlinking.done()
        source.gate.set()
        outcomes = await asyncio.gather(running, unlinking, queued, return_exceptions=True)
        return outcomes, await store.get_records(ALICE), await store.get_link_by_identity(ALICE), store

    (result, removed, late), records, link, store = asyncio.run(scenario())

    assert {o.target.id for o in result.newly_satisfied} == {"a", "c"}
    assert removed is not None
    assert removed.identity == ALICE
    assert isinstance(late, UnknownIdentityError)
    assert invalidated == [ALICE]
    assert records == {}
    assert link is None
    assert ALICE not in store._identity_locks
