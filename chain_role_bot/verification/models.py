from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal, Union


class TargetKind(str, Enum):
    COUNT = "count"
    BOOLEAN = "boolean"


OutcomeCategory = Literal[
    "newly_satisfied",
    "confirmed_satisfied",
    "satisfied_role_missing",
    "unsatisfied",
]


@dataclass(slots=True, frozen=True)
class Target:
    """One verification target and the role it unlocks.

    ``address`` means different things per source: a contract address for the
    explorer, a path template containing ``{address}`` for the dashboard, and
    the contract address for swarm lookups.
    """

    id: str
    display_name: str
    role_id: int
    kind: TargetKind
    source: str
    address: str = ""
    minimum_count: int = 1
    fields: tuple[str, ...] = ("participation",)

    def requirement_text(self) -> str:
        if self.kind is TargetKind.COUNT:
            noun = "transaction" if self.minimum_count == 1 else "transactions"
            return f"at least {self.minimum_count} {noun}"
        return "active participation"


@dataclass(slots=True, frozen=True)
class CountEvidence:
    target_id: str
    count: int
    detail: str = ""
    kind: Literal["count"] = "count"


@dataclass(slots=True, frozen=True)
class BooleanEvidence:
    target_id: str
    eligible: bool
    detail: str = ""
    kind: Literal["boolean"] = "boolean"


@dataclass(slots=True, frozen=True)
class ErrorEvidence:
    target_id: str
    reason: str
    retryable: bool = False
    kind: Literal["error"] = "error"

    @property
    def detail(self) -> str:
        return self.reason


Evidence = Union[CountEvidence, BooleanEvidence, ErrorEvidence]


def evidence_count(evidence: Evidence) -> int | None:
    if isinstance(evidence, CountEvidence):
        return max(0, int(evidence.count))
    return None


@dataclass(slots=True, frozen=True)
class IdentityLink:
    identity: str
    discord_id: str
    discord_username: str
    linked_at: datetime | None
    last_checked_at: datetime | None = None
    attempts: int = 0


@dataclass(slots=True)
class VerificationRecord:
    target_id: str
    satisfied: bool = False
    evidence_count: int | None = None
    evidence_detail: str = ""
    first_satisfied_at: datetime | None = None
    last_checked_at: datetime | None = None


@dataclass(slots=True)
class TargetOutcome:
    target: Target
    evidence: Evidence
    record: VerificationRecord
    category: OutcomeCategory
    reason: str = ""
    retryable: bool = False
    transitioned: bool = False

    @property
    def progress(self) -> str:
        if self.target.kind is not TargetKind.COUNT:
            return ""
        count = evidence_count(self.evidence)
        if count is None:
            count = self.record.evidence_count
        if count is None:
            return f"?/{self.target.minimum_count}"
        return f"{count}/{self.target.minimum_count}"


@dataclass(slots=True)
class ReconciliationResult:
    identity: str
    checked_at: datetime
    newly_satisfied: list[TargetOutcome] = field(default_factory=list)
    confirmed_satisfied: list[TargetOutcome] = field(default_factory=list)
    satisfied_role_missing: list[TargetOutcome] = field(default_factory=list)
    unsatisfied: list[TargetOutcome] = field(default_factory=list)
    outcomes: list[TargetOutcome] = field(default_factory=list)

    def add(self, outcome: TargetOutcome) -> None:
        self.outcomes.append(outcome)
        self._bucket(outcome.category).append(outcome)

    def _bucket(self, category: OutcomeCategory) -> list[TargetOutcome]:
        if category == "newly_satisfied":
            return self.newly_satisfied
        if category == "confirmed_satisfied":
            return self.confirmed_satisfied
        if category == "satisfied_role_missing":
            return self.satisfied_role_missing
        return self.unsatisfied

    def mark_role_missing(self, outcome: TargetOutcome) -> None:
        if outcome.category == "satisfied_role_missing":
            return
        self._bucket(outcome.category).remove(outcome)
        outcome.category = "satisfied_role_missing"
        # Keep bucket order aligned with target order.
        self.satisfied_role_missing.append(outcome)
        self.satisfied_role_missing.sort(key=self.outcomes.index)

    @property
    def evidence(self) -> dict[str, Evidence]:
        return {outcome.target.id: outcome.evidence for outcome in self.outcomes}

    @property
    def needs_role(self) -> list[TargetOutcome]:
        return [o for o in self.outcomes if o.category in {"newly_satisfied", "satisfied_role_missing"}]

    @property
    def transitions(self) -> list[TargetOutcome]:
        return [o for o in self.outcomes if o.transitioned]

    @property
    def satisfied_count(self) -> int:
        return sum(1 for o in self.outcomes if o.category != "unsatisfied")

    @property
    def has_retryable_failures(self) -> bool:
        return any(o.retryable for o in self.unsatisfied)


@dataclass(slots=True)
class RoleGrantReport:
    granted: list[Target] = field(default_factory=list)
    failed: list[Target] = field(default_factory=list)

    def was_granted(self, target: Target) -> bool:
        return any(item.id == target.id for item in self.granted)


@dataclass(slots=True)
class BatchRunReport:
    processed: int = 0
    newly_satisfied: int = 0
    failed: int = 0
    roles_granted: int = 0
    deferred: int = 0
    skipped: bool = False
    duration_seconds: float = 0.0
    failed_identities: list[str] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class OutcomeEntry:
    status: str
    identity: str
    discord_id: str
    discord_username: str
    target_id: str
    target_name: str
    detail: str
    evidence_count: int | None
    role_assigned: bool
    created_at: datetime | None
