from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Sequence

from ..verification.errors import LinkConflictError
from ..verification.identity import shorten_identity
from ..verification.models import (
    BatchRunReport,
    ErrorEvidence,
    Evidence,
    IdentityLink,
    OutcomeEntry,
    ReconciliationResult,
    RoleGrantReport,
    Target,
    TargetKind,
    TargetOutcome,
    VerificationRecord,
    evidence_count,
)
from .common import format_timestamp, progress_bar, truncate


def _outcome_line(outcome: TargetOutcome) -> str:
    label = outcome.target.display_name
    if outcome.target.kind is TargetKind.COUNT:
        return f"**{label}** ({outcome.progress})"
    return f"**{label}**"


def render_verification(result: ReconciliationResult, grants: RoleGrantReport, total_targets: int) -> str:
    satisfied = result.satisfied_count
    lines = [
        f"🔍 Verification for `{shorten_identity(result.identity)}`",
        f"Progress: {progress_bar(satisfied, total_targets)} {satisfied}/{total_targets}",
    ]

    if result.newly_satisfied:
        lines.append("")
        lines.append("✅ **Newly verified**")
        for outcome in result.newly_satisfied:
            lines.append(f"• {_outcome_line(outcome)} <@&{outcome.target.role_id}>")

    if result.confirmed_satisfied:
        lines.append("")
        lines.append("📋 **Already verified**")
        for outcome in result.confirmed_satisfied:
            lines.append(f"• {_outcome_line(outcome)}")

    if result.satisfied_role_missing:
        lines.append("")
        lines.append("🛠️ **Verified, role status**")
        for outcome in result.satisfied_role_missing:
            if grants.was_granted(outcome.target):
                status = "role restored"
            elif outcome.transitioned:
                status = "role could not be assigned yet, it will be retried automatically"
            else:
                status = "role missing, it will be retried automatically"
            lines.append(f"• {_outcome_line(outcome)}: {status}")

    pending = [o for o in result.unsatisfied if not o.retryable]
    unavailable = [o for o in result.unsatisfied if o.retryable]
    if pending:
        lines.append("")
        lines.append("❌ **Not yet eligible**")
        for outcome in pending:
            requirement = outcome.target.requirement_text()
            lines.append(f"• {_outcome_line(outcome)}: {truncate(outcome.reason, 160)} (needs {requirement})")
    if unavailable:
        lines.append("")
        lines.append("⏳ **Temporarily unavailable**")
        for outcome in unavailable:
            lines.append(f"• **{outcome.target.display_name}**: lookup failed, please try again later")
    return "\n".join(lines)


def render_status(
    link: IdentityLink,
    records: Mapping[str, VerificationRecord],
    targets: Sequence[Target],
) -> str:
    satisfied = sum(1 for target in targets if (record := records.get(target.id)) and record.satisfied)
    lines = [
        f"👛 Wallet: `{link.identity}`",
        f"Linked: {format_timestamp(link.linked_at)} | Last check: {format_timestamp(link.last_checked_at)}",
        f"Progress: {progress_bar(satisfied, len(targets))} {satisfied}/{len(targets)}",
        "",
    ]
    for target in targets:
        record = records.get(target.id)
        if record is None:
            lines.append(f"⬜ **{target.display_name}**: not checked yet")
            continue
        marker = "✅" if record.satisfied else "❌"
        detail = record.evidence_detail or "no data"
        if target.kind is TargetKind.COUNT and record.evidence_count is not None:
            detail = f"{record.evidence_count}/{target.minimum_count} transactions"
        lines.append(f"{marker} **{target.display_name}**: {truncate(detail, 160)}")
    return "\n".join(lines)


def render_targets(targets: Sequence[Target]) -> str:
    lines = ["🎯 **Verification targets**"]
    for target in targets:
        lines.append(
            f"• **{target.display_name}** (`{target.id}`): {target.requirement_text()} → <@&{target.role_id}>"
        )
    return "\n".join(lines)


def render_preview(identity: str, targets: Sequence[Target], evidence: Mapping[str, Evidence]) -> str:
    lines = [f"🔎 Live check for `{shorten_identity(identity)}` (nothing is saved)"]
    for target in targets:
        item = evidence.get(target.id)
        if item is None or isinstance(item, ErrorEvidence):
            reason = item.reason if item is not None else "no data"
            lines.append(f"⏳ **{target.display_name}**: {truncate(reason, 160)}")
            continue
        if target.kind is TargetKind.COUNT:
            count = evidence_count(item) or 0
            marker = "✅" if count >= target.minimum_count else "❌"
            lines.append(f"{marker} **{target.display_name}**: {count}/{target.minimum_count} transactions")
            continue
        marker = "✅" if getattr(item, "eligible", False) else "❌"
        lines.append(f"{marker} **{target.display_name}**: {truncate(item.detail, 160)}")
    return "\n".join(lines)


def render_stats(
    stats: Mapping[str, Any],
    targets: Sequence[Target],
    last_run: BatchRunReport | None = None,
) -> str:
    total = int(stats.get("total_identities", 0))
    verified = int(stats.get("verified_identities", 0))
    lines = [
        "📊 **Verification stats**",
        f"Linked wallets: {total}",
        f"Verified for at least one target: {verified}",
        f"Logged successes: {stats.get('successes', 0)} | failures: {stats.get('failures', 0)}",
        "",
    ]
    per_target = stats.get("targets", {})
    for target in targets:
        count = int(per_target.get(target.id, 0))
        lines.append(f"• **{target.display_name}**: {count} {progress_bar(count, total)}")
    if last_run is not None:
        lines.append("")
        lines.append(
            "Last auto-verify: "
            f"processed={last_run.processed} newly={last_run.newly_satisfied} "
            f"failed={last_run.failed} roles={last_run.roles_granted} "
            f"deferred={last_run.deferred} ({last_run.duration_seconds:.1f}s)"
        )
    return "\n".join(lines)


def render_outcomes(title: str, entries: Sequence[OutcomeEntry]) -> str:
    if not entries:
        return f"{title}\nNo entries."
    lines = [title]
    for entry in entries:
        who = entry.discord_username or entry.discord_id or "unknown"
        when = format_timestamp(entry.created_at)
        role = " (role assigned)" if entry.role_assigned else ""
        lines.append(
            f"• {when} `{shorten_identity(entry.identity)}` {who} "
            f"[{entry.target_name or entry.target_id}] {truncate(entry.detail, 120)}{role}"
        )
    return "\n".join(lines)


def render_batch_report(report: BatchRunReport) -> str:
    if report.skipped:
        return "⏳ A verification run is already in progress."
    return (
        "✅ Verification run finished: "
        f"processed {report.processed}, newly verified {report.newly_satisfied}, "
        f"failed {report.failed}, roles granted {report.roles_granted}, deferred {report.deferred}."
    )


def render_announcement(discord_id: str, result: ReconciliationResult, grants: RoleGrantReport) -> str:
    names = ", ".join(f"**{o.target.display_name}**" for o in result.transitions)
    lines = [f"🎉 <@{discord_id}> verified {names}!"]
    if grants.failed:
        lines.append("Some roles could not be assigned yet and will be retried automatically.")
    return "\n".join(lines)


def link_conflict_message(exc: LinkConflictError) -> str:
    if exc.reason == LinkConflictError.IDENTITY_TAKEN:
        return "❌ This wallet is already linked to another Discord account."
    return f"❌ You already have a wallet linked (`{shorten_identity(exc.existing)}`). Ask an admin to unlink it first."


def format_export_text(rows: Sequence[Dict[str, Any]], targets: Sequence[Target]) -> str:
    header = ["WALLET", "DISCORD_ID", "DISCORD_NAME"]
    header.extend(target.display_name.upper() for target in targets)
    header.append("LINKED_AT")
    lines = [" | ".join(header)]
    for row in rows:
        cells = [row["identity"], row["discord_id"], row["discord_username"] or "Unknown"]
        for target in targets:
            verification = row["verifications"].get(target.id, {})
            marker = "✅" if verification.get("satisfied") else "❌"
            if target.kind is TargetKind.COUNT:
                cells.append(f"{marker} ({verification.get('evidence_count') or 0} txns)")
            else:
                cells.append(marker)
        linked_at = str(row.get("linked_at") or "")
        cells.append(linked_at.split("T")[0] if linked_at else "N/A")
        lines.append(" | ".join(cells))
    return "\n".join(lines)


def format_export_json(rows: Sequence[Dict[str, Any]]) -> str:
    return json.dumps({row["identity"]: row for row in rows}, indent=2, ensure_ascii=False)
