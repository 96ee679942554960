from __future__ import annotations

from typing import Any

from ..verification.errors import InvalidIdentityError, TerminalRequestError
from ..verification.identity import checksum_identity
from ..verification.models import BooleanEvidence, Evidence, Target
from ..verification.throttle import RequestController
from .base import EvidenceProvider
from .http import JsonHttpClient


def _is_positive(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    if isinstance(value, str):
        try:
            return float(value) > 0
        except ValueError:
            return False
    return False


def _describe(value: Any) -> str:
    if isinstance(value, (list, tuple, dict)):
        return str(len(value))
    if value is None:
        return "0"
    return str(value)


def dashboard_evidence(target: Target, status: int, payload: Any) -> BooleanEvidence:
    """A target is eligible when any configured field is positive or a non-empty list."""
    if status == 404 or not isinstance(payload, dict) or not payload:
        return BooleanEvidence(target.id, False, "No participation found")
    values = {name: payload.get(name) for name in target.fields}
    parts = ", ".join(f"{name}: {_describe(value)}" for name, value in values.items())
    if any(_is_positive(value) for value in values.values()):
        return BooleanEvidence(target.id, True, f"Verified ({parts})")
    return BooleanEvidence(target.id, False, f"No participation found ({parts})")


class DashboardEvidenceProvider(EvidenceProvider):
    """Participation lookups against the dashboard API.

    ``Target.address`` holds the path template, e.g.
    ``applications/codeassist/userinfo/{address}``; the dashboard expects the
    checksummed address.
    """

    source = "dashboard"

    def __init__(self, controller: RequestController, http: JsonHttpClient) -> None:
        super().__init__(controller)
        self.http = http

    async def start(self) -> None:
        await self.http.start()

    async def close(self) -> None:
        await self.http.close()

    async def fetch_evidence(self, identity: str, target: Target) -> Evidence:
        try:
            address = checksum_identity(identity)
        except InvalidIdentityError as exc:
            raise TerminalRequestError(str(exc)) from exc
        path = target.address.replace("{address}", address)

        async def _call() -> tuple[int, Any]:
            return await self.http.get_json(path, allow_statuses=(404,))

        status, payload = await self.controller.execute(_call, label=f"dashboard {target.id}")
        return dashboard_evidence(target, status, payload)
