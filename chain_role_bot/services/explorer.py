from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

from ..verification.errors import RequestError, RetryableRequestError, TerminalRequestError
from ..verification.identity import shorten_identity
from ..verification.models import CountEvidence, Evidence, Target
from ..verification.throttle import RequestController
from .base import EvidenceProvider, error_evidence
from .http import JsonHttpClient

logger = logging.getLogger("chain_role_bot.services.explorer")

NO_TRANSACTIONS_MESSAGE = "no transactions found"


def parse_explorer_payload(payload: Any) -> List[Dict[str, Any]]:
    """Return the transaction list from an Etherscan-style ``txlistinternal`` response."""
    if not isinstance(payload, dict):
        raise TerminalRequestError("explorer returned an unexpected payload")
    status = str(payload.get("status", ""))
    message = str(payload.get("message") or "")
    result = payload.get("result")

    if status == "1":
        if not isinstance(result, list):
            raise TerminalRequestError("explorer result is not a list")
        return [item for item in result if isinstance(item, dict)]

    if message.strip().lower() == NO_TRANSACTIONS_MESSAGE:
        return []
    reason = message or "unknown explorer error"
    if isinstance(result, str) and result.strip():
        reason = f"{reason}: {result.strip()}"
    if "rate limit" in reason.lower():
        raise RetryableRequestError(f"explorer rate limited ({reason})", status=429)
    raise TerminalRequestError(f"explorer error: {reason}")


def count_contract_interactions(transactions: Sequence[Dict[str, Any]], contract_address: str) -> int:
    """Transactions to or from ``contract_address``; repeated trace rows for one hash count once."""
    contract = contract_address.strip().lower()
    seen: set[str] = set()
    total = 0
    for index, tx in enumerate(transactions):
        to_address = str(tx.get("to") or "").lower()
        from_address = str(tx.get("from") or "").lower()
        if contract not in {to_address, from_address}:
            continue
        tx_hash = str(tx.get("hash") or tx.get("transactionHash") or f"#{index}").lower()
        if tx_hash in seen:
            continue
        seen.add(tx_hash)
        total += 1
    return total


def describe_count(count: int, minimum: int) -> str:
    if count == 0:
        return "No transactions found"
    if count < minimum:
        return f"Only {count} txns found (min {minimum} required)"
    return f"{count} transactions"


class ExplorerEvidenceProvider(EvidenceProvider):
    source = "explorer"

    def __init__(self, controller: RequestController, http: JsonHttpClient) -> None:
        super().__init__(controller)
        self.http = http

    async def start(self) -> None:
        await self.http.start()

    async def close(self) -> None:
        await self.http.close()

    async def fetch_transactions(self, identity: str) -> List[Dict[str, Any]]:
        async def _call() -> List[Dict[str, Any]]:
            _, payload = await self.http.get_json(
                params={"module": "account", "action": "txlistinternal", "address": identity},
            )
            return parse_explorer_payload(payload)

        transactions = await self.controller.execute(_call, label="explorer txlistinternal")
        logger.debug("Fetched %s internal transactions for %s", len(transactions), shorten_identity(identity))
        return transactions

    @staticmethod
    def count_evidence(target: Target, transactions: Sequence[Dict[str, Any]]) -> CountEvidence:
        count = count_contract_interactions(transactions, target.address)
        return CountEvidence(target.id, count, describe_count(count, target.minimum_count))

    async def fetch_evidence(self, identity: str, target: Target) -> Evidence:
        return (await self.fetch_evidence_batch(identity, [target]))[0]

    async def fetch_evidence_batch(self, identity: str, targets: Sequence[Target]) -> List[Evidence]:
        # One transaction list answers every explorer target.
        try:
            transactions = await self.fetch_transactions(identity)
        except RequestError as exc:
            logger.info("Explorer lookup failed for %s: %s", shorten_identity(identity), exc.reason)
            return [error_evidence(target, exc) for target in targets]
        return [self.count_evidence(target, transactions) for target in targets]
