from __future__ import annotations

import asyncio
import logging
from typing import Any, List

import requests
from web3 import Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    Web3Exception,
    Web3RPCError,
)

from ..verification.errors import (
    HttpStatusError,
    InvalidIdentityError,
    RequestError,
    RetryableRequestError,
    TerminalRequestError,
)
from ..verification.identity import checksum_identity, shorten_identity
from ..verification.models import BooleanEvidence, Evidence, Target
from ..verification.throttle import RequestController
from .base import EvidenceProvider

logger = logging.getLogger("chain_role_bot.services.swarm")

SWARM_ABI = [
    {
        "name": "getPeerId",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "eoas", "type": "address[]"}],
        "outputs": [{"name": "", "type": "string[][]"}],
    },
    {
        "name": "getTotalWins",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "peerId", "type": "string"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


# JSON-RPC "limit exceeded" as used by public providers.
_RATE_LIMIT_CODES = frozenset({-32005, 429})
_TRANSIENT_MARKERS = ("rate limit", "rate-limit", "limit exceeded", "too many requests", "timeout", "timed out")


def _is_transient_rpc_error(exc: Web3RPCError) -> bool:
    response = getattr(exc, "rpc_response", None)
    error = response.get("error") if isinstance(response, dict) else None
    if isinstance(error, dict) and error.get("code") in _RATE_LIMIT_CODES:
        return True
    text = str(exc).lower()
    return "-32005" in text or any(marker in text for marker in _TRANSIENT_MARKERS)


async def _call_contract(function: Any) -> Any:
    try:
        return await asyncio.to_thread(function.call)
    except (ContractLogicError, BadFunctionCallOutput) as exc:
        raise TerminalRequestError(f"contract call failed: {exc}") from exc
    except requests.exceptions.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else 0
        raise HttpStatusError(status, "rpc") from exc
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
        raise RetryableRequestError(f"rpc connection error: {exc}") from exc
    except (ProviderConnectionError, TimeExhausted) as exc:
        raise RetryableRequestError(f"rpc unavailable: {exc}") from exc
    except Web3RPCError as exc:
        if _is_transient_rpc_error(exc):
            raise RetryableRequestError(f"rpc busy: {exc}", status=429) from exc
        raise TerminalRequestError(f"rpc error: {exc}") from exc
    except Web3Exception as exc:
        raise TerminalRequestError(f"web3 error: {exc}") from exc


class SwarmContractEvidenceProvider(EvidenceProvider):
    """Eligible when the peers registered for the address have at least one win."""

    source = "swarm"

    def __init__(
        self,
        controller: RequestController,
        *,
        rpc_url: str,
        contract_address: str,
        timeout_seconds: float = 15.0,
    ) -> None:
        super().__init__(controller)
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds}))
        self.contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=SWARM_ABI)

    async def peer_ids(self, address: str) -> List[str]:
        result = await self.controller.execute(
            lambda: _call_contract(self.contract.functions.getPeerId([address])),
            label="swarm getPeerId",
        )
        if not result:
            return []
        return [str(peer) for peer in result[0]]

    async def total_wins(self, peer_id: str) -> int:
        wins = await self.controller.execute(
            lambda: _call_contract(self.contract.functions.getTotalWins(peer_id)),
            label="swarm getTotalWins",
        )
        return int(wins)

    async def fetch_evidence(self, identity: str, target: Target) -> Evidence:
        try:
            address = checksum_identity(identity)
        except InvalidIdentityError as exc:
            raise TerminalRequestError(str(exc)) from exc

        peers = await self.peer_ids(address)
        if not peers:
            return BooleanEvidence(target.id, False, "No peer IDs registered")

        results = await asyncio.gather(*(self.total_wins(peer) for peer in peers), return_exceptions=True)
        total = 0
        failures: List[RequestError] = []
        for peer, result in zip(peers, results):
            if isinstance(result, RequestError):
                logger.info("Wins lookup failed for peer %s of %s: %s", peer, shorten_identity(identity), result.reason)
                failures.append(result)
                continue
            if isinstance(result, BaseException):
                raise result
            total += result

        if total > 0:
            return BooleanEvidence(target.id, True, f"Verified (Peers: {len(peers)}, Total Wins: {total})")
        if failures:
            # Zero wins is not conclusive while some peers could not be read.
            raise failures[0]
        return BooleanEvidence(target.id, False, f"No wins found (Peers: {len(peers)}, Wins: 0)")
