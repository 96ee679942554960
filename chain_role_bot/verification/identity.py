from __future__ import annotations

from datetime import datetime, timezone

from web3 import Web3

from .errors import InvalidIdentityError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_identity(value: str) -> bool:
    return Web3.is_address((value or "").strip())


def normalize_identity(value: str) -> str:
    """Lower-case form used as the store key; raises on anything that is not an EVM address."""
    cleaned = (value or "").strip()
    if not cleaned or not Web3.is_address(cleaned):
        raise InvalidIdentityError(f"not a valid address: {cleaned!r}")
    return cleaned.lower()


def checksum_identity(value: str) -> str:
    return Web3.to_checksum_address(normalize_identity(value))


def shorten_identity(identity: str) -> str:
    if len(identity) <= 16:
        return identity
    return f"{identity[:10]}...{identity[-4:]}"
