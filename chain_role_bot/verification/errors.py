from __future__ import annotations


RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})


def is_retryable_status(status: int | None) -> bool:
    return status in RETRYABLE_STATUSES


class RequestError(Exception):
    def __init__(self, reason: str, *, status: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status = status


class RetryableRequestError(RequestError):
    """Transient failure: the next reconciliation may succeed."""


class TerminalRequestError(RequestError):
    """Failure that retrying will not fix (bad payload, 4xx, reverted call)."""


class HttpStatusError(RequestError):
    def __init__(self, status: int, body: str = "") -> None:
        reason = f"HTTP {status}"
        if body:
            reason = f"{reason}: {body}"
        super().__init__(reason, status=status)


class InvalidIdentityError(ValueError):
    pass


class UnknownIdentityError(LookupError):
    pass


class LinkConflictError(ValueError):
    IDENTITY_TAKEN = "identity_taken"
    ACCOUNT_HAS_IDENTITY = "account_has_identity"

    def __init__(self, reason: str, *, identity: str, discord_id: str, existing: str = "") -> None:
        super().__init__(f"{reason}: identity={identity} discord_id={discord_id}")
        self.reason = reason
        self.identity = identity
        self.discord_id = discord_id
        self.existing = existing
