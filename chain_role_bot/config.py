from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from web3 import Web3

from .verification.models import Target, TargetKind


load_dotenv()

MAX_TARGETS = 20
TARGET_SOURCES = ("explorer", "dashboard", "swarm")


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _clean_token(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bot "):
        cleaned = cleaned[4:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def load_targets(max_targets: int = MAX_TARGETS) -> List[Target]:
    """Read ``TARGET_<n>_*`` blocks; a block counts when its ``TARGET_<n>_ID`` is set."""
    targets: List[Target] = []
    for index in range(1, max_targets + 1):
        prefix = f"TARGET_{index}_"
        target_id = _env_str(f"{prefix}ID", "")
        if not target_id:
            continue
        if not _env_bool(f"{prefix}ENABLED", True):
            continue

        raw_kind = _env_str(f"{prefix}KIND", "count").lower()
        try:
            kind = TargetKind(raw_kind)
        except ValueError as exc:
            raise ValueError(f"{prefix}KIND must be 'count' or 'boolean', got '{raw_kind}'") from exc

        default_source = "explorer" if kind is TargetKind.COUNT else "dashboard"
        source = _env_str(f"{prefix}SOURCE", default_source).lower()
        fields = tuple(
            part.strip()
            for part in _env_str(f"{prefix}FIELDS", "participation").split(",")
            if part.strip()
        )
        targets.append(
            Target(
                id=target_id,
                display_name=_env_str(f"{prefix}NAME", target_id),
                role_id=_env_int(f"{prefix}ROLE_ID", 0),
                kind=kind,
                source=source,
                address=_env_str(f"{prefix}ADDRESS", ""),
                minimum_count=_env_int(f"{prefix}MIN_COUNT", 3) if kind is TargetKind.COUNT else 1,
                fields=fields or ("participation",),
            )
        )
    return targets


@dataclass(slots=True)
class Settings:
    discord_token: str
    command_prefix: str
    discord_members_intent: bool
    verification_channel_id: int
    log_channel_id: int
    link_cooldown_seconds: int
    verify_cooldown_seconds: int

    sqlite_path: Path
    max_outcome_entries: int

    explorer_api_url: str
    dashboard_api_url: str
    rpc_url: str
    swarm_contract_address: str

    requests_per_second: float
    max_retries: int
    retry_base_delay_seconds: float
    request_timeout_seconds: float
    cache_ttl_seconds: float

    auto_verify_enabled: bool
    auto_verify_interval_minutes: float
    batch_size: int
    batch_delay_seconds: float
    max_identities_per_run: int

    log_level: str
    targets: List[Target] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            discord_token=_clean_token(_env_str("DISCORD_TOKEN", "")),
            command_prefix=_env_str("DISCORD_COMMAND_PREFIX", "!"),
            discord_members_intent=_env_bool("DISCORD_MEMBERS_INTENT", True),
            verification_channel_id=_env_int("VERIFICATION_CHANNEL_ID", 0),
            log_channel_id=_env_int("LOG_CHANNEL_ID", 0),
            link_cooldown_seconds=_env_int("LINK_COOLDOWN_SECONDS", 30),
            verify_cooldown_seconds=_env_int("VERIFY_COOLDOWN_SECONDS", 60),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/verification.db")),
            max_outcome_entries=_env_int("MAX_OUTCOME_ENTRIES", 1000),
            explorer_api_url=_env_str("EXPLORER_API_URL", ""),
            dashboard_api_url=_env_str("DASHBOARD_API_URL", ""),
            rpc_url=_env_str("RPC_URL", ""),
            swarm_contract_address=_env_str("SWARM_CONTRACT_ADDRESS", ""),
            requests_per_second=_env_float("REQUESTS_PER_SECOND", 1.6),
            max_retries=_env_int("MAX_RETRIES", 3),
            retry_base_delay_seconds=_env_float("RETRY_BASE_DELAY_SECONDS", 1.0),
            request_timeout_seconds=_env_float("REQUEST_TIMEOUT_SECONDS", 15.0),
            cache_ttl_seconds=_env_float("CACHE_TTL_SECONDS", 300.0),
            auto_verify_enabled=_env_bool("AUTO_VERIFY_ENABLED", True),
            auto_verify_interval_minutes=_env_float("AUTO_VERIFY_INTERVAL_MINUTES", 5.0),
            batch_size=_env_int("BATCH_SIZE", 50),
            batch_delay_seconds=_env_float("BATCH_DELAY_SECONDS", 0.1),
            max_identities_per_run=_env_int("MAX_IDENTITIES_PER_RUN", 500),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            targets=load_targets(),
        )

    @property
    def sources_in_use(self) -> set[str]:
        return {target.source for target in self.targets}

    def validate(self) -> None:
        if not self.discord_token:
            raise ValueError("DISCORD_TOKEN is required")
        if self.discord_token.lower() in {"your_token_here", "changeme", "replace_me"}:
            raise ValueError("DISCORD_TOKEN is still placeholder")
        if not self.command_prefix:
            raise ValueError("DISCORD_COMMAND_PREFIX cannot be empty")

        if self.requests_per_second <= 0:
            raise ValueError("REQUESTS_PER_SECOND must be > 0")
        if self.max_retries < 0:
            raise ValueError("MAX_RETRIES must be >= 0")
        if self.retry_base_delay_seconds < 0:
            raise ValueError("RETRY_BASE_DELAY_SECONDS must be >= 0")
        if self.request_timeout_seconds <= 0:
            raise ValueError("REQUEST_TIMEOUT_SECONDS must be > 0")
        if self.cache_ttl_seconds < 0:
            raise ValueError("CACHE_TTL_SECONDS must be >= 0 (0 disables caching)")
        if self.batch_size < 1:
            raise ValueError("BATCH_SIZE must be >= 1")
        if self.auto_verify_interval_minutes <= 0:
            raise ValueError("AUTO_VERIFY_INTERVAL_MINUTES must be > 0")
        if self.max_identities_per_run < 1:
            raise ValueError("MAX_IDENTITIES_PER_RUN must be >= 1")
        if self.max_outcome_entries < 1:
            raise ValueError("MAX_OUTCOME_ENTRIES must be >= 1")

        if not self.targets:
            raise ValueError("At least one TARGET_<n>_ID must be configured")
        seen: set[str] = set()
        for target in self.targets:
            if target.id in seen:
                raise ValueError(f"Duplicate target id '{target.id}'")
            seen.add(target.id)
            if target.role_id <= 0:
                raise ValueError(f"Target '{target.id}' needs a ROLE_ID")
            if target.source not in TARGET_SOURCES:
                raise ValueError(f"Target '{target.id}' has unknown SOURCE '{target.source}'")
            if target.kind is TargetKind.COUNT:
                if target.minimum_count < 1:
                    raise ValueError(f"Target '{target.id}' MIN_COUNT must be >= 1")
                if target.source != "explorer":
                    raise ValueError(f"Count target '{target.id}' must use the explorer source")
                if not Web3.is_address(target.address):
                    raise ValueError(f"Target '{target.id}' ADDRESS is not a valid contract address")
            elif target.source == "explorer":
                raise ValueError(f"Boolean target '{target.id}' cannot use the explorer source")
            if target.source == "dashboard" and "{address}" not in target.address:
                raise ValueError(f"Target '{target.id}' ADDRESS must be a path containing '{{address}}'")

        sources = self.sources_in_use
        if "explorer" in sources and not self.explorer_api_url:
            raise ValueError("EXPLORER_API_URL is required for explorer targets")
        if "dashboard" in sources and not self.dashboard_api_url:
            raise ValueError("DASHBOARD_API_URL is required for dashboard targets")
        if "swarm" in sources:
            if not self.rpc_url:
                raise ValueError("RPC_URL is required for swarm targets")
            if not Web3.is_address(self.swarm_contract_address):
                raise ValueError("SWARM_CONTRACT_ADDRESS must be a valid contract address")
