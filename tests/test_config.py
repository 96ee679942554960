from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chain_role_bot.config import Settings, load_targets  # noqa: E402
from chain_role_bot.verification.models import TargetKind  # noqa: E402

CONTRACT = "0x" + "0a" * 20


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("TARGET_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("DISCORD_TOKEN", "Bot abc.def.ghi")
    monkeypatch.setenv("EXPLORER_API_URL", "https://explorer.example/api")
    monkeypatch.setenv("DASHBOARD_API_URL", "https://dashboard.example/api")


def _explorer_target(monkeypatch: pytest.MonkeyPatch, index: int, target_id: str) -> None:
    monkeypatch.setenv(f"TARGET_{index}_ID", target_id)
    monkeypatch.setenv(f"TARGET_{index}_NAME", target_id.title())
    monkeypatch.setenv(f"TARGET_{index}_ADDRESS", CONTRACT)
    monkeypatch.setenv(f"TARGET_{index}_ROLE_ID", str(100 + index))


def test_targets_are_read_in_order_with_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    _explorer_target(monkeypatch, 1, "swap")
    monkeypatch.setenv("TARGET_3_ID", "codeassist")
    monkeypatch.setenv("TARGET_3_KIND", "boolean")
    monkeypatch.setenv("TARGET_3_ADDRESS", "applications/codeassist/userinfo/{address}")
    monkeypatch.setenv("TARGET_3_ROLE_ID", "300")
    monkeypatch.setenv("TARGET_3_FIELDS", "entries, betsPlaced")

    targets = load_targets()

    assert [t.id for t in targets] == ["swap", "codeassist"]
    swap, codeassist = targets
    assert swap.kind is TargetKind.COUNT
    assert swap.source == "explorer"
    assert swap.minimum_count == 3
    assert codeassist.kind is TargetKind.BOOLEAN
    assert codeassist.source == "dashboard"
    assert codeassist.display_name == "codeassist"
    assert codeassist.fields == ("entries", "betsPlaced")


def test_disabled_target_is_skipped(monkeypatch: pytest.MonkeyPatch) -> None:
    _explorer_target(monkeypatch, 1, "swap")
    _explorer_target(monkeypatch, 2, "bridge")
    monkeypatch.setenv("TARGET_2_ENABLED", "false")

    assert [t.id for t in load_targets()] == ["swap"]


def test_unknown_kind_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TARGET_1_ID", "weird")
    monkeypatch.setenv("TARGET_1_KIND", "percentage")

    with pytest.raises(ValueError, match="KIND"):
        load_targets()


def test_settings_defaults_and_token_cleanup(monkeypatch: pytest.MonkeyPatch) -> None:
    _explorer_target(monkeypatch, 1, "swap")
    monkeypatch.delenv("REQUESTS_PER_SECOND", raising=False)
    monkeypatch.delenv("BATCH_SIZE", raising=False)
    monkeypatch.setenv("CACHE_TTL_SECONDS", "oops")

    settings = Settings.from_env()
    settings.validate()

    assert settings.discord_token == "abc.def.ghi"
    assert settings.requests_per_second == pytest.approx(1.6)
    assert settings.batch_size == 50
    assert settings.cache_ttl_seconds == 300.0
    assert settings.sources_in_use == {"explorer"}


def test_validate_requires_a_target(monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(ValueError, match="TARGET"):
        Settings.from_env().validate()


def test_validate_rejects_duplicate_ids(monkeypatch: pytest.MonkeyPatch) -> None:
    _explorer_target(monkeypatch, 1, "swap")
    _explorer_target(monkeypatch, 2, "swap")

    with pytest.raises(ValueError, match="Duplicate"):
        Settings.from_env().validate()


def test_validate_requires_address_placeholder_for_dashboard(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TARGET_1_ID", "blockassist")
    monkeypatch.setenv("TARGET_1_KIND", "boolean")
    monkeypatch.setenv("TARGET_1_ADDRESS", "users/blockassist/stats")
    monkeypatch.setenv("TARGET_1_ROLE_ID", "5")

    with pytest.raises(ValueError, match="address"):
        Settings.from_env().validate()


def test_validate_requires_rpc_for_swarm(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TARGET_1_ID", "swarm")
    monkeypatch.setenv("TARGET_1_KIND", "boolean")
    monkeypatch.setenv("TARGET_1_SOURCE", "swarm")
    monkeypatch.setenv("TARGET_1_ROLE_ID", "5")
    monkeypatch.delenv("RPC_URL", raising=False)

    with pytest.raises(ValueError, match="RPC_URL"):
        Settings.from_env().validate()
