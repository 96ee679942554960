from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path

from .config import Settings
from .discord.client import ChainRoleBot
from .discord.commands import register_commands
from .services.base import EvidenceProvider, ProviderRouter
from .services.dashboard import DashboardEvidenceProvider
from .services.explorer import ExplorerEvidenceProvider
from .services.http import JsonHttpClient
from .services.swarm import SwarmContractEvidenceProvider
from .store import VerificationStore
from .verification.cache import EvidenceCache
from .verification.throttle import RequestController

logger = logging.getLogger("chain_role_bot")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("discord.http").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _acquire_instance_lock(lock_path: Path) -> None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    if lock_path.exists():
        stale_pid = 0
        with contextlib.suppress(ValueError, OSError):
            stale_pid = int(lock_path.read_text(encoding="utf-8").strip() or "0")
        if stale_pid > 0 and stale_pid != os.getpid() and _is_process_alive(stale_pid):
            raise RuntimeError(f"Bot is already running (pid={stale_pid}). Stop it before starting a new one.")
        with contextlib.suppress(OSError):
            lock_path.unlink()

    lock_path.write_text(str(os.getpid()), encoding="utf-8")


def _release_instance_lock(lock_path: Path) -> None:
    with contextlib.suppress(OSError):
        if lock_path.exists():
            lock_path.unlink()


def build_providers(settings: Settings, controller: RequestController) -> ProviderRouter:
    providers: dict[str, EvidenceProvider] = {}
    sources = settings.sources_in_use
    if "explorer" in sources:
        providers["explorer"] = ExplorerEvidenceProvider(
            controller,
            JsonHttpClient(settings.explorer_api_url, settings.request_timeout_seconds),
        )
    if "dashboard" in sources:
        providers["dashboard"] = DashboardEvidenceProvider(
            controller,
            JsonHttpClient(settings.dashboard_api_url, settings.request_timeout_seconds),
        )
    if "swarm" in sources:
        providers["swarm"] = SwarmContractEvidenceProvider(
            controller,
            rpc_url=settings.rpc_url,
            contract_address=settings.swarm_contract_address,
            timeout_seconds=settings.request_timeout_seconds,
        )
    return ProviderRouter(providers)


def build_bot(settings: Settings) -> ChainRoleBot:
    store = VerificationStore(settings.sqlite_path, max_outcome_entries=settings.max_outcome_entries)
    controller = RequestController(
        requests_per_second=settings.requests_per_second,
        max_retries=settings.max_retries,
        base_delay_seconds=settings.retry_base_delay_seconds,
        timeout_seconds=settings.request_timeout_seconds,
    )
    bot = ChainRoleBot(
        settings=settings,
        store=store,
        providers=build_providers(settings, controller),
        cache=EvidenceCache(settings.cache_ttl_seconds),
    )
    register_commands(bot)
    return bot


async def _run_bot(settings: Settings) -> None:
    bot = build_bot(settings)
    try:
        async with bot:
            await bot.start(settings.discord_token)
    finally:
        if not bot.is_closed():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(bot.close(), timeout=10.0)


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    logger.info(
        "Loaded %s target(s): %s",
        len(settings.targets),
        ", ".join(f"{t.id}[{t.source}]" for t in settings.targets),
    )
    lock_path = settings.sqlite_path.parent / "chain_role_bot.pid"
    _acquire_instance_lock(lock_path)
    try:
        asyncio.run(_run_bot(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
    finally:
        _release_instance_lock(lock_path)
