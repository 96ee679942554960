from __future__ import annotations

import asyncio
import logging

import discord
from discord.ext import commands

from ..config import Settings
from ..services.base import ProviderRouter
from ..store import VerificationStore
from ..verification.cache import EvidenceCache
from ..verification.engine import VerificationEngine
from ..verification.models import ReconciliationResult, RoleGrantReport
from ..verification.scheduler import BatchScheduler
from .common import chunk_text
from .rendering import render_announcement
from .roles import DiscordRoleGrantor

logger = logging.getLogger("chain_role_bot")


class ChainRoleBot(commands.Bot):
    def __init__(
        self,
        settings: Settings,
        store: VerificationStore,
        providers: ProviderRouter,
        cache: EvidenceCache,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        intents.guilds = True
        intents.members = settings.discord_members_intent

        super().__init__(command_prefix=settings.command_prefix, intents=intents)

        self.settings = settings
        self.store = store
        self.providers = providers
        self.cache = cache
        self.role_grantor = DiscordRoleGrantor(self, store)
        self.engine = VerificationEngine(
            store=store,
            source=providers,
            cache=cache,
            targets=settings.targets,
            role_grantor=self.role_grantor,
        )
        self.scheduler = BatchScheduler(
            engine=self.engine,
            store=store,
            role_grantor=self.role_grantor,
            batch_size=settings.batch_size,
            interval_seconds=settings.auto_verify_interval_minutes * 60.0,
            batch_delay_seconds=settings.batch_delay_seconds,
            max_identities_per_run=settings.max_identities_per_run,
            on_newly_satisfied=self.announce_verification,
        )

    async def setup_hook(self) -> None:
        await self.store.init()
        await self.providers.start()
        if self.settings.auto_verify_enabled:
            self.scheduler.start()
            logger.info(
                "Auto-verify enabled (every %.1f min, batch size %s)",
                self.settings.auto_verify_interval_minutes,
                self.settings.batch_size,
            )
        else:
            logger.info("Auto-verify disabled")

    async def close(self) -> None:
        await self._run_shutdown_step("scheduler.stop", self.scheduler.stop(), timeout=10.0)
        await self._run_shutdown_step("providers.close", self.providers.close(), timeout=6.0)
        await self._run_shutdown_step("discord.Client.close", super().close(), timeout=6.0)

    async def _run_shutdown_step(self, label: str, coro: object, *, timeout: float) -> None:
        try:
            await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
        except asyncio.TimeoutError:
            logger.warning("Shutdown step timed out: %s", label)
        except Exception as exc:
            logger.warning("Shutdown step failed: %s (%s)", label, exc)

    async def on_ready(self) -> None:
        if self.user:
            logger.info(
                "Connected as %s (%s), %s guild(s), %s target(s)",
                self.user,
                self.user.id,
                len(self.guilds),
                len(self.engine.targets),
            )

    async def on_command_error(self, ctx: commands.Context, error: commands.CommandError) -> None:
        if isinstance(error, commands.CommandOnCooldown):
            await ctx.send(f"⏳ Please wait {error.retry_after:.0f}s before using this command again.")
            return
        if isinstance(error, commands.NoPrivateMessage):
            await ctx.send("This command works only in a server.")
            return
        if isinstance(error, commands.CheckFailure):
            await ctx.send("You need administrator permission for this command.")
            return
        if isinstance(error, (commands.MissingRequiredArgument, commands.BadArgument)):
            await ctx.send(f"Usage: `{self.settings.command_prefix}{ctx.command} {ctx.command.signature}`")
            return
        if isinstance(error, commands.CommandNotFound):
            return
        logger.error("Command %s failed", ctx.command, exc_info=error)
        await ctx.send("❌ Something went wrong. Please try again later.")

    async def send_chunks(
        self,
        destination: discord.abc.Messageable,
        text: str,
        reference: discord.Message | None = None,
    ) -> None:
        for index, part in enumerate(chunk_text(text)):
            kwargs = {}
            if index == 0 and reference is not None:
                kwargs["reference"] = reference
            await destination.send(part, **kwargs)

    async def announce_verification(self, result: ReconciliationResult, grants: RoleGrantReport) -> None:
        channel_id = self.settings.verification_channel_id
        if not channel_id:
            return
        channel = self.get_channel(channel_id)
        if channel is None:
            logger.warning("Verification channel %s not found", channel_id)
            return
        link = await self.store.get_link_by_identity(result.identity)
        if link is None:
            return
        try:
            await self.send_chunks(channel, render_announcement(link.discord_id, result, grants))
        except discord.HTTPException as exc:
            logger.warning("Failed to announce verification in %s: %s", channel_id, exc)

    async def log_admin_action(self, text: str) -> None:
        channel_id = self.settings.log_channel_id
        logger.info("Admin action: %s", text)
        if not channel_id:
            return
        channel = self.get_channel(channel_id)
        if channel is None:
            return
        try:
            await self.send_chunks(channel, text)
        except discord.HTTPException as exc:
            logger.warning("Failed to write admin log to %s: %s", channel_id, exc)
