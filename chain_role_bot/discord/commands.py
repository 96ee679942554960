from __future__ import annotations

import io
import logging
from typing import Callable, TypeVar

import discord
from discord.ext import commands

from ..verification.engine import apply_role_grants, log_outcomes
from ..verification.errors import InvalidIdentityError, LinkConflictError, UnknownIdentityError
from ..verification.identity import is_valid_identity, normalize_identity, shorten_identity, utc_now
from .common import parse_user_id
from .rendering import (
    format_export_json,
    format_export_text,
    link_conflict_message,
    render_batch_report,
    render_outcomes,
    render_preview,
    render_stats,
    render_status,
    render_targets,
    render_verification,
)

logger = logging.getLogger("chain_role_bot.commands")

F = TypeVar("F")


def _cooldown(seconds: int) -> Callable[[F], F]:
    if seconds <= 0:
        return lambda func: func
    return commands.cooldown(1, float(seconds), commands.BucketType.user)


def register_commands(bot) -> None:
    prefix = bot.settings.command_prefix

    @bot.command(name="help_verify")
    async def help_verify(ctx: commands.Context) -> None:
        lines = [
            "Verification commands:",
            f"`{prefix}link <wallet>` Link your wallet to your Discord account.",
            f"`{prefix}verify [target]` Check your wallet and receive roles.",
            f"`{prefix}mystatus` Show your stored verification status.",
            f"`{prefix}targets` List verification targets and their roles.",
            f"`{prefix}checkwallet <wallet> [target]` Live check of any wallet (nothing is saved).",
            "Admin: `stats`, `admin_failures`, `admin_successes`, `admin_user`, "
            "`admin_export [json|txt]`, `admin_unlink`, `admin_run`.",
        ]
        await ctx.send("\n".join(lines))

    @bot.command(name="link")
    @_cooldown(bot.settings.link_cooldown_seconds)
    async def link(ctx: commands.Context, wallet: str) -> None:
        if not is_valid_identity(wallet):
            await ctx.send("❌ Invalid wallet address. Expected a 0x-prefixed 40 hex character address.")
            return
        try:
            linked = await bot.store.link_identity(str(ctx.author.id), wallet, str(ctx.author))
        except LinkConflictError as exc:
            logger.info("Link rejected for %s: %s", ctx.author.id, exc.reason)
            await ctx.send(link_conflict_message(exc))
            return
        await ctx.send(
            f"✅ Wallet `{shorten_identity(linked.identity)}` is linked. "
            f"Run `{prefix}verify` to check your eligibility."
        )
        await bot.log_admin_action(f"🔗 {ctx.author} ({ctx.author.id}) linked `{linked.identity}`")

    @bot.command(name="verify")
    @_cooldown(bot.settings.verify_cooldown_seconds)
    async def verify(ctx: commands.Context, *, target: str = "") -> None:
        linked = await bot.store.get_link_by_discord_id(str(ctx.author.id))
        if linked is None:
            await ctx.send(f"❌ No wallet linked. Use `{prefix}link <wallet>` first.")
            return
        target_ids = None
        if target.strip():
            selected = bot.engine.find_target(target)
            if selected is None:
                await ctx.send(f"❌ Unknown target `{target.strip()}`. See `{prefix}targets`.")
                return
            target_ids = [selected.id]

        if linked.discord_username != str(ctx.author):
            await bot.store.update_discord_username(linked.identity, str(ctx.author))

        async with ctx.typing():
            try:
                result = await bot.engine.reconcile(linked.identity, target_ids, count_attempt=True)
            except UnknownIdentityError:
                await ctx.send("❌ Your wallet was unlinked while verifying. Link it again to continue.")
                return
            grants = await apply_role_grants(bot.role_grantor, result)
            await log_outcomes(bot.store, result, grants, include_failures=True)
        await bot.send_chunks(
            ctx.channel,
            render_verification(result, grants, len(bot.engine.targets) if target_ids is None else len(target_ids)),
            reference=ctx.message,
        )

    @bot.command(name="mystatus")
    async def mystatus(ctx: commands.Context) -> None:
        linked = await bot.store.get_link_by_discord_id(str(ctx.author.id))
        if linked is None:
            await ctx.send(f"❌ No wallet linked. Use `{prefix}link <wallet>` first.")
            return
        records = await bot.store.get_records(linked.identity)
        await bot.send_chunks(ctx.channel, render_status(linked, records, bot.engine.targets))

    @bot.command(name="targets")
    async def targets(ctx: commands.Context) -> None:
        await bot.send_chunks(ctx.channel, render_targets(bot.engine.targets))

    @bot.command(name="checkwallet")
    @_cooldown(bot.settings.verify_cooldown_seconds)
    async def checkwallet(ctx: commands.Context, wallet: str, *, target: str = "") -> None:
        try:
            identity = normalize_identity(wallet)
        except InvalidIdentityError:
            await ctx.send("❌ Invalid wallet address.")
            return
        selected_targets = list(bot.engine.targets)
        if target.strip():
            selected = bot.engine.find_target(target)
            if selected is None:
                await ctx.send(f"❌ Unknown target `{target.strip()}`. See `{prefix}targets`.")
                return
            selected_targets = [selected]
        async with ctx.typing():
            evidence = await bot.engine.preview(identity, [t.id for t in selected_targets])
        await bot.send_chunks(ctx.channel, render_preview(identity, selected_targets, evidence))

    @bot.command(name="stats")
    @commands.guild_only()
    @commands.has_permissions(administrator=True)
    async def stats(ctx: commands.Context) -> None:
        data = await bot.store.stats(bot.engine.targets)
        await bot.send_chunks(ctx.channel, render_stats(data, bot.engine.targets, bot.scheduler.last_report))

    @bot.command(name="admin_failures")
    @commands.guild_only()
    @commands.has_permissions(administrator=True)
    async def admin_failures(ctx: commands.Context, limit: int = 10) -> None:
        entries = await bot.store.recent_outcomes("failure", max(1, min(limit, 50)))
        await bot.send_chunks(ctx.channel, render_outcomes("❌ **Recent failures**", entries))

    @bot.command(name="admin_successes")
    @commands.guild_only()
    @commands.has_permissions(administrator=True)
    async def admin_successes(ctx: commands.Context, limit: int = 10) -> None:
        entries = await bot.store.recent_outcomes("success", max(1, min(limit, 50)))
        await bot.send_chunks(ctx.channel, render_outcomes("✅ **Recent successes**", entries))

    @bot.command(name="admin_user")
    @commands.guild_only()
    @commands.has_permissions(administrator=True)
    async def admin_user(ctx: commands.Context, query: str) -> None:
        linked = None
        if is_valid_identity(query):
            linked = await bot.store.get_link_by_identity(query)
        else:
            user_id = parse_user_id(query)
            if user_id is not None:
                linked = await bot.store.get_link_by_discord_id(str(user_id))
        if linked is None:
            await ctx.send("No linked wallet found for that user or address.")
            return
        records = await bot.store.get_records(linked.identity)
        header = f"👤 <@{linked.discord_id}> ({linked.discord_username or 'unknown'}), attempts: {linked.attempts}"
        await bot.send_chunks(ctx.channel, header + "\n" + render_status(linked, records, bot.engine.targets))

    @bot.command(name="admin_export")
    @commands.guild_only()
    @commands.has_permissions(administrator=True)
    async def admin_export(ctx: commands.Context, fmt: str = "json") -> None:
        fmt = fmt.strip().lower()
        if fmt not in {"json", "txt"}:
            await ctx.send("Format must be `json` or `txt`.")
            return
        rows = await bot.store.export_rows(bot.engine.targets)
        if fmt == "txt":
            content = format_export_text(rows, bot.engine.targets)
        else:
            content = format_export_json(rows)
        stamp = utc_now().strftime("%Y%m%d-%H%M%S")
        payload = discord.File(io.BytesIO(content.encode("utf-8")), filename=f"verification-data-{stamp}.{fmt}")
        await ctx.send(f"📦 Export of {len(rows)} linked wallet(s).", file=payload)

    @bot.command(name="admin_unlink")
    @commands.guild_only()
    @commands.has_permissions(administrator=True)
    async def admin_unlink(ctx: commands.Context, query: str) -> None:
        if is_valid_identity(query):
            removed = await bot.store.unlink_identity(query, on_removed=bot.cache.invalidate)
        else:
            user_id = parse_user_id(query)
            if user_id is None:
                await ctx.send("Provide a user mention, user id or wallet address.")
                return
            removed = await bot.store.unlink_discord_account(str(user_id), on_removed=bot.cache.invalidate)
        if removed is None:
            await ctx.send("Nothing to unlink.")
            return
        await ctx.send(f"🗑️ Unlinked `{removed.identity}` from <@{removed.discord_id}>.")
        await bot.log_admin_action(
            f"🗑️ {ctx.author} ({ctx.author.id}) unlinked `{removed.identity}` from <@{removed.discord_id}>"
        )

    @bot.command(name="admin_run")
    @commands.guild_only()
    @commands.has_permissions(administrator=True)
    async def admin_run(ctx: commands.Context) -> None:
        async with ctx.typing():
            report = await bot.scheduler.run_once()
        await ctx.send(render_batch_report(report))
