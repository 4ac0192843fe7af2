#!/usr/bin/env python3
"""
RS Trial Gate Bot
-----------------
Gives every new member a one-time timed trial on one of several interchangeable
gate roles, hands out a permanent gate role while the Whop payment role is present,
and removes access when a trial lapses or the payment role goes away.

Configuration is split across:
- config.json (non-secret settings)
- config.secrets.json (server-only secrets, not committed)
- optional .env overrides (TRIAL_HOURS, MIN_ACCOUNT_AGE_DAYS, PAYMENT_LINK, TRIAL_GATE_DB_PATH)
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import discord
from aiohttp import web
from discord.ext import commands

from RSTrialGate.discord_membership import DiscordMembership
from RSTrialGate.entitlement_store import EntitlementStore
from RSTrialGate.entitlements import EntitlementEngine, Outcome, derive_state
from RSTrialGate.expiry_sweeper import ExpirySweeper
from RSTrialGate.gate_config import (
    BASE_DIR,
    ConfigError,
    GateSettings,
    load_settings,
    mask_secret,
)
from RSTrialGate.gate_messages import GateMessages
from RSTrialGate.gate_roles import GateRoleAllocator
from RSTrialGate.notifier import DiscordNotifier

log = logging.getLogger("rs-trialgate")

# Outcomes not worth a line in the audit channel.
_QUIET_OUTCOMES = {Outcome.ROLES_IGNORED, Outcome.EXPIRY_STALE}

_OUTCOME_ICONS = {
    Outcome.JOIN_PAID: "💳",
    Outcome.JOIN_ALREADY_GATED: "↩️",
    Outcome.JOIN_ACCOUNT_TOO_NEW: "🛡️",
    Outcome.JOIN_TRIAL_STARTED: "🟣",
    Outcome.JOIN_TRIAL_USED: "⏭️",
    Outcome.JOIN_MEMBER_GONE: "👋",
    Outcome.JOIN_LOOKUP_FAILED: "⚠️",
    Outcome.PAYMENT_GRANTED: "✅",
    Outcome.PAYMENT_REVOKED: "🛑",
    Outcome.EXPIRY_ALREADY_PAID: "💳",
    Outcome.EXPIRY_PAYMENT_ROLE: "💳",
    Outcome.EXPIRY_MEMBER_GONE: "👋",
    Outcome.EXPIRY_LOOKUP_FAILED: "⚠️",
    Outcome.TRIAL_EXPIRED: "⏳",
}


class RSTrialGateBot:
    """Discord wiring around the entitlement engine."""

    def __init__(self, settings: GateSettings):
        self.settings = settings

        intents = discord.Intents.default()
        intents.members = True  # join events + role updates
        intents.guilds = True
        intents.message_content = True  # prefix commands

        self.bot = commands.Bot(
            command_prefix=commands.when_mentioned_or(".trialgate "),
            intents=intents,
            help_command=None,
            allowed_mentions=discord.AllowedMentions(everyone=False, roles=False, users=True),
        )

        self.store = EntitlementStore(settings.db_path)
        self.allocator = GateRoleAllocator(
            DiscordMembership(lambda: self.bot.get_guild(settings.guild_id)),
            settings.gate_role_ids,
            settings.payment_role_id,
        )
        self.engine = EntitlementEngine(
            settings,
            self.store,
            self.allocator,
            DiscordNotifier(self.bot),
            messages=GateMessages.from_settings(settings),
            on_outcome=self._log_outcome,
        )
        self.sweeper = ExpirySweeper(self.engine, self.store, interval_seconds=settings.sweep_interval_seconds)
        self._health_runner: Optional[web.AppRunner] = None

        self._setup_events()
        self._setup_commands()

    # -----------------------------
    # Audit channel
    # -----------------------------
    async def _log_outcome(self, member_id: int, outcome: Outcome, detail: str) -> None:
        if outcome in _QUIET_OUTCOMES or not self.settings.log_channel_id:
            return
        channel = self.bot.get_channel(self.settings.log_channel_id)
        if not isinstance(channel, discord.TextChannel):
            return
        icon = _OUTCOME_ICONS.get(outcome, "ℹ️")
        text = f"{icon} **{outcome.value}** for <@{member_id}> (`{member_id}`)"
        if detail:
            text += f"\n   {detail}"
        try:
            await channel.send(text, allowed_mentions=discord.AllowedMentions.none())
        except discord.HTTPException as e:
            log.warning(f"[Audit] Failed to post to log channel: {e}")

    # -----------------------------
    # Health endpoint
    # -----------------------------
    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "ready": self.bot.is_ready(),
            "sweeper_running": self.sweeper.is_running,
            "records": self.store.counts(),
        })

    async def _start_health_server(self) -> None:
        if not self.settings.health_port or self._health_runner is not None:
            return
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", self.settings.health_port)
        await site.start()
        self._health_runner = runner
        log.info(f"[Health] HTTP server started on port {self.settings.health_port}")

    # -----------------------------
    # Events
    # -----------------------------
    def _log_startup_banner(self) -> None:
        s = self.settings
        log.info("=" * 60)
        log.info("  🟣 RS Trial Gate Bot")
        log.info("=" * 60)
        log.info(f"[Bot] Ready as {self.bot.user} (ID: {self.bot.user.id if self.bot.user else '?'})")

        guild = self.bot.get_guild(s.guild_id)
        if not guild:
            log.warning(f"⚠️  Guild not found (ID: {s.guild_id})")
            return
        log.info(f"🏠 Guild: {guild.name} (ID: {s.guild_id})")

        payment_role = guild.get_role(s.payment_role_id)
        if payment_role:
            log.info(f"💳 Payment Role: {payment_role.name} (ID: {s.payment_role_id})")
        else:
            log.warning(f"⚠️  Payment Role: Not found (ID: {s.payment_role_id})")

        log.info(f"🎟️ Gate Roles: {len(s.gate_role_ids)} role(s)")
        for role_id in s.gate_role_ids:
            role = guild.get_role(role_id)
            if role:
                log.info(f"   • {role.name} (ID: {role_id})")
            else:
                log.warning(f"   • ❌ Not found (ID: {role_id})")

        log.info(f"⏱️ Trial: {s.trial_hours_label}h | Min account age: {s.min_account_age_days:g}d")
        log.info(f"🗄️ Store: {s.db_path}")
        log.info("-" * 60)

    def _setup_events(self) -> None:
        bot = self.bot
        guild_id = self.settings.guild_id

        @bot.event
        async def on_ready():
            self._log_startup_banner()
            # on_ready fires again after reconnects; both calls below are no-ops then.
            self.sweeper.start()
            try:
                await self._start_health_server()
            except OSError as e:
                log.error(f"[Health] Could not start HTTP server: {e}")

        @bot.event
        async def on_member_join(member: discord.Member):
            if member.guild.id != guild_id or member.bot:
                return
            try:
                await self.engine.handle_join(member.id, member.created_at)
            except Exception as e:
                log.error(f"❌ Error handling join for {member} ({member.id}): {e}")

        @bot.event
        async def on_member_update(before: discord.Member, after: discord.Member):
            if after.guild.id != guild_id or after.bot:
                return
            before_roles = {r.id for r in before.roles}
            after_roles = {r.id for r in after.roles}
            if before_roles == after_roles:
                return
            try:
                await self.engine.handle_roles_changed(after.id, before_roles, after_roles)
            except Exception as e:
                log.error(f"❌ Error handling role update for {after} ({after.id}): {e}")

    # -----------------------------
    # Commands
    # -----------------------------
    def _setup_commands(self) -> None:
        bot = self.bot

        @bot.command(name="status")
        @commands.has_permissions(administrator=True)
        async def gate_status(ctx: commands.Context):
            """Show store counts and gate settings"""
            counts = self.store.counts()
            s = self.settings
            embed = discord.Embed(title="🟣 RS Trial Gate Status", color=discord.Color.purple())
            embed.add_field(name="Records", value=str(counts["records"]), inline=True)
            embed.add_field(name="Active Trials", value=str(counts["active_trials"]), inline=True)
            embed.add_field(name="Trials Used", value=str(counts["trials_used"]), inline=True)
            embed.add_field(name="Paid", value=str(counts["paid"]), inline=True)
            embed.add_field(name="Trial Length", value=f"{s.trial_hours_label}h", inline=True)
            embed.add_field(name="Gate Roles", value=str(len(s.gate_role_ids)), inline=True)
            last = self.sweeper.last_report
            embed.add_field(
                name="Last Sweep",
                value=f"{last.started_at.isoformat()} — {last.summary()}" if last else "Not run yet",
                inline=False,
            )
            embed.set_footer(text="RS Trial Gate Bot")
            await ctx.send(embed=embed)

        @bot.command(name="lookup")
        @commands.has_permissions(administrator=True)
        async def gate_lookup(ctx: commands.Context, member: discord.Member):
            """Show the stored entitlement record for a member"""
            record = self.store.get(member.id)
            state = derive_state(record)
            buckets = await self.allocator.current_buckets(member.id) or set()
            embed = discord.Embed(title=f"Entitlement — {member}", color=discord.Color.purple())
            embed.add_field(name="State", value=state.value, inline=True)
            embed.add_field(name="Gate Roles Held", value=", ".join(str(b) for b in sorted(buckets)) or "—", inline=True)
            if record:
                embed.add_field(name="Trial Used", value="yes" if record.trial_used else "no", inline=True)
                embed.add_field(name="Paid", value="yes" if record.paid else "no", inline=True)
                embed.add_field(
                    name="Trial Expires",
                    value=record.trial_expires_at.isoformat() if record.trial_expires_at else "—",
                    inline=False,
                )
                embed.add_field(
                    name="Last Join",
                    value=record.last_join_at.isoformat() if record.last_join_at else "—",
                    inline=False,
                )
            else:
                embed.description = "No record (never seen joining)."
            await ctx.send(embed=embed, allowed_mentions=discord.AllowedMentions.none())

        @bot.command(name="sweep")
        @commands.has_permissions(administrator=True)
        async def gate_sweep(ctx: commands.Context):
            """Run the trial expiry sweep now"""
            report = await self.sweeper.run_once()
            if report is None:
                await ctx.send("⏳ A sweep is already running.")
                return
            await ctx.send(f"✅ Sweep complete: {report.summary()}")

        @bot.event
        async def on_command_error(ctx: commands.Context, error: commands.CommandError):
            if isinstance(error, commands.CommandNotFound):
                return
            if isinstance(error, commands.MissingPermissions):
                await ctx.send("❌ Administrator permission required.", delete_after=10)
                return
            if isinstance(error, (commands.MemberNotFound, commands.MissingRequiredArgument)):
                await ctx.send(f"❌ {error}", delete_after=10)
                return
            log.error(f"[Command] {ctx.command}: {error}")

    def run(self) -> None:
        try:
            # Logging is configured by main(); don't let discord.py add a second handler.
            self.bot.run(self.settings.bot_token, log_handler=None)
        finally:
            self.sweeper.stop()
            self.store.close()


def check_config(base_dir: Path = BASE_DIR) -> int:
    """Validate config + secrets without connecting to Discord. Returns an exit code."""
    try:
        settings = load_settings(base_dir)
    except (ConfigError, OSError, ValueError) as e:
        print("[ConfigCheck] FAILED")
        print(f"- {e}")
        return 2
    print("[ConfigCheck] OK")
    print(f"- guild_id: {settings.guild_id}")
    print(f"- gate roles: {len(settings.gate_role_ids)}")
    print(f"- trial: {settings.trial_hours_label}h")
    print(f"- store: {settings.db_path}")
    print(f"- bot_token: {mask_secret(settings.bot_token)}")
    return 0


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(add_help=True)
    parser.add_argument("--check-config", action="store_true", help="Validate config + secrets and exit (no Discord connection).")
    parser.add_argument("--config-dir", type=Path, default=BASE_DIR, help="Directory holding config.json / config.secrets.json.")
    args = parser.parse_args(argv)

    if args.check_config:
        return check_config(args.config_dir)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    try:
        settings = load_settings(args.config_dir)
    except (ConfigError, OSError, ValueError) as e:
        log.error(f"[Config] {e}")
        return 1

    RSTrialGateBot(settings).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
