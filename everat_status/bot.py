import logging
from datetime import datetime
from typing import Optional, List

import discord
from discord.ext import commands
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dateutil import tz

from .esi import EsiClient, now_utc
from .history import HistoryStore
from .orchestrator import RattingOrchestrator, WORKING_STATUS_MESSAGE, SchedulerState
from .publisher import DiscordPublisher
from .report import ReportRenderer, HtmlImageRenderer
from .settings import BotSettings

TICK_SECONDS = 15


def fmt_dt(dt: Optional[datetime]) -> str:
    if dt is None:
        return "n/a"
    return dt.astimezone(tz.UTC).strftime("%d.%m.%Y %H:%M") + " UTC"


def describe_status(orchestrator: RattingOrchestrator) -> str:
    lines: List[str] = [f"**State:** {orchestrator.state.value}"]
    result = orchestrator.last_result
    if result is None:
        lines.append("**Last cycle:** none yet")
    elif result.ok:
        lines.append(f"**Last cycle:** ok at {fmt_dt(result.started_at)} "
                     f"(written {result.written}, pruned {result.pruned})")
    else:
        lines.append(f"**Last cycle:** failed at {fmt_dt(result.started_at)}: {result.reason}")
    if orchestrator.state is SchedulerState.MAINTENANCE_ACTIVE:
        lines.append("**Next cycle:** after daily downtime")
    else:
        lines.append(f"**Next cycle:** {fmt_dt(orchestrator.next_cycle_due())}")
    return "\n".join(lines)


def describe_systems(settings: BotSettings) -> str:
    systems = settings.tracked_systems
    if not systems:
        return "No tracked systems. Add `[id, \"name\"]` pairs to `systems` in botSettings.json."
    lines = [f"**Tracked systems** (limits {settings.low_threshold}/{settings.high_threshold} NPC kills per 24h):"]
    lines += [f"• {s.name} ({s.system_id})" for s in systems]
    return "\n".join(lines)


class RattingBot:
    """
    Discord bot that keeps the report channel filled with the latest ratting report.
    The polling cycle runs from an APScheduler job; chat commands are read-only.
    """
    def __init__(self, settings: BotSettings, logger: Optional[logging.Logger] = None):
        self.settings = settings
        self.logger = logger or logging.getLogger("everat_status")

        intents = discord.Intents.default()
        intents.message_content = True  # prefix commands need the privileged content intent
        self.bot = commands.Bot(command_prefix=settings.command_prefix, intents=intents)
        self.sched = AsyncIOScheduler(timezone="UTC")
        self.store = HistoryStore(settings.db_path, logger=self.logger)
        self.esi = EsiClient(settings.esi_base_url, settings.user_agent,
                             timeout_seconds=settings.http_timeout_seconds, logger=self.logger)
        self.image_renderer = HtmlImageRenderer(logger=self.logger)
        self.orchestrator = RattingOrchestrator(
            settings,
            esi=self.esi,
            store=self.store,
            renderer=ReportRenderer(),
            image_renderer=self.image_renderer,
            publisher=DiscordPublisher(self.bot, settings.discord_server_id,
                                       settings.discord_channel_id, logger=self.logger),
            set_presence=self.set_presence,
            logger=self.logger,
        )
        self._started = False

        self._bind_events_and_commands()

    async def set_presence(self, text: str):
        await self.bot.change_presence(activity=discord.Game(name=text))
        self.logger.info("[presence] %s", text)

    async def start_polling(self):
        await self.store.open()
        await self.set_presence(WORKING_STATUS_MESSAGE)
        self.sched.add_job(
            self.orchestrator.tick,
            IntervalTrigger(seconds=TICK_SECONDS, timezone="UTC"),
            max_instances=1,
            coalesce=True,
            next_run_time=now_utc(),
        )
        self.sched.start()
        self.logger.info("[start_polling] Tick every %ss, refresh every %s min, %d systems",
                         TICK_SECONDS, self.settings.refresh_every, len(self.settings.systems))

    # ---------- Discord binding ----------
    def _bind_events_and_commands(self):
        bot = self.bot

        @bot.event
        async def on_ready():
            self.logger.info("[READY] Logged in as %s (id: %s)", bot.user, getattr(bot.user, "id", "?"))
            if self._started:
                return
            self._started = True
            try:
                await self.start_polling()
            except Exception:
                self.logger.exception("[ERROR on_ready]")

        @bot.command(name="status", help="Show the polling state and the last cycle outcome")
        async def status_cmd(ctx: commands.Context):
            self.logger.info("[command:status] user=%s guild=%s", ctx.author.id, getattr(ctx.guild, "id", None))
            await ctx.send(describe_status(self.orchestrator))

        @bot.command(name="systems", help="List tracked systems and thresholds")
        async def systems_cmd(ctx: commands.Context):
            self.logger.info("[command:systems] user=%s guild=%s", ctx.author.id, getattr(ctx.guild, "id", None))
            await ctx.send(describe_systems(self.settings))

        @bot.event
        async def on_command_error(ctx: commands.Context, error: commands.CommandError):
            if isinstance(error, commands.CommandNotFound):
                return
            self.logger.warning("[command] %s failed: %s", ctx.command, error)
            await ctx.send(str(error))

    # ---------- Start / Stop ----------
    async def run_forever(self, token: str):
        self.logger.info("[run_forever] Starting Discord client")
        try:
            await self.bot.start(token)
        except Exception:
            self.logger.exception("[run_forever] Discord client error")
            raise
        finally:
            if self.sched.running:
                self.sched.shutdown(wait=False)
            await self.esi.close()
            await self.store.close()
            self.image_renderer.close()
            if not self.bot.is_closed():
                await self.bot.close()
            self.logger.info("[run_forever] Discord client stopped")
