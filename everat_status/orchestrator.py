"""Polling cycle for the ratting report.

One cycle: fetch kills and occupancy from ESI, align them with the tracked
systems, store a history snapshot (once per ESI data refresh), render the
report images, replace the channel content and prune old history.

`RattingOrchestrator.tick` is called periodically by the bot scheduler and
decides whether to pause for the daily downtime, wait for the cooldown or run
a new cycle.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Optional, List, Sequence, Tuple, Callable, Awaitable

from dateutil import tz

from .esi import KillSnapshot, OccupancySnapshot, now_utc
from .history import HistoryRecord, HistoryStore
from .report import (
    ReportRenderer, build_current_rows, build_last_days_rows, last_days, estimate_height,
    CURRENT_STATUS_WIDTH, LAST_DAYS_WIDTH,
)
from .settings import BotSettings, TrackedSystem

DT_STATUS_MESSAGE = "Eating grass during daily DT"
WORKING_STATUS_MESSAGE = "Looking for kills"

# History rows are stamped slightly after ESI's Last-Modified
RECORD_OFFSET = timedelta(minutes=5)

CURRENT_STATUS_FILENAME = "discordMessage.png"
LAST_DAYS_FILENAME = "lastDaysMessage.png"


class MissingOccupancyError(LookupError):
    def __init__(self, system: TrackedSystem):
        super().__init__(f"No sovereignty data for {system.name} ({system.system_id})")
        self.system = system


class SchedulerState(Enum):
    MAINTENANCE_WAIT = "maintenance_wait"
    MAINTENANCE_ACTIVE = "maintenance_active"
    CYCLE_RUNNING = "cycle_running"
    CYCLE_COOLDOWN = "cycle_cooldown"


@dataclass(frozen=True)
class MaintenanceWindow:
    """Daily downtime (UTC). Fetching stops at `start` and resumes after `drain_end`."""
    start: time = time(10, 58)
    end: time = time(11, 10)
    drain_start: time = time(10, 59)
    drain_end: time = time(11, 15)

    @staticmethod
    def _time_of_day(now: datetime) -> time:
        return now.astimezone(tz.UTC).time()

    def in_window(self, now: datetime) -> bool:
        return self.start <= self._time_of_day(now) <= self.end

    def in_drain(self, now: datetime) -> bool:
        return self.drain_start <= self._time_of_day(now) <= self.drain_end


@dataclass(frozen=True)
class CycleSnapshot:
    freshness: datetime
    kills: List[KillSnapshot]
    occupancy: List[OccupancySnapshot]


@dataclass(frozen=True)
class CycleResult:
    ok: bool
    started_at: datetime
    reason: str = ""
    written: int = 0
    pruned: int = 0
    published: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, started_at: datetime, written: int, pruned: int, published: List[str]) -> "CycleResult":
        return cls(True, started_at, written=written, pruned=pruned, published=published)

    @classmethod
    def failure(cls, started_at: datetime, reason: str) -> "CycleResult":
        return cls(False, started_at, reason=reason)


def reconcile_kills(systems: Sequence[TrackedSystem], kills: Sequence[KillSnapshot]) -> List[KillSnapshot]:
    """Exactly one entry per tracked system, in order; systems ESI did not report get zeros."""
    by_id = {}
    for k in kills:
        by_id.setdefault(k.system_id, k)
    return [by_id.get(s.system_id) or KillSnapshot(system_id=s.system_id) for s in systems]


def reconcile_occupancy(systems: Sequence[TrackedSystem],
                        levels: Sequence[OccupancySnapshot]) -> List[OccupancySnapshot]:
    """First sovereignty entry per tracked system. A missing system is an error, not a zero."""
    by_id = {}
    for o in levels:
        by_id.setdefault(o.system_id, o)
    out = []
    for s in systems:
        if s.system_id not in by_id:
            raise MissingOccupancyError(s)
        out.append(by_id[s.system_id])
    return out


class RattingOrchestrator:
    def __init__(self, settings: BotSettings, esi, store: HistoryStore, renderer: ReportRenderer,
                 image_renderer, publisher,
                 set_presence: Optional[Callable[[str], Awaitable[None]]] = None,
                 window: Optional[MaintenanceWindow] = None,
                 logger: Optional[logging.Logger] = None):
        self.settings = settings
        self.systems = settings.tracked_systems
        self.esi = esi
        self.store = store
        self.renderer = renderer
        self.image_renderer = image_renderer
        self.publisher = publisher
        self.set_presence = set_presence
        self.window = window or MaintenanceWindow()
        self.logger = logger or logging.getLogger("everat_status")

        self.state = SchedulerState.MAINTENANCE_WAIT
        self.presence = WORKING_STATUS_MESSAGE
        self.last_cycle_started: Optional[datetime] = None
        self.last_result: Optional[CycleResult] = None

    @property
    def refresh_interval(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_every)

    def next_cycle_due(self) -> Optional[datetime]:
        if self.last_cycle_started is None:
            return None
        return self.last_cycle_started + self.refresh_interval

    async def _update_presence(self, text: str):
        if self.presence == text:
            return
        self.presence = text
        if self.set_presence is None:
            return
        try:
            await self.set_presence(text)
        except Exception:
            self.logger.exception("[presence] Could not set presence to %r", text)

    # ---------- State machine ----------
    async def tick(self, now: Optional[datetime] = None) -> SchedulerState:
        now = now or now_utc()

        if self.window.in_window(now) or (
                self.state is SchedulerState.MAINTENANCE_ACTIVE and self.window.in_drain(now)):
            if self.state is not SchedulerState.MAINTENANCE_ACTIVE:
                self.logger.info("[tick] Daily downtime, pausing ESI polling")
                self.state = SchedulerState.MAINTENANCE_ACTIVE
            await self._update_presence(DT_STATUS_MESSAGE)
            return self.state

        if self.state is SchedulerState.MAINTENANCE_ACTIVE:
            self.logger.info("[tick] Downtime over, resuming")
            self.state = SchedulerState.MAINTENANCE_WAIT

        if self.state is SchedulerState.CYCLE_COOLDOWN:
            due = self.next_cycle_due()
            if due is not None and now < due:
                return self.state
            self.state = SchedulerState.MAINTENANCE_WAIT

        await self._update_presence(WORKING_STATUS_MESSAGE)
        self.state = SchedulerState.CYCLE_RUNNING
        await self.run_cycle(now)
        self.state = SchedulerState.CYCLE_COOLDOWN
        return self.state

    # ---------- Cycle ----------
    async def run_cycle(self, now: Optional[datetime] = None) -> CycleResult:
        started = now or now_utc()
        self.last_cycle_started = started
        self.logger.info("[cycle] Start at %s", started.isoformat())
        try:
            snapshot = await self.fetch_snapshot()
            written = await self.persist(snapshot)
            images = await self.render_reports(snapshot, started)
            await self.publish(images)
            pruned = await self.prune(started)
        except Exception as exc:
            self.logger.exception("[cycle] Cycle failed, skipping until next refresh")
            result = CycleResult.failure(started, f"{type(exc).__name__}: {exc}")
        else:
            result = CycleResult.success(started, written, pruned, [name for name, _ in images])
            self.logger.info("[cycle] Done: written=%d pruned=%d published=%s",
                             written, pruned, ", ".join(result.published))
        self.last_result = result
        return result

    async def fetch_snapshot(self) -> CycleSnapshot:
        batch = await self.esi.fetch_kills()
        levels = await self.esi.fetch_occupancy()
        kills = reconcile_kills(self.systems, batch.kills)
        occupancy = reconcile_occupancy(self.systems, levels)
        return CycleSnapshot(freshness=batch.last_modified, kills=kills, occupancy=occupancy)

    async def persist(self, snapshot: CycleSnapshot) -> int:
        """Store one row per system unless this ESI refresh is already recorded."""
        if await self.store.exists_since(snapshot.freshness):
            self.logger.info("[persist] Data from %s already stored, skipping", snapshot.freshness.isoformat())
            return 0
        recorded_at = snapshot.freshness + RECORD_OFFSET
        records = [
            HistoryRecord(system_id=k.system_id, npc_kills=k.npc_kills,
                          occupancy_level=o.occupancy_level, recorded_at=recorded_at)
            for k, o in zip(snapshot.kills, snapshot.occupancy)
        ]
        return await self.store.append_records(records)

    async def render_reports(self, snapshot: CycleSnapshot, now: datetime) -> List[Tuple[str, bytes]]:
        low, high = self.settings.low_threshold, self.settings.high_threshold
        rows = await build_current_rows(self.systems, snapshot.kills, snapshot.occupancy,
                                        self.store, now, low, high)
        markup = self.renderer.current_status_markup(rows, now)
        images = [(CURRENT_STATUS_FILENAME, await self.image_renderer.render(
            markup, CURRENT_STATUS_WIDTH, height=estimate_height(len(rows)), name=CURRENT_STATUS_FILENAME))]

        if self.settings.activate_stats:
            day_rows = await build_last_days_rows(self.systems, self.store, now, low, high)
            markup = self.renderer.last_days_markup(day_rows, last_days(now))
            images.append((LAST_DAYS_FILENAME, await self.image_renderer.render(
                markup, LAST_DAYS_WIDTH, height=estimate_height(len(day_rows)), name=LAST_DAYS_FILENAME)))
        return images

    async def publish(self, images: Sequence[Tuple[str, bytes]]):
        await self.publisher.clear_channel()
        for name, png in images:
            await self.publisher.post_image(png, name)

    async def prune(self, now: datetime) -> int:
        cutoff = now - timedelta(days=self.settings.days_to_keep_history)
        if not await self.store.exists_older_than(cutoff):
            return 0
        return await self.store.delete_older_than(cutoff)
