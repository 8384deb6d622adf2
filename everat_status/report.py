import asyncio
import os
import shutil
import tempfile
import logging
from dataclasses import dataclass
from datetime import datetime, date, timedelta
from enum import Enum
from typing import Optional, List, Sequence, Dict

from jinja2 import Environment, PackageLoader, select_autoescape
from html2image import Html2Image

from .esi import KillSnapshot, OccupancySnapshot
from .history import HistoryStore
from .settings import TrackedSystem

CURRENT_STATUS_WIDTH = 460
LAST_DAYS_WIDTH = 550
LAST_DAYS_COUNT = 7


class StatusLevel(Enum):
    ALL_GOOD = ("good", "All good")
    NEEDS_MORE = ("warn", "Needs a bit more")
    NEEDS_A_LOT = ("bad", "Needs a lot")

    @property
    def css_class(self) -> str:
        return self.value[0]

    @property
    def label(self) -> str:
        return self.value[1]


def classify(aggregate: int, low: int, high: int) -> StatusLevel:
    if aggregate > high:
        return StatusLevel.ALL_GOOD
    if aggregate > low:
        return StatusLevel.NEEDS_MORE
    return StatusLevel.NEEDS_A_LOT


def format_occupancy(level: float) -> str:
    return f"{level:g}"


@dataclass(frozen=True)
class CurrentStatusRow:
    name: str
    occupancy: str
    kills_1h: int
    kills_6h: int
    kills_24h: int
    status: StatusLevel


@dataclass(frozen=True)
class LastDaysRow:
    name: str
    totals: List[int]
    statuses: List[StatusLevel]


async def build_current_rows(
    systems: Sequence[TrackedSystem],
    kills: Sequence[KillSnapshot],
    occupancy: Sequence[OccupancySnapshot],
    store: HistoryStore,
    now: datetime,
    low: int,
    high: int,
) -> List[CurrentStatusRow]:
    """One row per tracked system; kills/occupancy must already be reconciled."""
    kills_by_id: Dict[int, KillSnapshot] = {k.system_id: k for k in kills}
    occ_by_id: Dict[int, OccupancySnapshot] = {o.system_id: o for o in occupancy}
    rows: List[CurrentStatusRow] = []
    for system in systems:
        six = await store.sum_npc_kills(system.system_id, now - timedelta(hours=6))
        day = await store.sum_npc_kills(system.system_id, now - timedelta(hours=24))
        rows.append(CurrentStatusRow(
            name=system.name,
            occupancy=format_occupancy(occ_by_id[system.system_id].occupancy_level),
            kills_1h=kills_by_id[system.system_id].npc_kills,
            kills_6h=six,
            kills_24h=day,
            status=classify(day, low, high),
        ))
    return rows


def last_days(now: datetime, count: int = LAST_DAYS_COUNT) -> List[date]:
    """The `count` full calendar days before today, most recent first."""
    today = now.date()
    return [today - timedelta(days=offset) for offset in range(1, count + 1)]


async def build_last_days_rows(
    systems: Sequence[TrackedSystem],
    store: HistoryStore,
    now: datetime,
    low: int,
    high: int,
) -> List[LastDaysRow]:
    days = last_days(now)
    rows: List[LastDaysRow] = []
    for system in systems:
        totals = []
        for day in days:
            start = datetime(day.year, day.month, day.day, tzinfo=now.tzinfo)
            totals.append(await store.sum_npc_kills(system.system_id, start, start + timedelta(days=1)))
        rows.append(LastDaysRow(
            name=system.name,
            totals=totals,
            statuses=[classify(total, low, high) for total in totals],
        ))
    return rows


class ReportRenderer:
    """Jinja2 markup for the two report images."""

    def __init__(self):
        self.env = Environment(
            loader=PackageLoader("everat_status", "templates"),
            autoescape=select_autoescape(["html", "j2"]),
        )

    def current_status_markup(self, rows: Sequence[CurrentStatusRow], generated_at: datetime) -> str:
        template = self.env.get_template("current_status.html.j2")
        return template.render(
            rows=rows,
            width=CURRENT_STATUS_WIDTH - 10,
            generated_at=generated_at.strftime("%d.%m.%Y %H:%M") + " UTC",
            legend=list(StatusLevel),
        )

    def last_days_markup(self, rows: Sequence[LastDaysRow], days: Sequence[date]) -> str:
        template = self.env.get_template("last_days.html.j2")
        return template.render(
            rows=rows,
            width=LAST_DAYS_WIDTH - 30,
            headers=[d.strftime("%d.%m") for d in days],
            legend=list(StatusLevel),
        )


def estimate_height(row_count: int) -> int:
    return 140 + 31 * max(1, row_count)


class HtmlImageRenderer:
    """Rasterise markup to PNG with html2image (headless Chromium).

    Without an explicit output_dir, a temporary directory is created on the
    first render and removed by close().
    """

    def __init__(self, output_dir: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.output_dir = output_dir
        self.logger = logger or logging.getLogger("everat_status")
        self._hti: Optional[Html2Image] = None
        self._tmp_dir: Optional[str] = None

    def _render_sync(self, markup: str, width: int, height: int, name: str) -> bytes:
        if self._hti is None:
            if self.output_dir is None:
                self._tmp_dir = self.output_dir = tempfile.mkdtemp(prefix="everat-render-")
            self._hti = Html2Image(output_path=self.output_dir, custom_flags=["--hide-scrollbars", "--no-sandbox"])
        paths = self._hti.screenshot(html_str=markup, save_as=name, size=(width, height))
        path = paths[0] if paths else os.path.join(self.output_dir, name)
        with open(path, "rb") as fh:
            return fh.read()

    async def render(self, markup: str, width: int, height: int = 600, name: str = "report.png") -> bytes:
        data = await asyncio.to_thread(self._render_sync, markup, width, height, name)
        self.logger.info("[render] %s rendered (%dx%d, %d bytes)", name, width, height, len(data))
        return data

    def close(self):
        if self._tmp_dir is not None:
            shutil.rmtree(self._tmp_dir, ignore_errors=True)
            self.output_dir = self._tmp_dir = None
        self._hti = None
