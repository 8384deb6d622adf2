import os
from datetime import date, datetime, timedelta

import pytest
from dateutil import tz

from conftest import NOW
from everat_status.esi import KillSnapshot, OccupancySnapshot
from everat_status import report
from everat_status.report import (
    CurrentStatusRow, HtmlImageRenderer, LastDaysRow, ReportRenderer, StatusLevel,
    build_current_rows, build_last_days_rows, classify, format_occupancy, last_days,
)
from everat_status.settings import TrackedSystem

JITA = TrackedSystem(30000142, "Jita")
AMARR = TrackedSystem(30002187, "Amarr")


@pytest.mark.parametrize("aggregate, expected", [
    (250, StatusLevel.NEEDS_A_LOT),
    (300, StatusLevel.NEEDS_A_LOT),
    (301, StatusLevel.NEEDS_MORE),
    (400, StatusLevel.NEEDS_MORE),
    (500, StatusLevel.NEEDS_MORE),
    (501, StatusLevel.ALL_GOOD),
    (600, StatusLevel.ALL_GOOD),
])
def test_classify_uses_strict_thresholds(aggregate, expected):
    assert classify(aggregate, 300, 500) is expected


def test_format_occupancy():
    assert format_occupancy(0.75) == "0.75"
    assert format_occupancy(5.0) == "5"


def test_last_days_are_full_calendar_days_before_today():
    days = last_days(datetime(2026, 11, 2, 0, 30, tzinfo=tz.UTC))
    assert days == [date(2026, 11, 1), date(2026, 10, 31), date(2026, 10, 30), date(2026, 10, 29),
                    date(2026, 10, 28), date(2026, 10, 27), date(2026, 10, 26)]


@pytest.mark.asyncio
async def test_current_rows_follow_tracked_order(store, make_record):
    await store.append_records([
        make_record(JITA.system_id, 200, NOW - timedelta(hours=2)),
        make_record(JITA.system_id, 150, NOW - timedelta(hours=10)),
        make_record(AMARR.system_id, 400, NOW - timedelta(hours=3)),
        make_record(AMARR.system_id, 200, NOW - timedelta(hours=30)),
    ])
    kills = [KillSnapshot(JITA.system_id, npc_kills=42), KillSnapshot(AMARR.system_id, npc_kills=0)]
    occupancy = [OccupancySnapshot(JITA.system_id, 4.3), OccupancySnapshot(AMARR.system_id, 1.0)]

    rows = await build_current_rows([AMARR, JITA], kills, occupancy, store, NOW, 300, 500)

    assert [r.name for r in rows] == ["Amarr", "Jita"]
    amarr, jita = rows
    assert (amarr.occupancy, amarr.kills_1h, amarr.kills_6h, amarr.kills_24h) == ("1", 0, 400, 400)
    assert amarr.status is StatusLevel.NEEDS_MORE
    assert (jita.occupancy, jita.kills_1h, jita.kills_6h, jita.kills_24h) == ("4.3", 42, 200, 350)
    assert jita.status is StatusLevel.NEEDS_MORE


@pytest.mark.asyncio
async def test_last_days_rows_bucket_by_calendar_date(store, make_record):
    await store.append_records([
        make_record(JITA.system_id, 400, datetime(2026, 10, 18, 0, 0, 0, tzinfo=tz.UTC)),
        make_record(JITA.system_id, 200, datetime(2026, 10, 18, 23, 59, 59, tzinfo=tz.UTC)),
        make_record(JITA.system_id, 350, datetime(2026, 10, 16, 8, 0, tzinfo=tz.UTC)),
        make_record(JITA.system_id, 999, datetime(2026, 10, 19, 0, 30, tzinfo=tz.UTC)),
        make_record(JITA.system_id, 999, datetime(2026, 10, 11, 12, 0, tzinfo=tz.UTC)),
    ])

    rows = await build_last_days_rows([JITA], store, NOW, 300, 500)

    assert len(rows) == 1
    assert rows[0].totals == [600, 0, 350, 0, 0, 0, 0]
    assert rows[0].statuses[:3] == [StatusLevel.ALL_GOOD, StatusLevel.NEEDS_A_LOT, StatusLevel.NEEDS_MORE]


def test_current_status_markup_escapes_names():
    rows = [CurrentStatusRow("<Jita>", "0.75", 0, 10, 20, StatusLevel.NEEDS_A_LOT)]
    markup = ReportRenderer().current_status_markup(rows, NOW)

    assert "<td>&lt;Jita&gt;</td>" in markup
    assert "<td>0.75</td>" in markup
    assert 'title="Needs a lot"' in markup
    assert "19.10.2026 12:00 UTC" in markup


def test_last_days_markup_has_day_headers():
    days = last_days(NOW)
    rows = [LastDaysRow("Jita", [0] * 7, [StatusLevel.NEEDS_A_LOT] * 7)]
    markup = ReportRenderer().last_days_markup(rows, days)

    assert "Last 7 days report" in markup
    assert "<th style=\"width: 40px\">18.10</th>" in markup
    assert "<th style=\"width: 40px\">12.10</th>" in markup


class FakeHtml2Image:
    """Writes a stub PNG where html2image would put the screenshot."""

    def __init__(self, output_path, custom_flags=None):
        self.output_path = output_path

    def screenshot(self, html_str, save_as, size):
        path = os.path.join(self.output_path, save_as)
        with open(path, "wb") as fh:
            fh.write(b"PNG:" + html_str.encode("utf-8"))
        return [path]


def test_image_renderer_temp_dir_is_lazy(monkeypatch):
    monkeypatch.setattr(report, "Html2Image", FakeHtml2Image)
    renderer = HtmlImageRenderer()
    assert renderer.output_dir is None


@pytest.mark.asyncio
async def test_image_renderer_close_removes_temp_dir(monkeypatch):
    monkeypatch.setattr(report, "Html2Image", FakeHtml2Image)
    renderer = HtmlImageRenderer()

    data = await renderer.render("<p>hi</p>", 460, height=200, name="discordMessage.png")
    out_dir = renderer.output_dir

    assert data == b"PNG:<p>hi</p>"
    assert os.path.isdir(out_dir)
    renderer.close()
    assert not os.path.exists(out_dir)


@pytest.mark.asyncio
async def test_image_renderer_keeps_explicit_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(report, "Html2Image", FakeHtml2Image)
    renderer = HtmlImageRenderer(output_dir=str(tmp_path))

    await renderer.render("<p>x</p>", 550, name="lastDaysMessage.png")
    renderer.close()

    assert (tmp_path / "lastDaysMessage.png").exists()
