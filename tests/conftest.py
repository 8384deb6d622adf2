from datetime import datetime, timedelta
from typing import List

import pytest
import pytest_asyncio
from dateutil import tz

from everat_status.esi import KillsBatch, KillSnapshot, OccupancySnapshot
from everat_status.history import HistoryStore, HistoryRecord

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=tz.UTC)


class FakeEsi:
    """Stands in for EsiClient; counts calls and serves canned ESI data."""

    def __init__(self, kills: List[KillSnapshot] = None, occupancy: List[OccupancySnapshot] = None,
                 last_modified: datetime = NOW - timedelta(minutes=2), error: Exception = None):
        self.kills = kills or []
        self.occupancy = occupancy or []
        self.last_modified = last_modified
        self.error = error
        self.calls = 0

    async def fetch_kills(self) -> KillsBatch:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return KillsBatch(last_modified=self.last_modified, kills=list(self.kills))

    async def fetch_occupancy(self) -> List[OccupancySnapshot]:
        self.calls += 1
        return list(self.occupancy)


class FakeImageRenderer:
    def __init__(self):
        self.rendered = []

    async def render(self, markup: str, width: int, height: int = 600, name: str = "report.png") -> bytes:
        self.rendered.append((name, width, markup))
        return b"\x89PNG" + name.encode()


class FakePublisher:
    def __init__(self):
        self.calls = []

    async def clear_channel(self):
        self.calls.append(("clear",))

    async def post_image(self, png: bytes, filename: str):
        self.calls.append(("post", filename))


@pytest_asyncio.fixture
async def store(tmp_path):
    s = HistoryStore(str(tmp_path / "db" / "EveRAT.db"))
    await s.open()
    yield s
    await s.close()


@pytest.fixture
def make_record():
    def _make(system_id: int, npc_kills: int, recorded_at: datetime, adm: float = 1.0) -> HistoryRecord:
        return HistoryRecord(system_id=system_id, npc_kills=npc_kills, occupancy_level=adm, recorded_at=recorded_at)
    return _make
