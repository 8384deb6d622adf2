import os
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Iterable

import aiosqlite
from dateutil import tz


@dataclass(frozen=True)
class HistoryRecord:
    system_id: int
    npc_kills: int
    occupancy_level: float
    recorded_at: datetime
    history_id: Optional[int] = None


def to_db_ts(when: datetime) -> str:
    """UTC ISO-8601 with second precision, so text comparison orders correctly."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=tz.UTC)
    return when.astimezone(tz.UTC).isoformat(timespec="seconds")


def from_db_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz.UTC)
    return parsed


INIT_SQL = """
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS History (
  history_id   INTEGER PRIMARY KEY AUTOINCREMENT,
  system_id    INTEGER NOT NULL,
  npc_kills    INTEGER NOT NULL DEFAULT 0,
  adm          REAL,
  recorded_at  TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS IX_History_recorded_at ON History(recorded_at);
CREATE INDEX IF NOT EXISTS IX_History_system_recorded ON History(system_id, recorded_at);
"""


class HistoryStore:
    """Append-only time series of per-system NPC kills and occupancy levels."""

    def __init__(self, db_path: str, logger: Optional[logging.Logger] = None):
        self.db_path = db_path
        self.db: Optional[aiosqlite.Connection] = None
        self.logger = logger or logging.getLogger("everat_status")

    async def open(self):
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)
        self.db = await aiosqlite.connect(self.db_path)
        await self.db.executescript(INIT_SQL)
        await self.db.commit()
        self.logger.info("[history] Opened %s", self.db_path)

    async def close(self):
        if self.db is not None:
            await self.db.close()
            self.db = None

    async def append_record(self, record: HistoryRecord):
        await self.append_records([record])

    async def append_records(self, records: Iterable[HistoryRecord]) -> int:
        """Insert a whole cycle in one transaction; nothing is kept if any row fails."""
        rows = [(r.system_id, int(r.npc_kills), float(r.occupancy_level), to_db_ts(r.recorded_at))
                for r in records]
        if not rows:
            return 0
        try:
            await self.db.executemany(
                "INSERT INTO History (system_id, npc_kills, adm, recorded_at) VALUES (?, ?, ?, ?)",
                rows,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        self.logger.info("[history] Appended %d records", len(rows))
        return len(rows)

    async def query_by_window(self, system_id: int, since: datetime) -> List[HistoryRecord]:
        cur = await self.db.execute(
            "SELECT history_id, system_id, npc_kills, adm, recorded_at FROM History "
            "WHERE system_id = ? AND recorded_at >= ? ORDER BY recorded_at",
            (system_id, to_db_ts(since))
        )
        rows = await cur.fetchall(); await cur.close()
        return [HistoryRecord(system_id=r[1], npc_kills=r[2], occupancy_level=r[3] if r[3] is not None else 0.0,
                              recorded_at=from_db_ts(r[4]), history_id=r[0]) for r in rows]

    async def sum_npc_kills(self, system_id: int, since: datetime, until: Optional[datetime] = None) -> int:
        """Sum of npc_kills in [since, until); no upper bound when until is None."""
        params = [system_id, to_db_ts(since)]
        sql = "SELECT COALESCE(SUM(npc_kills), 0) FROM History WHERE system_id = ? AND recorded_at >= ?"
        if until is not None:
            sql += " AND recorded_at < ?"
            params.append(to_db_ts(until))
        cur = await self.db.execute(sql, tuple(params))
        row = await cur.fetchone(); await cur.close()
        return int(row[0]) if row else 0

    async def exists_since(self, when: datetime) -> bool:
        cur = await self.db.execute(
            "SELECT 1 FROM History WHERE recorded_at >= ? LIMIT 1", (to_db_ts(when),)
        )
        row = await cur.fetchone(); await cur.close()
        return row is not None

    async def exists_older_than(self, cutoff: datetime) -> bool:
        cur = await self.db.execute(
            "SELECT 1 FROM History WHERE recorded_at < ? LIMIT 1", (to_db_ts(cutoff),)
        )
        row = await cur.fetchone(); await cur.close()
        return row is not None

    async def delete_older_than(self, cutoff: datetime) -> int:
        cur = await self.db.execute("DELETE FROM History WHERE recorded_at < ?", (to_db_ts(cutoff),))
        await self.db.commit()
        deleted = cur.rowcount
        await cur.close()
        self.logger.info("[history] Deleted %d records older than %s", deleted, to_db_ts(cutoff))
        return deleted

    async def count(self) -> int:
        cur = await self.db.execute("SELECT COUNT(*) FROM History")
        row = await cur.fetchone(); await cur.close()
        return row[0] if row else 0
