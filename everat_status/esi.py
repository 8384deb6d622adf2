import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Any

import aiohttp
from dateutil import parser as date_parser
from dateutil import tz


class EsiError(RuntimeError):
    """ESI request failed (network, timeout or HTTP status >= 400)."""

    def __init__(self, msg: str, status: Optional[int] = None):
        super().__init__(msg)
        self.status = status


@dataclass(frozen=True)
class KillSnapshot:
    system_id: int
    npc_kills: int = 0
    pod_kills: int = 0
    ship_kills: int = 0


@dataclass(frozen=True)
class OccupancySnapshot:
    system_id: int
    occupancy_level: float


@dataclass(frozen=True)
class KillsBatch:
    last_modified: datetime
    kills: List[KillSnapshot]


def now_utc() -> datetime:
    return datetime.now(tz=tz.UTC)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an HTTP date header ('Wed, 21 Oct 2015 07:28:00 GMT') into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz.UTC)
    return parsed.astimezone(tz.UTC)


def parse_kills(payload: Any) -> List[KillSnapshot]:
    if not isinstance(payload, list):
        raise EsiError(f"unexpected system_kills payload: {type(payload).__name__}")
    out: List[KillSnapshot] = []
    for row in payload:
        if not isinstance(row, dict) or "system_id" not in row:
            continue
        out.append(KillSnapshot(
            system_id=int(row["system_id"]),
            npc_kills=int(row.get("npc_kills") or 0),
            pod_kills=int(row.get("pod_kills") or 0),
            ship_kills=int(row.get("ship_kills") or 0),
        ))
    return out


def parse_occupancy(payload: Any) -> List[OccupancySnapshot]:
    if not isinstance(payload, list):
        raise EsiError(f"unexpected sovereignty payload: {type(payload).__name__}")
    out: List[OccupancySnapshot] = []
    for row in payload:
        if not isinstance(row, dict) or "solar_system_id" not in row:
            continue
        level = row.get("vulnerability_occupancy_level")
        out.append(OccupancySnapshot(
            system_id=int(row["solar_system_id"]),
            occupancy_level=float(level) if level is not None else 0.0,
        ))
    return out


class EsiClient:
    """Read-only client for the public ESI endpoints used by the report."""

    KILLS_PATH = "/universe/system_kills/"
    SOV_PATH = "/sovereignty/structures/"

    def __init__(self, base_url: str, user_agent: str, timeout_seconds: int = 30,
                 logger: Optional[logging.Logger] = None):
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger("everat_status")
        self.session: Optional[aiohttp.ClientSession] = None

    async def ensure_session(self):
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            )

    async def _get(self, path: str):
        await self.ensure_session()
        url = self.base_url + path
        try:
            async with self.session.get(url, params={"datasource": "tranquility"}) as resp:
                if resp.status >= 400:
                    txt = await resp.text()
                    raise EsiError(f"ESI HTTP {resp.status} for {path}: {txt[:200]}", status=resp.status)
                data = await resp.json(content_type=None)
                return data, resp.headers
        except asyncio.TimeoutError as exc:
            raise EsiError(f"ESI timeout for {path}") from exc
        except aiohttp.ClientError as exc:
            raise EsiError(f"ESI request failed for {path}: {exc}") from exc

    async def fetch_kills(self) -> KillsBatch:
        data, headers = await self._get(self.KILLS_PATH)
        kills = parse_kills(data)
        last_modified = parse_http_date(headers.get("Last-Modified"))
        if last_modified is None:
            last_modified = parse_http_date(headers.get("Date"))
            self.logger.warning("[esi] No Last-Modified header on system_kills, using %s", last_modified)
        if last_modified is None:
            last_modified = now_utc()
        self.logger.info("[esi] system_kills: %d systems, last modified %s", len(kills), last_modified.isoformat())
        return KillsBatch(last_modified=last_modified, kills=kills)

    async def fetch_occupancy(self) -> List[OccupancySnapshot]:
        data, _headers = await self._get(self.SOV_PATH)
        levels = parse_occupancy(data)
        self.logger.info("[esi] sovereignty structures: %d entries", len(levels))
        return levels

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
