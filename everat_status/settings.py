import os
import re
import json
import shutil
import logging
from dataclasses import dataclass, field, asdict, fields
from typing import Optional, List, Tuple, Dict

# =========================
# ===== PATHS =============
# =========================

# Data directory: the working directory of the process
DATA_DIR = os.path.abspath(".")
DEFAULT_SETTINGS_FILE = os.path.join(DATA_DIR, "botSettings.json")


@dataclass(frozen=True)
class TrackedSystem:
    system_id: int
    name: str


@dataclass
class BotSettings:
    """Persisted bot configuration (botSettings.json). Read-only once the bot runs.

    client_id, secret_key and callback_url describe an EVE SSO application. Only
    public ESI endpoints are called, so they are not read; they stay in the file
    so existing EveRAT botSettings.json files load unchanged.
    """
    bot_token: str = "Discord_bot_token"
    client_id: str = "Eve_app_clientId"
    secret_key: str = "Eve_app_securityKey"
    callback_url: str = "Eve_app_callbackUrl"
    user_agent: str = "Eve_app_userAgent"
    discord_server_id: int = 0
    discord_channel_id: int = 0
    limits: List[int] = field(default_factory=lambda: [300, 500])
    refresh_every: int = 5
    days_to_keep_history: int = 20
    activate_stats: bool = False
    systems: List[List] = field(default_factory=list)
    db_path: str = os.path.join("db", "EveRAT.db")
    esi_base_url: str = "https://esi.evetech.net/latest"
    http_timeout_seconds: int = 30
    command_prefix: str = "!"

    @property
    def low_threshold(self) -> int:
        return self.limits[0]

    @property
    def high_threshold(self) -> int:
        return self.limits[1]

    @property
    def tracked_systems(self) -> List[TrackedSystem]:
        return [TrackedSystem(int(sid), str(name)) for sid, name in self.systems]

    def masked(self) -> Dict[str, object]:
        out = asdict(self)
        for key in ("bot_token", "secret_key"):
            out[key] = "***"
        return out


STR_FIELDS = (
    "bot_token", "client_id", "secret_key", "callback_url", "user_agent",
    "db_path", "esi_base_url", "command_prefix",
)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def settings_from_dict(data: dict) -> BotSettings:
    """Build BotSettings from decoded JSON; ValueError on bad values."""
    if not isinstance(data, dict):
        raise ValueError("settings root must be a JSON object")
    known = {f.name for f in fields(BotSettings)}
    settings = BotSettings(**{k: v for k, v in data.items() if k in known})

    limits = settings.limits
    if not (isinstance(limits, list) and len(limits) == 2 and all(_is_int(x) for x in limits)):
        raise ValueError(f"limits must be two integers, got {limits!r}")
    if limits[0] >= limits[1]:
        raise ValueError(f"limits must be ascending, got {limits!r}")

    if not isinstance(settings.systems, list):
        raise ValueError("systems must be a list of [id, name] pairs")
    for entry in settings.systems:
        if not (isinstance(entry, (list, tuple)) and len(entry) == 2
                and _is_int(entry[0]) and isinstance(entry[1], str)):
            raise ValueError(f"malformed systems entry {entry!r}")

    for name in ("refresh_every", "days_to_keep_history", "http_timeout_seconds"):
        value = getattr(settings, name)
        if not _is_int(value) or value <= 0:
            raise ValueError(f"{name} must be a positive integer, got {value!r}")
    for name in ("discord_server_id", "discord_channel_id"):
        if not _is_int(getattr(settings, name)):
            raise ValueError(f"{name} must be an integer")
    for name in STR_FIELDS:
        value = getattr(settings, name)
        if not isinstance(value, str):
            raise ValueError(f"{name} must be a string, got {value!r}")
    if not isinstance(settings.activate_stats, bool):
        raise ValueError(f"activate_stats must be true or false, got {settings.activate_stats!r}")
    return settings


class SettingsProvider:
    """Read/write botSettings.json. A broken file is backed up and replaced by defaults."""

    def __init__(self, path: str = DEFAULT_SETTINGS_FILE, logger: Optional[logging.Logger] = None):
        self.path = path
        self.logger = logger or logging.getLogger("everat_status")

    def load(self) -> BotSettings:
        if not os.path.isfile(self.path):
            self.logger.info("[settings] %s not found, writing defaults", self.path)
            settings = BotSettings()
            self.save(settings)
            return settings
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
            settings = settings_from_dict(data)
        except (OSError, ValueError, TypeError) as exc:
            self.logger.warning("[settings] Invalid settings file %s (%s), resetting to defaults", self.path, exc)
            try:
                shutil.copy2(self.path, self.path + ".bak")
            except OSError:
                self.logger.exception("[settings] Could not back up %s", self.path)
            settings = BotSettings()
            self.save(settings)
            return settings
        self.logger.info("[settings] Loaded %s (%d systems)", self.path, len(settings.systems))
        return settings

    def save(self, settings: BotSettings) -> None:
        try:
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as fh:
                json.dump(asdict(settings), fh, indent=2, ensure_ascii=False)
                fh.write("\n")
        except OSError:
            self.logger.exception("[settings] Could not write %s", self.path)


# =========================
# ===== ENV OVERRIDES =====
# =========================

ENV_CONFIG_SPEC: Dict[str, Tuple[str, type]] = {
    "bot_token": ("EVERAT_TOKEN", str),
    "db_path": ("EVERAT_DB_PATH", str),
    "discord_channel_id": ("EVERAT_CHANNEL_ID", int),
    "discord_server_id": ("EVERAT_SERVER_ID", int),
    "user_agent": ("EVERAT_USER_AGENT", str),
    "activate_stats": ("EVERAT_ACTIVATE_STATS", bool),
}


def _parse_bool_env(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"Cannot interpret '{value}' as a boolean")


def _parse_env_kv(line: str) -> Optional[Tuple[str, str]]:
    """Parse a KEY=VALUE line; a double-quoted value may contain '#'."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    key, value = (part.strip() for part in stripped.split("=", 1))
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", key):
        return None
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return key, value[1:-1]
    return key, value.split("#", 1)[0].rstrip()


def load_env_file(logger: Optional[logging.Logger] = None) -> None:
    """Load variables from .env files without overriding the real environment."""
    logger = logger or logging.getLogger("everat_status")
    candidates = []
    explicit = os.getenv("EVERAT_ENV_FILE")
    if explicit:
        candidates.append(explicit)
    candidates.append(os.path.join(DATA_DIR, ".env"))

    loaded_any = False
    seen: set[str] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as fh:
                for raw_line in fh:
                    parsed = _parse_env_kv(raw_line)
                    if not parsed:
                        continue
                    key, value = parsed
                    if key not in os.environ:
                        os.environ[key] = value
            logger.info("[env] Loaded variables from %s", path)
            loaded_any = True
        except OSError as exc:
            logger.warning("[env] Could not load %s: %s", path, exc)
    if not loaded_any and explicit:
        logger.warning("[env] Env file %s not found", explicit)


def apply_env_overrides(settings: BotSettings, environ: Optional[Dict[str, str]] = None) -> BotSettings:
    """Overlay EVERAT_* variables onto settings; ValueError on a malformed value."""
    environ = os.environ if environ is None else environ
    for key, (env_name, converter) in ENV_CONFIG_SPEC.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = _parse_bool_env(raw) if converter is bool else converter(raw)
        except ValueError as exc:
            raise ValueError(f"{env_name}: {exc}") from exc
        setattr(settings, key, value)
    return settings


def settings_path_from_env() -> str:
    return os.getenv("EVERAT_SETTINGS_FILE") or DEFAULT_SETTINGS_FILE
