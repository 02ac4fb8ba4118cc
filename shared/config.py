"""Runtime configuration helpers for the alt supervisor bot."""

from __future__ import annotations

import base64
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from typing import Dict, Optional, Set, Tuple

from config import runtime as _runtime
from shared.redaction import mask_secret

__all__ = [
    "AltRunnerSettings",
    "PresenceSettings",
    "get_admin_role_ids",
    "get_alt_crypt_key",
    "get_bot_name",
    "get_command_prefix",
    "get_config_snapshot",
    "get_database_path",
    "get_discord_token",
    "get_env_name",
    "get_log_channel_id",
    "load_alt_runner_settings",
    "load_presence_settings",
]

log = logging.getLogger("altsup.config")

_MISSING_VALUE = "—"
_INT_RE = re.compile(r"\d+")

_SECRET_KEYS = {"DISCORD_TOKEN", "ALT_CRYPT_KEY"}

DEFAULT_KNOWN_WORLDS = (
    "Spawn",
    "Meteor",
    "Nebula",
    "Comet",
    "Nova",
    "Luna",
    "Star",
    "Raiding Outpost",
)


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if value is None or str(value).strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _first_int(raw: str | None) -> Optional[int]:
    if not raw:
        return None
    for match in _INT_RE.finditer(raw):
        try:
            return int(match.group(0))
        except (TypeError, ValueError):
            continue
    return None


def _int_set(raw: str | None) -> Set[int]:
    values: Set[int] = set()
    if not raw:
        return values
    for match in _INT_RE.finditer(raw):
        try:
            values.add(int(match.group(0)))
        except (TypeError, ValueError):
            continue
    return values


def _csv_env(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(key)
    if raw is None:
        return tuple(default)
    parts = tuple(chunk.strip() for chunk in raw.split(",") if chunk.strip())
    return parts or tuple(default)


def _int_env(
    key: str,
    default: int,
    *,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    """Parse an optional integer environment variable defensively."""

    raw = os.getenv(key)
    if raw is None:
        return default

    text = str(raw).strip()
    if not text:
        return default

    try:
        value = int(text)
    except ValueError:
        log.warning("config: %s='%s' invalid; using default %s", key, text, default)
        return default

    if min_value is not None and value < min_value:
        log.warning("config: %s=%s < min %s; clamping", key, value, min_value)
        value = min_value

    if max_value is not None and value > max_value:
        log.warning("config: %s=%s > max %s; clamping", key, value, max_value)
        value = max_value

    return value


def _ms_env(key: str, default_ms: int, *, min_ms: int = 0) -> float:
    """Read a millisecond knob and return it in seconds."""

    return _int_env(key, default_ms, min_value=min_ms) / 1000.0


def get_discord_token() -> str:
    return _require_env("DISCORD_TOKEN").strip()


def get_env_name() -> str:
    return _runtime.get_env_name()


def get_bot_name() -> str:
    return _runtime.get_bot_name()


def get_command_prefix() -> str:
    return (os.getenv("COMMAND_PREFIX") or "!").strip() or "!"


def get_admin_role_ids() -> Set[int]:
    return _int_set(os.getenv("ADMIN_ROLE_IDS"))


def get_log_channel_id() -> Optional[int]:
    return _first_int(os.getenv("LOG_CHANNEL_ID"))


def get_database_path() -> str:
    return (os.getenv("DATABASE_PATH") or "data/altsup.db").strip() or "data/altsup.db"


def get_alt_crypt_key() -> Optional[bytes]:
    """Return the 32-byte credential key from ``ALT_CRYPT_KEY`` (base64).

    ``None`` when unset or invalid; stored credentials then cannot be written
    or read.
    """

    raw = (os.getenv("ALT_CRYPT_KEY") or "").strip()
    if not raw:
        return None
    try:
        key = base64.b64decode(raw, validate=True)
    except ValueError:
        log.warning("ALT_CRYPT_KEY is not valid base64; ignoring")
        return None
    if len(key) != 32:
        log.warning("ALT_CRYPT_KEY must decode to 32 bytes; ignoring", extra={"length": len(key)})
        return None
    return key


@dataclass(frozen=True)
class AltRunnerSettings:
    """Every knob the alt runner reads. Durations are in seconds."""

    host: str = "hub.mc-complex.com"
    port: int = 25565
    version: str = "1.20"
    startup_command: str = "/factions"
    return_command: str = "/home home"
    auto_reconnect: bool = True
    reconnect_min: float = 15.0
    reconnect_max: float = 15.0
    fixed_backoff: bool = True
    settle_delay: float = 8.0
    check_timeout: float = 120.0
    login_jitter: float = 1.5
    min_login_gap: float = 15.0
    login_throttle: float = 15.0
    chat_gap: float = 0.9
    first_world_delay: float = 8.0
    first_world_timeout: float = 30.0
    first_world_tick: float = 0.5
    world_poll_interval: float = 60.0
    known_worlds: Tuple[str, ...] = DEFAULT_KNOWN_WORLDS
    deny_keywords: Tuple[str, ...] = field(default_factory=tuple)
    profiles_dir: str = "data/nmp-cache"
    announce_world: bool = False
    debug: bool = True
    debug_verbose: bool = False
    debug_lines: bool = True

    @property
    def startup_enabled(self) -> bool:
        text = self.startup_command.strip()
        return bool(text) and text.lower() != "none"


def load_alt_runner_settings() -> AltRunnerSettings:
    return AltRunnerSettings(
        host=(os.getenv("MC_HOST") or "hub.mc-complex.com").strip(),
        port=_int_env("MC_PORT", 25565, min_value=1, max_value=65535),
        version=(os.getenv("MC_VERSION") or "1.20").strip(),
        startup_command=(os.getenv("MC_ALT_FACTIONS_CMD", "/factions")).strip(),
        return_command=(os.getenv("MC_ALT_HOME_CMD") or "/home home").strip(),
        auto_reconnect=_env_bool("ALT_AUTO_RECONNECT", True),
        reconnect_min=_ms_env("ALT_RECONNECT_MIN_MS", 15000, min_ms=1000),
        reconnect_max=_ms_env("ALT_RECONNECT_MAX_MS", 15000, min_ms=1000),
        fixed_backoff=_env_bool("ALT_FIXED_BACKOFF", True),
        settle_delay=_ms_env("MC_ALT_SERVER_DELAY_MS", 8000),
        check_timeout=_ms_env("MC_CHECK_TIMEOUT_MS", 120000, min_ms=1000),
        login_jitter=_ms_env("ALT_LOGIN_JITTER_MS", 1500),
        min_login_gap=_ms_env("ALT_MIN_GAP_MS", 15000),
        login_throttle=_ms_env("ALT_LOGIN_THROTTLE_MIN_MS", 15000),
        chat_gap=_ms_env("ALT_CHAT_COOLDOWN_MS", 900),
        first_world_delay=_ms_env("ALT_FIRST_SHARD_DELAY_MS", 8000),
        first_world_timeout=_ms_env("ALT_FIRST_SHARD_TIMEOUT_MS", 30000),
        world_poll_interval=_ms_env("ALT_WORLD_POLL_MS", 60000, min_ms=1000),
        known_worlds=_csv_env("ALT_KNOWN_WORLDS", DEFAULT_KNOWN_WORLDS),
        deny_keywords=_csv_env("ALT_WORLD_DENY_KEYWORDS", ()),
        profiles_dir=(os.getenv("ALT_PROFILES_DIR") or "data/nmp-cache").strip(),
        announce_world=_env_bool("ALT_ANNOUNCE_WORLD", False),
        debug=_env_bool("ALT_DEBUG", True),
        debug_verbose=_env_bool("ALT_DEBUG_VERBOSE", False),
        debug_lines=_env_bool("ALT_DEBUG_LINES", True),
    )


@dataclass(frozen=True)
class PresenceSettings:
    tick_interval: float = 10.0
    default_interval_minutes: int = 5
    query_prefix: str = "/a "
    query_timeout: float = 5.0
    max_names: int = 80
    debounce: float = 2.0


def load_presence_settings() -> PresenceSettings:
    prefix = os.getenv("PRESENCE_QUERY_PREFIX")
    return PresenceSettings(
        tick_interval=_int_env("PRESENCE_TICK_SEC", 10, min_value=1),
        default_interval_minutes=_int_env("PRESENCE_DEFAULT_INTERVAL_MIN", 5, min_value=1),
        query_prefix=prefix if prefix else "/a ",
        query_timeout=_ms_env("PRESENCE_QUERY_TIMEOUT_MS", 5000, min_ms=100),
        max_names=_int_env("PRESENCE_MAX_NAMES", 80, min_value=1),
    )


def _redact_value(key: str, value: object) -> str:
    key_upper = str(key).upper()
    if value in (None, "", [], (), {}):
        return _MISSING_VALUE
    if key_upper in _SECRET_KEYS or "TOKEN" in key_upper or key_upper.endswith("_SECRET"):
        return mask_secret(str(value).strip())
    return str(value)


def get_config_snapshot() -> Dict[str, str]:
    """Return a redacted view of the active configuration for logging."""

    snapshot: Dict[str, object] = {
        "ENV_NAME": get_env_name(),
        "BOT_NAME": get_bot_name(),
        "DISCORD_TOKEN": os.getenv("DISCORD_TOKEN", ""),
        "COMMAND_PREFIX": get_command_prefix(),
        "ADMIN_ROLE_IDS": sorted(get_admin_role_ids()),
        "LOG_CHANNEL_ID": get_log_channel_id(),
        "DATABASE_PATH": get_database_path(),
        "ALT_CRYPT_KEY": os.getenv("ALT_CRYPT_KEY", ""),
    }
    for key, value in asdict(load_alt_runner_settings()).items():
        snapshot[f"alt.{key}"] = value
    for key, value in asdict(load_presence_settings()).items():
        snapshot[f"presence.{key}"] = value
    return {key: _redact_value(key, value) for key, value in snapshot.items()}
