"""Persistence for alts, per-guild settings and watch-lists."""

from .base import AltRecord, AltStore, GuildConfig, TrackerConfig, normalize_watch_name
from .crypto import CredentialKeyError, SecretBox, load_secret_box
from .memory import MemoryStore
from .sqlite import SqliteStore

__all__ = [
    "AltRecord",
    "AltStore",
    "CredentialKeyError",
    "GuildConfig",
    "MemoryStore",
    "SecretBox",
    "SqliteStore",
    "TrackerConfig",
    "load_secret_box",
    "normalize_watch_name",
]
