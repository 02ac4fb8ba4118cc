from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, TypeVar

from .base import (
    ALT_UPDATABLE_FIELDS,
    AUTH_MODES,
    GUILD_FIELDS,
    TRACKER_FIELDS,
    AltRecord,
    GuildConfig,
    TrackerConfig,
    _check_fields,
    normalize_watch_name,
)
from .crypto import CredentialKeyError, SecretBox, load_secret_box

log = logging.getLogger("altsup.storage")

__all__ = ["SqliteStore"]

T = TypeVar("T")


class SqliteStore:
    """
    SQLite-backed store. Blocking calls run on a worker thread.

    The account e-mail is stored sealed (AES-256-GCM) in ``email_enc``; the
    key comes from ``ALT_CRYPT_KEY`` unless a ``secret_box`` is passed.

    Tables:
      - alts
      - guild_config
      - tracker_config
      - watchlist
    """

    def __init__(self, db_path: Path | str = "data/altsup.db", *, secret_box: SecretBox | None = None):
        self._path = Path(db_path)
        self._box = secret_box if secret_box is not None else load_secret_box()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    # ------------------------------------------------------------------
    # INTERNALS
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    guild_id INTEGER NOT NULL,
                    label TEXT NOT NULL,
                    auth_mode TEXT NOT NULL DEFAULT 'microsoft',
                    mc_username TEXT,
                    email_enc TEXT,
                    mc_uuid TEXT,
                    mc_last_username TEXT,
                    last_world TEXT,
                    world_updated_at INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'offline',
                    last_seen INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS guild_config (
                    guild_id INTEGER PRIMARY KEY,
                    alt_channel_id INTEGER,
                    shard_checker_alt_id INTEGER,
                    rpost_checker_alt_id INTEGER
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tracker_config (
                    guild_id INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 0,
                    channel_id INTEGER,
                    interval_minutes INTEGER NOT NULL DEFAULT 5,
                    last_run_at INTEGER NOT NULL DEFAULT 0,
                    previous_message_id INTEGER,
                    PRIMARY KEY (guild_id, kind)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS watchlist (
                    guild_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    name_key TEXT NOT NULL,
                    PRIMARY KEY (guild_id, name_key)
                )
                """
            )

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(fn, *args)

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    def _seal(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if self._box is None:
            raise CredentialKeyError("ALT_CRYPT_KEY not set/invalid (must be 32-byte base64).")
        return self._box.seal(value)

    def _open(self, blob: Optional[str], alt_id: int) -> Optional[str]:
        if not blob:
            return None
        if self._box is None:
            log.warning("stored credential unreadable without ALT_CRYPT_KEY", extra={"alt_id": alt_id})
            return None
        try:
            return self._box.open(blob)
        except CredentialKeyError as exc:
            log.warning("stored credential unreadable", extra={"alt_id": alt_id, "error": str(exc)})
            return None

    def _row_to_alt(self, row: Mapping[str, Any]) -> AltRecord:
        return AltRecord(
            id=row["id"],
            guild_id=row["guild_id"],
            label=row["label"],
            auth_mode=row["auth_mode"],
            mc_username=row["mc_username"],
            email_hint=self._open(row["email_enc"], row["id"]),
            mc_uuid=row["mc_uuid"],
            mc_last_username=row["mc_last_username"],
            last_world=row["last_world"],
            world_updated_at=int(row["world_updated_at"] or 0),
            status=row["status"],
            last_seen=int(row["last_seen"] or 0),
        )

    @staticmethod
    def _row_to_tracker(row: Mapping[str, Any]) -> TrackerConfig:
        return TrackerConfig(
            guild_id=row["guild_id"],
            kind=row["kind"],
            enabled=bool(row["enabled"]),
            channel_id=row["channel_id"],
            interval_minutes=int(row["interval_minutes"] or 5),
            last_run_at=int(row["last_run_at"] or 0),
            previous_message_id=row["previous_message_id"],
        )

    def _get_alt_sync(self, alt_id: int) -> Optional[AltRecord]:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM alts WHERE id = ?", (alt_id,)).fetchone()
        return self._row_to_alt(row) if row else None

    def _list_alts_sync(self, guild_id: Optional[int]) -> List[AltRecord]:
        with self._lock, self._connect() as conn:
            if guild_id is None:
                rows = conn.execute("SELECT * FROM alts ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM alts WHERE guild_id = ? ORDER BY id", (guild_id,)
                ).fetchall()
        return [self._row_to_alt(row) for row in rows]

    def _insert_alt_sync(
        self,
        guild_id: int,
        label: str,
        auth_mode: str,
        mc_username: Optional[str],
        email_enc: Optional[str],
    ) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO alts (guild_id, label, auth_mode, mc_username, email_enc)
                VALUES (?, ?, ?, ?, ?)
                """,
                (guild_id, label, auth_mode, mc_username, email_enc),
            )
            return int(cursor.lastrowid)

    def _update_alt_sync(self, alt_id: int, fields: dict[str, Any]) -> Optional[AltRecord]:
        if fields:
            # Column names come from ALT_UPDATABLE_FIELDS (email sealed into
            # email_enc), never from callers.
            assignments = ", ".join(f"{key} = ?" for key in fields)
            with self._lock, self._connect() as conn:
                conn.execute(
                    f"UPDATE alts SET {assignments} WHERE id = ?",
                    (*fields.values(), alt_id),
                )
        return self._get_alt_sync(alt_id)

    def _delete_alt_sync(self, alt_id: int) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute("DELETE FROM alts WHERE id = ?", (alt_id,))
            return cursor.rowcount > 0

    @staticmethod
    def _read_guild(conn: sqlite3.Connection, guild_id: int) -> GuildConfig:
        row = conn.execute("SELECT * FROM guild_config WHERE guild_id = ?", (guild_id,)).fetchone()
        if row is None:
            return GuildConfig(guild_id=guild_id)
        return GuildConfig(
            guild_id=row["guild_id"],
            alt_channel_id=row["alt_channel_id"],
            shard_checker_alt_id=row["shard_checker_alt_id"],
            rpost_checker_alt_id=row["rpost_checker_alt_id"],
        )

    def _get_guild_sync(self, guild_id: int) -> GuildConfig:
        with self._lock, self._connect() as conn:
            return self._read_guild(conn, guild_id)

    def _upsert_guild_sync(self, guild_id: int, fields: dict[str, Any]) -> GuildConfig:
        # Read and write under one lock so concurrent upserts never drop fields.
        with self._lock, self._connect() as conn:
            current = self._read_guild(conn, guild_id)
            merged = {
                "alt_channel_id": current.alt_channel_id,
                "shard_checker_alt_id": current.shard_checker_alt_id,
                "rpost_checker_alt_id": current.rpost_checker_alt_id,
                **fields,
            }
            conn.execute(
                """
                INSERT INTO guild_config (guild_id, alt_channel_id, shard_checker_alt_id, rpost_checker_alt_id)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(guild_id) DO UPDATE SET
                    alt_channel_id = excluded.alt_channel_id,
                    shard_checker_alt_id = excluded.shard_checker_alt_id,
                    rpost_checker_alt_id = excluded.rpost_checker_alt_id
                """,
                (
                    guild_id,
                    merged["alt_channel_id"],
                    merged["shard_checker_alt_id"],
                    merged["rpost_checker_alt_id"],
                ),
            )
        return GuildConfig(guild_id=guild_id, **merged)

    def _read_tracker(self, conn: sqlite3.Connection, guild_id: int, kind: str) -> TrackerConfig:
        row = conn.execute(
            "SELECT * FROM tracker_config WHERE guild_id = ? AND kind = ?",
            (guild_id, kind),
        ).fetchone()
        return self._row_to_tracker(row) if row else TrackerConfig(guild_id=guild_id, kind=kind)

    def _get_tracker_sync(self, guild_id: int, kind: str) -> TrackerConfig:
        with self._lock, self._connect() as conn:
            return self._read_tracker(conn, guild_id, kind)

    def _upsert_tracker_sync(self, guild_id: int, kind: str, fields: dict[str, Any]) -> TrackerConfig:
        with self._lock, self._connect() as conn:
            current = self._read_tracker(conn, guild_id, kind)
            merged = {
                "enabled": current.enabled,
                "channel_id": current.channel_id,
                "interval_minutes": current.interval_minutes,
                "last_run_at": current.last_run_at,
                "previous_message_id": current.previous_message_id,
                **fields,
            }
            conn.execute(
                """
                INSERT INTO tracker_config (
                    guild_id, kind, enabled, channel_id, interval_minutes,
                    last_run_at, previous_message_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, kind) DO UPDATE SET
                    enabled = excluded.enabled,
                    channel_id = excluded.channel_id,
                    interval_minutes = excluded.interval_minutes,
                    last_run_at = excluded.last_run_at,
                    previous_message_id = excluded.previous_message_id
                """,
                (
                    guild_id,
                    kind,
                    int(bool(merged["enabled"])),
                    merged["channel_id"],
                    int(merged["interval_minutes"]),
                    int(merged["last_run_at"]),
                    merged["previous_message_id"],
                ),
            )
        return TrackerConfig(guild_id=guild_id, kind=kind, **merged)

    def _list_trackers_sync(self) -> List[TrackerConfig]:
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT * FROM tracker_config ORDER BY guild_id, kind").fetchall()
        return [self._row_to_tracker(row) for row in rows]

    def _watchlist_get_sync(self, guild_id: int) -> List[str]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT name FROM watchlist WHERE guild_id = ? ORDER BY name_key", (guild_id,)
            ).fetchall()
        return [row["name"] for row in rows]

    def _watchlist_add_sync(self, guild_id: int, name: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO watchlist (guild_id, name, name_key) VALUES (?, ?, ?)",
                (guild_id, name, name.lower()),
            )
            return cursor.rowcount > 0

    def _watchlist_remove_sync(self, guild_id: int, name: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM watchlist WHERE guild_id = ? AND name_key = ?",
                (guild_id, name.strip().lower()),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # PUBLIC API
    # ------------------------------------------------------------------

    async def get_alt(self, alt_id: int) -> Optional[AltRecord]:
        return await self._run(self._get_alt_sync, alt_id)

    async def list_alts(self, guild_id: Optional[int] = None) -> List[AltRecord]:
        return await self._run(self._list_alts_sync, guild_id)

    async def insert_alt(
        self,
        guild_id: int,
        label: str,
        *,
        auth_mode: str = "microsoft",
        mc_username: Optional[str] = None,
        email_hint: Optional[str] = None,
    ) -> AltRecord:
        if auth_mode not in AUTH_MODES:
            raise ValueError(f"Invalid auth mode: {auth_mode}")
        email_enc = self._seal(email_hint)
        alt_id = await self._run(
            self._insert_alt_sync, guild_id, label, auth_mode, mc_username, email_enc
        )
        log.info("alt inserted", extra={"alt_id": alt_id, "guild_id": guild_id})
        return AltRecord(
            id=alt_id,
            guild_id=guild_id,
            label=label,
            auth_mode=auth_mode,
            mc_username=mc_username,
            email_hint=email_hint or None,
        )

    async def update_alt(self, alt_id: int, **fields: Any) -> Optional[AltRecord]:
        _check_fields(fields, ALT_UPDATABLE_FIELDS)
        if "email_hint" in fields:
            fields["email_enc"] = self._seal(fields.pop("email_hint"))
        return await self._run(self._update_alt_sync, alt_id, fields)

    async def delete_alt(self, alt_id: int) -> bool:
        return await self._run(self._delete_alt_sync, alt_id)

    async def set_alt_status(self, alt_id: int, status: str, last_seen: int) -> None:
        await self.update_alt(alt_id, status=status, last_seen=last_seen)

    async def set_alt_identity(
        self, alt_id: int, mc_uuid: Optional[str], mc_last_username: Optional[str]
    ) -> None:
        await self.update_alt(alt_id, mc_uuid=mc_uuid, mc_last_username=mc_last_username)

    async def set_alt_world(self, alt_id: int, world: str, updated_at: int) -> None:
        await self.update_alt(alt_id, last_world=world, world_updated_at=updated_at)

    async def get_guild_config(self, guild_id: int) -> GuildConfig:
        return await self._run(self._get_guild_sync, guild_id)

    async def upsert_guild_config(self, guild_id: int, **fields: Any) -> GuildConfig:
        _check_fields(fields, GUILD_FIELDS)
        return await self._run(self._upsert_guild_sync, guild_id, fields)

    async def get_tracker_config(self, guild_id: int, kind: str) -> TrackerConfig:
        return await self._run(self._get_tracker_sync, guild_id, kind)

    async def upsert_tracker_config(self, guild_id: int, kind: str, **fields: Any) -> TrackerConfig:
        _check_fields(fields, TRACKER_FIELDS)
        return await self._run(self._upsert_tracker_sync, guild_id, kind, fields)

    async def list_tracker_configs(self) -> List[TrackerConfig]:
        return await self._run(self._list_trackers_sync)

    async def watchlist_get(self, guild_id: int) -> List[str]:
        return await self._run(self._watchlist_get_sync, guild_id)

    async def watchlist_add(self, guild_id: int, name: str) -> bool:
        clean = normalize_watch_name(name)
        if clean is None:
            raise ValueError(f"Invalid player name: {name!r}")
        return await self._run(self._watchlist_add_sync, guild_id, clean)

    async def watchlist_remove(self, guild_id: int, name: str) -> bool:
        return await self._run(self._watchlist_remove_sync, guild_id, str(name or ""))
