"""Alt runner facade: owns every alt connection and its supervision."""

from __future__ import annotations

import logging
import os
import random
import re
from typing import Any, Dict, Optional

from modules.common.runtime import Scheduler
from modules.storage.base import AltStore
from shared.config import AltRunnerSettings, load_alt_runner_settings

from . import client as gc
from .command_queue import CommandDrainer
from .errors import AltNotFoundError
from .events import AltStatusChanged, DeviceCodeIssued, EventBus, WorldChanged
from .login import CooldownWatermarks, LoginOutcome, LoginScheduler
from .notices import (
    AltNotifier,
    build_device_code_notice,
    build_login_rejected_notice,
    build_rate_limit_notice,
    build_world_notice,
)
from .reconnect import BackoffPolicy, DisconnectKind, ReconnectSupervisor, reason_text
from .scoreboard import DEFAULT_DENY_LIST, WorldDenyList, lines_from_scoreboard, match_known_world
from .state import (
    STATUS_AUTH_WAIT,
    STATUS_ERROR,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    AltRegistry,
    AltState,
)
from .world import WorldTracker

log = logging.getLogger("altsup.runner")

__all__ = ["AltRunner"]

RESPAWN_DRAIN_DELAY = 1.2
RESPAWN_REDRAIN_DELAY = 1.5
FIRST_SCAN_MARGIN = 1.5
_FORBIDDEN_RE = re.compile(r"403|forbidden", re.IGNORECASE)


def settle_delay_for(server_delay: float) -> float:
    """Delay between spawn and the startup command."""

    return max(0.8, server_delay - 2.4)


class AltRunner:
    """Starts, stops and supervises alts; see ``events`` for notifications."""

    def __init__(
        self,
        store: AltStore,
        client_factory: gc.ClientFactory,
        *,
        settings: AltRunnerSettings | None = None,
        scheduler: Scheduler | None = None,
        notifier: AltNotifier | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or load_alt_runner_settings()
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or Scheduler()
        self._clock = self.scheduler.clock
        self._client_factory = client_factory
        self._rng = rng or random.Random()
        self.gateway: Any = None

        cfg = self.settings
        self.registry = AltRegistry(initial_backoff=cfg.reconnect_min)
        self.events = EventBus()
        self.cooldowns = CooldownWatermarks()
        self.notifier = notifier or AltNotifier(self._alt_channel_for)

        deny = WorldDenyList.with_extra(cfg.deny_keywords) if cfg.deny_keywords else DEFAULT_DENY_LIST
        self.drainer = CommandDrainer(self.registry, scheduler=self.scheduler, chat_gap=cfg.chat_gap)
        self.world = WorldTracker(
            self.registry,
            scheduler=self.scheduler,
            events=self.events,
            drainer=self.drainer,
            persist=self.store.set_alt_world,
            deny=deny,
            return_command=cfg.return_command,
            poll_interval=cfg.world_poll_interval,
            debug_lines=cfg.debug_lines,
            announce=self._announce_world if cfg.announce_world else None,
        )
        self.logins = LoginScheduler(
            self.registry,
            self._connect,
            scheduler=self.scheduler,
            cooldowns=self.cooldowns,
            min_gap=cfg.min_login_gap,
            jitter=cfg.login_jitter,
            rng=self._rng,
        )
        self.reconnect = ReconnectSupervisor(
            self.registry,
            self.logins.submit,
            scheduler=self.scheduler,
            cooldowns=self.cooldowns,
            policy=BackoffPolicy(cfg.reconnect_min, cfg.reconnect_max, fixed=cfg.fixed_backoff),
            enabled=cfg.auto_reconnect,
            jitter=cfg.login_jitter,
            login_throttle=cfg.login_throttle,
            rng=self._rng,
        )
        self.events.subscribe(WorldChanged, self._check_known_world)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def init(self, gateway: Any) -> None:
        """Bind the Discord client used for operator notices."""

        self.gateway = gateway
        self.notifier.bind(gateway)

    async def start_alt(self, guild_id: int, alt_id: int) -> LoginOutcome:
        record = await self.store.get_alt(alt_id)
        if record is None:
            raise AltNotFoundError(alt_id)
        state = self.registry.get(alt_id)
        state.guild_id = guild_id
        state.label = record.label
        if record.last_world:
            state.last_known_world = record.last_world
            state.last_known_at = int(record.world_updated_at or 0)
        return await self.logins.enqueue(alt_id)

    async def stop_alt(self, alt_id: int) -> None:
        state = self.registry.get(alt_id)
        self.reconnect.cancel(alt_id)
        self.logins.discard(alt_id)
        self._cancel_device_timer(state)
        state.awaiting_device = False
        self._teardown(state, "stop")
        state.cancel_timers()
        state.armed = False
        state.first_world_eligible_at = None
        state.returned_to_base = False
        dropped = self.drainer.discard(alt_id)
        log.info("alt stopped", extra={"alt_id": alt_id, "dropped_commands": dropped})
        await self._set_status(alt_id, STATUS_OFFLINE)

    async def run_command(self, alt_id: int, text: object) -> str:
        line = self.drainer.push(alt_id, text)
        state = self.registry.get(alt_id)
        if state.online:
            self.drainer.drain(alt_id)
        else:
            if state.guild_id is None and await self.store.get_alt(alt_id) is None:
                self.drainer.discard(alt_id)
                raise AltNotFoundError(alt_id)
            self.logins.submit(alt_id)
        return line

    def get_alt_status(self, alt_id: int) -> str:
        state = self.registry.peek(alt_id)
        if state is None:
            return STATUS_OFFLINE
        if state.online:
            return STATUS_ONLINE
        if state.awaiting_device:
            return STATUS_AUTH_WAIT
        return STATUS_OFFLINE

    def get_alt_world(self, alt_id: int) -> Optional[str]:
        state = self.registry.peek(alt_id)
        if state is None:
            return None
        return state.world or state.last_known_world

    def get_alt_world_updated_at(self, alt_id: int) -> int:
        state = self.registry.peek(alt_id)
        if state is None:
            return 0
        if state.world:
            return state.world_updated_at
        return state.last_known_at

    async def start_all_for_guild(self, guild_id: int) -> Dict[int, LoginOutcome]:
        """Start every alt of a guild, spaced by the reconnect minimum."""

        outcomes: Dict[int, LoginOutcome] = {}
        for record in await self.store.list_alts(guild_id):
            try:
                outcomes[record.id] = await self.start_alt(guild_id, record.id)
            except Exception:
                log.exception("alt start failed", extra={"alt_id": record.id, "guild_id": guild_id})
            await self._clock.sleep(
                self.settings.reconnect_min + self._rng.uniform(0.0, self.settings.login_jitter)
            )
        return outcomes

    def get_client(self, alt_id: int) -> Optional[gc.GameClient]:
        state = self.registry.peek(alt_id)
        return state.client if state is not None else None

    def is_online(self, alt_id: int) -> bool:
        state = self.registry.peek(alt_id)
        return bool(state and state.online)

    def status_counts(self) -> Dict[str, int]:
        counts = {STATUS_ONLINE: 0, STATUS_AUTH_WAIT: 0, STATUS_OFFLINE: 0}
        for state in self.registry:
            counts[self.get_alt_status(state.alt_id)] += 1
        return counts

    async def forget_alt(self, alt_id: int) -> None:
        """Stop an alt and drop its in-memory state (alt deleted)."""

        await self.stop_alt(alt_id)
        self.registry.discard(alt_id)

    async def shutdown(self) -> None:
        for state in self.registry:
            self.reconnect.cancel(state.alt_id)
            self._cancel_device_timer(state)
            state.cancel_timers()
            self._teardown(state, "shutdown")
        if self._owns_scheduler:
            await self.scheduler.shutdown()
        await self.events.drain()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _connect(self, alt_id: int) -> None:
        record = await self.store.get_alt(alt_id)
        if record is None:
            raise AltNotFoundError(alt_id)
        if not self.logins.is_queued(alt_id):
            log.info("alt stopped during connect, not connecting", extra={"alt_id": alt_id})
            return
        cfg = self.settings
        state = self.registry.get(alt_id)
        state.guild_id = record.guild_id
        state.label = record.label
        state.awaiting_device = False
        self.reconnect.cancel(alt_id)
        self._cancel_device_timer(state)

        self._teardown(state, "reconnect")
        state.reset_connection()

        microsoft = record.auth_mode == gc.AUTH_DEVICE_CODE
        if microsoft:
            username = (record.email_hint or record.label or f"alt-{alt_id}").strip()
            profiles = os.path.join(cfg.profiles_dir, f"alt-{alt_id}")
        else:
            username = (record.mc_username or record.label or f"alt-{alt_id}").strip()
            profiles = None

        async def on_device_code(code: gc.DeviceCode) -> None:
            await self._on_device_code(alt_id, code)

        options = gc.ConnectOptions(
            host=cfg.host,
            port=cfg.port,
            version=cfg.version,
            username=username,
            auth=gc.AUTH_DEVICE_CODE if microsoft else gc.AUTH_OFFLINE,
            profiles_folder=profiles,
            check_timeout=cfg.check_timeout,
            on_device_code=on_device_code if microsoft else None,
        )
        log.info(
            "connecting",
            extra={
                "alt_id": alt_id,
                "host": cfg.host,
                "port": cfg.port,
                "auth": options.auth,
                "username": username,
            },
        )
        try:
            client = self._client_factory(options)
        except Exception:
            await self._set_status(alt_id, STATUS_ERROR)
            self.reconnect.schedule(alt_id)
            raise
        state.client = client
        self.world.attach(alt_id, client)
        self._attach_lifecycle(alt_id, client)

    def _attach_lifecycle(self, alt_id: int, client: gc.GameClient) -> None:
        state = self.registry.get(alt_id)
        spawned = False

        def spawn(coro: Any, name: str) -> None:
            self.scheduler.spawn(coro, name=f"{name}:{alt_id}")

        def on_spawn(*_: Any) -> None:
            nonlocal spawned
            if spawned:
                return
            spawned = True
            spawn(self._on_spawn(alt_id, client), "spawn")

        def on_respawn(*_: Any) -> None:
            if state.client is client:
                self.drainer.drain_later(alt_id, RESPAWN_REDRAIN_DELAY)

        def on_kicked(reason: Any = None, *_: Any) -> None:
            spawn(self._on_kicked(alt_id, client, reason), "kicked")

        def on_end(reason: Any = None, *_: Any) -> None:
            spawn(self._on_end(alt_id, client, reason), "end")

        def on_error(error: Any = None, *_: Any) -> None:
            spawn(self._on_error(alt_id, client, error), "error")

        state.listeners.extend(
            [
                client.on(gc.EVENT_SPAWN, on_spawn),
                client.on(gc.EVENT_RESPAWN, on_respawn),
                client.on(gc.EVENT_KICKED, on_kicked),
                client.on(gc.EVENT_END, on_end),
                client.on(gc.EVENT_ERROR, on_error),
            ]
        )

    async def _on_spawn(self, alt_id: int, client: gc.GameClient) -> None:
        state = self.registry.get(alt_id)
        if state.client is not client:
            return
        cfg = self.settings
        state.awaiting_device = False
        self._cancel_device_timer(state)
        state.backoff = cfg.reconnect_min
        log.info("spawned", extra={"alt_id": alt_id, "username": client.username})
        await self._set_status(alt_id, STATUS_ONLINE)

        if state.device_notice_id:
            await self.notifier.delete(state.guild_id, state.device_notice_id)
            state.device_notice_id = None

        try:
            await self.store.set_alt_identity(alt_id, client.uuid, client.username)
        except Exception as exc:
            log.warning("identity persist failed", extra={"alt_id": alt_id, "error": repr(exc)})

        if cfg.debug_lines:
            board = client.sidebar()
            log.debug(
                "post-spawn sidebar",
                extra={
                    "alt_id": alt_id,
                    "title": board.title if board else None,
                    "lines": lines_from_scoreboard(board),
                },
            )

        state.track(
            self.scheduler.call_later(
                settle_delay_for(cfg.settle_delay),
                lambda: self._send_startup(alt_id, client),
                name=f"startup:{alt_id}",
            )
        )
        await self.world.wait_for_first_world(alt_id, cfg.first_world_timeout, cfg.first_world_tick)
        if state.client is client:
            self.drainer.drain_later(alt_id, RESPAWN_DRAIN_DELAY)

    def _send_startup(self, alt_id: int, client: gc.GameClient) -> None:
        state = self.registry.get(alt_id)
        if state.client is not client or not state.online:
            return
        cfg = self.settings
        if cfg.startup_enabled:
            try:
                client.chat(cfg.startup_command)
                state.last_chat_at = self._clock.now()
                log.info("startup command sent", extra={"alt_id": alt_id, "command": cfg.startup_command})
            except Exception as exc:
                log.warning("startup command failed", extra={"alt_id": alt_id, "error": repr(exc)})

        state.first_world_eligible_at = self._clock.now() + cfg.first_world_delay
        self.world.schedule_scan(alt_id, cfg.first_world_delay + FIRST_SCAN_MARGIN, "after-startup-delay")
        self.world.arm(alt_id, "after-startup")

    async def _on_kicked(self, alt_id: int, client: gc.GameClient, reason: Any) -> None:
        state = self.registry.get(alt_id)
        if state.client is not client:
            return
        log.warning("kicked", extra={"alt_id": alt_id, "reason": reason_text(reason)})
        self._drop_client(state)
        await self._set_status(alt_id, STATUS_ERROR)

        kind = self.reconnect.apply_rate_limit(alt_id, reason)
        if kind == DisconnectKind.NETWORK_LIMITED:
            await self.notifier.post(
                state.guild_id, embed=build_rate_limit_notice(state.label or f"Alt {alt_id}")
            )
        self.reconnect.schedule(alt_id)

    async def _on_end(self, alt_id: int, client: gc.GameClient, reason: Any) -> None:
        state = self.registry.get(alt_id)
        if state.client is not client:
            return
        log.info("connection ended", extra={"alt_id": alt_id, "reason": reason_text(reason)})
        self._drop_client(state)
        await self._set_status(alt_id, STATUS_OFFLINE)
        self.reconnect.schedule(alt_id)

    async def _on_error(self, alt_id: int, client: gc.GameClient, error: Any) -> None:
        state = self.registry.get(alt_id)
        if state.client is not client:
            return
        log.warning("client error", extra={"alt_id": alt_id, "error": str(error)})
        if state.awaiting_device:
            await self._set_status(alt_id, STATUS_AUTH_WAIT)
            return
        await self._set_status(alt_id, STATUS_ERROR)
        if _FORBIDDEN_RE.search(str(error)):
            await self.notifier.post(
                state.guild_id, embed=build_login_rejected_notice(state.label or f"Alt {alt_id}")
            )

    async def _on_device_code(self, alt_id: int, code: Any) -> None:
        if not isinstance(code, gc.DeviceCode):
            code = gc.DeviceCode.from_payload(code)
        state = self.registry.get(alt_id)
        state.awaiting_device = True
        state.device_expires_at = self._clock.now() + code.expires_in
        log.info("device code issued", extra={"alt_id": alt_id, "user_code": code.user_code})

        hint = ""
        try:
            record = await self.store.get_alt(alt_id)
            hint = (record.email_hint or "") if record else ""
        except Exception as exc:
            log.warning("alt lookup failed", extra={"alt_id": alt_id, "error": repr(exc)})

        embed, view = build_device_code_notice(
            label=state.label or f"Alt {alt_id}",
            user_code=code.user_code,
            verification_uri=code.verification_uri,
            expires_in=code.expires_in,
            account_hint=hint,
        )
        message = await self.notifier.post(state.guild_id, embed=embed, view=view)
        if message is not None:
            state.device_notice_id = getattr(message, "id", None)

        await self._set_status(alt_id, STATUS_AUTH_WAIT)
        self.events.publish(
            DeviceCodeIssued(
                guild_id=state.guild_id,
                alt_id=alt_id,
                user_code=code.user_code,
                verification_uri=code.verification_uri,
                expires_in=code.expires_in,
            )
        )
        self._cancel_device_timer(state)
        state.device_timer = self.scheduler.call_later(
            code.expires_in, lambda: self._expire_device_code(alt_id), name=f"device-code:{alt_id}"
        )

    async def _expire_device_code(self, alt_id: int) -> None:
        state = self.registry.get(alt_id)
        state.device_timer = None
        if not state.awaiting_device:
            return
        log.warning("device code expired", extra={"alt_id": alt_id})
        state.awaiting_device = False
        if state.device_notice_id:
            await self.notifier.delete(state.guild_id, state.device_notice_id)
            state.device_notice_id = None
        self._teardown(state, "device code expired")
        state.cancel_timers()
        await self._set_status(alt_id, STATUS_OFFLINE)
        self.reconnect.schedule(alt_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _teardown(self, state: AltState, reason: str) -> None:
        state.detach_listeners()
        client, state.client = state.client, None
        if client is None:
            return
        try:
            client.end(reason)
        except Exception:
            log.debug("client end failed", exc_info=True, extra={"alt_id": state.alt_id})

    def _drop_client(self, state: AltState) -> None:
        state.detach_listeners()
        state.client = None
        state.armed = False
        state.cancel_timers()

    @staticmethod
    def _cancel_device_timer(state: AltState) -> None:
        if state.device_timer is not None:
            state.device_timer.cancel()
            state.device_timer = None

    async def _set_status(self, alt_id: int, status: str) -> None:
        try:
            await self.store.set_alt_status(alt_id, status, int(self._clock.wall()))
        except Exception as exc:
            log.warning("status persist failed", extra={"alt_id": alt_id, "status": status, "error": repr(exc)})
        self.events.publish(AltStatusChanged(alt_id=alt_id, status=status))

    async def _alt_channel_for(self, guild_id: int) -> Optional[int]:
        config = await self.store.get_guild_config(guild_id)
        return config.alt_channel_id

    async def _announce_world(self, state: AltState, world: str) -> None:
        await self.notifier.post(
            state.guild_id, embed=build_world_notice(state.label or f"Alt {state.alt_id}", world)
        )

    def _check_known_world(self, event: WorldChanged) -> None:
        if self.settings.known_worlds and match_known_world(event.world, self.settings.known_worlds) is None:
            log.debug("unrecognised world", extra={"alt_id": event.alt_id, "world": event.world})
