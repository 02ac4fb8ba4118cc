import asyncio
import random

import pytest

from modules.altrunner import AltNotFoundError, AltRunner, AltStatusChanged, DeviceCodeIssued, WorldChanged
from modules.altrunner.client import DeviceCode
from modules.altrunner.runner import settle_delay_for
from modules.common.runtime import Scheduler
from modules.storage import MemoryStore
from shared.config import AltRunnerSettings
from shared.testing.fakes import FakeBot, FakeChannel, FakeClientFactory, FakeClock

GUILD_ID = 42
ALT_CHANNEL_ID = 555


def _settings(**overrides) -> AltRunnerSettings:
    values = dict(
        reconnect_min=15.0,
        reconnect_max=15.0,
        fixed_backoff=True,
        settle_delay=8.0,
        login_jitter=0.0,
        min_login_gap=15.0,
        login_throttle=15.0,
        chat_gap=0.9,
        first_world_delay=8.0,
        first_world_timeout=30.0,
        world_poll_interval=60.0,
        debug_lines=False,
    )
    values.update(overrides)
    return AltRunnerSettings(**values)


class _Rig:
    def __init__(self, **overrides) -> None:
        self.clock = FakeClock()
        self.store = MemoryStore()
        self.factory = FakeClientFactory(self.clock)
        self.settings = _settings(**overrides)
        self.channel = FakeChannel(ALT_CHANNEL_ID, name="alts")
        self.bot = FakeBot()
        self.bot.extra_channels.append(self.channel)
        self.runner: AltRunner | None = None
        self.statuses: list[AltStatusChanged] = []

    async def build(self) -> AltRunner:
        await self.store.upsert_guild_config(GUILD_ID, alt_channel_id=ALT_CHANNEL_ID)
        self.runner = AltRunner(
            self.store,
            self.factory,
            settings=self.settings,
            scheduler=Scheduler(self.clock),
            rng=random.Random(0),
        )
        self.runner.init(self.bot)
        self.runner.events.subscribe(AltStatusChanged, self.statuses.append)
        return self.runner

    async def add_alt(self, label: str = "Scout", auth_mode: str = "offline") -> int:
        record = await self.store.insert_alt(
            GUILD_ID, label, auth_mode=auth_mode, mc_username=label if auth_mode == "offline" else None
        )
        return record.id

    async def bring_online(self, alt_id: int):
        outcome = await self.runner.start_alt(GUILD_ID, alt_id)
        assert outcome.status == "started"
        client = self.factory.last
        client.board = None
        client.spawn()
        await self.clock.settle()
        return client


def test_settle_delay_has_floor():
    assert settle_delay_for(8.0) == pytest.approx(5.6)
    assert settle_delay_for(1.0) == 0.8


def test_start_unknown_alt_raises():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        with pytest.raises(AltNotFoundError):
            await alt_runner.start_alt(GUILD_ID, 999)
        with pytest.raises(AltNotFoundError):
            await alt_runner.run_command(999, "home")

    asyncio.run(runner())


def test_spawn_startup_and_first_world_flow():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        worlds: list[WorldChanged] = []
        alt_runner.events.subscribe(WorldChanged, worlds.append)
        alt_id = await rig.add_alt()

        client = await rig.bring_online(alt_id)
        assert alt_runner.get_alt_status(alt_id) == "online"
        assert (await rig.store.get_alt(alt_id)).status == "online"
        assert (await rig.store.get_alt(alt_id)).mc_uuid == client.uuid

        client.board = None
        client.show_sidebar("Season 5", "⚔ Ranked", "Nebula", "Balance: $500")
        await rig.clock.advance(5.7)
        assert client.chats == ["/factions"]
        assert alt_runner.get_alt_world(alt_id) is None

        await rig.clock.advance(10)
        assert alt_runner.get_alt_world(alt_id) == "Nebula"
        assert client.chats == ["/factions", "/home home"]
        assert [w.world for w in worlds] == ["Nebula"]
        assert worlds[0].guild_id == GUILD_ID

        client.show_sidebar("Season 5", "⚔ Ranked", "Nebula", "Balance: $600")
        await rig.clock.advance(2)
        assert len(worlds) == 1
        assert client.chats == ["/factions", "/home home"]

        record = await rig.store.get_alt(alt_id)
        assert record.last_world == "Nebula"
        assert alt_runner.get_alt_world_updated_at(alt_id) == record.world_updated_at
        await alt_runner.stop_alt(alt_id)

    asyncio.run(runner())


def test_at_most_one_connection_across_start_and_stop():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        alt_id = await rig.add_alt()

        first, second = await asyncio.gather(
            alt_runner.start_alt(GUILD_ID, alt_id), alt_runner.start_alt(GUILD_ID, alt_id)
        )
        assert first.status == second.status == "started"
        assert len(rig.factory.clients) == 1
        rig.factory.last.spawn()
        await rig.clock.settle()

        again = asyncio.ensure_future(alt_runner.start_alt(GUILD_ID, alt_id))
        await rig.clock.advance(16)
        assert (await again).status == "already-online"
        assert len(rig.factory.clients) == 1

        await alt_runner.stop_alt(alt_id)
        assert rig.factory.clients[0].ended == ["stop"]
        assert alt_runner.get_client(alt_id) is None

        restart = asyncio.ensure_future(alt_runner.start_alt(GUILD_ID, alt_id))
        await rig.clock.advance(16)
        assert (await restart).status == "started"
        live = [c for c in rig.factory.clients if not c.ended]
        assert len(live) == 1
        await alt_runner.stop_alt(alt_id)

    asyncio.run(runner())


def test_stop_discards_commands_and_never_reconnects():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        alt_id = await rig.add_alt()
        client = await rig.bring_online(alt_id)

        rig.runner.registry.get(alt_id).last_chat_at = rig.clock.now()
        await alt_runner.run_command(alt_id, "first")
        await alt_runner.run_command(alt_id, "second")
        await alt_runner.stop_alt(alt_id)

        assert client.handler_count() == 0
        assert not rig.runner.registry.get(alt_id).commands
        assert not alt_runner.reconnect.pending(alt_id)
        await rig.clock.advance(120)

        assert len(rig.factory.clients) == 1
        assert alt_runner.get_alt_status(alt_id) == "offline"
        assert (await rig.store.get_alt(alt_id)).status == "offline"

    asyncio.run(runner())


def test_stop_during_chat_gap_leaves_queue_empty_for_next_start():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        alt_id = await rig.add_alt()
        client = await rig.bring_online(alt_id)
        state = rig.runner.registry.get(alt_id)

        state.last_chat_at = rig.clock.now()
        await alt_runner.run_command(alt_id, "first")
        await alt_runner.run_command(alt_id, "second")
        await rig.clock.settle()
        assert state.sending

        await alt_runner.stop_alt(alt_id)
        await rig.clock.advance(2)
        assert not state.commands
        assert not state.sending
        assert client.chats == []

        await rig.clock.advance(20)
        await rig.bring_online(alt_id)
        await rig.clock.advance(60)
        assert "/first" not in rig.factory.last.chats
        assert "/second" not in rig.factory.last.chats
        await alt_runner.stop_alt(alt_id)

    asyncio.run(runner())


def test_stop_during_login_cooldown_never_connects():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        alt_id = await rig.add_alt()

        alt_runner.cooldowns.raise_network(rig.clock.now() + 30)
        pending = asyncio.ensure_future(alt_runner.start_alt(GUILD_ID, alt_id))
        await rig.clock.settle()
        await alt_runner.stop_alt(alt_id)
        await rig.clock.advance(40)

        assert (await pending).status == "cancelled"
        assert rig.factory.clients == []
        assert not alt_runner.reconnect.pending(alt_id)
        await rig.clock.advance(120)
        assert rig.factory.clients == []
        assert alt_runner.get_alt_status(alt_id) == "offline"

    asyncio.run(runner())


def test_run_command_while_offline_queues_login():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        alt_id = await rig.add_alt()
        await alt_runner.start_alt(GUILD_ID, alt_id)
        await alt_runner.stop_alt(alt_id)

        line = await alt_runner.run_command(alt_id, "f who")
        assert line == "/f who"
        await rig.clock.advance(16)
        assert len(rig.factory.clients) == 2

        client = rig.factory.last
        client.spawn()
        await rig.clock.advance(45)
        assert "/f who" in client.chats
        await alt_runner.stop_alt(alt_id)

    asyncio.run(runner())


def test_connection_end_schedules_reconnect():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        alt_id = await rig.add_alt()
        client = await rig.bring_online(alt_id)

        client.emit("end", "socket closed")
        await rig.clock.settle()
        assert alt_runner.get_alt_status(alt_id) == "offline"
        assert alt_runner.reconnect.pending(alt_id)

        await rig.clock.advance(16)
        assert len(rig.factory.clients) == 2
        await alt_runner.stop_alt(alt_id)

    asyncio.run(runner())


def test_network_limit_kick_posts_notice_and_raises_cooldown():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        alt_id = await rig.add_alt()
        client = await rig.bring_online(alt_id)
        kicked_at = rig.clock.now()

        client.emit("kicked", "Unable to register you with the network")
        await rig.clock.settle()

        assert [s.status for s in rig.statuses][-1] == "error"
        assert alt_runner.cooldowns.network_until == kicked_at + 15.0
        assert rig.channel.sent[-1].embed.title == "⏳ Network is rate-limiting new connections"
        assert alt_runner.reconnect.pending(alt_id)
        assert client.handler_count() == 0

        await rig.clock.advance(20)
        assert len(rig.factory.clients) == 2
        await alt_runner.stop_alt(alt_id)

    asyncio.run(runner())


def test_forbidden_error_posts_rejection_notice():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        alt_id = await rig.add_alt()
        await alt_runner.start_alt(GUILD_ID, alt_id)

        rig.factory.last.emit("error", RuntimeError("403 Forbidden"))
        await rig.clock.settle()

        assert "(403)" in rig.channel.sent[-1].embed.title
        assert (await rig.store.get_alt(alt_id)).status == "error"
        await alt_runner.stop_alt(alt_id)

    asyncio.run(runner())


def test_factory_failure_reports_error_and_retries():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        alt_id = await rig.add_alt()
        rig.factory.fail = RuntimeError("bridge down")

        outcome = await alt_runner.start_alt(GUILD_ID, alt_id)
        assert outcome.status == "error"
        assert isinstance(outcome.error, RuntimeError)
        assert (await rig.store.get_alt(alt_id)).status == "error"
        assert alt_runner.reconnect.pending(alt_id)

        rig.factory.fail = None
        await rig.clock.advance(31)
        assert len(rig.factory.clients) == 1
        await alt_runner.stop_alt(alt_id)

    asyncio.run(runner())


def test_device_code_notice_suppresses_reconnect_then_clears_on_spawn():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        issued: list[DeviceCodeIssued] = []
        alt_runner.events.subscribe(DeviceCodeIssued, issued.append)
        alt_id = await rig.add_alt(label="Main", auth_mode="microsoft")
        await alt_runner.start_alt(GUILD_ID, alt_id)

        client = rig.factory.last
        assert client.options.auth == "microsoft"
        assert client.options.profiles_folder.endswith(f"alt-{alt_id}")
        await client.options.on_device_code(DeviceCode("ABCD-1234", "https://microsoft.com/link", 900))

        assert alt_runner.get_alt_status(alt_id) == "auth-wait"
        notice = rig.channel.sent[-1]
        assert notice.embed.title == "🔐 Microsoft Login — Main"
        assert "ABCD-1234" in notice.embed.description
        assert notice.view is not None
        assert issued[0].user_code == "ABCD-1234"
        assert alt_runner.reconnect.schedule(alt_id) is None

        client.spawn()
        await rig.clock.settle()
        assert alt_runner.get_alt_status(alt_id) == "online"
        assert notice.deleted
        await rig.clock.advance(901)
        assert client.ended == []
        await alt_runner.stop_alt(alt_id)

    asyncio.run(runner())


def test_device_code_expiry_tears_down_and_retries():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        alt_id = await rig.add_alt(label="Main", auth_mode="microsoft")
        await alt_runner.start_alt(GUILD_ID, alt_id)

        client = rig.factory.last
        await client.options.on_device_code({"userCode": "WXYZ", "expiresIn": 60})
        notice = rig.channel.sent[-1]

        await rig.clock.advance(61)
        assert notice.deleted
        assert client.ended == ["device code expired"]
        assert alt_runner.get_alt_status(alt_id) == "offline"
        assert alt_runner.reconnect.pending(alt_id)
        await alt_runner.stop_alt(alt_id)

    asyncio.run(runner())


def test_restart_seeds_last_known_world():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        alt_id = await rig.add_alt()
        await rig.store.set_alt_world(alt_id, "Meteor", 1_699_000_000)

        assert alt_runner.get_alt_world(alt_id) is None
        await alt_runner.start_alt(GUILD_ID, alt_id)
        assert alt_runner.get_alt_world(alt_id) == "Meteor"
        assert alt_runner.get_alt_world_updated_at(alt_id) == 1_699_000_000
        await alt_runner.stop_alt(alt_id)

    asyncio.run(runner())


def test_start_all_for_guild_and_status_counts():
    async def runner():
        rig = _Rig()
        alt_runner = await rig.build()
        ids = [await rig.add_alt(label=name) for name in ("One", "Two")]

        task = asyncio.ensure_future(alt_runner.start_all_for_guild(GUILD_ID))
        await rig.clock.advance(40)
        outcomes = await task

        assert sorted(outcomes) == ids
        assert all(outcome.status == "started" for outcome in outcomes.values())
        assert [o.username for o in rig.factory.options] == ["One", "Two"]

        rig.factory.clients[0].spawn()
        await rig.clock.settle()
        assert alt_runner.status_counts() == {"online": 1, "auth-wait": 0, "offline": 1}
        for alt_id in ids:
            await alt_runner.stop_alt(alt_id)
        await alt_runner.shutdown()

    asyncio.run(runner())
