import asyncio
import logging
from unittest.mock import AsyncMock

from modules.altrunner.command_queue import CommandDrainer
from modules.altrunner.events import EventBus, WorldChanged
from modules.altrunner.state import AltRegistry
from modules.altrunner.world import WorldTracker, is_transition_message
from modules.common.runtime import Scheduler
from shared.testing.fakes import FakeClock, FakeGameClient, make_sidebar


class _Rig:
    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.registry = AltRegistry()
        self.scheduler = Scheduler(clock)
        self.events = EventBus()
        self.drainer = CommandDrainer(self.registry, scheduler=self.scheduler, chat_gap=0.9)
        self.persist = AsyncMock()
        self.announce = AsyncMock()
        self.tracker = WorldTracker(
            self.registry,
            scheduler=self.scheduler,
            events=self.events,
            drainer=self.drainer,
            persist=self.persist,
            return_command="/home home",
            poll_interval=60.0,
            announce=self.announce,
        )
        self.changes: list[WorldChanged] = []
        self.events.subscribe(WorldChanged, self.changes.append)

    def online(self, alt_id: int = 1) -> FakeGameClient:
        client = FakeGameClient(clock=self.clock)
        client.is_spawned = True
        state = self.registry.get(alt_id)
        state.client = client
        state.guild_id = 42
        state.label = "Scout"
        return client


def test_transition_messages_detected():
    assert is_transition_message("Teleporting you to spawn...")
    assert is_transition_message("Now entering Nebula")
    assert not is_transition_message("hello there")


def test_chat_sniffer_reads_the_message_argument(caplog):
    clock = FakeClock()

    async def runner():
        rig = _Rig(clock)
        client = rig.online()
        rig.tracker.attach(1, client)
        with caplog.at_level(logging.INFO, logger="altsup.world"):
            client.emit("chat", "Teleporting you to Comet...", "system", "{}", None, False)
            client.emit("chat", "hello there", "chat", "{}", "Teleporting", False)
        transitions = [r for r in caplog.records if r.getMessage() == "chat transition"]
        assert [r.chat for r in transitions] == ["Teleporting you to Comet..."]
        rig.registry.get(1).detach_listeners()

    asyncio.run(runner())


def test_first_world_ignored_until_eligible():
    clock = FakeClock()

    async def runner():
        rig = _Rig(clock)
        rig.online()
        state = rig.registry.get(1)

        assert not await rig.tracker.commit(1, "Nebula", "early")

        state.first_world_eligible_at = clock.now() + 8
        assert not await rig.tracker.commit(1, "Nebula", "still-early")
        assert state.world is None

        await clock.advance(8)
        assert await rig.tracker.commit(1, "Nebula", "scan")
        assert state.world == "Nebula"
        assert state.last_known_world == "Nebula"
        rig.persist.assert_awaited_once_with(1, "Nebula", int(clock.wall()))
        rig.tracker.start_poller(1)
        state.cancel_timers()

    asyncio.run(runner())


def test_same_world_twice_appends_return_command_once():
    clock = FakeClock()

    async def runner():
        rig = _Rig(clock)
        client = rig.online()
        state = rig.registry.get(1)
        state.first_world_eligible_at = clock.now()

        assert await rig.tracker.commit(1, "Nova", "a")
        assert not await rig.tracker.commit(1, "Nova", "b")
        await clock.advance(3)
        assert await rig.tracker.commit(1, "Luna", "c")
        await clock.advance(3)
        await rig.events.drain()

        assert client.chats == ["/home home"]
        assert [change.world for change in rig.changes] == ["Nova", "Luna"]
        assert rig.changes[0] == WorldChanged(guild_id=42, alt_id=1, label="Scout", world="Nova")
        rig.announce.assert_awaited_once()
        state.cancel_timers()

    asyncio.run(runner())


def test_compute_requires_arming():
    clock = FakeClock()

    async def runner():
        rig = _Rig(clock)
        client = rig.online()
        client.board = make_sidebar("Season 5", "⚔ Ranked", "Nebula", "Balance: $500")
        state = rig.registry.get(1)
        state.first_world_eligible_at = clock.now()

        assert await rig.tracker.compute(1, "score_updated") is None
        assert state.world is None

        assert await rig.tracker.compute(1, "armed:test") == "Nebula"
        assert state.world == "Nebula"

        state.armed = True
        assert await rig.tracker.compute(1, "poll") == "Nebula"
        assert len(rig.changes) == 1
        state.cancel_timers()

    asyncio.run(runner())


def test_scoreboard_events_drive_detection_after_attach():
    clock = FakeClock()

    async def runner():
        rig = _Rig(clock)
        client = rig.online()
        rig.tracker.attach(1, client)
        state = rig.registry.get(1)
        state.first_world_eligible_at = clock.now()
        rig.tracker.arm(1, "test")
        await clock.settle()

        client.show_sidebar("Season 5", "Comet", "Faction: Reds")
        await clock.settle()
        assert state.world == "Comet"

        client.show_sidebar("Season 5", "Comet", "Faction: Blues")
        await clock.settle()
        await rig.events.drain()
        assert len(rig.changes) == 1

        client.show_sidebar("Season 5", "Star")
        await clock.settle()
        assert state.world == "Star"
        state.cancel_timers()
        state.detach_listeners()
        assert client.handler_count() == 0

    asyncio.run(runner())


def test_broken_scoreboard_degrades_to_no_world():
    clock = FakeClock()

    class Boom:
        lines = None

    async def runner():
        rig = _Rig(clock)
        client = rig.online()
        client.board = Boom()
        state = rig.registry.get(1)
        state.armed = True
        assert await rig.tracker.compute(1, "poll") is None
        assert state.world is None

    asyncio.run(runner())


def test_wait_for_first_world_times_out():
    clock = FakeClock()

    async def runner():
        rig = _Rig(clock)
        rig.online()
        task = asyncio.ensure_future(rig.tracker.wait_for_first_world(1, 3.0, 0.5))
        await clock.advance(4)
        return task.result()

    assert asyncio.run(runner()) is False
