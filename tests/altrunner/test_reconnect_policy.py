import asyncio
import random

import pytest

from modules.altrunner.login import CooldownWatermarks
from modules.altrunner.reconnect import (
    BackoffPolicy,
    DisconnectKind,
    ReconnectSupervisor,
    classify_disconnect,
    reason_text,
)
from modules.altrunner.state import AltRegistry
from modules.common.runtime import Scheduler
from shared.testing.fakes import FakeClock


@pytest.mark.parametrize(
    "reason, expected",
    [
        ("You are logging in too fast, try again later.", DisconnectKind.LOGIN_THROTTLED),
        ("Unable to register you with the network", DisconnectKind.NETWORK_LIMITED),
        ({"text": "", "extra": [{"text": "Unable to register "}, {"text": "you with the network"}]},
         DisconnectKind.NETWORK_LIMITED),
        ("Server closed", DisconnectKind.NORMAL),
        (None, DisconnectKind.NORMAL),
    ],
)
def test_classify_disconnect(reason, expected):
    assert classify_disconnect(reason) == expected


def test_reason_text_flattens_chat_components():
    assert reason_text({"translate": "multiplayer.disconnect.kicked"}) == "multiplayer.disconnect.kicked"
    assert reason_text("") == ""


def test_fixed_backoff_stays_at_minimum():
    policy = BackoffPolicy(15.0, 60.0, fixed=True)
    assert policy.next(15.0) == 15.0
    assert policy.next(45.0) == 15.0


def test_exponential_backoff_grows_to_ceiling():
    policy = BackoffPolicy(10.0, 30.0, fixed=False)

    delays = [10.0]
    for _ in range(5):
        delays.append(policy.next(delays[-1]))

    assert delays[:4] == [10.0, 15.0, 22.5, 30.0]
    assert max(delays) == 30.0


def _supervisor(clock: FakeClock, requeued: list, **kwargs):
    registry = AltRegistry(initial_backoff=15.0)
    cooldowns = CooldownWatermarks()
    supervisor = ReconnectSupervisor(
        registry,
        requeued.append,
        scheduler=Scheduler(clock),
        cooldowns=cooldowns,
        policy=BackoffPolicy(15.0, 15.0, fixed=True),
        login_throttle=15.0,
        rng=random.Random(0),
        **kwargs,
    )
    return registry, cooldowns, supervisor


def test_schedule_requeues_after_backoff():
    clock = FakeClock()
    requeued: list[int] = []

    async def runner():
        _, _, supervisor = _supervisor(clock, requeued)
        assert supervisor.schedule(5) == 15.0
        assert supervisor.pending(5)
        await clock.advance(14)
        assert requeued == []
        await clock.advance(2)
        assert not supervisor.pending(5)

    asyncio.run(runner())
    assert requeued == [5]


def test_reschedule_replaces_the_pending_timer():
    clock = FakeClock()
    requeued: list[int] = []

    async def runner():
        _, _, supervisor = _supervisor(clock, requeued)
        supervisor.schedule(5)
        await clock.advance(10)
        supervisor.schedule(5)
        await clock.advance(10)
        assert requeued == []
        await clock.advance(10)

    asyncio.run(runner())
    assert requeued == [5]


def test_awaiting_device_code_suppresses_reconnect():
    clock = FakeClock()
    requeued: list[int] = []

    async def runner():
        registry, _, supervisor = _supervisor(clock, requeued)
        registry.get(5).awaiting_device = True
        assert supervisor.schedule(5) is None
        assert not supervisor.pending(5)
        await clock.advance(60)

    asyncio.run(runner())
    assert requeued == []


def test_disabled_supervisor_never_schedules():
    clock = FakeClock()
    requeued: list[int] = []

    async def runner():
        _, _, supervisor = _supervisor(clock, requeued, enabled=False)
        assert supervisor.schedule(5) is None

    asyncio.run(runner())


def test_network_limit_raises_global_and_alt_cooldowns():
    clock = FakeClock()
    requeued: list[int] = []

    async def runner():
        registry, cooldowns, supervisor = _supervisor(clock, requeued)
        now = clock.now()
        kind = supervisor.apply_rate_limit(5, "Unable to register you with the network")

        assert kind == DisconnectKind.NETWORK_LIMITED
        assert cooldowns.network_until == now + 15.0
        assert cooldowns.registration_until == now + 15.0
        assert registry.get(5).cooldown_until == now + 15.0
        assert registry.get(6).cooldown_until == 0.0

    asyncio.run(runner())


def test_throttle_kick_only_raises_registration_cooldown():
    clock = FakeClock()

    async def runner():
        _, cooldowns, supervisor = _supervisor(clock, [])
        supervisor.apply_rate_limit(5, "logging in too fast")
        assert cooldowns.network_until == 0.0
        assert cooldowns.registration_until == clock.now() + 15.0

    asyncio.run(runner())


def test_schedule_waits_out_a_longer_cooldown():
    clock = FakeClock()

    async def runner():
        _, cooldowns, supervisor = _supervisor(clock, [])
        cooldowns.raise_registration(clock.now() + 40.0)
        assert supervisor.schedule(5) == 40.0

    asyncio.run(runner())
