import asyncio

from modules.altrunner.events import AltStatusChanged, EventBus, WorldChanged
from modules.altrunner.notices import (
    AltNotifier,
    build_device_code_notice,
    build_rate_limit_notice,
    build_world_notice,
)
from modules.altrunner.client import DeviceCode
from shared.testing.fakes import FakeBot, FakeChannel


def test_device_code_notice_content():
    async def runner():
        return build_device_code_notice(
            label="Main",
            user_code="ABCD-1234",
            verification_uri="https://microsoft.com/link",
            expires_in=300,
            account_hint="main@example.com",
        )

    embed, view = asyncio.run(runner())

    assert embed.title == "🔐 Microsoft Login — Main"
    assert "**`ABCD-1234`**" in embed.description
    assert "`main@example.com`" in embed.description
    assert "_Code expires in ~5 minutes._" in embed.description
    assert embed.footer.text == "After completing the sign-in, the alt will connect automatically."
    button = view.children[0]
    assert button.label == "Open Sign-in"
    assert button.url == "https://microsoft.com/link"


def test_simple_notices():
    assert build_rate_limit_notice("Scout").title == "⏳ Network is rate-limiting new connections"
    assert build_world_notice("Scout", "Nebula").description == "**Scout** is on **Nebula**"


def test_device_code_payload_parsing():
    code = DeviceCode.from_payload({"userCode": "XY", "verificationUri": "https://x", "expiresIn": "120"})
    assert code == DeviceCode("XY", "https://x", 120)

    fallback = DeviceCode.from_payload({"expires_in": "soon"})
    assert fallback.user_code == "—"
    assert fallback.expires_in == 900


def test_notifier_is_best_effort():
    channel = FakeChannel(10)
    bot = FakeBot()
    bot.extra_channels.append(channel)

    async def lookup(guild_id):
        if guild_id == 2:
            raise RuntimeError("db down")
        return {1: 10, 3: 99}.get(guild_id)

    async def runner():
        notifier = AltNotifier(lookup)
        assert await notifier.post(1, content="before bind") is None
        notifier.bind(bot)

        message = await notifier.post(1, content="hello")
        assert message.content == "hello"
        assert await notifier.post(2, content="x") is None
        assert await notifier.post(3, content="x") is None
        assert await notifier.post(4, content="x") is None

        assert await notifier.delete(1, message.id)
        assert not await notifier.delete(1, message.id)
        assert not await notifier.delete(1, None)

    asyncio.run(runner())
    assert [m.content for m in channel.sent] == ["hello"]


def test_event_bus_isolates_failing_handlers():
    seen: list[str] = []

    def broken(event):
        raise RuntimeError("nope")

    async def async_handler(event):
        seen.append(f"async:{event.world}")

    async def runner():
        bus = EventBus()
        bus.subscribe(WorldChanged, broken)
        unsubscribe = bus.subscribe(WorldChanged, lambda e: seen.append(e.world))
        bus.subscribe(WorldChanged, async_handler)
        bus.subscribe(AltStatusChanged, lambda e: seen.append(e.status))

        bus.publish(WorldChanged(guild_id=1, alt_id=2, label="Scout", world="Nova"))
        await bus.drain()
        unsubscribe()
        unsubscribe()
        bus.publish(WorldChanged(guild_id=1, alt_id=2, label="Scout", world="Luna"))
        await bus.drain()

    asyncio.run(runner())
    assert seen == ["Nova", "async:Nova", "async:Luna"]
