import asyncio

from aiohttp.test_utils import TestClient, TestServer

from modules.common import runtime as rt
from shared import health as healthmod


class DummyBot:
    """Minimal bot stub for runtime wiring."""

    latency = 0.05

    def get_channel(self, _channel_id):  # pragma: no cover - defensive stub
        return None

    async def fetch_channel(self, _channel_id):  # pragma: no cover - defensive stub
        raise RuntimeError("not implemented")


def _mark_ready(ok: bool) -> None:
    for name in ("discord", "altrunner"):
        healthmod.set_component(name, ok)


def test_health_endpoints_exist_and_return_json():
    async def runner() -> None:
        runtime = rt.Runtime(bot=DummyBot())
        runtime.set_status_source(lambda: {"online": 2, "auth-wait": 0, "offline": 1})
        app = runtime.create_app()
        _mark_ready(True)

        async with TestServer(app) as server:
            async with TestClient(server) as client:
                resp = await client.get("/")
                assert resp.status == 200
                data = await resp.json()
                assert data.get("ok") is True
                assert "bot" in data and "env" in data

                for path in ("/health", "/healthz", "/ready"):
                    resp = await client.get(path)
                    assert resp.status == 200
                    payload = await resp.json()
                    assert payload.get("ok") is True

                resp = await client.get("/healthz")
                payload = await resp.json()
                assert payload["alts"] == {"online": 2, "auth-wait": 0, "offline": 1}
                assert payload["endpoint"] == "healthz"

    try:
        asyncio.run(runner())
    finally:
        healthmod.reset()


def test_health_reports_503_until_discord_ready():
    async def runner() -> None:
        runtime = rt.Runtime(bot=DummyBot())
        app = runtime.create_app()
        _mark_ready(False)

        async with TestServer(app) as server:
            async with TestClient(server) as client:
                resp = await client.get("/health")
                assert resp.status == 503
                payload = await resp.json()
                assert payload["ok"] is False
                assert payload["components"]["discord"]["ok"] is False

    try:
        asyncio.run(runner())
    finally:
        healthmod.reset()
