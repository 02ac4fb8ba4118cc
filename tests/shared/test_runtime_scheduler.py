import asyncio
import logging

import pytest

from modules.common import runtime
from shared.testing.fakes import FakeClock


def test_scheduler_job_exception_does_not_cancel(caplog: pytest.LogCaptureFixture) -> None:
    clock = FakeClock()

    async def runner() -> dict:
        scheduler = runtime.Scheduler(clock)
        attempt = {"count": 0}

        async def maybe_fail() -> None:
            attempt["count"] += 1
            if attempt["count"] == 1:
                raise RuntimeError("boom")

        caplog.set_level(logging.ERROR, logger="altsup.runtime")

        handle = scheduler.every(seconds=1, name="test_job", tag="test").do(maybe_fail)
        await clock.advance(3.5)
        assert handle.active()
        await scheduler.shutdown()
        assert not handle.active()
        return attempt

    attempt = asyncio.run(runner())

    assert attempt["count"] == 3
    assert any("recurring job error" in record.message for record in caplog.records)


def test_call_later_runs_once_after_delay_and_can_be_cancelled() -> None:
    clock = FakeClock()
    fired: list[str] = []

    async def runner() -> None:
        scheduler = runtime.Scheduler(clock)
        scheduler.call_later(2.0, lambda: fired.append("sync"), name="sync")

        async def later() -> None:
            fired.append("async")

        scheduler.call_later(3.0, later, name="async")
        cancelled = scheduler.call_later(1.0, lambda: fired.append("never"), name="cancelled")
        cancelled.cancel()

        await clock.advance(1.5)
        assert fired == []
        assert scheduler.pending() == 2
        await clock.advance(2.0)
        assert scheduler.pending() == 0

    asyncio.run(runner())
    assert fired == ["sync", "async"]


def test_run_immediately_fires_before_first_interval() -> None:
    clock = FakeClock()
    runs: list[float] = []

    async def runner() -> None:
        scheduler = runtime.Scheduler(clock)

        async def job() -> None:
            runs.append(clock.now())

        scheduler.every(minutes=1, run_immediately=True).do(job)
        await clock.advance(61)
        await scheduler.shutdown()

    asyncio.run(runner())
    assert runs == [1000.0, 1060.0]


def test_send_log_message_trims_and_ignores_missing_channel() -> None:
    sent: list[str] = []

    class Channel:
        async def send(self, content: str) -> None:
            sent.append(content)

    class Bot:
        def get_channel(self, channel_id):
            return Channel() if channel_id == 1 else None

        async def fetch_channel(self, channel_id):
            raise RuntimeError("missing")

    async def runner() -> None:
        rt = runtime.Runtime(Bot())
        await rt.send_log_message(1, "x" * 2000)
        await rt.send_log_message(None, "skipped")
        await rt.send_log_message(2, "lost")

    asyncio.run(runner())
    assert len(sent) == 1
    assert len(sent[0]) == 1800
    assert sent[0].endswith("…")
