"""Application runtime scaffolding for the unified bot process."""

from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from typing import Any, Awaitable, Callable, Optional

from aiohttp import web
from discord.ext import commands

from config.runtime import get_bot_name, get_env_name, get_log_level, get_port
from shared import health as healthmod
from shared.clock import Clock, system_clock
from shared.logging import get_trace_id, set_trace_id, setup_logging

log = logging.getLogger("altsup.runtime")


def _trim_message(message: str, *, limit: int = 1800) -> str:
    message = message.strip()
    if len(message) <= limit:
        return message
    return f"{message[: limit - 1]}…"


class TimerHandle:
    """Cancellable handle for a delayed or recurring scheduler job."""

    def __init__(self, task: asyncio.Task, *, name: str) -> None:
        self.task = task
        self.name = name

    def cancel(self) -> None:
        if not self.task.done():
            self.task.cancel()

    def active(self) -> bool:
        return not self.task.done()


class _RecurringJob:
    def __init__(
        self,
        scheduler: "Scheduler",
        *,
        interval: float,
        jitter: float | None = None,
        tag: str | None = None,
        name: str | None = None,
        run_immediately: bool = False,
    ) -> None:
        self._scheduler = scheduler
        self._interval = max(0.01, float(interval))
        self._jitter = jitter
        self._run_immediately = run_immediately
        self.tag = tag
        self.name = name
        self.runs = 0

    def _pick_jitter(self) -> float:
        if not self._jitter:
            return 0.0
        window = abs(float(self._jitter))
        return random.uniform(0.0, window)

    def do(self, job: Callable[[], Awaitable[Any]]) -> TimerHandle:
        clock = self._scheduler.clock

        async def runner() -> None:
            first = True
            while True:
                if not (first and self._run_immediately):
                    await clock.sleep(self._interval + self._pick_jitter())
                first = False
                try:
                    await job()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    log.exception(
                        "recurring job error",
                        extra={
                            "job_name": self.name or getattr(job, "__name__", "job"),
                            "tag": self.tag,
                        },
                    )
                finally:
                    self.runs += 1

        task_name = self.name or getattr(job, "__name__", "recurring_job")
        return TimerHandle(self._scheduler.spawn(runner(), name=task_name), name=task_name)


class Scheduler:
    """Very small asyncio task supervisor for background jobs and timers.

    Every delay is measured through ``clock`` so tests can swap in a virtual
    time source.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock: Clock = clock or system_clock
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, *, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name is not None:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def call_later(
        self,
        delay: float,
        callback: Callable[[], Any],
        *,
        name: str = "timer",
    ) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds.

        ``callback`` may return an awaitable; errors are logged, never raised.
        """

        async def runner() -> None:
            await self.clock.sleep(delay)
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("scheduled job error", extra={"job_name": name})

        return TimerHandle(self.spawn(runner(), name=name), name=name)

    def every(
        self,
        *,
        minutes: float = 0.0,
        seconds: float = 0.0,
        jitter: float | None = None,
        tag: str | None = None,
        name: str | None = None,
        run_immediately: bool = False,
    ) -> _RecurringJob:
        total_seconds = float(minutes) * 60.0 + float(seconds)
        if total_seconds <= 0:
            total_seconds = 60.0
        return _RecurringJob(
            self,
            interval=total_seconds,
            jitter=jitter,
            tag=tag,
            name=name,
            run_immediately=run_immediately,
        )

    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # pragma: no cover - best-effort cleanup
                log.exception("scheduler task error during shutdown")


class Runtime:
    """Container object that wires the bot, health server, and scheduler."""

    def __init__(
        self,
        bot: commands.Bot,
        *,
        scheduler: Scheduler | None = None,
        status_source: Callable[[], dict[str, int]] | None = None,
    ) -> None:
        self.bot = bot
        self.scheduler = scheduler or Scheduler()
        self._status_source = status_source
        self._web_runner: Optional[web.AppRunner] = None
        self._web_site: Optional[web.TCPSite] = None

    def set_status_source(self, source: Callable[[], dict[str, int]]) -> None:
        self._status_source = source

    def _health_payload(self) -> tuple[dict[str, Any], bool]:
        components = healthmod.components_snapshot()
        ready = healthmod.overall_ready()
        payload: dict[str, Any] = {
            "ok": ready,
            "bot": get_bot_name(),
            "env": get_env_name(),
            "version": os.getenv("BOT_VERSION", "dev"),
            "components": components,
            "latency": getattr(self.bot, "latency", None),
        }
        if self._status_source is not None:
            try:
                payload["alts"] = self._status_source()
            except Exception:  # pragma: no cover - diagnostics only
                log.exception("alt status source failed")
        return payload, ready

    def create_app(self) -> web.Application:
        static_fields = {"env": get_env_name(), "bot": get_bot_name()}
        access_logger = setup_logging(
            level=get_log_level(),
            static_fields=static_fields,
            access_logger_name="aiohttp.access",
        )

        @web.middleware
        async def tracing_middleware(
            request: web.Request,
            handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
        ) -> web.StreamResponse:
            trace = set_trace_id()
            started = time.perf_counter()
            status = 500
            try:
                response = await handler(request)
                status = getattr(response, "status", status)
                response.headers["X-Trace-Id"] = trace
                return response
            finally:
                access_logger.info(
                    "http_request",
                    extra={
                        "trace": trace,
                        "path": request.path,
                        "method": request.method,
                        "status": status,
                        "ms": int((time.perf_counter() - started) * 1000),
                    },
                )

        async def root(_: web.Request) -> web.Response:
            return web.json_response(
                {
                    "ok": True,
                    "bot": get_bot_name(),
                    "env": get_env_name(),
                    "trace": get_trace_id(),
                }
            )

        async def ready(_: web.Request) -> web.Response:
            return web.json_response(
                {"ok": healthmod.overall_ready(), "components": healthmod.components_snapshot()}
            )

        async def health(_: web.Request) -> web.Response:
            payload, healthy = self._health_payload()
            payload["endpoint"] = "health"
            return web.json_response(payload, status=200 if healthy else 503)

        async def healthz(_: web.Request) -> web.Response:
            payload, healthy = self._health_payload()
            payload["endpoint"] = "healthz"
            return web.json_response(payload, status=200 if healthy else 503)

        app = web.Application(middlewares=[tracing_middleware])
        app.router.add_get("/", root)
        app.router.add_get("/ready", ready)
        app.router.add_get("/health", health)
        app.router.add_get("/healthz", healthz)
        healthmod.set_component("runtime", True)
        return app

    async def start_webserver(self, *, port: Optional[int] = None) -> None:
        if self._web_site is not None:
            return
        port = port or get_port()
        self._web_runner = web.AppRunner(self.create_app())
        await self._web_runner.setup()
        self._web_site = web.TCPSite(self._web_runner, host="0.0.0.0", port=port)
        await self._web_site.start()
        log.info("web server listening", extra={"port": port})

    async def shutdown_webserver(self) -> None:
        site, runner = self._web_site, self._web_runner
        self._web_site = None
        self._web_runner = None
        if site is not None:
            await site.stop()
        if runner is not None:
            await runner.cleanup()

    async def send_log_message(self, channel_id: int | None, message: str) -> None:
        if not channel_id:
            return
        content = _trim_message(str(message))
        if not content:
            return
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except Exception:
                log.exception("failed to fetch log channel", extra={"channel_id": channel_id})
                return
        try:
            await channel.send(content)
        except Exception:
            log.exception("failed to send log message", extra={"channel_id": channel_id})

    async def start(self, token: str) -> None:
        await self.start_webserver()
        async with self.bot:
            await self.bot.start(token)

    async def close(self) -> None:
        await self.shutdown_webserver()
        await self.scheduler.shutdown()
