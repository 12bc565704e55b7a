#!/usr/bin/env python3
"""
aiohttp server for the live MP3 stream.

Endpoints:
  GET /stream   -> 201 + continuous audio/mpeg body until the client
                   disconnects, a write fails or the monitor shuts down

Anything else, including other methods on /stream, gets 404.

Each subscriber gets its own encoder whose output is forwarded into the
response from the encoder's reader thread. The handler itself only waits for
the client's end signal, then unregisters and tears down.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from aiohttp import web
from aiohttp.web import AppKey

from babymonitor.clients import Client, ClientRegistry
from babymonitor.encoder import EncoderError

SERVER_UA = "Babymonitor/1.0"
SINK_WRITE_TIMEOUT_SECONDS = 5.0
# Encoder start/close run off the loop; keep a few workers so one slow
# teardown does not hold up new subscribers.
STREAM_SERVER_EXECUTOR_MAX_WORKERS = 4

EncoderFactory = Callable[[Any], Any]

REGISTRY_KEY: AppKey[ClientRegistry] = web.AppKey("client_registry", ClientRegistry)
ENCODER_FACTORY_KEY: AppKey[Any] = web.AppKey("encoder_factory", object)

log = logging.getLogger("stream_server")


class ResponseSink:
    """Thread-side writer that forwards encoded bytes into a StreamResponse."""

    def __init__(
        self,
        response: web.StreamResponse,
        loop: asyncio.AbstractEventLoop,
        *,
        timeout: float = SINK_WRITE_TIMEOUT_SECONDS,
    ) -> None:
        self._response = response
        self._loop = loop
        self._timeout = timeout

    def write(self, data: bytes) -> None:
        if self._loop.is_closed():
            raise ConnectionError("event loop closed")
        fut = asyncio.run_coroutine_threadsafe(self._response.write(data), self._loop)
        try:
            fut.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError as exc:
            fut.cancel()
            raise ConnectionError("client write timed out") from exc


def build_app(registry: ClientRegistry, encoder_factory: EncoderFactory) -> web.Application:
    app = web.Application()
    app[REGISTRY_KEY] = registry
    app[ENCODER_FACTORY_KEY] = encoder_factory

    async def stream(request: web.Request) -> web.StreamResponse:
        registry = request.app[REGISTRY_KEY]
        factory = request.app[ENCODER_FACTORY_KEY]
        loop = asyncio.get_running_loop()
        label = str(request.remote or "unknown")

        response = web.StreamResponse(
            status=201,
            headers={
                "Server": SERVER_UA,
                "Content-Type": "audio/mpeg",
                "Cache-Control": "no-store",
            },
        )
        sink = ResponseSink(response, loop)
        try:
            encoder = await loop.run_in_executor(None, factory, sink)
        except EncoderError as exc:
            log.warning("Unable to start encoder for %s: %s", label, exc)
            raise web.HTTPServiceUnavailable(reason="encoder unavailable") from exc

        client = Client(uuid.uuid4().hex, encoder, label=label)
        client.bind_loop(loop)
        try:
            await response.prepare(request)
            registry.add(client)
            # Released by a failed write, a disconnect or shutdown.
            await client.wait_ended()
        finally:
            registry.remove(client.identity)
            client.end()
            await loop.run_in_executor(None, encoder.close)
            with contextlib.suppress(Exception):
                await response.write_eof()
        log.info("Closing HTTP client: %s", label)
        return response

    async def _release_clients(app: web.Application) -> None:
        app[REGISTRY_KEY].release_all()

    async def not_found(request: web.Request) -> web.StreamResponse:
        raise web.HTTPNotFound()

    app.router.add_get("/stream", stream, allow_head=False)
    app.router.add_route("*", "/stream", not_found)
    app.on_shutdown.append(_release_clients)
    return app


class StreamServerHandle:
    """Handle returned by start_stream_server_in_thread(). Call stop() to cleanly shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    @property
    def port(self) -> int | None:
        for address in self.runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return None

    def stop(self, timeout: float = 5.0) -> None:
        log.info("Stopping stream server ...")
        if self.loop.is_running():
            async def _cleanup():
                try:
                    await self.runner.cleanup()
                except Exception as e:
                    log.warning("Error during aiohttp runner cleanup: %r", e)

            fut = asyncio.run_coroutine_threadsafe(_cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:
                log.warning("Error awaiting cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("Stream server stopped")


def start_stream_server_in_thread(
    registry: ClientRegistry,
    encoder_factory: EncoderFactory,
    host: str = "0.0.0.0",
    port: int = 8080,
    *,
    access_log: bool = False,
) -> StreamServerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop.

    Raises whatever prevented the listener from starting (e.g. port in use).
    """
    loop = asyncio.new_event_loop()
    executor = ThreadPoolExecutor(
        max_workers=STREAM_SERVER_EXECUTOR_MAX_WORKERS,
        thread_name_prefix="stream_server_io",
    )
    box: dict[str, Any] = {}
    started = threading.Event()

    def _run():
        asyncio.set_event_loop(loop)
        loop.set_default_executor(executor)
        app = build_app(registry, encoder_factory)
        runner = web.AppRunner(
            app,
            access_log=logging.getLogger("aiohttp.access") if access_log else None,
        )
        try:
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except Exception as exc:
            box["error"] = exc
            with contextlib.suppress(Exception):
                loop.run_until_complete(runner.cleanup())
            executor.shutdown(wait=False)
            loop.close()
            started.set()
            return
        box["runner"] = runner
        box["app"] = app
        log.info("Starting HTTP server on %s:%s", host, port)
        started.set()
        try:
            loop.run_forever()
        finally:
            with contextlib.suppress(Exception):
                loop.run_until_complete(runner.cleanup())
            executor.shutdown(wait=True, cancel_futures=True)
            loop.close()

    t = threading.Thread(target=_run, name="stream_server", daemon=True)
    t.start()
    started.wait()

    if "error" in box:
        t.join()
        raise box["error"]

    return StreamServerHandle(t, loop, box["runner"], box["app"])
