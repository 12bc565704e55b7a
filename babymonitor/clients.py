#!/usr/bin/env python3
"""
Registry of live-stream subscribers.

Each Client owns the encoder bound to its connection and a single-fire end
signal. The capture loop broadcasts every frame to a snapshot of the
registry taken under the lock; writes happen outside it, and a failed write
ends only that client.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Hashable

log = logging.getLogger("clients")


class Client:
    def __init__(self, identity: Hashable, encoder: Any, *, label: str | None = None) -> None:
        self.identity = identity
        self.encoder = encoder
        self.label = label or str(identity)
        self._ended = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._async_ended: asyncio.Event | None = None

    @property
    def ended(self) -> bool:
        return self._ended.is_set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Let end() wake a coroutine waiting in ``loop``."""
        self._loop = loop
        self._async_ended = asyncio.Event()
        if self._ended.is_set():
            self._async_ended.set()

    def end(self) -> None:
        """Signal the connection handler to finish. Idempotent, never blocks."""
        if self._ended.is_set():
            return
        self._ended.set()
        loop, event = self._loop, self._async_ended
        if loop is None or event is None:
            return
        try:
            loop.call_soon_threadsafe(event.set)
        except RuntimeError:
            # loop already closed; nobody is waiting any more
            pass

    def wait(self, timeout: float | None = None) -> bool:
        return self._ended.wait(timeout)

    async def wait_ended(self) -> None:
        if self._async_ended is None:
            self.bind_loop(asyncio.get_running_loop())
        assert self._async_ended is not None
        await self._async_ended.wait()

    def write_frame(self, frame: Any) -> bool:
        """Feed one frame to the encoder; returns False if the client ended."""
        if self._ended.is_set():
            return False
        try:
            self.encoder.write_frame(frame)
        except Exception as exc:  # noqa: BLE001
            log.info("Failed to write data to client %s: %s", self.label, exc)
            self.end()
            return False
        return True


class ClientRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clients: dict[Hashable, Client] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def __contains__(self, identity: Hashable) -> bool:
        with self._lock:
            return identity in self._clients

    def add(self, client: Client) -> None:
        with self._lock:
            if client.identity in self._clients:
                raise KeyError(f"client {client.label} already registered")
            self._clients[client.identity] = client
            total = len(self._clients)
        log.info("New client for streaming: %s (%d active)", client.label, total)

    def remove(self, identity: Hashable) -> Client | None:
        with self._lock:
            client = self._clients.pop(identity, None)
            total = len(self._clients)
        if client is not None:
            log.info("Closing client: %s (%d active)", client.label, total)
        return client

    def snapshot(self) -> list[Client]:
        with self._lock:
            return list(self._clients.values())

    def broadcast(self, frame: Any) -> int:
        """Write ``frame`` to every registered client; returns how many took it."""
        delivered = 0
        for client in self.snapshot():
            if client.write_frame(frame):
                delivered += 1
        return delivered

    def release_all(self) -> int:
        """End every registered client; their handlers do the removal."""
        clients = self.snapshot()
        for client in clients:
            client.end()
        if clients:
            log.info("Released %d client(s)", len(clients))
        return len(clients)
