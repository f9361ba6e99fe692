# Presence Relay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
ConnectionManager — the producer's single WebSocket link to the relay.

State machine:

    disconnected ──connect()──▶ connecting ──open──▶ connected
         ▲                          │                   │
         │◀──────error──────────────┘                   │
         │◀──────────────close / error──────────────────┘
         │
         └──retry timer fires──▶ reconnecting ──connect()──▶ connecting

Usage:
    manager = ConnectionManager(snapshot_provider=service.current_snapshot)
    manager.add_status_listener(on_status)
    await manager.start()
    await manager.send(WireEvent(EventKind.TRACK, metadata))
    await manager.close()

Failures to reach the relay are the normal case when it is not running,
so they log at debug level and feed the backoff instead of escalating.
"""

import asyncio
import logging
import os
from enum import Enum

import websockets
from websockets.exceptions import WebSocketException

from .config import cfg
from .errors import TransportError
from .track import EventKind, TrackSnapshot, WireEvent
from .watchdog import keepalive_loop, sd_notify

log = logging.getLogger(__name__)

DEFAULT_URL = "ws://localhost:8765"
OPEN_TIMEOUT = 10       # seconds for the opening handshake
CLEAN_CLOSE = 1000      # close code that does not trigger a reconnect


class LinkState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


class Backoff:
    """Exponential reconnect delay that cycles back to *base* after hitting *cap*."""

    def __init__(self, base: float = 5.0, factor: float = 1.5, cap: float = 60.0):
        self.base = base
        self.factor = factor
        self.cap = cap
        self.attempt = 0

    def next_delay(self) -> float:
        delay = min(self.base * self.factor ** self.attempt, self.cap)
        self.attempt += 1
        if delay >= self.cap:
            self.attempt = 0
        return delay

    def reset(self):
        self.attempt = 0


class ConnectionManager:
    """Owns one duplex link to the relay with retry, keep-alive and status fan-out.

    *snapshot_provider* returns the producer's latest TrackSnapshot (or None)
    and *presence_provider* its presence preference (or None); both are read
    on every successful open to reseed the relay.  *connector* is the
    transport factory, ``websockets.connect`` unless a test injects a fake.
    """

    def __init__(self, url: str | None = None, *, snapshot_provider=None,
                 presence_provider=None, connector=None, backoff: Backoff | None = None,
                 initial_delay: float | None = None, keepalive_interval: float | None = None,
                 keepalive_send=sd_notify):
        self.url = url or os.getenv("PRESENCE_RELAY_URL") or cfg(
            "connection", "url", default=DEFAULT_URL)
        self.initial_delay = float(initial_delay if initial_delay is not None
                                   else cfg("connection", "initial_delay", default=2.0))
        self.keepalive_interval = float(keepalive_interval if keepalive_interval is not None
                                        else cfg("connection", "keepalive_interval", default=30))
        self.backoff = backoff or Backoff(
            base=float(cfg("connection", "base_delay", default=5.0)),
            factor=float(cfg("connection", "growth_factor", default=1.5)),
            cap=float(cfg("connection", "max_delay", default=60.0)),
        )
        self._snapshot_provider = snapshot_provider
        self._presence_provider = presence_provider
        self._connector = connector or websockets.connect
        self._keepalive_send = keepalive_send

        self._state = LinkState.DISCONNECTED
        self._ws = None
        self._listeners: list = []
        self._closed = False

        self._initial_task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._reader_task: asyncio.Task | None = None

    # ── Status ──

    @property
    def state(self) -> LinkState:
        return self._state

    def get_state(self) -> LinkState:
        return self._state

    def is_connected(self) -> bool:
        return self._state is LinkState.CONNECTED and self._ws is not None

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def add_status_listener(self, callback):
        """Register ``callback(LinkState)``, called on every reported transition."""
        self._listeners.append(callback)

    def remove_status_listener(self, callback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _set_state(self, state: LinkState, notify: bool = True):
        old = self._state
        self._state = state
        if old is not state:
            log.info("Relay link: %s -> %s", old.value, state.value)
        if notify:
            for callback in list(self._listeners):
                try:
                    callback(state)
                except Exception as e:
                    log.debug("Status listener failed: %s", e)

    # ── Lifecycle ──

    async def start(self):
        """Schedule the first connect after *initial_delay* and start the keep-alive."""
        if self._closed:
            return
        if self._initial_task is None:
            self._initial_task = asyncio.create_task(self._delayed_connect())
        if self._keepalive_task is None:
            self._keepalive_task = asyncio.create_task(
                keepalive_loop(self.keepalive_interval, send=self._keepalive_send))

    async def _delayed_connect(self):
        # Startup with no relay listening would otherwise burst straight into failures
        await asyncio.sleep(self.initial_delay)
        await self.connect()

    async def connect(self):
        """Open the link unless one is already open or opening."""
        if self._closed or self._state in (LinkState.CONNECTING, LinkState.CONNECTED):
            return
        self._set_state(LinkState.CONNECTING, notify=False)
        try:
            ws = await self._open()
        except TransportError as e:
            log.debug("Relay not reachable at %s: %s", self.url, e)
            self._handle_error(e)
            return
        if self._closed:
            await self._close_quietly(ws)
            return
        await self._handle_open(ws)

    async def _open(self):
        try:
            return await self._connector(self.url, open_timeout=OPEN_TIMEOUT)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(str(e) or type(e).__name__) from e

    async def _handle_open(self, ws):
        self._ws = ws
        self._cancel_retry()
        self.backoff.reset()
        self._set_state(LinkState.CONNECTED)
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        await self._reseed()

    async def _reseed(self):
        """Push local state so the relay recovers whatever it missed during the gap."""
        if self._presence_provider is not None:
            enabled = self._presence_provider()
            if enabled is not None:
                await self.send(WireEvent.presence(enabled))
        snapshot: TrackSnapshot | None = (
            self._snapshot_provider() if self._snapshot_provider else None)
        if snapshot is None:
            return
        await self.send(WireEvent(EventKind.TRACK, snapshot.metadata))
        await self.send(WireEvent.play_state(snapshot))

    async def _read_loop(self, ws):
        try:
            async for message in ws:
                log.debug("Ignoring message from relay: %.80s", message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if ws is self._ws:
                self._handle_error(e)
            return
        if ws is self._ws:
            self._handle_close(getattr(ws, "close_code", None))

    def _handle_close(self, code):
        self._ws = None
        log.info("Relay link closed (code %s)", code)
        self._set_state(LinkState.DISCONNECTED)
        if code != CLEAN_CLOSE:
            self.schedule_reconnect()

    def _handle_error(self, error):
        self._ws = None
        log.debug("Relay link error: %s", error)
        self._set_state(LinkState.DISCONNECTED)
        self.schedule_reconnect()

    # ── Reconnect scheduling ──

    def schedule_reconnect(self):
        """Arm the retry timer unless one is already pending."""
        if self._closed or self.retry_pending:
            return
        delay = self.backoff.next_delay()
        log.debug("Reconnecting to relay in %.1fs", delay)
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float):
        await asyncio.sleep(delay)
        self._retry_task = None
        self._set_state(LinkState.RECONNECTING)
        await self.connect()

    def _cancel_retry(self):
        if self._retry_task is not None:
            if self._retry_task is not asyncio.current_task():
                self._retry_task.cancel()
            self._retry_task = None

    async def force_reconnect(self):
        """User-initiated retry: skip the pending backoff wait and connect now."""
        if self._closed:
            return
        self._cancel_retry()
        await self.connect()

    # ── Sending ──

    async def send(self, event: WireEvent) -> bool:
        """Fire-and-forget; dropped unless the link is connected."""
        ws = self._ws
        if self._state is not LinkState.CONNECTED or ws is None:
            return False
        try:
            await ws.send(event.to_json())
        except Exception as e:
            log.debug("Dropping %s event, send failed: %s", event.kind.value, e)
            return False
        return True

    # ── Teardown ──

    async def close(self):
        """Stop retrying and keep-alive, close the socket.  Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        for task in (self._initial_task, self._retry_task,
                     self._keepalive_task, self._reader_task):
            if task is None or task is current:
                continue
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
        self._initial_task = self._retry_task = None
        self._keepalive_task = self._reader_task = None

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_quietly(ws)
        self._state = LinkState.DISCONNECTED
        log.info("Relay link torn down")

    @staticmethod
    async def _close_quietly(ws):
        try:
            await ws.close()
        except Exception as e:
            log.debug("Error closing relay socket: %s", e)
