#!/usr/bin/env python3
# Presence Relay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Presence Relay producer (presence-producer)

Runs next to the media player.  Polls a track source, turns changes into
wire events and keeps the link to the relay alive.

Poll cadence:
  every 0.5s  change detection → `track` and/or `resume`/`pause`
  every 5s    unconditional `resume`/`pause` so presence timestamps stay fresh

Control API (localhost):
  GET  /status      {"status": <link state>, "presence_enabled": bool, "track": {...}}
  GET  /ws          pushes {"type": "connection_status", ...} on every link change
  POST /reconnect   retry the relay link now
  POST /presence    {"enabled": bool} — durable presence toggle
  + source routes   (e.g. POST /snapshot for the push source)

Port: 8764
"""

import asyncio
import logging
import signal

from aiohttp import web

from .lib.change_detector import ChangeDetector, ChangeKind
from .lib.config import cfg
from .lib.connection import ConnectionManager, LinkState
from .lib.preferences import Preferences
from .lib.track import EventKind, TrackSnapshot, WireEvent
from .sources import TrackSource, create_source

logger = logging.getLogger("presence-producer")

PRODUCER_PORT = 8764
POLL_INTERVAL = 0.5       # seconds between change checks
PERIODIC_INTERVAL = 5.0   # seconds between unconditional play-state refreshes


class ProducerService:
    def __init__(self, source: TrackSource | None = None,
                 connection: ConnectionManager | None = None,
                 preferences: Preferences | None = None,
                 port: int | None = None):
        self.port = int(port if port is not None else cfg("producer", "port", default=PRODUCER_PORT))
        self.poll_interval = float(cfg("producer", "poll_interval", default=POLL_INTERVAL))
        self.periodic_interval = float(cfg("producer", "periodic_interval",
                                           default=PERIODIC_INTERVAL))
        self.source = source or create_source(cfg("producer", "source", default="push"))
        self.preferences = preferences or Preferences()
        self.detector = ChangeDetector()
        self.connection = connection or ConnectionManager(
            snapshot_provider=self.current_snapshot,
            presence_provider=lambda: self.preferences.presence_enabled,
        )
        self.connection.add_status_listener(self._on_link_status)

        self.running = False
        self._snapshot: TrackSnapshot | None = None
        self._tasks: list[asyncio.Task] = []
        self._ui_clients: set[web.WebSocketResponse] = set()
        self._pending_broadcasts: set[asyncio.Task] = set()
        self._runner: web.AppRunner | None = None

    def current_snapshot(self) -> TrackSnapshot | None:
        return self._snapshot

    # ── Polling ──

    async def poll_once(self) -> set[ChangeKind]:
        """One change-detection tick.  Returns the changes that were sent."""
        snapshot = await self.source.poll_snapshot()
        if snapshot is None:
            return set()
        self._snapshot = snapshot

        changes = self.detector.observe(snapshot)
        if ChangeKind.TRACK in changes:
            logger.info("Track: %s — %s", snapshot.metadata.title, snapshot.metadata.author)
            await self.connection.send(WireEvent(EventKind.TRACK, snapshot.metadata))
        if changes:
            # A new track also carries its play state, the relay starts out paused
            await self.connection.send(WireEvent.play_state(snapshot))
        return changes

    async def send_periodic(self) -> bool:
        """Re-send the play state so the relay's timestamps track the player."""
        snapshot = await self.source.poll_snapshot()
        if snapshot is None:
            return False
        self._snapshot = snapshot
        return await self.connection.send(WireEvent.play_state(snapshot))

    async def _poll_loop(self):
        while self.running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.warning("Source poll failed: %s", e)
            await asyncio.sleep(self.poll_interval)

    async def _periodic_loop(self):
        while self.running:
            await asyncio.sleep(self.periodic_interval)
            try:
                await self.send_periodic()
            except Exception as e:
                logger.warning("Periodic update failed: %s", e)

    # ── Presence preference ──

    async def set_presence_enabled(self, enabled: bool) -> bool:
        """Persist the toggle and tell the relay.  Returns whether it was sent."""
        try:
            self.preferences.set_presence_enabled(enabled)
        except OSError as e:
            logger.warning("Could not persist presence preference: %s", e)
        logger.info("Presence %s", "enabled" if enabled else "disabled")
        # Dropped when disconnected; the next connect reasserts it
        return await self.connection.send(WireEvent.presence(enabled))

    # ── Status fan-out ──

    def _on_link_status(self, state: LinkState):
        if not self._ui_clients:
            return
        task = asyncio.get_running_loop().create_task(self._broadcast_status(state))
        self._pending_broadcasts.add(task)
        task.add_done_callback(self._pending_broadcasts.discard)

    async def _broadcast_status(self, state: LinkState):
        disconnected = set()
        for ws in self._ui_clients:
            try:
                await ws.send_json({"type": "connection_status", "status": state.value})
            except Exception:
                disconnected.add(ws)
        self._ui_clients -= disconnected

    def status(self) -> dict:
        snapshot = self._snapshot
        return {
            "status": self.connection.get_state().value,
            "presence_enabled": self.preferences.presence_enabled,
            "source": self.source.id,
            "track": snapshot.metadata.to_wire() if snapshot else None,
            "is_playing": snapshot.is_playing if snapshot else False,
        }

    # ── HTTP handlers ──

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.status())

    async def _handle_reconnect(self, request: web.Request) -> web.Response:
        await self.connection.force_reconnect()
        return web.json_response({"status": self.connection.get_state().value})

    async def _handle_presence(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid json"}, status=400)
        enabled = data.get("enabled") if isinstance(data, dict) else None
        if not isinstance(enabled, bool):
            return web.json_response({"error": "'enabled' must be a boolean"}, status=400)
        sent = await self.set_presence_enabled(enabled)
        return web.json_response({"presence_enabled": enabled, "sent": sent})

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self._ui_clients.add(ws)
        logger.debug("Status client connected (%d total)", len(self._ui_clients))
        try:
            await ws.send_json({"type": "connection_status",
                                "status": self.connection.get_state().value})
            async for msg in ws:
                pass  # push-only
        finally:
            self._ui_clients.discard(ws)
            logger.debug("Status client disconnected (%d remaining)", len(self._ui_clients))
        return ws

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])
        app.router.add_get("/status", self._handle_status)
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_post("/reconnect", self._handle_reconnect)
        app.router.add_post("/presence", self._handle_presence)
        self.source.add_routes(app)
        return app

    # ── Lifecycle ──

    async def start(self):
        self.running = True
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "localhost", self.port)
        await site.start()
        logger.info("Producer control API on http://localhost:%d (source: %s)",
                    self.port, self.source.name)

        await self.connection.start()
        self._tasks = [
            asyncio.create_task(self._poll_loop()),
            asyncio.create_task(self._periodic_loop()),
        ]

    async def shutdown(self):
        self.running = False
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
        self._tasks = []

        await self.connection.close()

        for ws in list(self._ui_clients):
            await ws.close()
        self._ui_clients.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Producer stopped")

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    asyncio.run(ProducerService().run())


if __name__ == "__main__":
    main()
