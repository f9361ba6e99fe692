#!/usr/bin/env python3
# Presence Relay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Presence Relay server (presence-relay)

Accepts the producer's WebSocket link, folds its events into the
authoritative ServerState and drives Discord Rich Presence from it.

Endpoints:
  GET /         WebSocket link (one JSON wire event per text frame)
  GET /status   current ServerState

Port: 8765 (localhost only — no TLS, no auth)
"""

import asyncio
import logging
import signal
from dataclasses import dataclass

from aiohttp import WSCloseCode, WSMsgType, web

from .lib.config import cfg
from .lib.errors import ProtocolError
from .lib.presence import PresenceAdapter
from .lib.track import EventKind, TrackMetadata, WireEvent
from .lib.watchdog import watchdog_loop

logger = logging.getLogger("presence-relay")

RELAY_HOST = "localhost"
RELAY_PORT = 8765


@dataclass
class ServerState:
    current_track: TrackMetadata | None = None
    is_playing: bool = False
    presence_enabled: bool = True

    def to_dict(self) -> dict:
        return {
            "track": self.current_track.to_wire() if self.current_track else None,
            "is_playing": self.is_playing,
            "presence_enabled": self.presence_enabled,
        }


class RelayServer:
    """Single owner of ServerState; every mutation happens on the event loop."""

    def __init__(self, presence: PresenceAdapter | None = None,
                 host: str | None = None, port: int | None = None):
        self.host = host or cfg("relay", "host", default=RELAY_HOST)
        self.port = int(port if port is not None else cfg("relay", "port", default=RELAY_PORT))
        self.state = ServerState()
        self.presence = presence or PresenceAdapter()
        self._links: set[web.WebSocketResponse] = set()
        self._runner: web.AppRunner | None = None
        self._watchdog_task: asyncio.Task | None = None

    # ── Event folding ──

    async def handle_message(self, text: str):
        """Decode one frame and apply it; malformed frames are dropped."""
        try:
            event = WireEvent.from_json(text)
        except ProtocolError as e:
            logger.warning("Dropping malformed message: %s", e)
            return
        await self.apply_event(event)

    async def apply_event(self, event: WireEvent):
        kind, metadata = event.kind, event.metadata

        if kind is EventKind.PRESENCE_OFF:
            self.state.presence_enabled = False
            logger.info("Discord RPC: disabled")
            await self.presence.clear()
            return

        if kind is EventKind.PRESENCE_ON:
            self.state.presence_enabled = True
            logger.info("Discord RPC: enabled")
        else:
            if kind is EventKind.PAUSE:
                self.state.is_playing = False
            elif kind is EventKind.RESUME:
                self.state.is_playing = True
            # Invalid metadata still refreshes below, it just never replaces the track
            if metadata.is_valid():
                if self._is_new_track(metadata):
                    logger.info("Now playing: %s — %s", metadata.title, metadata.author)
                self.state.current_track = metadata
            else:
                logger.debug("Ignoring invalid metadata on %s event", kind.value)

        await self.presence.refresh(self.state)

    def _is_new_track(self, metadata: TrackMetadata) -> bool:
        current = self.state.current_track
        return current is None or current.identity() != metadata.identity()

    # ── WebSocket link ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self._links.add(ws)
        logger.info("Producer connected (%d link(s))", len(self._links))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self.handle_message(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
                else:
                    logger.debug("Ignoring non-text frame (%s)", msg.type)
        finally:
            self._links.discard(ws)
            logger.info("Producer disconnected (%d remaining)", len(self._links))
            # Presence must never outlive the link, whatever the enabled flag says
            await self.presence.clear()

        return ws

    # ── HTTP ──

    def _cors_headers(self):
        return {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        }

    async def _handle_status(self, request: web.Request) -> web.Response:
        status = self.state.to_dict()
        status["links"] = len(self._links)
        status["discord_connected"] = self.presence.connected
        return web.json_response(status, headers=self._cors_headers())

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_ws)
        app.router.add_get("/status", self._handle_status)
        return app

    # ── Lifecycle ──

    async def start(self):
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Relay listening on ws://%s:%d", self.host, self.port)
        logger.info("Waiting for the producer to connect...")
        self._watchdog_task = asyncio.create_task(watchdog_loop())

    async def shutdown(self):
        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except (asyncio.CancelledError, Exception):
                pass
            self._watchdog_task = None

        await self.close_links()

        await self.presence.clear()
        await self.presence.close()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Relay stopped")

    async def close_links(self):
        """Close every producer link with 1001; a 1000 close would end its retries."""
        for ws in list(self._links):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"relay shutting down")
        self._links.clear()

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


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    asyncio.run(RelayServer().run())


if __name__ == "__main__":
    main()
