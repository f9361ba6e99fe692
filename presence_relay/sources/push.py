"""
Push source — the page scraper POSTs snapshots, the producer polls them.

    POST /snapshot
    {"metadata": {...wire metadata...}, "isPlaying": true}

Between posts the elapsed position is advanced locally while playing, so a
scraper that only reports every few seconds still yields accurate polls.
"""

import dataclasses
import logging

from aiohttp import web

from ..lib.config import cfg
from ..lib.errors import ProtocolError
from ..lib.track import TrackMetadata, TrackSnapshot, now_ms
from .base import TrackSource

log = logging.getLogger(__name__)


class PushSource(TrackSource):
    id = "push"
    name = "HTTP push"

    def __init__(self, stale_after: float | None = None, clock=now_ms):
        self.stale_after = float(stale_after if stale_after is not None
                                 else cfg("push", "stale_after", default=30))
        self._clock = clock
        self._metadata: TrackMetadata | None = None
        self._is_playing = False
        self._received_at = 0

    def receive(self, payload: dict):
        """Store a pushed snapshot.  Raises ProtocolError on a malformed body."""
        if not isinstance(payload, dict):
            raise ProtocolError("snapshot must be a JSON object")
        metadata = TrackMetadata.from_wire(payload.get("metadata") or {})
        is_playing = payload.get("isPlaying", False)
        if not isinstance(is_playing, bool):
            raise ProtocolError("isPlaying must be a boolean")
        self._metadata = metadata
        self._is_playing = is_playing
        self._received_at = self._clock()

    async def poll_snapshot(self) -> TrackSnapshot | None:
        if self._metadata is None:
            return None
        now = self._clock()
        age_ms = now - self._received_at
        if age_ms > self.stale_after * 1000:
            return None

        metadata = self._metadata
        if self._is_playing and age_ms > 0:
            elapsed = metadata.current_duration_ms + age_ms
            if metadata.total_duration_ms > 0:
                elapsed = min(elapsed, metadata.total_duration_ms)
            metadata = dataclasses.replace(metadata, current_duration_ms=elapsed)
        return TrackSnapshot(metadata, self._is_playing, now)

    def add_routes(self, app: web.Application):
        app.router.add_post("/snapshot", self._handle_snapshot)

    async def _handle_snapshot(self, request: web.Request) -> web.Response:
        try:
            self.receive(await request.json())
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            return web.json_response({"status": "error", "message": f"invalid json: {e}"},
                                     status=400)
        except ProtocolError as e:
            return web.json_response({"status": "error", "message": str(e)}, status=400)
        return web.json_response({"status": "ok"})
