"""
Demo source — plays a built-in playlist on a wall-clock timeline.

Lets the whole chain (producer → relay → Discord) be exercised without a
browser.  POST /demo/toggle pauses and resumes.
"""

import dataclasses
import logging

from aiohttp import web

from ..lib.track import TrackMetadata, TrackSnapshot, now_ms
from .base import TrackSource

log = logging.getLogger(__name__)

PLAYLIST = [
    TrackMetadata(
        title="Clair de Lune",
        author="Claude Debussy",
        url="https://music.youtube.com/watch?v=CvFH_6DNRCY",
        total_duration_ms=303_000,
    ),
    TrackMetadata(
        title="Gymnopédie No. 1",
        author="Erik Satie",
        url="https://music.youtube.com/watch?v=S-Xm7s9eGxU",
        total_duration_ms=198_000,
    ),
    TrackMetadata(
        title="Spiegel im Spiegel",
        author="Arvo Pärt",
        url="https://music.youtube.com/watch?v=TJ6Mzvh3XCc",
        total_duration_ms=544_000,
    ),
]


class DemoSource(TrackSource):
    id = "demo"
    name = "Demo playlist"

    def __init__(self, playlist=None, clock=now_ms):
        self.playlist = list(playlist or PLAYLIST)
        self._clock = clock
        self._started_at = clock()
        self._paused_at: int | None = None

    @property
    def is_playing(self) -> bool:
        return self._paused_at is None

    def toggle(self):
        now = self._clock()
        if self._paused_at is None:
            self._paused_at = now
        else:
            # Shift the timeline so the pause does not count as playback
            self._started_at += now - self._paused_at
            self._paused_at = None
        log.info("Demo %s", "playing" if self.is_playing else "paused")

    def position(self) -> tuple[TrackMetadata, int]:
        """Current track and elapsed milliseconds within it."""
        now = self._paused_at if self._paused_at is not None else self._clock()
        cycle = sum(t.total_duration_ms for t in self.playlist)
        offset = (now - self._started_at) % cycle
        for track in self.playlist:
            if offset < track.total_duration_ms:
                return track, offset
            offset -= track.total_duration_ms
        return self.playlist[-1], self.playlist[-1].total_duration_ms

    async def poll_snapshot(self) -> TrackSnapshot | None:
        if not self.playlist:
            return None
        track, elapsed = self.position()
        metadata = dataclasses.replace(track, current_duration_ms=elapsed)
        return TrackSnapshot(metadata, self.is_playing, self._clock())

    def add_routes(self, app: web.Application):
        app.router.add_post("/demo/toggle", self._handle_toggle)

    async def _handle_toggle(self, request: web.Request) -> web.Response:
        self.toggle()
        return web.json_response({"status": "ok", "playing": self.is_playing})
