"""TrackSource — the detector contract the producer polls."""

from aiohttp import web

from ..lib.track import TrackSnapshot


class TrackSource:
    # ── Subclass must set these ──
    id: str = ""
    name: str = ""

    async def poll_snapshot(self) -> TrackSnapshot | None:
        """Return the player's current state, or None when there is nothing to report."""
        raise NotImplementedError

    def add_routes(self, app: web.Application):
        """Add extra aiohttp routes to the producer's control app."""
