# Presence Relay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
PresenceAdapter — projects the relay's state onto Discord Rich Presence.

The producer samples elapsed/total at an arbitrary instant; Discord wants
absolute start/end timestamps and animates its own progress bar from them.
While playing:

    start = now - elapsed
    end   = now + (total - elapsed)      (only when total is known)

While paused neither timestamp is sent, so the card shows a static state.
"""

import asyncio
import logging
import os

from pypresence import AioPresence, PyPresenceException
from pypresence.types import ActivityType

from .config import cfg
from .errors import ExternalApiError
from .track import TrackMetadata, now_ms

log = logging.getLogger(__name__)

DEFAULT_URL = "https://music.youtube.com"
ACTIVITY_NAME = "YouTube Music"
UNKNOWN_TITLE = "Unknown Title"
UNKNOWN_ARTIST = "Unknown Artist"

_API_ERRORS = (PyPresenceException, OSError, asyncio.TimeoutError)


def build_activity(track: TrackMetadata, is_playing: bool, now: int,
                   default_url: str = DEFAULT_URL) -> dict:
    """Keyword arguments for ``AioPresence.update`` describing *track*."""
    url = track.url or default_url
    activity = {
        "activity_type": ActivityType.LISTENING,
        "name": ACTIVITY_NAME,
        "details": track.title or UNKNOWN_TITLE,
        "details_url": url,
        "state": track.author or UNKNOWN_ARTIST,
        "state_url": track.artist_url or url,
        "buttons": [{"label": "Play on YouTube Music", "url": url}],
    }
    if track.image_url:
        activity["large_image"] = track.image_url
        activity["large_text"] = track.title or UNKNOWN_TITLE
    if track.artist_url:
        activity["buttons"].append({"label": "View Artist", "url": track.artist_url})

    if is_playing:
        activity["start"] = now - track.current_duration_ms
        if track.total_duration_ms > 0:
            activity["end"] = now + (track.total_duration_ms - track.current_duration_ms)
    return activity


class PresenceAdapter:
    """Owns the Discord RPC session.  Never raises into the relay.

    *client_factory* builds the RPC client from a client id and *clock*
    returns epoch milliseconds; both are injectable for tests.
    """

    def __init__(self, client_id: str | None = None, *, client_factory=AioPresence,
                 clock=now_ms, default_url: str | None = None):
        self.client_id = client_id or os.getenv("DISCORD_CLIENT_ID") or str(
            cfg("presence", "client_id", default="") or "")
        self.default_url = default_url or cfg("presence", "default_url", default=DEFAULT_URL)
        self._client_factory = client_factory
        self._clock = clock
        self._client = None
        self._warned_no_client_id = False

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def refresh(self, state) -> bool:
        """Publish the current track; True if Discord accepted the update."""
        if not state.presence_enabled or state.current_track is None:
            return False
        activity = build_activity(state.current_track, state.is_playing,
                                  self._clock(), self.default_url)
        try:
            client = await self._ensure_session()
            if client is None:
                return False
            await self._call("update", client.update(**activity))
        except ExternalApiError as e:
            log.warning("Discord RPC: error setting activity: %s", e)
            self._drop_session()
            return False
        log.debug("Discord RPC: %s — %s (%s)", activity["details"], activity["state"],
                  "playing" if state.is_playing else "paused")
        return True

    async def clear(self) -> bool:
        """Blank the displayed activity and end the session.

        Only attempted when a session exists; the next refresh reconnects.
        """
        client = self._client
        if client is None:
            return False
        try:
            await self._call("clear", client.clear())
        except ExternalApiError as e:
            log.warning("Discord RPC: error clearing activity: %s", e)
            return False
        finally:
            self._drop_session()
        log.info("Discord RPC: activity cleared, session closed")
        return True

    async def close(self):
        """Close the session on shutdown."""
        self._drop_session()

    # ── Session handling ──

    async def _ensure_session(self):
        if self._client is not None:
            return self._client
        if not self.client_id:
            if not self._warned_no_client_id:
                log.warning("Discord RPC: no client id configured — presence disabled")
                self._warned_no_client_id = True
            return None
        try:
            client = self._client_factory(self.client_id)
        except _API_ERRORS as e:
            raise ExternalApiError(f"client setup failed: {e}") from e
        await self._call("connect", client.connect())
        self._client = client
        log.info("Discord RPC: connected")
        return client

    def _drop_session(self):
        # Next refresh builds and connects a fresh client
        client, self._client = self._client, None
        if client is None:
            return
        # pypresence's close() also closes the event loop, so only the pipe is shut
        writer = getattr(client, "sock_writer", None)
        if writer is None:
            return
        try:
            writer.close()
        except Exception as e:
            log.debug("Discord RPC: error closing IPC pipe: %s", e)

    @staticmethod
    async def _call(name: str, awaitable):
        try:
            return await awaitable
        except _API_ERRORS as e:
            raise ExternalApiError(f"{name} failed: {e}") from e
