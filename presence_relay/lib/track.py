# Presence Relay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Track model and wire codec shared by the producer and the relay.

One JSON object per WebSocket text frame:

    {"event": "track" | "pause" | "resume" | "TURN_ON" | "TURN_OFF",
     "metadata": {"title": str, "author": str, "url": str,
                  "totalDuration": ms, "currentDuration": ms,
                  "image": str | null, "artistUrl": str | null}}
"""

import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum

from .errors import ProtocolError

_VIDEO_ID_RE = re.compile(r"[?&]v=([^&]+)")
_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class EventKind(str, Enum):
    TRACK = "track"
    PAUSE = "pause"
    RESUME = "resume"
    PRESENCE_ON = "TURN_ON"
    PRESENCE_OFF = "TURN_OFF"


@dataclass(frozen=True)
class TrackMetadata:
    title: str = ""
    author: str = ""
    url: str = ""
    total_duration_ms: int = 0
    current_duration_ms: int = 0
    image_url: str | None = None
    artist_url: str | None = None

    @classmethod
    def empty(cls) -> "TrackMetadata":
        """Blank metadata, carried by presence toggle events."""
        return cls()

    def is_valid(self) -> bool:
        """Title and author present, durations non-negative."""
        return bool(
            self.title
            and self.author
            and self.current_duration_ms >= 0
            and self.total_duration_ms >= 0
        )

    def identity(self) -> str | None:
        """Stable key for change detection.

        Prefers the ``v=`` id embedded in the URL, falls back to a
        sanitised ``title-author`` composite.  The fallback can collide for
        distinct tracks whose names only differ in punctuation.
        """
        if self.url:
            match = _VIDEO_ID_RE.search(self.url)
            if match:
                return match.group(1)
        if self.title and self.author:
            return _NON_ALNUM_RE.sub("-", f"{self.title}-{self.author}")
        return None

    def to_wire(self) -> dict:
        return {
            "title": self.title,
            "author": self.author,
            "url": self.url,
            "totalDuration": self.total_duration_ms,
            "currentDuration": self.current_duration_ms,
            "image": self.image_url,
            "artistUrl": self.artist_url,
        }

    @classmethod
    def from_wire(cls, data: dict) -> "TrackMetadata":
        """Decode the ``metadata`` object of a wire event.

        Missing fields fall back to blanks; wrong types raise ProtocolError.
        """
        if not isinstance(data, dict):
            raise ProtocolError(f"metadata must be an object, got {type(data).__name__}")
        return cls(
            title=_text(data, "title"),
            author=_text(data, "author"),
            url=_text(data, "url"),
            total_duration_ms=_millis(data, "totalDuration"),
            current_duration_ms=_millis(data, "currentDuration"),
            image_url=_text(data, "image") or None,
            artist_url=_text(data, "artistUrl") or None,
        )


def _text(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ProtocolError(f"{key} must be a string")
    return value


def _millis(data: dict, key: str) -> int:
    value = data.get(key, 0)
    if value is None:
        return 0
    # bool is an int subclass; a flag in a duration slot is a broken producer
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"{key} must be a number")
    return int(value)


@dataclass(frozen=True)
class TrackSnapshot:
    metadata: TrackMetadata
    is_playing: bool
    observed_at_ms: int = field(default_factory=now_ms)

    def identity(self) -> str | None:
        return self.metadata.identity()


@dataclass(frozen=True)
class WireEvent:
    kind: EventKind
    metadata: TrackMetadata = field(default_factory=TrackMetadata.empty)

    @classmethod
    def play_state(cls, snapshot: TrackSnapshot) -> "WireEvent":
        """``resume`` or ``pause`` matching the snapshot's play flag."""
        kind = EventKind.RESUME if snapshot.is_playing else EventKind.PAUSE
        return cls(kind, snapshot.metadata)

    @classmethod
    def presence(cls, enabled: bool) -> "WireEvent":
        return cls(EventKind.PRESENCE_ON if enabled else EventKind.PRESENCE_OFF)

    def to_json(self) -> str:
        return json.dumps({"event": self.kind.value, "metadata": self.metadata.to_wire()})

    @classmethod
    def from_json(cls, text: str) -> "WireEvent":
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError("event must be a JSON object")
        try:
            kind = EventKind(data.get("event"))
        except ValueError:
            raise ProtocolError(f"unknown event type: {data.get('event')!r}") from None
        raw = data.get("metadata")
        metadata = TrackMetadata.empty() if raw is None else TrackMetadata.from_wire(raw)
        return cls(kind, metadata)
