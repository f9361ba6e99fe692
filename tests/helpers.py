"""Shared builders and fakes for the test suite."""

from __future__ import annotations

import asyncio
import json

from presence_relay.lib.track import TrackMetadata, TrackSnapshot


def make_metadata(**overrides) -> TrackMetadata:
    fields = {
        "title": "Song",
        "author": "Band",
        "url": "https://music.youtube.com/watch?v=abc123",
        "total_duration_ms": 200_000,
        "current_duration_ms": 10_000,
    }
    fields.update(overrides)
    return TrackMetadata(**fields)


def make_snapshot(is_playing: bool = True, observed_at_ms: int = 0, **overrides) -> TrackSnapshot:
    return TrackSnapshot(make_metadata(**overrides), is_playing, observed_at_ms)


def event_names(frames: list[str]) -> list[str]:
    return [json.loads(frame)["event"] for frame in frames]


async def settle(rounds: int = 10) -> None:
    """Let pending tasks on the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll *predicate* until true or fail after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FakePresence:
    """Records presence calls instead of talking to Discord."""

    def __init__(self) -> None:
        self.refreshes: list[dict] = []
        self.clears = 0
        self.connected = False

    async def refresh(self, state) -> bool:
        self.refreshes.append(state.to_dict())
        return True

    async def clear(self) -> bool:
        self.clears += 1
        return True

    async def close(self) -> None:
        return None
