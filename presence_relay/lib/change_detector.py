"""Track / play-state change detection over successive snapshots."""

from enum import Enum

from .track import TrackSnapshot


class ChangeKind(str, Enum):
    TRACK = "track_changed"
    PLAY_STATE = "play_state_changed"


def detect_changes(previous: TrackSnapshot | None, current: TrackSnapshot) -> set[ChangeKind]:
    """Compare two snapshots.

    A track change needs an identity for *current*; a play-state change
    needs a previous baseline, so the first observation never reports one.
    """
    changes: set[ChangeKind] = set()
    identity = current.identity()
    if identity is not None and (previous is None or previous.identity() != identity):
        changes.add(ChangeKind.TRACK)
    if previous is not None and previous.is_playing != current.is_playing:
        changes.add(ChangeKind.PLAY_STATE)
    return changes


class ChangeDetector:
    """Holds the baseline snapshot between polls."""

    def __init__(self):
        self._baseline: TrackSnapshot | None = None

    @property
    def baseline(self) -> TrackSnapshot | None:
        return self._baseline

    def observe(self, current: TrackSnapshot) -> set[ChangeKind]:
        changes = detect_changes(self._baseline, current)
        # Replaced even when nothing fired, so duration drift keeps it fresh
        self._baseline = current
        return changes

    def reset(self):
        self._baseline = None
