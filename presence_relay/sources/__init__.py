"""
Sources — detectors that report what the media player is doing.

A source only observes.  The producer polls it every half second for a
TrackSnapshot and decides what, if anything, goes over the link.  Scraping
a specific player's page lives outside this package; such a scraper feeds
the ``push`` source over HTTP.

Current sources:
  push.py  — last snapshot POSTed to the producer's /snapshot endpoint
  demo.py  — built-in playlist on a wall-clock timeline (no browser needed)
"""

from .base import TrackSource
from .demo import DemoSource
from .push import PushSource

SOURCES = {
    PushSource.id: PushSource,
    DemoSource.id: DemoSource,
}


def create_source(name: str) -> TrackSource:
    """Instantiate the source registered under *name*."""
    try:
        cls = SOURCES[name]
    except KeyError:
        raise ValueError(f"Unknown source '{name}' (known: {', '.join(SOURCES)})") from None
    return cls()
