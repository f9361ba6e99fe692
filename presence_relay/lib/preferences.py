"""
Durable user preferences for the producer (currently: presence on/off).

Stored as a small JSON file.  Writes are atomic (temp file + rename) so a
crash mid-write never corrupts the file.

Storage locations (first existing, else first writable wins):
  1. preferences.path from config       (explicit override)
  2. /etc/presence-relay/preferences.json
  3. <package_dir>/preferences.json     (dev fallback)
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone

from .config import cfg

log = logging.getLogger(__name__)

PACKAGE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

DEFAULT_PATHS = [
    "/etc/presence-relay/preferences.json",
    os.path.join(PACKAGE_DIR, "preferences.json"),
]


def _find_store_path(paths):
    """Find the best store path (first existing, or first writable)."""
    for path in paths:
        if os.path.exists(path):
            return path
    for path in paths:
        d = os.path.dirname(path)
        if os.path.isdir(d) and os.access(d, os.W_OK):
            return path
    return paths[-1]


class Preferences:
    def __init__(self, path: str | None = None):
        configured = path or cfg("preferences", "path", default="")
        self.path = configured or _find_store_path(DEFAULT_PATHS)
        self._presence_enabled = True
        self.load()

    @property
    def presence_enabled(self) -> bool:
        return self._presence_enabled

    def load(self):
        """Read from disk; a missing or corrupt file keeps the defaults."""
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Ignoring unreadable preferences %s: %s", self.path, e)
            return
        if isinstance(data, dict) and isinstance(data.get("presence_enabled"), bool):
            self._presence_enabled = data["presence_enabled"]

    def set_presence_enabled(self, enabled: bool):
        self._presence_enabled = bool(enabled)
        self.save()

    def save(self):
        """Atomically write preferences to disk."""
        data = {
            "presence_enabled": self._presence_enabled,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        d = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(d, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        log.info("Preferences saved to %s (presence %s)", self.path,
                 "on" if self._presence_enabled else "off")
