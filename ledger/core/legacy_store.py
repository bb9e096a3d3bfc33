"""Flat key-value store holding pre-SQLite data and the migration flags.

Values are kept as JSON text per key, the same way the old client-side
storage kept them, so malformed entries can be detected on read instead of
breaking the whole file.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path

from ledger.core.filesystem_utils import atomic_write_text


class LegacyStore:
    """JSON-file backed string map with get/set/remove semantics."""

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_all(self):
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError:
            return {}
        try:
            payload = json.loads(text)
        except ValueError:
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(key): value for key, value in payload.items() if isinstance(value, str)}

    def _write_all(self, items):
        atomic_write_text(self.path, json.dumps(items, ensure_ascii=True, sort_keys=True, indent=2))

    def get_item(self, key):
        """Return the raw string stored under ``key`` or None."""
        with self._lock:
            return self._read_all().get(str(key))

    def set_item(self, key, value):
        with self._lock:
            items = self._read_all()
            items[str(key)] = str(value)
            self._write_all(items)

    def remove_item(self, key):
        with self._lock:
            items = self._read_all()
            if str(key) in items:
                del items[str(key)]
                self._write_all(items)

    def keys(self):
        with self._lock:
            return sorted(self._read_all().keys())

    def get_json(self, key, default=None):
        """Decode the JSON value under ``key``; unreadable values yield ``default``."""
        raw = self.get_item(key)
        if not raw:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            return default

    def set_json(self, key, value):
        self.set_item(key, json.dumps(value, ensure_ascii=True))
