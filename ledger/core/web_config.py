"""KEY=VALUE settings for the ledger service, with ``LEDGER_<KEY>`` env overrides."""

import os
from pathlib import Path

ENV_PREFIX = "LEDGER_"
_QUOTES = ("'", '"')
_FLAG_WORDS = {
    "1": True, "true": True, "yes": True, "on": True,
    "0": False, "false": False, "no": False, "off": False,
}


def parse_settings_text(text):
    """Return the key/value pairs of a ``ledger.env`` body; later keys win."""
    settings = {}
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
            value = value[1:-1]
        settings[key] = value
    return settings


class WebConfig:
    """Typed view over ``ledger.env``.

    A non-blank ``LEDGER_<KEY>`` environment variable replaces the file value,
    so OAuth secrets and the session key can stay out of the file.
    """

    def __init__(self, config_path, base_dir, environ=None):
        self.config_path = Path(config_path)
        self.base_dir = Path(base_dir)
        self.environ = os.environ if environ is None else environ
        try:
            self.values = parse_settings_text(self.config_path.read_text(encoding="utf-8"))
        except OSError:
            self.values = {}

    def _lookup(self, name):
        """Stripped setting text, or None when unset or blank."""
        override = str(self.environ.get(ENV_PREFIX + name) or "").strip()
        if override:
            return override
        value = str(self.values.get(name) or "").strip()
        return value or None

    def _number(self, name, default, cast, minimum, maximum):
        text = self._lookup(name)
        if text is None:
            return default
        try:
            value = cast(text)
        except ValueError:
            return default
        if minimum is not None:
            value = max(minimum, value)
        if maximum is not None:
            value = min(maximum, value)
        return value

    def get_str(self, name, default):
        value = self._lookup(name)
        return default if value is None else value

    def get_int(self, name, default, minimum=None, maximum=None):
        """Integer setting clamped into ``[minimum, maximum]``; junk falls back to default."""
        return self._number(name, default, int, minimum, maximum)

    def get_float(self, name, default, minimum=None):
        return self._number(name, default, float, minimum, None)

    def get_bool(self, name, default):
        """Flag setting (1/0, true/false, yes/no, on/off); anything else is default."""
        value = self._lookup(name)
        if value is None:
            return default
        return _FLAG_WORDS.get(value.lower(), default)

    def get_path(self, name, default):
        """Path setting; relative values resolve from ``base_dir``."""
        value = self._lookup(name)
        if value is None:
            return Path(default)
        path = Path(value)
        return path if path.is_absolute() else self.base_dir / path
