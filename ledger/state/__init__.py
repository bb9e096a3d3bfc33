"""Runtime state shared by routes, services, and the backup scheduler."""
from dataclasses import dataclass, field
from collections.abc import Iterator, MutableMapping
from typing import Any


@dataclass
class BackupState:
    """Mutable auto-backup state shared by the scheduler and manual triggers."""
    lock: Any
    run_lock: Any
    automatic_runs: int = 0
    last_attempt_at: float = 0.0
    last_trigger: str = ""
    last_error: str = ""
    # Whether the last check saw local storage at or above the high-water mark.
    storage_over_mark: bool = False


@dataclass
class MigrationStatus:
    """Outcome of the startup migration, kept for status endpoints."""
    lock: Any
    state: str = "NOT_NEEDED"
    warnings: list = field(default_factory=list)
    migrated: dict = field(default_factory=dict)
    finished_at: str = ""


# Settings read once from ledger.env at startup.
SETTING_KEYS = (
    "APP_DIR",
    "AUTO_BACKUP_CHECK_SECONDS",
    "AUTO_BACKUP_ENABLED",
    "AUTO_BACKUP_INTERVAL_SECONDS",
    "COMPLETED_CUSTOMERS_KEEP",
    "DB_PATH",
    "DISPLAY_TZ",
    "EXPORT_DIR",
    "LEGACY_STORE_PATH",
    "LOG_DIR",
    "REMOTE_BACKUP_KEEP",
    "STORAGE_CAPACITY_BYTES",
    "STORAGE_HIGH_WATER_PERCENT",
)

# Live collaborators and mutable trackers.
SERVICE_KEYS = (
    "backup_state",
    "drive_client",
    "legacy_store",
    "log_action",
    "log_exception",
    "log_system",
    "migration_status",
)

STATE_KEYS = frozenset(SETTING_KEYS + SERVICE_KEYS)


class AppState(MutableMapping[str, Any]):
    """Fixed-shape runtime mapping; reads and writes of unknown names fail loudly.

    Members are reachable both as ``state.DB_PATH`` and ``state["DB_PATH"]``.
    Keys outside ``STATE_KEYS`` are dropped by ``from_namespace`` and rejected
    everywhere else, so a typo in a service surfaces as an error instead of a
    silently new attribute.
    """

    __slots__ = ("_members",)

    def __init__(self, members: dict[str, Any]):
        unknown = sorted(set(members) - STATE_KEYS)
        if unknown:
            raise KeyError(f"Unknown state members: {', '.join(unknown)}")
        absent = sorted(STATE_KEYS - set(members))
        if absent:
            raise KeyError(f"Missing state members: {', '.join(absent)}")
        object.__setattr__(self, "_members", dict(members))

    @classmethod
    def from_namespace(cls, namespace: dict[str, Any]) -> "AppState":
        return cls({key: value for key, value in namespace.items() if key in STATE_KEYS})

    def _check(self, key: str) -> str:
        if key not in STATE_KEYS:
            raise KeyError(key)
        return key

    def __getitem__(self, key: str) -> Any:
        return self._members[self._check(key)]

    def __setitem__(self, key: str, value: Any) -> None:
        self._members[self._check(key)] = value

    def __delitem__(self, key: str) -> None:
        raise TypeError("state members cannot be removed")

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._members))

    def __len__(self) -> int:
        return len(self._members)

    def __getattr__(self, name: str) -> Any:
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name: str, value: Any) -> None:
        try:
            self[name] = value
        except KeyError:
            raise AttributeError(name) from None
