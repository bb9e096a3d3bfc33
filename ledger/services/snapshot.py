"""Snapshot export/import for local file backups and remote payloads.

A snapshot is one JSON document holding the whole ledger::

    {"version", "exportDate", "profiles", "customers", "payments", "metadata"}
"""

from __future__ import annotations

import copy
import json
from datetime import datetime
from pathlib import Path

from ledger.core import record_store
from ledger.core.errors import InvalidBackup, LedgerError, ValidationError
from ledger.core.filesystem_utils import atomic_write_text

BACKUP_PREFIX = "ma-backup-"
SNAPSHOT_SECTIONS = ("profiles", "customers", "payments", "metadata")


def export_snapshot(db_path):
    """Return a snapshot of the whole store. Pure read."""
    return record_store.export_all(db_path)


def upgrade_legacy_snapshot(doc):
    """Lift a 1.x document (``settings`` instead of ``metadata``) to the current shape."""
    if not isinstance(doc, dict):
        return doc
    version = str(doc.get("version") or "")
    if not version.startswith("1.") or "metadata" in doc:
        return doc
    upgraded = dict(doc)
    settings = upgraded.pop("settings", None)
    upgraded["metadata"] = {"app_settings": settings} if settings else {}
    return upgraded


def validate_snapshot(doc):
    """Check the top-level shape; raises InvalidBackup without touching anything."""
    if not isinstance(doc, dict):
        raise InvalidBackup("snapshot must be a JSON object")
    if not str(doc.get("version") or "").strip():
        raise InvalidBackup("snapshot version tag is missing")
    missing = [section for section in SNAPSHOT_SECTIONS if section not in doc]
    if missing:
        raise InvalidBackup(f"snapshot is missing sections: {', '.join(missing)}")
    for section in ("profiles", "customers", "payments"):
        if not isinstance(doc[section], list):
            raise InvalidBackup(f"snapshot section {section} must be a list")
    if not isinstance(doc["metadata"], dict):
        raise InvalidBackup("snapshot section metadata must be an object")
    return doc


def import_snapshot(db_path, doc, *, log_exception=None):
    """Replace the store with ``doc``. Returns True on success.

    Shape problems are detected before any write; a failed write rolls back
    and leaves the previous state in place.
    """
    try:
        validated = validate_snapshot(upgrade_legacy_snapshot(doc))
        record_store.import_all(db_path, validated)
        return True
    except LedgerError as exc:
        if callable(log_exception):
            log_exception("import_snapshot", exc)
        return False


def summarize_snapshot(doc):
    """Counts shown to the user before a destructive restore is confirmed."""
    doc = doc if isinstance(doc, dict) else {}
    return {
        "version": str(doc.get("version") or ""),
        "exportDate": str(doc.get("exportDate") or ""),
        "profiles": len(doc.get("profiles") or []),
        "customers": len(doc.get("customers") or []),
        "payments": len(doc.get("payments") or []),
        "excludedCompleted": bool(doc.get("excludedCompleted", False)),
    }


def filter_completed(doc):
    """Drop completed customers and their payments from a snapshot copy."""
    filtered = copy.deepcopy(doc)
    customers = [item for item in filtered.get("customers", []) if item.get("status") != "completed"]
    kept_ids = {item.get("id") for item in customers}
    filtered["customers"] = customers
    filtered["payments"] = [item for item in filtered.get("payments", []) if item.get("customerId") in kept_ids]
    filtered["excludedCompleted"] = True
    return filtered


def serialize_snapshot(doc):
    return json.dumps(doc, ensure_ascii=False, indent=2)


def parse_snapshot_text(text):
    """Decode snapshot JSON text; malformed text raises InvalidBackup."""
    try:
        doc = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise InvalidBackup(f"snapshot is not valid JSON: {exc}") from exc
    return validate_snapshot(upgrade_legacy_snapshot(doc))


def backup_filename(now=None, suffix=""):
    """``ma-backup-<YYYY-MM-DD>-<HH-MM-SS>[-suffix].json``."""
    now = now or datetime.now()
    stamp = now.strftime("%Y-%m-%d-%H-%M-%S")
    tail = f"-{suffix}" if suffix else ""
    return f"{BACKUP_PREFIX}{stamp}{tail}.json"


def write_snapshot_file(db_path, directory, *, now=None):
    """Export the store into ``directory`` and return the written path."""
    doc = export_snapshot(db_path)
    path = Path(directory) / backup_filename(now)
    atomic_write_text(path, serialize_snapshot(doc))
    return path


def read_snapshot_file(path):
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise InvalidBackup(f"snapshot file unreadable: {exc}") from exc
    return parse_snapshot_text(text)


def restore_snapshot_file(db_path, path, *, log_exception=None):
    """Read and import a local snapshot file. Returns True on success."""
    try:
        doc = read_snapshot_file(path)
    except ValidationError as exc:
        if callable(log_exception):
            log_exception("restore_snapshot_file", exc)
        return False
    return import_snapshot(db_path, doc, log_exception=log_exception)
