"""Metadata entries and whole-store operations (clear/export/import/cleanup)."""

from __future__ import annotations

import json

from ledger.core.errors import ValidationError
from ledger.core.record_store_core import (
    insert_customer_row,
    insert_meta_row,
    insert_payment_row,
    insert_profile_row,
    load_rows,
    normalize_customer,
    normalize_payment,
    normalize_profile,
    now_iso,
    read_scope,
    write_scope,
)

STORE_VERSION = "2.0.0"


def get_meta(db_path, key, default=None, *, conn=None):
    with read_scope(db_path, conn) as rc:
        row = rc.execute("SELECT json_text FROM metadata WHERE key = ? LIMIT 1", (str(key),)).fetchone()
    if row is None:
        return default
    return json.loads(row["json_text"])


def set_meta(db_path, key, value, *, conn=None):
    """Overwrite the metadata entry for ``key`` wholesale."""
    if not str(key or "").strip():
        raise ValidationError("metadata key is required")
    with write_scope(db_path, conn) as tx:
        insert_meta_row(tx, key, value)


def delete_meta(db_path, key, *, conn=None):
    with write_scope(db_path, conn) as tx:
        tx.execute("DELETE FROM metadata WHERE key = ?", (str(key),))


def load_metadata_map(db_path, *, conn=None):
    """Return every metadata entry flattened to ``{key: value}``."""
    with read_scope(db_path, conn) as rc:
        rows = rc.execute("SELECT key, json_text FROM metadata ORDER BY key ASC").fetchall()
    return {str(row["key"]): json.loads(row["json_text"]) for row in rows}


def _clear_tables(tx):
    tx.execute("DELETE FROM payments")
    tx.execute("DELETE FROM customers")
    tx.execute("DELETE FROM profiles")
    tx.execute("DELETE FROM metadata")


def clear_all(db_path, *, conn=None):
    """Empty profiles, customers, payments and metadata atomically.

    The remote account registry is not part of the ledger and is kept.
    """
    with write_scope(db_path, conn) as tx:
        _clear_tables(tx)


def export_all(db_path, *, conn=None):
    """Read the full store into one document. Pure read."""
    with read_scope(db_path, conn) as rc:
        profiles = load_rows(rc.execute("SELECT json_text FROM profiles ORDER BY id ASC").fetchall())
        customers = load_rows(rc.execute("SELECT json_text FROM customers ORDER BY id ASC").fetchall())
        payments = load_rows(rc.execute("SELECT json_text FROM payments ORDER BY id ASC").fetchall())
        metadata = load_metadata_map(db_path, conn=rc)
    return {
        "version": STORE_VERSION,
        "exportDate": now_iso(),
        "profiles": profiles,
        "customers": customers,
        "payments": payments,
        "metadata": metadata,
    }


def _normalize_section(items, normalizer, section):
    if not isinstance(items, list):
        raise ValidationError(f"{section} must be a list")
    normalized = []
    for idx, item in enumerate(items):
        try:
            normalized.append(normalizer(item))
        except ValidationError as exc:
            raise ValidationError(f"{section}[{idx}]: {exc}") from exc
    return normalized


def import_all(db_path, data, *, conn=None):
    """Replace the whole store with ``data``.

    Every record is shape-checked before anything is deleted, and the wipe
    plus bulk insert share one transaction, so a failure leaves the previous
    state in place.
    """
    if not isinstance(data, dict):
        raise ValidationError("import document must be an object")
    profiles = _normalize_section(data.get("profiles"), normalize_profile, "profiles")
    customers = _normalize_section(data.get("customers"), normalize_customer, "customers")
    payments = _normalize_section(data.get("payments"), normalize_payment, "payments")
    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")

    with write_scope(db_path, conn) as tx:
        _clear_tables(tx)
        for profile in profiles:
            insert_profile_row(tx, profile)
        for customer in customers:
            insert_customer_row(tx, customer)
        for payment in payments:
            insert_payment_row(tx, payment)
        stamp = now_iso()
        for key, value in metadata.items():
            insert_meta_row(tx, key, value, updated_at=stamp)
    return {
        "profiles": len(profiles),
        "customers": len(customers),
        "payments": len(payments),
        "metadata": len(metadata),
    }


def cleanup(db_path, keep=100, *, conn=None):
    """Keep the ``keep`` most recently paid completed customers; delete the rest.

    Returns the number of customers removed (with their payments).
    """
    keep = max(0, int(keep))
    with write_scope(db_path, conn) as tx:
        rows = tx.execute(
            """
            SELECT id FROM customers
            WHERE status = 'completed'
            ORDER BY last_payment DESC, id DESC
            """
        ).fetchall()
        doomed = [int(row["id"]) for row in rows[keep:]]
        for customer_id in doomed:
            tx.execute("DELETE FROM payments WHERE customer_id = ?", (customer_id,))
            tx.execute("DELETE FROM customers WHERE id = ?", (customer_id,))
    return len(doomed)


def get_storage_size(db_path, *, conn=None):
    """Approximate ledger payload size: serialized customers plus payments, in bytes."""
    with read_scope(db_path, conn) as rc:
        customers = load_rows(rc.execute("SELECT json_text FROM customers").fetchall())
        payments = load_rows(rc.execute("SELECT json_text FROM payments").fetchall())
    return len(json.dumps(customers).encode("utf-8")) + len(json.dumps(payments).encode("utf-8"))


def check_database_health(db_path, *, log_exception=None):
    """Return counts and size; never raises."""
    try:
        with read_scope(db_path) as rc:
            counts = {
                table: int(rc.execute(f"SELECT COUNT(*) AS total FROM {table}").fetchone()["total"])
                for table in ("profiles", "customers", "payments")
            }
        size = get_storage_size(db_path)
        return {"healthy": True, "size": size, "counts": counts}
    except Exception as exc:
        if callable(log_exception):
            log_exception("check_database_health", exc)
        return {
            "healthy": False,
            "size": 0,
            "counts": {"profiles": 0, "customers": 0, "payments": 0},
        }
