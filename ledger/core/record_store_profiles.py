"""Profile records and their embedded investment history."""

from __future__ import annotations

import json

from ledger.core.errors import ValidationError
from ledger.core.record_store_customers import add_payment
from ledger.core.record_store_core import (
    dump_json,
    insert_profile_row,
    load_rows,
    new_record_id,
    normalize_investment_entry,
    normalize_profile,
    now_iso,
    read_scope,
    today_text,
    write_scope,
)


def add_profile(db_path, profile, *, conn=None):
    """Validate and insert one profile; ``id`` and ``createdAt`` are stamped if absent."""
    item = dict(profile or {})
    if not item.get("id"):
        item["id"] = new_record_id()
    normalized = normalize_profile(item)
    with write_scope(db_path, conn) as tx:
        insert_profile_row(tx, normalized)
    return normalized


def get_profile(db_path, profile_id, *, conn=None):
    with read_scope(db_path, conn) as rc:
        row = rc.execute("SELECT json_text FROM profiles WHERE id = ? LIMIT 1", (profile_id,)).fetchone()
    if row is None:
        return None
    return json.loads(row["json_text"])


def list_profiles(db_path, *, conn=None):
    with read_scope(db_path, conn) as rc:
        rows = rc.execute("SELECT json_text FROM profiles ORDER BY id ASC").fetchall()
    return load_rows(rows)


def count_profiles(db_path, *, conn=None):
    with read_scope(db_path, conn) as rc:
        row = rc.execute("SELECT COUNT(*) AS total FROM profiles").fetchone()
    return int(row["total"])


def _save_profile(tx, profile):
    tx.execute(
        "UPDATE profiles SET name = ?, created_at = ?, json_text = ? WHERE id = ?",
        (profile["name"], profile["createdAt"], dump_json(profile), profile["id"]),
    )


def _require_profile(tx, profile_id):
    row = tx.execute("SELECT json_text FROM profiles WHERE id = ? LIMIT 1", (profile_id,)).fetchone()
    if row is None:
        raise ValidationError(f"profile {profile_id} does not exist")
    return json.loads(row["json_text"])


def update_profile(db_path, profile_id, changes, *, conn=None):
    """Merge ``changes`` into a profile; the investment total is always recomputed."""
    with write_scope(db_path, conn) as tx:
        current = _require_profile(tx, profile_id)
        merged = dict(current)
        merged.update(changes or {})
        merged["id"] = current["id"]
        normalized = normalize_profile(merged)
        _save_profile(tx, normalized)
    return normalized


def delete_profile(db_path, profile_id, *, conn=None):
    """Delete a profile row only; its customers stay behind as orphans."""
    with write_scope(db_path, conn) as tx:
        cursor = tx.execute("DELETE FROM profiles WHERE id = ?", (profile_id,))
    return cursor.rowcount > 0


def add_investment_entry(db_path, profile_id, entry, *, conn=None):
    """Append an investment entry and recompute ``totalInvestment``.

    A WITHDRAWN entry linked to an existing customer also books an offline
    payment for that customer inside the same transaction.
    """
    item = dict(entry or {})
    if not item.get("id"):
        item["id"] = new_record_id()
    item.setdefault("date", now_iso())
    normalized_entry = normalize_investment_entry(item)
    with write_scope(db_path, conn) as tx:
        profile = _require_profile(tx, profile_id)
        history = list(profile.get("investmentHistory") or [])
        if any(existing.get("id") == normalized_entry["id"] for existing in history):
            raise ValidationError(f"investment entry {normalized_entry['id']} already exists")
        history.append(normalized_entry)
        profile["investmentHistory"] = history
        normalized = normalize_profile(profile)
        _save_profile(tx, normalized)
        customer_id = normalized_entry.get("customerId")
        if normalized_entry["type"] == "WITHDRAWN" and customer_id:
            exists = tx.execute("SELECT 1 FROM customers WHERE id = ? LIMIT 1", (customer_id,)).fetchone()
            if exists is not None:
                add_payment(
                    db_path,
                    {
                        "customerId": customer_id,
                        "amount": normalized_entry["amount"],
                        "date": today_text(),
                        "paymentSource": "offline",
                    },
                    conn=tx,
                )
    return normalized


def update_investment_entry(db_path, profile_id, entry_id, changes, *, conn=None):
    with write_scope(db_path, conn) as tx:
        profile = _require_profile(tx, profile_id)
        history = list(profile.get("investmentHistory") or [])
        for idx, existing in enumerate(history):
            if existing.get("id") == entry_id:
                merged = dict(existing)
                merged.update(changes or {})
                merged["id"] = entry_id
                history[idx] = normalize_investment_entry(merged)
                break
        else:
            raise ValidationError(f"investment entry {entry_id} not found")
        profile["investmentHistory"] = history
        normalized = normalize_profile(profile)
        _save_profile(tx, normalized)
    return normalized


def delete_investment_entry(db_path, profile_id, entry_id, *, conn=None):
    with write_scope(db_path, conn) as tx:
        profile = _require_profile(tx, profile_id)
        history = list(profile.get("investmentHistory") or [])
        remaining = [entry for entry in history if entry.get("id") != entry_id]
        if len(remaining) == len(history):
            raise ValidationError(f"investment entry {entry_id} not found")
        profile["investmentHistory"] = remaining
        normalized = normalize_profile(profile)
        _save_profile(tx, normalized)
    return normalized
