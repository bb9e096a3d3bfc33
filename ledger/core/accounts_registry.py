"""Remote account registry stored beside the ledger tables.

Accounts hold credentials, so they live in their own table: they are never
part of a snapshot and ``clear_all`` leaves them alone.
"""

from __future__ import annotations

import json
import sqlite3

from ledger.core.errors import ValidationError
from ledger.core.record_store_core import dump_json, load_rows, now_iso, read_scope, write_scope


def normalize_account(item):
    if not isinstance(item, dict):
        raise ValidationError("account must be an object")
    account = dict(item)
    account["id"] = str(item.get("id") or "").strip()
    account["email"] = str(item.get("email") or "").strip().lower()
    if not account["id"] or not account["email"]:
        raise ValidationError("account id and email are required")
    account["name"] = str(item.get("name") or account["email"])
    account["accessToken"] = str(item.get("accessToken") or "")
    account["refreshToken"] = str(item.get("refreshToken") or "")
    account["expiresAt"] = float(item.get("expiresAt") or 0)
    account["quotaUsed"] = int(item.get("quotaUsed") or 0)
    # None means the provider reported no limit, or the quota is not known yet.
    total = int(item.get("quotaTotal") or 0)
    account["quotaTotal"] = total if total > 0 else None
    account["folderId"] = str(item.get("folderId") or "")
    account["addedAt"] = str(item.get("addedAt") or now_iso())
    account["lastBackup"] = item.get("lastBackup") or None
    account["needsReauth"] = bool(item.get("needsReauth", False))
    return account


def load_accounts(db_path, *, conn=None):
    """Return every registered account, oldest registration first."""
    with read_scope(db_path, conn) as rc:
        rows = rc.execute("SELECT json_text FROM remote_accounts ORDER BY added_at ASC, id ASC").fetchall()
    return load_rows(rows)


def get_account(db_path, account_id, *, conn=None):
    with read_scope(db_path, conn) as rc:
        row = rc.execute(
            "SELECT json_text FROM remote_accounts WHERE id = ? LIMIT 1",
            (str(account_id or ""),),
        ).fetchone()
    if row is None:
        return None
    return json.loads(row["json_text"])


def find_account_by_email(db_path, email, *, conn=None):
    with read_scope(db_path, conn) as rc:
        row = rc.execute(
            "SELECT json_text FROM remote_accounts WHERE email = ? LIMIT 1",
            (str(email or "").strip().lower(),),
        ).fetchone()
    if row is None:
        return None
    return json.loads(row["json_text"])


def insert_account(db_path, account, *, conn=None):
    """Register a new account; returns False when the email is already registered."""
    normalized = normalize_account(account)
    with write_scope(db_path, conn) as tx:
        existing = tx.execute(
            "SELECT 1 FROM remote_accounts WHERE email = ? LIMIT 1",
            (normalized["email"],),
        ).fetchone()
        if existing is not None:
            return False
        try:
            tx.execute(
                "INSERT INTO remote_accounts (id, email, added_at, json_text) VALUES (?, ?, ?, ?)",
                (normalized["id"], normalized["email"], normalized["addedAt"], dump_json(normalized)),
            )
        except sqlite3.IntegrityError:
            return False
    return True


def update_account(db_path, account_id, changes, *, conn=None):
    """Merge ``changes`` into one account and return it, or None when unknown."""
    with write_scope(db_path, conn) as tx:
        row = tx.execute(
            "SELECT json_text FROM remote_accounts WHERE id = ? LIMIT 1",
            (str(account_id or ""),),
        ).fetchone()
        if row is None:
            return None
        merged = json.loads(row["json_text"])
        merged.update(changes or {})
        merged["id"] = str(account_id)
        normalized = normalize_account(merged)
        tx.execute(
            "UPDATE remote_accounts SET email = ?, json_text = ? WHERE id = ?",
            (normalized["email"], dump_json(normalized), normalized["id"]),
        )
    return normalized


def delete_account(db_path, account_id, *, conn=None):
    """Drop the registry row only; files in the remote account are untouched."""
    with write_scope(db_path, conn) as tx:
        cursor = tx.execute("DELETE FROM remote_accounts WHERE id = ?", (str(account_id or ""),))
    return cursor.rowcount > 0
