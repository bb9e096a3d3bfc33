"""Shared SQLite connection/schema/transaction helpers for the record store."""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path

from ledger.core.errors import LedgerError, TransactionError, ValidationError


FREQUENCIES = ("daily", "weekly", "monthly")
FREQUENCY_DAYS = {"daily": 1, "weekly": 7, "monthly": 30}
CUSTOMER_STATUSES = ("active", "completed")
PAYMENT_SOURCES = ("online", "offline")
INVESTMENT_TYPES = ("INVESTED", "WITHDRAWN")
LEGACY_INVESTMENT_TYPES = ("RECEIVED",)
DEFAULT_GRADIENT = "from-blue-500 to-purple-500"

_write_locks = {}
_write_locks_guard = threading.Lock()
_id_lock = threading.Lock()
_last_id = 0


def now_iso():
    """Return the current UTC time as an ISO string with millisecond precision."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def today_text():
    return date.today().isoformat()


def new_record_id():
    """Return a unique millisecond-timestamp id for this process."""
    global _last_id
    with _id_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
        return candidate


def _write_lock_for(db_path):
    key = str(Path(db_path).resolve())
    with _write_locks_guard:
        lock = _write_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _write_locks[key] = lock
        return lock


def _connect(db_path):
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=5.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


def _create_tables(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS profiles (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT '',
            json_text TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_profiles_name ON profiles(name)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS customers (
            id INTEGER PRIMARY KEY,
            profile_id INTEGER,
            name TEXT NOT NULL,
            phone TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL DEFAULT 'active',
            frequency TEXT NOT NULL DEFAULT 'monthly',
            last_payment TEXT NOT NULL DEFAULT '',
            json_text TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_customers_profile ON customers(profile_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_customers_profile_status ON customers(profile_id, status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_customers_status_last_payment ON customers(status, last_payment)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_customers_profile_frequency ON customers(profile_id, frequency)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY,
            customer_id INTEGER NOT NULL,
            date TEXT NOT NULL,
            json_text TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_payments_customer ON payments(customer_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_payments_date ON payments(date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_payments_customer_date ON payments(customer_id, date)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            json_text TEXT NOT NULL,
            updated_at TEXT NOT NULL DEFAULT ''
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_metadata_updated_at ON metadata(updated_at)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS remote_accounts (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            added_at TEXT NOT NULL DEFAULT '',
            json_text TEXT NOT NULL
        )
        """
    )


@contextmanager
def open_connection(db_path):
    """Yield a schema-ready connection and close it afterwards."""
    conn = _connect(db_path)
    try:
        _create_tables(conn)
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db_path):
    """Run a batch of writes atomically.

    Writers on the same database are serialized by a process-local lock and
    ``BEGIN IMMEDIATE``. Ledger errors propagate unchanged after rollback;
    anything else is wrapped in ``TransactionError``.
    """
    lock = _write_lock_for(db_path)
    with lock:
        with open_connection(db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except LedgerError:
                conn.execute("ROLLBACK")
                raise
            except Exception as exc:
                conn.execute("ROLLBACK")
                raise TransactionError(f"write rolled back: {exc}") from exc
            conn.execute("COMMIT")


@contextmanager
def write_scope(db_path, conn=None):
    """Join the caller's transaction when ``conn`` is given, else open one."""
    if conn is not None:
        yield conn
        return
    with transaction(db_path) as own:
        yield own


@contextmanager
def read_scope(db_path, conn=None):
    if conn is not None:
        yield conn
        return
    with open_connection(db_path) as own:
        yield own


def initialize_record_store(*, db_path, log_exception=None):
    """Create SQLite schema."""
    try:
        with open_connection(db_path):
            pass
        return True
    except Exception as exc:
        if callable(log_exception):
            log_exception("initialize_record_store", exc)
        return False


def dump_json(payload):
    return json.dumps(payload, ensure_ascii=True, sort_keys=True)


def load_rows(rows):
    """Decode ``json_text`` columns into record dicts."""
    items = []
    for row in rows:
        item = json.loads(row["json_text"])
        if isinstance(item, dict):
            items.append(item)
    return items


# Shape checks. Each normalizer returns a clean copy or raises ValidationError.

def coerce_id(value, field):
    if isinstance(value, bool) or value in (None, "", 0):
        raise ValidationError(f"{field} is required")
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer id, got {value!r}") from None
    if parsed <= 0:
        raise ValidationError(f"{field} must be positive")
    return parsed


def coerce_amount(value, field, default=None):
    if value is None or value == "":
        if default is None:
            raise ValidationError(f"{field} is required")
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}") from None
    return int(parsed) if parsed.is_integer() else parsed


def coerce_day(value, field):
    """Accept ``YYYY-MM-DD`` or a full ISO timestamp and return the day part."""
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required")
    day = text[:10]
    try:
        date.fromisoformat(day)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date, got {value!r}") from None
    return day


def _required_text(item, field):
    text = str(item.get(field) or "").strip()
    if not text:
        raise ValidationError(f"{field} is required")
    return text


def compute_total_investment(history):
    """Net investment: INVESTED adds, every other entry type subtracts."""
    total = 0
    for entry in history or []:
        amount = entry.get("amount") or 0
        if entry.get("type") == "INVESTED":
            total += amount
        else:
            total -= amount
    return total


def normalize_investment_entry(item):
    if not isinstance(item, dict):
        raise ValidationError("investment entry must be an object")
    entry_type = str(item.get("type") or "").strip().upper()
    if entry_type not in INVESTMENT_TYPES + LEGACY_INVESTMENT_TYPES:
        raise ValidationError(f"investment type must be one of {INVESTMENT_TYPES}, got {item.get('type')!r}")
    amount = coerce_amount(item.get("amount"), "amount")
    if amount <= 0:
        raise ValidationError("investment amount must be positive")
    entry = dict(item)
    entry["id"] = coerce_id(item.get("id"), "id")
    entry["amount"] = amount
    entry["type"] = entry_type
    entry["date"] = str(item.get("date") or now_iso())
    if item.get("customerId") not in (None, ""):
        entry["customerId"] = coerce_id(item.get("customerId"), "customerId")
    else:
        entry.pop("customerId", None)
    return entry


def normalize_profile(item):
    if not isinstance(item, dict):
        raise ValidationError("profile must be an object")
    profile = dict(item)
    profile["id"] = coerce_id(item.get("id"), "id")
    profile["name"] = _required_text(item, "name")
    profile["description"] = str(item.get("description") or "")
    profile["gradient"] = str(item.get("gradient") or DEFAULT_GRADIENT)
    profile["createdAt"] = str(item.get("createdAt") or now_iso())
    history = item.get("investmentHistory") or []
    if not isinstance(history, list):
        raise ValidationError("investmentHistory must be a list")
    profile["investmentHistory"] = [normalize_investment_entry(entry) for entry in history]
    profile["totalInvestment"] = compute_total_investment(profile["investmentHistory"])
    return profile


def derive_status(paid_amount, total_amount):
    return "completed" if paid_amount >= total_amount else "active"


def normalize_customer(item):
    if not isinstance(item, dict):
        raise ValidationError("customer must be an object")
    customer = dict(item)
    customer["id"] = coerce_id(item.get("id"), "id")
    customer["name"] = _required_text(item, "name")
    if item.get("profileId") in (None, ""):
        customer["profileId"] = None
    else:
        customer["profileId"] = coerce_id(item.get("profileId"), "profileId")
    customer["phone"] = str(item.get("phone") or "")
    customer["totalAmount"] = coerce_amount(item.get("totalAmount"), "totalAmount", default=0)
    customer["installmentAmount"] = coerce_amount(item.get("installmentAmount"), "installmentAmount", default=0)
    customer["paidAmount"] = coerce_amount(item.get("paidAmount"), "paidAmount", default=0)
    frequency = str(item.get("frequency") or "monthly").strip().lower()
    if frequency not in FREQUENCIES:
        raise ValidationError(f"frequency must be one of {FREQUENCIES}, got {item.get('frequency')!r}")
    customer["frequency"] = frequency
    customer["lastPayment"] = str(item.get("lastPayment") or "")[:10]
    customer["status"] = derive_status(customer["paidAmount"], customer["totalAmount"])
    customer["createdAt"] = str(item.get("createdAt") or now_iso())
    return customer


def normalize_payment(item):
    if not isinstance(item, dict):
        raise ValidationError("payment must be an object")
    payment = dict(item)
    payment["id"] = coerce_id(item.get("id"), "id")
    payment["customerId"] = coerce_id(item.get("customerId"), "customerId")
    amount = coerce_amount(item.get("amount"), "amount")
    if amount <= 0:
        raise ValidationError("payment amount must be positive")
    payment["amount"] = amount
    payment["date"] = coerce_day(item.get("date"), "date")
    source = str(item.get("paymentSource") or "offline").strip().lower()
    if source not in PAYMENT_SOURCES:
        raise ValidationError(f"paymentSource must be one of {PAYMENT_SOURCES}, got {item.get('paymentSource')!r}")
    payment["paymentSource"] = source
    payment["createdAt"] = str(item.get("createdAt") or now_iso())
    return payment


def insert_profile_row(conn, profile):
    conn.execute(
        "INSERT INTO profiles (id, name, created_at, json_text) VALUES (?, ?, ?, ?)",
        (profile["id"], profile["name"], profile["createdAt"], dump_json(profile)),
    )


def insert_customer_row(conn, customer):
    conn.execute(
        """
        INSERT INTO customers (id, profile_id, name, phone, status, frequency, last_payment, json_text)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            customer["id"],
            customer["profileId"],
            customer["name"],
            customer["phone"],
            customer["status"],
            customer["frequency"],
            customer["lastPayment"],
            dump_json(customer),
        ),
    )


def insert_payment_row(conn, payment):
    conn.execute(
        "INSERT INTO payments (id, customer_id, date, json_text) VALUES (?, ?, ?, ?)",
        (payment["id"], payment["customerId"], payment["date"], dump_json(payment)),
    )


def insert_meta_row(conn, key, value, updated_at=None):
    conn.execute(
        """
        INSERT INTO metadata (key, json_text, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            json_text = excluded.json_text,
            updated_at = excluded.updated_at
        """,
        (str(key), dump_json(value), updated_at or now_iso()),
    )
