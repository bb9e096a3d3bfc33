"""Customer and payment records, including the invariant-keeping payment path.

Every payment write re-derives the owning customer's ``paidAmount``,
``lastPayment`` and ``status`` inside the same transaction, so the two
tables can never disagree after a committed write.
"""

from __future__ import annotations

import json
from datetime import date

from ledger.core.errors import ValidationError
from ledger.core.record_store_core import (
    FREQUENCY_DAYS,
    derive_status,
    dump_json,
    insert_customer_row,
    insert_payment_row,
    load_rows,
    new_record_id,
    normalize_customer,
    normalize_payment,
    read_scope,
    write_scope,
)

_PAYMENT_OWNED_FIELDS = ("paidAmount", "lastPayment", "status")


def _save_customer(tx, customer):
    tx.execute(
        """
        UPDATE customers
        SET profile_id = ?, name = ?, phone = ?, status = ?, frequency = ?, last_payment = ?, json_text = ?
        WHERE id = ?
        """,
        (
            customer["profileId"],
            customer["name"],
            customer["phone"],
            customer["status"],
            customer["frequency"],
            customer["lastPayment"],
            dump_json(customer),
            customer["id"],
        ),
    )


def _require_customer(tx, customer_id):
    row = tx.execute("SELECT json_text FROM customers WHERE id = ? LIMIT 1", (customer_id,)).fetchone()
    if row is None:
        raise ValidationError(f"customer {customer_id} does not exist")
    return json.loads(row["json_text"])


def add_customer(db_path, customer, *, conn=None):
    """Insert a customer owned by an existing profile."""
    item = dict(customer or {})
    if not item.get("id"):
        item["id"] = new_record_id()
    normalized = normalize_customer(item)
    if normalized["profileId"] is None:
        raise ValidationError("profileId is required")
    with write_scope(db_path, conn) as tx:
        owner = tx.execute("SELECT 1 FROM profiles WHERE id = ? LIMIT 1", (normalized["profileId"],)).fetchone()
        if owner is None:
            raise ValidationError(f"profile {normalized['profileId']} does not exist")
        insert_customer_row(tx, normalized)
    return normalized


def get_customer(db_path, customer_id, *, conn=None):
    with read_scope(db_path, conn) as rc:
        row = rc.execute("SELECT json_text FROM customers WHERE id = ? LIMIT 1", (customer_id,)).fetchone()
    if row is None:
        return None
    return json.loads(row["json_text"])


def update_customer(db_path, customer_id, changes, *, conn=None):
    """Merge ``changes`` into a customer.

    ``paidAmount``/``lastPayment``/``status`` belong to the payment path and
    are ignored here; status is re-derived against the possibly new total.
    """
    with write_scope(db_path, conn) as tx:
        current = _require_customer(tx, customer_id)
        merged = dict(current)
        merged.update({
            key: value
            for key, value in (changes or {}).items()
            if key not in _PAYMENT_OWNED_FIELDS
        })
        merged["id"] = current["id"]
        normalized = normalize_customer(merged)
        _save_customer(tx, normalized)
    return normalized


def delete_customer(db_path, customer_id, *, conn=None):
    """Delete a customer and all of its payments in one transaction."""
    with write_scope(db_path, conn) as tx:
        tx.execute("DELETE FROM payments WHERE customer_id = ?", (customer_id,))
        cursor = tx.execute("DELETE FROM customers WHERE id = ?", (customer_id,))
    return cursor.rowcount > 0


def get_customers_by_profile(db_path, profile_id, *, conn=None):
    with read_scope(db_path, conn) as rc:
        rows = rc.execute(
            "SELECT json_text FROM customers WHERE profile_id = ? ORDER BY id ASC",
            (profile_id,),
        ).fetchall()
    return load_rows(rows)


def get_active_customers_by_profile(db_path, profile_id, *, conn=None):
    with read_scope(db_path, conn) as rc:
        rows = rc.execute(
            "SELECT json_text FROM customers WHERE profile_id = ? AND status = 'active' ORDER BY id ASC",
            (profile_id,),
        ).fetchall()
    return load_rows(rows)


def get_orphan_customers(db_path, *, conn=None):
    """Customers whose profile is unset or no longer exists."""
    with read_scope(db_path, conn) as rc:
        rows = rc.execute(
            """
            SELECT c.json_text FROM customers AS c
            LEFT JOIN profiles AS p ON p.id = c.profile_id
            WHERE c.profile_id IS NULL OR p.id IS NULL
            ORDER BY c.id ASC
            """
        ).fetchall()
    return load_rows(rows)


def get_daily_customers(db_path, profile_id, *, conn=None):
    with read_scope(db_path, conn) as rc:
        rows = rc.execute(
            """
            SELECT json_text FROM customers
            WHERE profile_id = ? AND status = 'active' AND frequency = 'daily'
            ORDER BY id ASC
            """,
            (profile_id,),
        ).fetchall()
    return load_rows(rows)


def _reference_day(customer):
    for field in ("lastPayment", "startDate", "createdAt"):
        text = str(customer.get(field) or "")[:10]
        if not text:
            continue
        try:
            return date.fromisoformat(text)
        except ValueError:
            continue
    return None


def get_overdue_customers(db_path, profile_id, threshold_days=7, *, today=None, conn=None):
    """Return active customers whose last payment is older than their grace period.

    The grace period is ``threshold_days`` or the customer's installment
    period, whichever is longer. Customers that never paid are measured from
    ``startDate`` (or ``createdAt``).
    """
    today = today or date.today()
    threshold = max(0, int(threshold_days))
    overdue = []
    for customer in get_active_customers_by_profile(db_path, profile_id, conn=conn):
        reference = _reference_day(customer)
        if reference is None:
            continue
        allowed = max(threshold, FREQUENCY_DAYS.get(customer.get("frequency"), 0))
        if (today - reference).days > allowed:
            overdue.append(customer)
    return overdue


def search_customers(db_path, profile_id, query, *, conn=None):
    """Case-insensitive substring match over name and phone within one profile."""
    needle = str(query or "").strip().casefold()
    customers = get_customers_by_profile(db_path, profile_id, conn=conn)
    if not needle:
        return customers
    return [
        customer
        for customer in customers
        if needle in str(customer.get("name") or "").casefold()
        or needle in str(customer.get("phone") or "").casefold()
    ]


def _latest_payment_day(tx, customer_id):
    row = tx.execute(
        "SELECT MAX(date) AS latest FROM payments WHERE customer_id = ?",
        (customer_id,),
    ).fetchone()
    return str(row["latest"] or "")


def _apply_paid_delta(tx, customer_id, delta):
    customer = _require_customer(tx, customer_id)
    paid = (customer.get("paidAmount") or 0) + delta
    if isinstance(paid, float) and paid.is_integer():
        paid = int(paid)
    customer["paidAmount"] = paid
    customer["lastPayment"] = _latest_payment_day(tx, customer_id)
    customer["status"] = derive_status(paid, customer.get("totalAmount") or 0)
    _save_customer(tx, customer)
    return customer


def add_payment(db_path, payment, *, conn=None):
    """Record a payment and update the owning customer in the same transaction.

    Returns ``(payment, customer)`` with the customer as stored afterwards.
    """
    item = dict(payment or {})
    if not item.get("id"):
        item["id"] = new_record_id()
    normalized = normalize_payment(item)
    with write_scope(db_path, conn) as tx:
        _require_customer(tx, normalized["customerId"])
        insert_payment_row(tx, normalized)
        customer = _apply_paid_delta(tx, normalized["customerId"], normalized["amount"])
    return normalized, customer


def delete_payment(db_path, payment_id, *, conn=None):
    """Delete one payment and reverse its effect on the customer."""
    with write_scope(db_path, conn) as tx:
        row = tx.execute("SELECT json_text FROM payments WHERE id = ? LIMIT 1", (payment_id,)).fetchone()
        if row is None:
            raise ValidationError(f"payment {payment_id} does not exist")
        payment = json.loads(row["json_text"])
        tx.execute("DELETE FROM payments WHERE id = ?", (payment_id,))
        customer = None
        exists = tx.execute("SELECT 1 FROM customers WHERE id = ? LIMIT 1", (payment["customerId"],)).fetchone()
        if exists is not None:
            customer = _apply_paid_delta(tx, payment["customerId"], -payment["amount"])
    return customer


def get_payment(db_path, payment_id, *, conn=None):
    with read_scope(db_path, conn) as rc:
        row = rc.execute("SELECT json_text FROM payments WHERE id = ? LIMIT 1", (payment_id,)).fetchone()
    if row is None:
        return None
    return json.loads(row["json_text"])


def get_payments_by_customer(db_path, customer_id, *, conn=None):
    """Payments of one customer, newest date first."""
    with read_scope(db_path, conn) as rc:
        rows = rc.execute(
            "SELECT json_text FROM payments WHERE customer_id = ? ORDER BY date DESC, id DESC",
            (customer_id,),
        ).fetchall()
    return load_rows(rows)


def get_payments_by_date_range(db_path, start_date, end_date, *, conn=None):
    """Payments whose day falls within ``[start_date, end_date]``."""
    start = str(start_date)[:10]
    end = str(end_date)[:10]
    with read_scope(db_path, conn) as rc:
        rows = rc.execute(
            "SELECT json_text FROM payments WHERE date BETWEEN ? AND ? ORDER BY date ASC, id ASC",
            (start, end),
        ).fetchall()
    return load_rows(rows)
