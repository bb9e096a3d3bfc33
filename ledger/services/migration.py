"""One-time migration from the legacy flat key-value store into SQLite.

State machine: NOT_NEEDED -> RUNNING -> DONE, with FAILED as a terminal state
that is only left through ``force_migration``. Legacy data is never deleted
by a failed run; it is purged only after the grace period that a successful
run records.

Repair policy for legacy records: a record missing its identity fields
(profile id+name, customer id+name, payment id+customerId+positive amount) is
dropped and counted; every other gap is filled with a safe default.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from ledger.core import record_store
from ledger.core.errors import LedgerError, MigrationFailure, ValidationError
from ledger.core.record_store_core import (
    FREQUENCIES,
    PAYMENT_SOURCES,
    coerce_day,
    coerce_id,
    compute_total_investment,
    insert_customer_row,
    insert_meta_row,
    insert_payment_row,
    insert_profile_row,
    new_record_id,
    normalize_customer,
    normalize_payment,
    normalize_profile,
    now_iso,
    today_text,
)

NOT_NEEDED = "NOT_NEEDED"
RUNNING = "RUNNING"
DONE = "DONE"
FAILED = "FAILED"

MIGRATED_FLAG_KEY = "migrated_to_indexeddb"
MIGRATION_DATE_KEY = "migration_date"
CLEANUP_AFTER_KEY = "cleanup_old_data_after"
MIGRATION_FAILED_KEY = "migration_failed"
LEGACY_COLLECTION_KEYS = ("profiles", "customers", "payments")
LEGACY_SETTING_KEYS = ("app_settings", "currentProfile", "notifications")
LEGACY_RETENTION_DAYS = 7

DEFAULT_PROFILE_NAME = "My Business"
DEFAULT_PROFILE_DESCRIPTION = "Default business account"


def needs_migration(legacy):
    """True iff the migrated flag is absent and legacy profiles/customers exist."""
    if legacy.get_item(MIGRATED_FLAG_KEY):
        return False
    return bool(legacy.get_item("customers") or legacy.get_item("profiles"))


def migration_state(legacy):
    """Persisted state as seen from the legacy flags."""
    if legacy.get_item(MIGRATED_FLAG_KEY):
        return DONE
    if legacy.get_item(MIGRATION_FAILED_KEY):
        return FAILED
    return RUNNING if needs_migration(legacy) else NOT_NEEDED


def _legacy_list(legacy, key, warnings):
    value = legacy.get_json(key, [])
    if value is None:
        return []
    if not isinstance(value, list):
        warnings.append(f"legacy {key} is not a list and was ignored")
        return []
    return value


def _has_identity(item, *fields):
    if not isinstance(item, dict):
        return False
    for field in fields:
        value = item.get(field)
        if isinstance(value, str):
            value = value.strip()
        if not value:
            return False
    try:
        coerce_id(item.get("id"), "id")
    except ValidationError:
        return False
    return True


def _valid_profile(item):
    return _has_identity(item, "id", "name")


def _valid_customer(item):
    return _has_identity(item, "id", "name")


def _valid_payment(item):
    if not _has_identity(item, "id", "customerId", "amount"):
        return False
    try:
        coerce_id(item.get("customerId"), "customerId")
        return float(item.get("amount")) > 0
    except (TypeError, ValueError, ValidationError):
        return False


def _coerce_or_none(value):
    try:
        return coerce_id(value, "id")
    except ValidationError:
        return None


def _safe_number(value):
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0


def _dedupe(items, label, warnings):
    by_id = {}
    for item in items:
        by_id[coerce_id(item.get("id"), "id")] = item
    duplicates = len(items) - len(by_id)
    if duplicates:
        warnings.append(f"{duplicates} duplicate {label} collapsed (last copy kept)")
    return list(by_id.values())


def normalize_entry_type(value):
    """Map legacy ``RECEIVED`` to ``WITHDRAWN``; other values are upper-cased."""
    text = str(value or "").strip().upper()
    return "WITHDRAWN" if text == "RECEIVED" else text


def _repair_profile(item, warnings):
    profile = dict(item)
    history = profile.get("investmentHistory")
    if not isinstance(history, list):
        history = []
    repaired = []
    dropped = 0
    unlinked = 0
    for entry in history:
        if not isinstance(entry, dict):
            dropped += 1
            continue
        fixed = dict(entry)
        fixed["type"] = normalize_entry_type(fixed.get("type") or "INVESTED")
        fixed["amount"] = _safe_number(fixed.get("amount"))
        if _coerce_or_none(fixed.get("id")) is None:
            fixed["id"] = new_record_id()
        if fixed["type"] not in ("INVESTED", "WITHDRAWN") or fixed["amount"] <= 0:
            dropped += 1
            continue
        if fixed.get("customerId") not in (None, "") and _coerce_or_none(fixed["customerId"]) is None:
            # The link is optional; the entry itself is still valid.
            fixed.pop("customerId")
            unlinked += 1
        if fixed.get("date") is not None and not isinstance(fixed["date"], str):
            fixed["date"] = str(fixed["date"])
        repaired.append(fixed)
    if dropped:
        warnings.append(f"{dropped} invalid investment entries skipped in profile {profile.get('id')}")
    if unlinked:
        warnings.append(f"{unlinked} investment entries in profile {profile.get('id')} lost an unreadable customer link")
    stored_total = profile.get("totalInvestment")
    if not repaired and _safe_number(stored_total) != 0:
        # Older data tracked only the total; keep it as an opening entry.
        amount = _safe_number(stored_total)
        repaired.append({
            "id": new_record_id(),
            "amount": abs(amount),
            "date": str(profile.get("createdAt") or now_iso()),
            "note": "Opening balance",
            "type": "INVESTED" if amount > 0 else "WITHDRAWN",
        })
    profile["investmentHistory"] = repaired
    profile["totalInvestment"] = compute_total_investment(repaired)
    return normalize_profile(profile)


def _repair_customer(item, default_profile_id):
    customer = dict(item)
    if _coerce_or_none(customer.get("profileId")) is None:
        customer["profileId"] = default_profile_id
    for field in ("totalAmount", "installmentAmount", "paidAmount"):
        customer[field] = _safe_number(customer.get(field))
    if str(customer.get("frequency") or "").strip().lower() not in FREQUENCIES:
        customer["frequency"] = "monthly"
    return normalize_customer(customer)


def _repair_payment(item):
    payment = dict(item)
    try:
        coerce_day(payment.get("date"), "date")
    except ValidationError:
        fallback = str(payment.get("createdAt") or "")[:10]
        try:
            payment["date"] = coerce_day(fallback, "date")
        except ValidationError:
            payment["date"] = today_text()
    if str(payment.get("paymentSource") or "offline").strip().lower() not in PAYMENT_SOURCES:
        payment["paymentSource"] = "offline"
    return normalize_payment(payment)


def _current_profile_id(legacy_current, profiles):
    if isinstance(legacy_current, dict) and legacy_current.get("id"):
        try:
            candidate = coerce_id(legacy_current.get("id"), "id")
        except ValidationError:
            candidate = None
        if candidate is not None and any(p["id"] == candidate for p in profiles):
            return candidate
    return profiles[0]["id"] if profiles else None


def _split_valid(items, predicate, label, skipped, warnings):
    valid = [item for item in items if predicate(item)]
    dropped = len(items) - len(valid)
    skipped[label] = dropped
    if dropped:
        warnings.append(f"{dropped} invalid {label} skipped")
    return valid


def migrate_from_legacy(db_path, legacy, *, now=None):
    """Import legacy profiles/customers/payments and settings in one transaction.

    Returns ``{"ok", "state", "migrated", "skipped", "warnings"}``. Flags are
    written only after the transaction commits; on failure no flag is set and
    the legacy data is untouched.
    """
    now = now or datetime.now(timezone.utc)
    warnings = []
    skipped = {"profiles": 0, "customers": 0, "payments": 0}
    migrated = {"profiles": 0, "customers": 0, "payments": 0}
    try:
        raw_profiles = _legacy_list(legacy, "profiles", warnings)
        raw_customers = _legacy_list(legacy, "customers", warnings)
        raw_payments = _legacy_list(legacy, "payments", warnings)
        settings = {key: legacy.get_json(key) for key in LEGACY_SETTING_KEYS}

        valid_profiles = _split_valid(raw_profiles, _valid_profile, "profiles", skipped, warnings)
        valid_customers = _split_valid(raw_customers, _valid_customer, "customers", skipped, warnings)
        valid_payments = _split_valid(raw_payments, _valid_payment, "payments", skipped, warnings)

        profiles = [_repair_profile(item, warnings) for item in _dedupe(valid_profiles, "profiles", warnings)]
        owner_id = _current_profile_id(settings.get("currentProfile"), profiles)
        customers = [_repair_customer(item, owner_id) for item in _dedupe(valid_customers, "customers", warnings)]
        payments = [_repair_payment(item) for item in _dedupe(valid_payments, "payments", warnings)]

        with record_store.transaction(db_path) as tx:
            for profile in profiles:
                insert_profile_row(tx, profile)
            for customer in customers:
                insert_customer_row(tx, customer)
            for payment in payments:
                insert_payment_row(tx, payment)
            for key, value in settings.items():
                if value:
                    insert_meta_row(tx, key, value)
    except (LedgerError, OSError, ValueError, TypeError) as exc:
        warnings.append(f"migration aborted: {exc}")
        return {"ok": False, "state": FAILED, "migrated": migrated, "skipped": skipped, "warnings": warnings}

    migrated = {"profiles": len(profiles), "customers": len(customers), "payments": len(payments)}
    legacy.set_item(MIGRATED_FLAG_KEY, "true")
    legacy.set_item(MIGRATION_DATE_KEY, now.isoformat())
    legacy.set_item(CLEANUP_AFTER_KEY, (now + timedelta(days=LEGACY_RETENTION_DAYS)).isoformat())
    legacy.remove_item(MIGRATION_FAILED_KEY)
    return {"ok": True, "state": DONE, "migrated": migrated, "skipped": skipped, "warnings": warnings}


def normalize_investment_types(db_path):
    """Rewrite legacy RECEIVED investment entries to WITHDRAWN.

    Safe to run any number of times; returns how many entries changed.
    """
    changed = 0
    with record_store.transaction(db_path) as tx:
        for profile in record_store.list_profiles(db_path, conn=tx):
            history = profile.get("investmentHistory") or []
            updated = []
            touched = False
            for entry in history:
                fixed = dict(entry)
                new_type = normalize_entry_type(fixed.get("type"))
                if new_type != fixed.get("type"):
                    fixed["type"] = new_type
                    touched = True
                    changed += 1
                updated.append(fixed)
            if touched:
                record_store.update_profile(db_path, profile["id"], {"investmentHistory": updated}, conn=tx)
    return changed


def initialize_default_profile(db_path):
    """Create the default profile when none exists and make it current.

    Customers left without an owning profile are moved into it.
    """
    with record_store.transaction(db_path) as tx:
        if record_store.count_profiles(db_path, conn=tx) > 0:
            return None
        profile = record_store.add_profile(
            db_path,
            {
                "name": DEFAULT_PROFILE_NAME,
                "description": DEFAULT_PROFILE_DESCRIPTION,
                "totalInvestment": 0,
                "investmentHistory": [],
            },
            conn=tx,
        )
        record_store.set_meta(db_path, "currentProfile", profile, conn=tx)
        for orphan in record_store.get_orphan_customers(db_path, conn=tx):
            record_store.update_customer(db_path, orphan["id"], {"profileId": profile["id"]}, conn=tx)
    return profile


def cleanup_old_legacy_data(legacy, now=None):
    """Purge legacy collections once the recorded grace period has passed."""
    raw = legacy.get_item(CLEANUP_AFTER_KEY)
    if not raw:
        return False
    try:
        cleanup_after = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return False
    if cleanup_after.tzinfo is None:
        cleanup_after = cleanup_after.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    if now <= cleanup_after:
        return False
    for key in LEGACY_COLLECTION_KEYS:
        legacy.remove_item(key)
    legacy.remove_item(CLEANUP_AFTER_KEY)
    return True


def run_migrations(ctx):
    """Startup entry point: migrate once, normalize, ensure a profile, purge legacy.

    Returns the migration result dict, or None when no migration ran.
    """
    status = ctx.migration_status
    legacy = ctx.legacy_store
    result = None
    with status.lock:
        persisted = migration_state(legacy)
        if persisted == FAILED:
            status.state = FAILED
            ctx.log_system("migration", rejection_message="previous migration failed; waiting for a forced re-run")
        elif needs_migration(legacy):
            status.state = RUNNING
            result = migrate_from_legacy(ctx.DB_PATH, legacy)
            status.warnings = list(result["warnings"])
            status.migrated = dict(result["migrated"])
            status.finished_at = now_iso()
            if result["ok"]:
                status.state = DONE
                ctx.log_system("migration", command=f"migrated={result['migrated']} skipped={result['skipped']}")
                for warning in result["warnings"]:
                    ctx.log_system("migration-warning", command=warning)
            else:
                status.state = FAILED
                legacy.set_item(MIGRATION_FAILED_KEY, status.finished_at)
                ctx.log_system("migration", rejection_message="; ".join(result["warnings"]))
        else:
            status.state = persisted

    try:
        changed = normalize_investment_types(ctx.DB_PATH)
        if changed:
            ctx.log_system("migration", command=f"normalized {changed} investment entries")
        created = initialize_default_profile(ctx.DB_PATH)
        if created is not None:
            ctx.log_system("migration", command=f"created default profile {created['id']}")
        if cleanup_old_legacy_data(legacy):
            ctx.log_system("migration", command="purged legacy collections")
    except LedgerError as exc:
        ctx.log_exception("run_migrations", exc)
    return result


def force_migration(ctx):
    """Clear the migration flags and the store, then migrate again."""
    legacy = ctx.legacy_store
    legacy.remove_item(MIGRATED_FLAG_KEY)
    legacy.remove_item(MIGRATION_FAILED_KEY)
    record_store.clear_all(ctx.DB_PATH)
    with ctx.migration_status.lock:
        ctx.migration_status.state = NOT_NEEDED
    result = run_migrations(ctx)
    if result is not None and not result["ok"]:
        raise MigrationFailure("forced migration failed", warnings=result["warnings"])
    return result
