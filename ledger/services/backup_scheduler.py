"""Automatic remote backup scheduler."""
import threading
import time
from datetime import datetime

from ledger.core import accounts_registry, record_store
from ledger.services.remote_backup import backup_to_remote

_scheduler_start_lock = threading.Lock()
_scheduler_started = False


def _iso_to_epoch(value):
    text = str(value or "").strip()
    if not text:
        return 0.0
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def storage_used_percent(ctx):
    """Local store size as a percentage of the configured capacity, or None."""
    capacity = int(ctx.STORAGE_CAPACITY_BYTES or 0)
    if capacity <= 0:
        return None
    size = record_store.get_storage_size(ctx.DB_PATH)
    return (size / capacity) * 100.0


def last_backup_epoch(ctx, accounts):
    """Newest of the last automatic attempt and any account's last successful upload."""
    with ctx.backup_state.lock:
        newest = float(ctx.backup_state.last_attempt_at or 0.0)
    for account in accounts:
        newest = max(newest, _iso_to_epoch(account.get("lastBackup")))
    return newest


def storage_over_mark(ctx):
    used = storage_used_percent(ctx)
    return used is not None and used >= ctx.STORAGE_HIGH_WATER_PERCENT


def backup_due_reason(ctx, accounts, now, over_mark=None):
    """Return "interval", "storage", or "" when no backup is due.

    The storage trigger fires only on the check where usage first reaches the
    high-water mark; it re-arms once a check sees usage below the mark again.
    """
    if over_mark is None:
        over_mark = storage_over_mark(ctx)
    if now - last_backup_epoch(ctx, accounts) >= ctx.AUTO_BACKUP_INTERVAL_SECONDS:
        return "interval"
    with ctx.backup_state.lock:
        was_over = ctx.backup_state.storage_over_mark
    if over_mark and not was_over:
        return "storage"
    return ""


def auto_backup_tick(ctx, now=None):
    """Run one scheduler check; returns the backup result or None when nothing ran."""
    now = time.time() if now is None else now
    accounts = accounts_registry.load_accounts(ctx.DB_PATH)
    if not accounts:
        return None
    backup_state = ctx.backup_state
    over_mark = storage_over_mark(ctx)
    reason = backup_due_reason(ctx, accounts, now, over_mark)
    if not reason:
        with backup_state.lock:
            backup_state.storage_over_mark = over_mark
        return None

    # Non-blocking so a manual backup in flight is not queued behind.
    # A pending crossing stays pending until a check actually runs a backup.
    if not backup_state.run_lock.acquire(blocking=False):
        ctx.log_system("auto-backup", command=f"trigger={reason}", rejection_message="backup already running")
        return None
    try:
        with backup_state.lock:
            backup_state.last_attempt_at = now
            backup_state.last_trigger = reason
            backup_state.storage_over_mark = over_mark
        result = backup_to_remote(ctx, trigger=f"auto:{reason}")
        with backup_state.lock:
            backup_state.automatic_runs += 1
            backup_state.last_error = "" if result.get("ok") else str(result.get("message") or result.get("error"))
        if not result.get("ok"):
            ctx.log_system("auto-backup-warning", command=f"trigger={reason}", rejection_message=result.get("message"))
        return result
    finally:
        backup_state.run_lock.release()


def _scheduler_loop(ctx):
    while True:
        try:
            auto_backup_tick(ctx)
        except Exception as exc:
            ctx.log_exception("auto_backup_tick", exc)
        time.sleep(max(1, int(ctx.AUTO_BACKUP_CHECK_SECONDS)))


def start_backup_scheduler_once(ctx):
    """Start the scheduler thread unless it already runs in this process."""
    global _scheduler_started
    with _scheduler_start_lock:
        if _scheduler_started:
            return False
        thread = threading.Thread(target=_scheduler_loop, args=(ctx,), daemon=True, name="auto-backup-scheduler")
        thread.start()
        _scheduler_started = True
        return True
