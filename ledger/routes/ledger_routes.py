"""Health, migration and housekeeping route registration."""
from flask import request

from ledger.core import record_store
from ledger.core.errors import LedgerError, MigrationFailure
from ledger.core.response_helpers import (
    confirmation_required_response,
    error_response,
    ok_response,
)
from ledger.services.backup_scheduler import storage_used_percent
from ledger.services.migration import force_migration


def is_confirmed(req):
    """True when a destructive request carries confirm=yes in args, form, or JSON."""
    value = req.args.get("confirm") or req.form.get("confirm")
    if value is None:
        body = req.get_json(silent=True)
        if isinstance(body, dict):
            value = body.get("confirm")
    return str(value or "").strip().lower() in {"yes", "true", "1"}


def migration_status_payload(state):
    status = state.migration_status
    with status.lock:
        return {
            "state": status.state,
            "warnings": list(status.warnings),
            "migrated": dict(status.migrated),
            "finished_at": status.finished_at,
        }


def register_ledger_routes(app, state):
    """Register health, migration, and cleanup routes."""

    # Route: /api/health
    @app.route("/api/health")
    def health():
        health_info = record_store.check_database_health(state.DB_PATH, log_exception=state.log_exception)
        backup_state = state.backup_state
        with backup_state.lock:
            backup_info = {
                "automatic_runs": backup_state.automatic_runs,
                "last_attempt_at": backup_state.last_attempt_at,
                "last_trigger": backup_state.last_trigger,
                "last_error": backup_state.last_error,
                "storage_over_mark": backup_state.storage_over_mark,
            }
        return ok_response(
            database=health_info,
            storage_used_percent=storage_used_percent(state),
            migration=migration_status_payload(state),
            backup=backup_info,
        )

    # Route: /api/migration
    @app.route("/api/migration")
    def migration_status():
        return ok_response(migration=migration_status_payload(state))

    # Route: /api/migration/force
    @app.route("/api/migration/force", methods=["POST"])
    def migration_force():
        if not is_confirmed(request):
            state.log_action("migration-force", rejection_message="missing confirmation")
            return confirmation_required_response("Forced migration")
        try:
            result = force_migration(state)
        except MigrationFailure as exc:
            state.log_action("migration-force", rejection_message=str(exc))
            return error_response(exc.code, str(exc), warnings=exc.warnings)
        state.log_action("migration-force")
        return ok_response(result=result, migration=migration_status_payload(state))

    # Route: /api/cleanup
    @app.route("/api/cleanup", methods=["POST"])
    def cleanup_completed():
        keep = request.args.get("keep", type=int)
        if keep is None:
            keep = state.COMPLETED_CUSTOMERS_KEEP
        try:
            removed = record_store.cleanup(state.DB_PATH, keep=max(0, keep))
        except LedgerError as exc:
            state.log_exception("cleanup", exc)
            return error_response(exc.code, str(exc))
        state.log_action("cleanup", command=f"keep={keep} removed={removed}")
        return ok_response(removed=removed, keep=keep)
