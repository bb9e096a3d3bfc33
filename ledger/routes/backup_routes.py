"""Local snapshot, remote account, and remote backup route registration."""
import secrets

from flask import Response, jsonify, request, send_from_directory, session

from ledger.core.filesystem_utils import list_snapshot_files, safe_filename_in_dir
from ledger.core.errors import InvalidBackup, LedgerError
from ledger.core.response_helpers import (
    confirmation_required_response,
    error_response,
    ok_response,
    result_response,
)
from ledger.routes.ledger_routes import is_confirmed
from ledger.services import remote_backup
from ledger.services.snapshot import (
    BACKUP_PREFIX,
    backup_filename,
    export_snapshot,
    import_snapshot,
    parse_snapshot_text,
    restore_snapshot_file,
    serialize_snapshot,
    summarize_snapshot,
    write_snapshot_file,
)

_OAUTH_STATE_KEY = "oauth_state"


def _uploaded_snapshot_text(req):
    """Snapshot text from a multipart ``file`` field or a raw JSON body.

    Bytes that are not valid UTF-8 reject the upload instead of being patched over.
    """
    upload = req.files.get("file")
    raw = upload.read() if upload is not None else req.get_data()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidBackup(f"backup file is not valid UTF-8 text (byte {exc.start})") from exc


def register_backup_routes(app, state):
    """Register export/import, account, and remote backup routes."""

    # Route: /api/export
    @app.route("/api/export")
    def export_download():
        doc = export_snapshot(state.DB_PATH)
        state.log_action("export-download")
        return Response(
            serialize_snapshot(doc),
            mimetype="application/json",
            headers={"Content-Disposition": f'attachment; filename="{backup_filename()}"'},
        )

    # Route: /api/exports
    @app.route("/api/exports", methods=["GET", "POST"])
    def local_exports():
        if request.method == "POST":
            path = write_snapshot_file(state.DB_PATH, state.EXPORT_DIR)
            state.log_action("export-local", command=path.name)
            return ok_response(filename=path.name)
        items = list_snapshot_files(state.EXPORT_DIR, f"{BACKUP_PREFIX}*.json", state.DISPLAY_TZ)
        return ok_response(files=items)

    # Route: /api/exports/<filename>
    @app.route("/api/exports/<filename>")
    def local_export_file(filename):
        safe_name = safe_filename_in_dir(state.EXPORT_DIR, filename)
        if safe_name is None:
            return error_response("not_found", "File not found.")
        return send_from_directory(str(state.EXPORT_DIR), safe_name, as_attachment=True)

    # Route: /api/exports/<filename>/restore
    @app.route("/api/exports/<filename>/restore", methods=["POST"])
    def local_export_restore(filename):
        safe_name = safe_filename_in_dir(state.EXPORT_DIR, filename)
        if safe_name is None:
            state.log_action("restore-local", command=filename, rejection_message="File not found or invalid path.")
            return error_response("not_found", "File not found.")
        if not is_confirmed(request):
            return confirmation_required_response("Restore")
        if not restore_snapshot_file(state.DB_PATH, state.EXPORT_DIR / safe_name, log_exception=state.log_exception):
            state.log_action("restore-local", command=safe_name, rejection_message="invalid backup")
            return error_response("invalid_backup", "Backup could not be imported; local data is unchanged.")
        state.log_action("restore-local", command=safe_name)
        return ok_response(filename=safe_name)

    # Route: /api/import
    @app.route("/api/import", methods=["POST"])
    def import_upload():
        try:
            doc = parse_snapshot_text(_uploaded_snapshot_text(request))
        except LedgerError as exc:
            state.log_action("import", rejection_message=str(exc))
            return error_response(exc.code, str(exc))
        summary = summarize_snapshot(doc)
        if not is_confirmed(request):
            return error_response(
                "confirmation_required",
                "Import replaces local data. Resend with confirm=yes to proceed.",
                summary=summary,
            )
        if not import_snapshot(state.DB_PATH, doc, log_exception=state.log_exception):
            state.log_action("import", rejection_message="invalid backup")
            return error_response("invalid_backup", "Backup could not be imported; local data is unchanged.", summary=summary)
        state.log_action("import", command=f"profiles={summary['profiles']} customers={summary['customers']}")
        return ok_response(summary=summary)

    # Route: /api/accounts
    @app.route("/api/accounts")
    def accounts_list():
        return ok_response(accounts=remote_backup.list_accounts(state))

    # Route: /api/accounts/<account_id>
    @app.route("/api/accounts/<account_id>", methods=["DELETE"])
    def accounts_remove(account_id):
        return result_response(remote_backup.remove_account(state, account_id))

    # Route: /api/accounts/<account_id>/quota
    @app.route("/api/accounts/<account_id>/quota", methods=["POST"])
    def accounts_quota(account_id):
        return result_response(remote_backup.refresh_quota(state, account_id))

    # Route: /api/auth/url
    @app.route("/api/auth/url")
    def auth_url():
        token = secrets.token_urlsafe(24)
        session[_OAUTH_STATE_KEY] = token
        return ok_response(url=state.drive_client.authorization_url(token))

    # Route: /auth/callback
    @app.route("/auth/callback")
    def auth_callback():
        provider_error = request.args.get("error")
        if provider_error:
            state.log_action("account-add", rejection_message=f"provider error: {provider_error}")
            return error_response("auth_failed", f"Authorization was not granted: {provider_error}")
        expected = session.pop(_OAUTH_STATE_KEY, None)
        returned = request.args.get("state")
        if expected and returned != expected:
            state.log_action("account-add", rejection_message="oauth state mismatch")
            return error_response("auth_failed", "Authorization state mismatch. Please try again.")
        return result_response(remote_backup.add_account_from_code(state, request.args.get("code", "")))

    # Route: /api/remote/backup
    @app.route("/api/remote/backup", methods=["POST"])
    def remote_backup_now():
        body = request.get_json(silent=True) or {}
        account_id = request.args.get("account_id") or body.get("account_id") or None
        backup_state = state.backup_state
        if not backup_state.run_lock.acquire(blocking=False):
            return error_response("backup_running", "A backup is already running.")
        try:
            result = remote_backup.backup_to_remote(state, account_id=account_id, trigger="manual")
        finally:
            backup_state.run_lock.release()
        return result_response(result)

    # Route: /api/remote/backups
    @app.route("/api/remote/backups")
    def remote_backups_list():
        result = remote_backup.list_remote_backups(state, account_id=request.args.get("account_id") or None)
        if not result.get("ok") and "backups" in result:
            return jsonify(result), 502
        return result_response(result)

    # Route: /api/remote/backups/<account_id>/<file_id>/preview
    @app.route("/api/remote/backups/<account_id>/<file_id>/preview")
    def remote_backup_preview(account_id, file_id):
        return result_response(remote_backup.preview_remote_backup(state, account_id, file_id))

    # Route: /api/remote/backups/<account_id>/<file_id>/restore
    @app.route("/api/remote/backups/<account_id>/<file_id>/restore", methods=["POST"])
    def remote_backup_restore(account_id, file_id):
        confirm = True if is_confirmed(request) else None
        return result_response(remote_backup.restore_from_remote(state, account_id, file_id, confirm=confirm))
