"""Local-first ledger backup service.

This app provides:
- Record store over SQLite with a one-time migration from the legacy store
- Local snapshot export/import
- Multi-account remote backups with retention and confirmed restore
- Automatic backups on an interval or when local storage runs high
"""

import secrets
import threading
from pathlib import Path
from zoneinfo import ZoneInfo

from flask import Flask, has_request_context, request
from werkzeug.exceptions import HTTPException

from ledger.core import record_store
from ledger.core.legacy_store import LegacyStore
from ledger.core.logging_setup import build_loggers
from ledger.core.response_helpers import internal_error_response
from ledger.core.web_config import WebConfig
from ledger.routes.backup_routes import register_backup_routes
from ledger.routes.ledger_routes import register_ledger_routes
from ledger.services.backup_scheduler import start_backup_scheduler_once
from ledger.services.drive_client import DriveClient
from ledger.services.migration import run_migrations
from ledger.state import AppState, BackupState, MigrationStatus

APP_DIR = Path(__file__).resolve().parent.parent
CONFIG_FILE_NAME = "ledger.env"


def _display_tz(name):
    try:
        return ZoneInfo(name)
    except Exception:
        return ZoneInfo("UTC")


def build_state(config, base_dir, drive_client=None):
    """Read configuration and assemble the runtime state mapping."""
    cfg_str = config.get_str
    cfg_int = config.get_int
    cfg_float = config.get_float
    cfg_path = config.get_path

    data_dir = cfg_path("DATA_DIR", base_dir / "data")
    log_dir = cfg_path("LOG_DIR", base_dir / "logs")
    display_tz = _display_tz(cfg_str("DISPLAY_TZ", "UTC"))
    log_action, log_system, log_exception = build_loggers(display_tz, log_dir)

    if drive_client is None:
        drive_client = DriveClient(
            config.environ.get("GOOGLE_CLIENT_ID") or cfg_str("GOOGLE_CLIENT_ID", ""),
            config.environ.get("GOOGLE_CLIENT_SECRET") or cfg_str("GOOGLE_CLIENT_SECRET", ""),
            cfg_str("OAUTH_REDIRECT_URI", "http://127.0.0.1:8080/auth/callback"),
            timeout=cfg_float("HTTP_TIMEOUT_SECONDS", 30.0, minimum=1.0),
        )

    interval_hours = cfg_float("AUTO_BACKUP_INTERVAL_HOURS", 24.0, minimum=1 / 60.0)
    namespace = {
        "APP_DIR": base_dir,
        "AUTO_BACKUP_CHECK_SECONDS": cfg_int("AUTO_BACKUP_CHECK_SECONDS", 3600, minimum=1),
        "AUTO_BACKUP_ENABLED": config.get_bool("AUTO_BACKUP_ENABLED", True),
        "AUTO_BACKUP_INTERVAL_SECONDS": max(60, int(interval_hours * 3600)),
        "COMPLETED_CUSTOMERS_KEEP": cfg_int("COMPLETED_CUSTOMERS_KEEP", 100, minimum=0),
        "DB_PATH": cfg_path("DB_PATH", data_dir / "ledger.sqlite3"),
        "DISPLAY_TZ": display_tz,
        "EXPORT_DIR": cfg_path("EXPORT_DIR", data_dir / "exports"),
        "LEGACY_STORE_PATH": cfg_path("LEGACY_STORE_PATH", data_dir / "legacy-store.json"),
        "LOG_DIR": log_dir,
        "REMOTE_BACKUP_KEEP": cfg_int("REMOTE_BACKUP_KEEP", 10, minimum=1),
        # Assumed storage quota the high-water mark is measured against.
        "STORAGE_CAPACITY_BYTES": cfg_int("STORAGE_CAPACITY_BYTES", 50 * 1024 * 1024, minimum=0),
        "STORAGE_HIGH_WATER_PERCENT": cfg_int("STORAGE_HIGH_WATER_PERCENT", 70, minimum=70, maximum=90),
        "backup_state": BackupState(lock=threading.Lock(), run_lock=threading.Lock()),
        "migration_status": MigrationStatus(lock=threading.Lock()),
        "drive_client": drive_client,
        "log_action": log_action,
        "log_exception": log_exception,
        "log_system": log_system,
    }
    namespace["legacy_store"] = LegacyStore(namespace["LEGACY_STORE_PATH"])
    return AppState.from_namespace(namespace)


def build_app(config_path=None, base_dir=None, drive_client=None, start_background=True, environ=None):
    """Create the Flask app, open the store, run startup migrations, start the scheduler."""
    base_dir = Path(base_dir) if base_dir is not None else APP_DIR
    config_path = Path(config_path) if config_path is not None else base_dir / CONFIG_FILE_NAME
    config = WebConfig(config_path, base_dir, environ=environ)
    state = build_state(config, base_dir, drive_client=drive_client)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.get_str("SECRET_KEY", "") or secrets.token_hex(32)
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["LEDGER_STATE"] = state
    app.config["WEB_HOST"] = config.get_str("WEB_HOST", "127.0.0.1")
    app.config["WEB_PORT"] = config.get_int("WEB_PORT", 8080, minimum=1)

    @app.errorhandler(Exception)
    def _unhandled_exception_handler(exc):
        if isinstance(exc, HTTPException):
            return exc
        path = request.path if has_request_context() else "unknown-path"
        state.log_exception(f"unhandled_exception path={path}", exc)
        return internal_error_response()

    record_store.initialize_record_store(db_path=state.DB_PATH, log_exception=state.log_exception)
    run_migrations(state)
    register_ledger_routes(app, state)
    register_backup_routes(app, state)
    if start_background and state.AUTO_BACKUP_ENABLED:
        start_backup_scheduler_once(state)
    state.log_system("boot", command=f"db={state.DB_PATH}")
    return app


def run_server():
    app = build_app()
    state = app.config["LEDGER_STATE"]
    try:
        app.run(host=app.config["WEB_HOST"], port=app.config["WEB_PORT"])
    except Exception as exc:
        state.log_exception("ledger_main", exc)
        raise


if __name__ == "__main__":
    run_server()
