"""Line-oriented action and error logs for the ledger service."""

from datetime import datetime
import os
import traceback
from flask import request, has_request_context

LOG_ROTATE_MAX_BYTES = 5 * 1024 * 1024
LOG_ROTATE_BACKUP_COUNT = 5
TRACEBACK_CHARS = 700
BACKGROUND_CLIENT = "ledger"


def one_line(text):
    """Collapse whitespace so a value cannot split or forge a log line."""
    return " ".join(str(text or "").split())


def request_client():
    """Caller address for HTTP-triggered events; background jobs log as ``ledger``."""
    if not has_request_context():
        return BACKGROUND_CLIENT
    forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return forwarded or (request.remote_addr or "").strip() or BACKGROUND_CLIENT


def format_log_line(when, client, action, detail=None, rejection=None):
    """``Oct 16 10:00:00 <client> [ledger/action] detail rejected: reason``."""
    line = f"{when:%b %d %H:%M:%S} <{one_line(client) or 'unknown'}> [ledger/{one_line(action) or 'unknown'}]"
    detail = one_line(detail)
    if detail:
        line += f" {detail}"
    rejection = one_line(rejection)
    if rejection:
        line += f" rejected: {rejection}"
    return line


def _shift_rotations(log_file, keep):
    """Move ``x.log.N`` up by one, oldest dropped, then ``x.log`` to ``x.log.1``."""
    for idx in range(keep - 1, 0, -1):
        older = log_file.with_name(f"{log_file.name}.{idx}")
        if older.exists():
            os.replace(older, log_file.with_name(f"{log_file.name}.{idx + 1}"))
    os.replace(log_file, log_file.with_name(f"{log_file.name}.1"))


def append_log_line(log_file, line, max_bytes=LOG_ROTATE_MAX_BYTES, keep=LOG_ROTATE_BACKUP_COUNT):
    """Append ``line`` and rotate first when the file is full. Returns False on I/O errors."""
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        if max_bytes > 0 and keep > 0 and log_file.exists() and log_file.stat().st_size >= max_bytes:
            _shift_rotations(log_file, keep)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except OSError:
        return False
    return True


def make_log_action(display_tz, log_file):
    """Return ``log_action(action, command=None, rejection_message=None)`` bound to one file."""

    def log_action(action, command=None, rejection_message=None):
        line = format_log_line(datetime.now(tz=display_tz), request_client(), action, command, rejection_message)
        # A full disk must not fail the write that is being logged.
        append_log_line(log_file, line)

    return log_action


def describe_exception(context, exc):
    """``context: Type: message | traceback: ...`` trimmed to one line."""
    summary = f"{context}: {type(exc).__name__}"
    text = one_line(exc)
    if text:
        summary += f": {text}"
    frames = one_line(" | ".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    if frames:
        summary += f" | traceback: {frames[:TRACEBACK_CHARS]}"
    return summary


def make_log_exception(log_action):
    """Return ``log_exception(context, exc)`` writing through ``log_action`` as ``error``."""

    def log_exception(context, exc):
        log_action("error", rejection_message=describe_exception(context, exc))

    return log_exception
