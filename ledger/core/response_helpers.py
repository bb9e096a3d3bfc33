"""Shared Flask JSON response helpers."""

from flask import jsonify

# HTTP status for each result error code.
ERROR_STATUS = {
    "confirmation_required": 400,
    "invalid_backup": 400,
    "invalid_record": 400,
    "auth_failed": 401,
    "not_found": 404,
    "no_account": 404,
    "duplicate_account": 409,
    "backup_running": 409,
    "cancelled": 409,
    "migration_failed": 500,
    "transaction_failed": 500,
    "internal_error": 500,
    "network_error": 502,
    "quota_exceeded": 507,
}


def ok_response(**payload):
    """Return a success payload."""
    body = {"ok": True}
    body.update(payload)
    return jsonify(body)


def error_response(error, message, status_code=None, **payload):
    """Return a failure payload; status defaults from the error code."""
    body = {"ok": False, "error": error, "message": message}
    body.update(payload)
    return jsonify(body), status_code or ERROR_STATUS.get(error, 400)


def result_response(result):
    """Render a service result dict, picking the status from its error code."""
    if result.get("ok"):
        return jsonify(result)
    return jsonify(result), ERROR_STATUS.get(result.get("error"), 400)


def confirmation_required_response(action):
    """Return the standard refusal for destructive calls sent without confirm=yes."""
    return error_response(
        "confirmation_required",
        f"{action} replaces local data. Resend with confirm=yes to proceed.",
    )


def internal_error_response():
    """Return generic internal-error response payload."""
    return error_response("internal_error", "Internal server error.", 500)
