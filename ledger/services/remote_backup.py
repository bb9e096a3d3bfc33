"""Multi-account remote backup: registry, destination choice, upload, retention, restore.

Public functions never raise. They return result dicts shaped like
``{"ok": bool, "error": code, "message": text, ...}`` so scheduled runs
cannot take the process down and callers decide what to show the user.
"""

from __future__ import annotations

import time
import uuid

from ledger.core import accounts_registry
from ledger.core.errors import (
    AuthError,
    LedgerError,
    NetworkError,
    NoAccountError,
    QuotaExceeded,
    ValidationError,
)
from ledger.core.record_store_core import new_record_id, now_iso
from ledger.services.snapshot import (
    BACKUP_PREFIX,
    backup_filename,
    export_snapshot,
    filter_completed,
    import_snapshot,
    parse_snapshot_text,
    serialize_snapshot,
    summarize_snapshot,
)

TOKEN_REFRESH_MARGIN_SECONDS = 5 * 60
DEFAULT_KEEP = 10
BACKUP_FOLDER_NAME = "MA_Installment_Backups"
_TOKEN_FIELDS = ("accessToken", "refreshToken")


def _ok(**payload):
    result = {"ok": True}
    result.update(payload)
    return result


def _failed(ctx, action, exc):
    """Log a caught error and convert it into a failure result."""
    if isinstance(exc, LedgerError):
        code = exc.code
        ctx.log_system(action, rejection_message=f"{code}: {exc}")
    else:
        code = "internal_error"
        ctx.log_exception(action, exc)
    return {"ok": False, "error": code, "message": str(exc) or code}


def public_account_view(account):
    """Account fields safe to show; credentials are stripped."""
    view = {key: value for key, value in account.items() if key not in _TOKEN_FIELDS}
    view["available"] = available_space(account)
    return view


def available_space(account):
    """Free bytes, or None when the account reports no limit (or none is known)."""
    total = int(account.get("quotaTotal") or 0)
    if total <= 0:
        return None
    return total - int(account.get("quotaUsed") or 0)


def _space_rank(account):
    space = available_space(account)
    return float("inf") if space is None else space


def select_destination(accounts):
    """Pick the account with the most free space.

    Accounts without a known limit rank above every limited one. Raises
    NoAccountError for an empty registry, AuthError when every account needs
    re-authorization, and QuotaExceeded when none has space left.
    """
    if not accounts:
        raise NoAccountError("no remote account connected")
    usable = [account for account in accounts if not account.get("needsReauth")]
    if not usable:
        raise AuthError("every remote account needs re-authorization")
    with_space = [account for account in usable if _space_rank(account) > 0]
    if not with_space:
        raise QuotaExceeded("no remote account has free space")
    return max(with_space, key=_space_rank)


def needs_token_refresh(account, now=None):
    now = time.time() if now is None else now
    return now >= float(account.get("expiresAt") or 0) - TOKEN_REFRESH_MARGIN_SECONDS


def ensure_fresh_token(ctx, account, now=None):
    """Refresh the access token when it expires within five minutes.

    The new token and expiry are written back to the registry. A rejected
    grant marks the account as needing re-authorization and raises AuthError;
    NetworkError propagates untouched so the next run simply tries again.
    """
    now = time.time() if now is None else now
    if not needs_token_refresh(account, now):
        return account
    try:
        tokens = ctx.drive_client.refresh_access_token(account.get("refreshToken"))
    except AuthError as exc:
        accounts_registry.update_account(ctx.DB_PATH, account["id"], {"needsReauth": True})
        raise AuthError(f"token refresh failed for {account.get('email')}: {exc}") from exc
    changes = {
        "accessToken": tokens["access_token"],
        "expiresAt": now + float(tokens.get("expires_in") or 3600),
        "needsReauth": False,
    }
    if tokens.get("refresh_token"):
        changes["refreshToken"] = tokens["refresh_token"]
    updated = accounts_registry.update_account(ctx.DB_PATH, account["id"], changes)
    ctx.log_system("token-refresh", command=account.get("email"))
    return updated or dict(account, **changes)


def _authorized(ctx, account, call):
    """Run ``call(access_token)``; a rejected token flags the account."""
    try:
        return call(account["accessToken"])
    except AuthError:
        accounts_registry.update_account(ctx.DB_PATH, account["id"], {"needsReauth": True})
        raise


def _require_account(ctx, account_id):
    account = accounts_registry.get_account(ctx.DB_PATH, account_id)
    if account is None:
        raise NoAccountError(f"remote account {account_id} is not registered")
    return account


def _backup_folder(ctx, account, refresh=False):
    """Return ``(account, folder_id)`` for the app folder holding this account's backups.

    The folder id is cached on the account; ``refresh`` looks it up again.
    """
    if account.get("folderId") and not refresh:
        return account, account["folderId"]
    folder_id = _authorized(
        ctx, account, lambda token: ctx.drive_client.find_or_create_folder(token, BACKUP_FOLDER_NAME)
    )
    updated = accounts_registry.update_account(ctx.DB_PATH, account["id"], {"folderId": folder_id})
    return (updated or dict(account, folderId=folder_id)), folder_id


def _list_backup_files(ctx, account):
    account, folder_id = _backup_folder(ctx, account)
    files = _authorized(
        ctx, account, lambda token: ctx.drive_client.list_files(token, BACKUP_PREFIX, folder_id=folder_id)
    )
    return _backup_files(files)


def _upload_backup(ctx, account, name, content):
    """Upload into the app folder; returns ``(account, created_file)``."""
    account, folder_id = _backup_folder(ctx, account)
    try:
        return account, _authorized(
            ctx, account, lambda token: ctx.drive_client.upload_file(token, name, content, folder_id=folder_id)
        )
    except NetworkError as exc:
        if exc.status_code != 404:
            raise
    # Cached folder was deleted on the remote side.
    account, fresh_id = _backup_folder(ctx, account, refresh=True)
    return account, _authorized(
        ctx, account, lambda token: ctx.drive_client.upload_file(token, name, content, folder_id=fresh_id)
    )


def list_accounts(ctx):
    return [public_account_view(account) for account in accounts_registry.load_accounts(ctx.DB_PATH)]


def add_account(ctx, account):
    """Register an already-authorized account; duplicate emails are rejected."""
    try:
        item = dict(account or {})
        item.setdefault("id", f"drive_{new_record_id()}")
        item.setdefault("addedAt", now_iso())
        if not accounts_registry.insert_account(ctx.DB_PATH, item):
            return {"ok": False, "error": "duplicate_account", "message": f"{item.get('email')} is already connected"}
        ctx.log_action("account-add", command=item.get("email"))
        return _ok(account=public_account_view(accounts_registry.normalize_account(item)))
    except Exception as exc:
        return _failed(ctx, "account-add", exc)


def add_account_from_code(ctx, code, now=None):
    """Exchange an OAuth authorization code and register the resulting account.

    An existing account flagged for re-authorization takes the new tokens
    instead of being rejected as a duplicate.
    """
    now = time.time() if now is None else now
    try:
        if not str(code or "").strip():
            raise ValidationError("authorization code is required")
        client = ctx.drive_client
        tokens = client.exchange_code(code)
        access_token = tokens["access_token"]
        info = client.get_user_info(access_token)
        email = str(info.get("email") or "").strip().lower()
        if not email:
            raise AuthError("provider did not return an account email")
        try:
            quota = client.get_quota(access_token)
        except LedgerError as exc:
            ctx.log_system("account-quota", rejection_message=str(exc))
            quota = {"used": 0, "total": None}
        token_fields = {
            "accessToken": access_token,
            "expiresAt": now + float(tokens.get("expires_in") or 3600),
            "quotaUsed": quota["used"],
            "quotaTotal": quota["total"],
            "needsReauth": False,
        }
        if tokens.get("refresh_token"):
            token_fields["refreshToken"] = tokens["refresh_token"]

        existing = accounts_registry.find_account_by_email(ctx.DB_PATH, email)
        if existing is not None and existing.get("needsReauth"):
            updated = accounts_registry.update_account(ctx.DB_PATH, existing["id"], token_fields)
            ctx.log_action("account-reauth", command=email)
            return _ok(account=public_account_view(updated), reauthorized=True)

        return add_account(
            ctx,
            dict(
                token_fields,
                id=f"drive_{new_record_id()}",
                email=email,
                name=str(info.get("name") or email),
                refreshToken=tokens.get("refresh_token") or "",
            ),
        )
    except Exception as exc:
        return _failed(ctx, "account-add", exc)


def remove_account(ctx, account_id):
    """Forget an account; its remote backup files stay where they are."""
    try:
        if not accounts_registry.delete_account(ctx.DB_PATH, account_id):
            return {"ok": False, "error": "not_found", "message": f"remote account {account_id} is not registered"}
        ctx.log_action("account-remove", command=str(account_id))
        return _ok(account_id=account_id)
    except Exception as exc:
        return _failed(ctx, "account-remove", exc)


def refresh_quota(ctx, account_id, now=None):
    try:
        account = ensure_fresh_token(ctx, _require_account(ctx, account_id), now)
        quota = _authorized(ctx, account, ctx.drive_client.get_quota)
        updated = accounts_registry.update_account(
            ctx.DB_PATH,
            account_id,
            {"quotaUsed": quota["used"], "quotaTotal": quota["total"]},
        )
        return _ok(account=public_account_view(updated))
    except Exception as exc:
        return _failed(ctx, "account-quota", exc)


def remote_backup_filename(now=None):
    """Unique remote object name carrying the backup prefix."""
    return backup_filename(now, suffix=uuid.uuid4().hex[:8])


def _backup_files(files):
    items = [item for item in files if str(item.get("name") or "").startswith(BACKUP_PREFIX)]
    items.sort(key=lambda item: str(item.get("createdTime") or ""), reverse=True)
    return items


def enforce_retention(ctx, account, keep=None, now=None):
    """Delete backups beyond the newest ``keep`` in one account; returns the count."""
    keep = DEFAULT_KEEP if keep is None else max(1, int(keep))
    account = ensure_fresh_token(ctx, account, now)
    files = _list_backup_files(ctx, account)
    doomed = files[keep:]
    for item in doomed:
        _authorized(ctx, account, lambda token, file_id=item["id"]: ctx.drive_client.delete_file(token, file_id))
    if doomed:
        ctx.log_system("backup-retention", command=f"{account.get('email')} deleted={len(doomed)}")
    return len(doomed)


def backup_to_remote(ctx, account_id=None, trigger="manual", now=None):
    """Upload a snapshot (completed customers excluded) and rotate old backups.

    Without ``account_id`` the destination is the account with the most free
    space, read fresh from the registry.
    """
    action = f"remote-backup/{trigger}"
    try:
        if account_id:
            account = _require_account(ctx, account_id)
        else:
            account = select_destination(accounts_registry.load_accounts(ctx.DB_PATH))
        account = ensure_fresh_token(ctx, account, now)
        doc = filter_completed(export_snapshot(ctx.DB_PATH))
        content = serialize_snapshot(doc)
        name = remote_backup_filename()
        account, created = _upload_backup(ctx, account, name, content)
        size = len(content.encode("utf-8"))
        accounts_registry.update_account(
            ctx.DB_PATH,
            account["id"],
            {"lastBackup": now_iso(), "quotaUsed": int(account.get("quotaUsed") or 0) + size},
        )
        ctx.log_action(action, command=f"{account.get('email')} {name}")
    except Exception as exc:
        return _failed(ctx, action, exc)

    deleted = 0
    keep = getattr(ctx, "REMOTE_BACKUP_KEEP", DEFAULT_KEEP)
    try:
        deleted = enforce_retention(ctx, account, keep=keep, now=now)
    except Exception as exc:
        # The next successful run deletes whatever is left over.
        _failed(ctx, "backup-retention", exc)
    return _ok(
        account_id=account["id"],
        email=account.get("email"),
        file={"id": created.get("id"), "name": created.get("name") or name},
        size=size,
        deleted=deleted,
    )


def list_remote_backups(ctx, account_id=None, now=None):
    """Backups across accounts (or one account), newest first, tagged with their account."""
    try:
        if account_id:
            accounts = [_require_account(ctx, account_id)]
        else:
            accounts = accounts_registry.load_accounts(ctx.DB_PATH)
        if not accounts:
            raise NoAccountError("no remote account connected")
    except Exception as exc:
        return _failed(ctx, "remote-list", exc)

    backups = []
    errors = []
    for account in accounts:
        try:
            account = ensure_fresh_token(ctx, account, now)
            files = _list_backup_files(ctx, account)
        except Exception as exc:
            errors.append(dict(_failed(ctx, "remote-list", exc), account_id=account["id"]))
            continue
        for item in files:
            backups.append({
                "id": item.get("id"),
                "name": item.get("name"),
                "size": int(item.get("size") or 0),
                "createdTime": item.get("createdTime"),
                "accountId": account["id"],
                "email": account.get("email"),
            })
    backups.sort(key=lambda item: str(item.get("createdTime") or ""), reverse=True)
    return {"ok": len(errors) < len(accounts), "backups": backups, "errors": errors}


def _download_snapshot(ctx, account_id, file_id, now=None):
    account = ensure_fresh_token(ctx, _require_account(ctx, account_id), now)
    text = _authorized(ctx, account, lambda token: ctx.drive_client.download_file(token, file_id))
    return parse_snapshot_text(text)


def preview_remote_backup(ctx, account_id, file_id, now=None):
    """Download a backup and return its summary without touching local data."""
    try:
        doc = _download_snapshot(ctx, account_id, file_id, now)
        return _ok(summary=summarize_snapshot(doc))
    except Exception as exc:
        return _failed(ctx, "remote-preview", exc)


def restore_from_remote(ctx, account_id, file_id, confirm=None, now=None):
    """Replace local data with a remote backup.

    Destructive, so ``confirm`` is mandatory: either ``True`` (the caller has
    already asked the user) or a callable that receives the backup summary
    and returns whether to proceed.
    """
    if confirm is None or confirm is False:
        return {"ok": False, "error": "confirmation_required", "message": "Restore replaces all local data and must be confirmed."}
    try:
        doc = _download_snapshot(ctx, account_id, file_id, now)
    except Exception as exc:
        return _failed(ctx, "remote-restore", exc)
    summary = summarize_snapshot(doc)
    if callable(confirm):
        try:
            approved = confirm(summary)
        except Exception as exc:
            return dict(_failed(ctx, "remote-restore", exc), summary=summary)
        if not approved:
            ctx.log_action("remote-restore", command=str(file_id), rejection_message="cancelled by user")
            return {"ok": False, "error": "cancelled", "message": "Restore cancelled.", "summary": summary}
    elif confirm is not True:
        return {"ok": False, "error": "confirmation_required", "message": "Restore replaces all local data and must be confirmed."}
    if not import_snapshot(ctx.DB_PATH, doc, log_exception=ctx.log_exception):
        return {"ok": False, "error": "invalid_backup", "message": "Backup could not be imported; local data is unchanged.", "summary": summary}
    ctx.log_action("remote-restore", command=f"{account_id} {file_id}")
    return _ok(summary=summary)
