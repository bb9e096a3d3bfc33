"""HTTP client for the remote backup provider (Google Drive v3 + OAuth token endpoint).

Every method raises ``AuthError`` for rejected credentials and
``NetworkError`` for transport failures or other non-success responses;
callers in ``remote_backup`` turn those into result dicts.
"""

from __future__ import annotations

import json
import uuid

import httpx

from ledger.core.errors import AuthError, NetworkError

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"
DRIVE_ABOUT_URL = "https://www.googleapis.com/drive/v3/about"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
FILE_FIELDS = "nextPageToken,files(id,name,size,createdTime,modifiedTime,mimeType)"
OAUTH_SCOPES = (
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)


class DriveClient:
    """Thin synchronous wrapper over the provider REST endpoints."""

    def __init__(self, client_id, client_secret, redirect_uri, *, timeout=30.0, transport=None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.transport = transport

    def _client(self):
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def _send(self, method, url, *, access_token=None, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            with self._client() as client:
                response = client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise NetworkError(f"{method} {url} failed: {exc}") from exc
        if response.status_code in (401, 403):
            raise AuthError(f"{method} {url} rejected credentials ({response.status_code})")
        if response.status_code >= 400:
            raise NetworkError(
                f"{method} {url} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response):
        try:
            payload = response.json()
        except ValueError as exc:
            raise NetworkError(f"provider returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise NetworkError("provider returned an unexpected payload")
        return payload

    def _token_request(self, form):
        form = dict(form, client_id=self.client_id, client_secret=self.client_secret)
        try:
            response = self._send("POST", TOKEN_URL, data=form)
        except NetworkError as exc:
            # The token endpoint reports revoked/expired grants as 400.
            if exc.status_code == 400:
                raise AuthError(f"token grant rejected: {exc}") from exc
            raise
        payload = self._json(response)
        if not payload.get("access_token"):
            raise AuthError("token response carried no access_token")
        return payload

    def authorization_url(self, state=""):
        """Consent URL that sends the user back to ``redirect_uri`` with a code."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(OAUTH_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return str(httpx.URL(AUTH_URL, params=params))

    def exchange_code(self, code):
        """Trade an authorization code for ``access_token``/``refresh_token``/``expires_in``."""
        return self._token_request({
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        })

    def refresh_access_token(self, refresh_token):
        if not refresh_token:
            raise AuthError("account has no refresh token")
        return self._token_request({
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        })

    def get_user_info(self, access_token):
        return self._json(self._send("GET", USERINFO_URL, access_token=access_token))

    def get_quota(self, access_token):
        """Return ``{"used": bytes, "total": bytes or None}``; None means no limit reported."""
        payload = self._json(
            self._send("GET", DRIVE_ABOUT_URL, access_token=access_token, params={"fields": "storageQuota"})
        )
        quota = payload.get("storageQuota") or {}
        limit = int(quota.get("limit") or 0)
        return {
            "used": int(quota.get("usage") or 0),
            "total": limit if limit > 0 else None,
        }

    def find_or_create_folder(self, access_token, name):
        """Id of the non-trashed folder called ``name``, created when missing."""
        params = {
            "q": f"name = '{name}' and mimeType = '{FOLDER_MIME_TYPE}' and trashed = false",
            "fields": "files(id,name)",
            "pageSize": 1,
        }
        payload = self._json(self._send("GET", DRIVE_FILES_URL, access_token=access_token, params=params))
        for item in payload.get("files") or []:
            if isinstance(item, dict) and item.get("id"):
                return item["id"]
        created = self._json(
            self._send(
                "POST",
                DRIVE_FILES_URL,
                access_token=access_token,
                params={"fields": "id"},
                json={"name": name, "mimeType": FOLDER_MIME_TYPE},
            )
        )
        if not created.get("id"):
            raise NetworkError("folder creation returned no id")
        return created["id"]

    def list_files(self, access_token, name_prefix, folder_id=None):
        """List non-trashed files whose name contains ``name_prefix``, newest first.

        With ``folder_id`` only direct children of that folder are listed.
        """
        query = f"name contains '{name_prefix}' and trashed = false"
        if folder_id:
            query += f" and '{folder_id}' in parents"
        files = []
        page_token = None
        while True:
            params = {
                "q": query,
                "orderBy": "createdTime desc",
                "fields": FILE_FIELDS,
                "pageSize": 100,
            }
            if page_token:
                params["pageToken"] = page_token
            payload = self._json(self._send("GET", DRIVE_FILES_URL, access_token=access_token, params=params))
            files.extend(item for item in payload.get("files") or [] if isinstance(item, dict))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return files

    def upload_file(self, access_token, name, content, mime_type="application/json", folder_id=None):
        """Multipart upload of one text document; returns the created file resource."""
        boundary = f"ledger-{uuid.uuid4().hex}"
        metadata = {"name": name, "mimeType": mime_type}
        if folder_id:
            metadata["parents"] = [folder_id]
        body = (
            f"--{boundary}\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n\r\n"
            f"{json.dumps(metadata)}\r\n"
            f"--{boundary}\r\n"
            f"Content-Type: {mime_type}\r\n\r\n"
            f"{content}\r\n"
            f"--{boundary}--"
        ).encode("utf-8")
        response = self._send(
            "POST",
            DRIVE_UPLOAD_URL,
            access_token=access_token,
            params={"uploadType": "multipart", "fields": "id,name,size,createdTime,mimeType"},
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            content=body,
        )
        return self._json(response)

    def download_file(self, access_token, file_id):
        response = self._send("GET", f"{DRIVE_FILES_URL}/{file_id}", access_token=access_token, params={"alt": "media"})
        return response.text

    def delete_file(self, access_token, file_id):
        self._send("DELETE", f"{DRIVE_FILES_URL}/{file_id}", access_token=access_token)
        return True
