import json
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import Mock, patch

from ledger.core import accounts_registry, record_store
from ledger.core.errors import AuthError, NetworkError, NoAccountError, QuotaExceeded
from ledger.services import remote_backup
from ledger.services.snapshot import export_snapshot, serialize_snapshot

NOW = 1_700_000_000.0
GIB = 1024 ** 3


class FakeDrive:
    """In-memory stand-in for the provider client, keyed by access token owner."""

    def __init__(self):
        self.files = {}
        self.refresh_calls = []
        self.refresh_error = None
        self.reject_tokens = set()
        self.clock = 0
        self.users = {}
        self.quota = {"used": 10, "total": GIB}
        self.folders = {}
        self.folder_creations = 0

    def _owner(self, token):
        if token in self.reject_tokens:
            raise AuthError("token rejected")
        return token.split(":", 1)[0]

    def refresh_access_token(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        owner = refresh_token.split(":", 1)[0]
        return {"access_token": f"{owner}:fresh", "expires_in": 3600}

    def exchange_code(self, code):
        return {"access_token": f"{code}:access", "refresh_token": f"{code}:refresh", "expires_in": 3600}

    def get_user_info(self, access_token):
        owner = self._owner(access_token)
        return self.users.get(owner, {"email": f"{owner}@example.com", "name": owner})

    def get_quota(self, access_token):
        self._owner(access_token)
        return dict(self.quota)

    def find_or_create_folder(self, access_token, name):
        owner = self._owner(access_token)
        if owner not in self.folders:
            self.folder_creations += 1
            self.folders[owner] = f"{owner}-folder-{self.folder_creations}"
        return self.folders[owner]

    def list_files(self, access_token, name_prefix, folder_id=None):
        owner = self._owner(access_token)
        items = [
            item for item in self.files.get(owner, [])
            if name_prefix in item["name"] and (folder_id is None or item.get("parent") == folder_id)
        ]
        return sorted(items, key=lambda item: item["createdTime"], reverse=True)

    def upload_file(self, access_token, name, content, mime_type="application/json", folder_id=None):
        owner = self._owner(access_token)
        if folder_id is not None and folder_id != self.folders.get(owner):
            raise NetworkError("parent folder not found", status_code=404)
        self.clock += 1
        item = {
            "id": f"{owner}-file-{self.clock}",
            "name": name,
            "size": str(len(content)),
            "createdTime": f"2024-01-01T00:{self.clock:02d}:00.000Z",
            "content": content,
            "parent": folder_id,
        }
        self.files.setdefault(owner, []).append(item)
        return {key: item[key] for key in ("id", "name", "size", "createdTime")}

    def download_file(self, access_token, file_id):
        owner = self._owner(access_token)
        for item in self.files.get(owner, []):
            if item["id"] == file_id:
                return item["content"]
        raise NetworkError("file not found", status_code=404)

    def delete_file(self, access_token, file_id):
        owner = self._owner(access_token)
        self.files[owner] = [item for item in self.files.get(owner, []) if item["id"] != file_id]
        return True


class RemoteBackupTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "ledger.sqlite3"
        record_store.initialize_record_store(db_path=self.db_path)
        record_store.add_profile(self.db_path, {"id": 1, "name": "Main"})
        record_store.add_customer(self.db_path, {"id": 10, "profileId": 1, "name": "Open", "totalAmount": 500})
        record_store.add_customer(self.db_path, {"id": 11, "profileId": 1, "name": "Done", "totalAmount": 100})
        record_store.add_payment(self.db_path, {"id": 100, "customerId": 11, "amount": 100, "date": "2024-01-02"})
        self.drive = FakeDrive()
        self.ctx = SimpleNamespace(
            DB_PATH=self.db_path,
            drive_client=self.drive,
            REMOTE_BACKUP_KEEP=10,
            log_action=Mock(),
            log_system=Mock(),
            log_exception=Mock(),
        )

    def tearDown(self):
        self._tmp.cleanup()

    def _register(self, owner, *, used=0, total=GIB, expires_at=NOW + 3600, **extra):
        account = {
            "id": f"drive_{owner}",
            "email": f"{owner}@example.com",
            "accessToken": f"{owner}:access",
            "refreshToken": f"{owner}:refresh",
            "expiresAt": expires_at,
            "quotaUsed": used,
            "quotaTotal": total,
        }
        account.update(extra)
        self.assertTrue(accounts_registry.insert_account(self.db_path, account))
        return accounts_registry.get_account(self.db_path, account["id"])


class SelectDestinationTests(unittest.TestCase):
    def _account(self, name, available, **extra):
        item = {"id": name, "email": f"{name}@example.com", "quotaUsed": 0, "quotaTotal": available}
        item.update(extra)
        return item

    def test_picks_most_free_space(self):
        accounts = [self._account("a", 5), self._account("b", 100), self._account("c", 50)]
        self.assertEqual(remote_backup.select_destination(accounts)["id"], "b")

    def test_empty_registry(self):
        with self.assertRaises(NoAccountError):
            remote_backup.select_destination([])

    def test_no_space_anywhere(self):
        accounts = [self._account("a", 5, quotaUsed=7), self._account("b", 10, quotaUsed=10)]
        with self.assertRaises(QuotaExceeded):
            remote_backup.select_destination(accounts)

    def test_unknown_limit_ranks_above_limited_accounts(self):
        accounts = [self._account("a", 100 * GIB), self._account("b", None, quotaUsed=20 * GIB)]
        self.assertEqual(remote_backup.select_destination(accounts)["id"], "b")
        self.assertIsNone(remote_backup.available_space(accounts[1]))
        only = [self._account("c", 0, quotaUsed=5 * GIB)]
        self.assertEqual(remote_backup.select_destination(only)["id"], "c")

    def test_skips_accounts_needing_reauth(self):
        accounts = [self._account("a", 500, needsReauth=True), self._account("b", 10)]
        self.assertEqual(remote_backup.select_destination(accounts)["id"], "b")
        with self.assertRaises(AuthError):
            remote_backup.select_destination([self._account("a", 500, needsReauth=True)])


class AccountRegistryTests(RemoteBackupTestCase):
    def test_add_account_from_code_and_duplicate(self):
        result = remote_backup.add_account_from_code(self.ctx, "alice", now=NOW)
        self.assertTrue(result["ok"])
        self.assertEqual(result["account"]["email"], "alice@example.com")
        self.assertNotIn("accessToken", result["account"])
        self.assertEqual(result["account"]["quotaTotal"], GIB)

        again = remote_backup.add_account_from_code(self.ctx, "alice", now=NOW)
        self.assertFalse(again["ok"])
        self.assertEqual(again["error"], "duplicate_account")
        self.assertEqual(len(remote_backup.list_accounts(self.ctx)), 1)

    def test_reauthorizing_flagged_account_updates_tokens(self):
        self._register("alice", needsReauth=True)
        result = remote_backup.add_account_from_code(self.ctx, "alice", now=NOW)
        self.assertTrue(result["ok"])
        self.assertTrue(result["reauthorized"])
        stored = accounts_registry.get_account(self.db_path, "drive_alice")
        self.assertFalse(stored["needsReauth"])
        self.assertEqual(stored["accessToken"], "alice:access")

    def test_remove_account(self):
        self._register("alice")
        self.assertTrue(remote_backup.remove_account(self.ctx, "drive_alice")["ok"])
        missing = remote_backup.remove_account(self.ctx, "drive_alice")
        self.assertEqual(missing["error"], "not_found")

    def test_clear_all_keeps_accounts(self):
        self._register("alice")
        record_store.clear_all(self.db_path)
        self.assertEqual(len(remote_backup.list_accounts(self.ctx)), 1)


class TokenRefreshTests(RemoteBackupTestCase):
    def test_expiring_token_refreshed_exactly_once(self):
        self._register("alice", expires_at=NOW + 120)
        result = remote_backup.backup_to_remote(self.ctx, now=NOW)
        self.assertTrue(result["ok"])
        self.assertEqual(self.drive.refresh_calls, ["alice:refresh"])
        stored = accounts_registry.get_account(self.db_path, "drive_alice")
        self.assertEqual(stored["accessToken"], "alice:fresh")
        self.assertEqual(stored["expiresAt"], NOW + 3600)

    def test_fresh_token_not_refreshed(self):
        account = self._register("alice", expires_at=NOW + 3600)
        self.assertIs(remote_backup.ensure_fresh_token(self.ctx, account, now=NOW), account)
        self.assertEqual(self.drive.refresh_calls, [])

    def test_refresh_failure_marks_account(self):
        self._register("alice", expires_at=NOW - 10)
        self.drive.refresh_error = AuthError("invalid_grant")
        result = remote_backup.backup_to_remote(self.ctx, now=NOW)
        self.assertFalse(result["ok"])
        self.assertEqual(result["error"], "auth_failed")
        self.assertTrue(accounts_registry.get_account(self.db_path, "drive_alice")["needsReauth"])
        self.assertEqual(len(self.drive.refresh_calls), 1)

    def test_network_error_during_refresh_is_retried_next_run(self):
        self._register("alice", expires_at=NOW - 10)
        self.drive.refresh_error = NetworkError("connection reset")
        first = remote_backup.backup_to_remote(self.ctx, now=NOW)
        self.assertEqual(first["error"], "network_error")
        self.assertFalse(accounts_registry.get_account(self.db_path, "drive_alice")["needsReauth"])

        self.drive.refresh_error = None
        second = remote_backup.backup_to_remote(self.ctx, now=NOW + 86400)
        self.assertTrue(second["ok"])
        self.assertEqual(len(self.drive.refresh_calls), 2)

    def test_rejected_token_marks_account(self):
        self._register("alice")
        self.drive.reject_tokens.add("alice:access")
        result = remote_backup.backup_to_remote(self.ctx, now=NOW)
        self.assertEqual(result["error"], "auth_failed")
        self.assertTrue(accounts_registry.get_account(self.db_path, "drive_alice")["needsReauth"])


class BackupTests(RemoteBackupTestCase):
    def test_no_account(self):
        result = remote_backup.backup_to_remote(self.ctx, now=NOW)
        self.assertFalse(result["ok"])
        self.assertEqual(result["error"], "no_account")

    def test_quota_exceeded(self):
        self._register("alice", used=100, total=100)
        result = remote_backup.backup_to_remote(self.ctx, now=NOW)
        self.assertEqual(result["error"], "quota_exceeded")

    def test_upload_excludes_completed_and_sets_last_backup(self):
        self._register("small", total=1000 * 1000)
        self._register("large", total=GIB)
        result = remote_backup.backup_to_remote(self.ctx, now=NOW)
        self.assertTrue(result["ok"])
        self.assertEqual(result["account_id"], "drive_large")
        self.assertTrue(result["file"]["name"].startswith("ma-backup-"))

        uploaded = json.loads(self.drive.files["large"][0]["content"])
        self.assertEqual([item["id"] for item in uploaded["customers"]], [10])
        self.assertEqual(uploaded["payments"], [])
        self.assertTrue(uploaded["excludedCompleted"])
        self.assertIsNotNone(accounts_registry.get_account(self.db_path, "drive_large")["lastBackup"])
        self.assertIsNone(accounts_registry.get_account(self.db_path, "drive_small")["lastBackup"])

    def test_account_without_reported_limit_receives_backup(self):
        self._register("alice", used=5 * GIB, total=0)
        self.assertIsNone(accounts_registry.get_account(self.db_path, "drive_alice")["quotaTotal"])
        result = remote_backup.backup_to_remote(self.ctx, now=NOW)
        self.assertTrue(result["ok"])
        self.assertEqual(result["account_id"], "drive_alice")

    def test_account_added_while_quota_unavailable_is_usable(self):
        with patch.object(self.drive, "get_quota", side_effect=NetworkError("about endpoint down")):
            added = remote_backup.add_account_from_code(self.ctx, "alice", now=NOW)
        self.assertTrue(added["ok"])
        self.assertIsNone(added["account"]["quotaTotal"])
        self.assertTrue(remote_backup.backup_to_remote(self.ctx, now=NOW)["ok"])

    def test_backups_live_in_app_folder(self):
        self._register("alice")
        self.drive.files["alice"] = [{
            "id": "stray",
            "name": "ma-backup-elsewhere.json",
            "createdTime": "2099-01-01T00:00:00.000Z",
            "content": "",
            "parent": None,
        }]
        self.assertTrue(remote_backup.backup_to_remote(self.ctx, now=NOW)["ok"])
        self.assertTrue(remote_backup.backup_to_remote(self.ctx, now=NOW)["ok"])
        self.assertEqual(self.drive.folder_creations, 1)
        stored = accounts_registry.get_account(self.db_path, "drive_alice")
        self.assertEqual(stored["folderId"], "alice-folder-1")
        uploaded = [item for item in self.drive.files["alice"] if item["id"] != "stray"]
        self.assertEqual({item["parent"] for item in uploaded}, {"alice-folder-1"})

        listed = remote_backup.list_remote_backups(self.ctx, now=NOW)
        self.assertNotIn("stray", [item["id"] for item in listed["backups"]])
        self.assertEqual(len(listed["backups"]), 2)

    def test_missing_cached_folder_is_recreated(self):
        self._register("alice", folderId="deleted-folder")
        result = remote_backup.backup_to_remote(self.ctx, now=NOW)
        self.assertTrue(result["ok"])
        self.assertEqual(accounts_registry.get_account(self.db_path, "drive_alice")["folderId"], "alice-folder-1")
        self.assertEqual(self.drive.files["alice"][0]["parent"], "alice-folder-1")

    def test_retention_keeps_newest_ten(self):
        self._register("alice")
        for _ in range(11):
            self.assertTrue(remote_backup.backup_to_remote(self.ctx, now=NOW)["ok"])
        remaining = self.drive.files["alice"]
        self.assertEqual(len(remaining), 10)
        self.assertNotIn("alice-file-1", [item["id"] for item in remaining])
        self.assertIn("alice-file-11", [item["id"] for item in remaining])

    def test_list_remote_backups_across_accounts(self):
        self._register("alice")
        self._register("bob")
        remote_backup.backup_to_remote(self.ctx, account_id="drive_alice", now=NOW)
        remote_backup.backup_to_remote(self.ctx, account_id="drive_bob", now=NOW)
        self.drive.files["bob"].append({"id": "other", "name": "notes.txt", "createdTime": "2030", "content": ""})
        result = remote_backup.list_remote_backups(self.ctx, now=NOW)
        self.assertTrue(result["ok"])
        self.assertEqual([item["accountId"] for item in result["backups"]], ["drive_bob", "drive_alice"])
        self.assertEqual(result["backups"][0]["email"], "bob@example.com")


class RestoreTests(RemoteBackupTestCase):
    def setUp(self):
        super().setUp()
        self._register("alice")
        self.drive.files["alice"] = [{
            "id": "snap-1",
            "name": "ma-backup-2024-01-01-00-00-00.json",
            "createdTime": "2024-01-01T00:00:00.000Z",
            "content": serialize_snapshot(export_snapshot(self.db_path)),
        }]
        record_store.add_customer(self.db_path, {"id": 12, "profileId": 1, "name": "Later", "totalAmount": 10})

    def test_preview_does_not_touch_store(self):
        result = remote_backup.preview_remote_backup(self.ctx, "drive_alice", "snap-1", now=NOW)
        self.assertTrue(result["ok"])
        self.assertEqual(result["summary"]["customers"], 2)
        self.assertIsNotNone(record_store.get_customer(self.db_path, 12))

    def test_restore_requires_confirmation(self):
        refused = remote_backup.restore_from_remote(self.ctx, "drive_alice", "snap-1", confirm=None, now=NOW)
        self.assertEqual(refused["error"], "confirmation_required")
        declined = remote_backup.restore_from_remote(self.ctx, "drive_alice", "snap-1", confirm=lambda summary: False, now=NOW)
        self.assertEqual(declined["error"], "cancelled")
        self.assertIsNotNone(record_store.get_customer(self.db_path, 12))

    def test_confirmed_restore_replaces_store(self):
        seen = []

        def confirm(summary):
            seen.append(summary)
            return True

        result = remote_backup.restore_from_remote(self.ctx, "drive_alice", "snap-1", confirm=confirm, now=NOW)
        self.assertTrue(result["ok"])
        self.assertEqual(seen[0]["customers"], 2)
        self.assertIsNone(record_store.get_customer(self.db_path, 12))

    def test_failing_confirmation_callback_returns_failure(self):
        def confirm(summary):
            raise RuntimeError("dialog closed")

        result = remote_backup.restore_from_remote(self.ctx, "drive_alice", "snap-1", confirm=confirm, now=NOW)
        self.assertFalse(result["ok"])
        self.assertEqual(result["error"], "internal_error")
        self.assertEqual(result["summary"]["customers"], 2)
        self.ctx.log_exception.assert_called_once()
        self.assertIsNotNone(record_store.get_customer(self.db_path, 12))

    def test_corrupt_backup_rejected(self):
        self.drive.files["alice"][0]["content"] = "{broken"
        result = remote_backup.restore_from_remote(self.ctx, "drive_alice", "snap-1", confirm=True, now=NOW)
        self.assertEqual(result["error"], "invalid_backup")
        self.assertIsNotNone(record_store.get_customer(self.db_path, 12))


if __name__ == "__main__":
    unittest.main()
