import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import Mock, patch

from ledger.core import record_store
from ledger.core.errors import MigrationFailure
from ledger.core.legacy_store import LegacyStore
from ledger.services import migration
from ledger.state import MigrationStatus


class MigrationTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.db_path = root / "ledger.sqlite3"
        record_store.initialize_record_store(db_path=self.db_path)
        self.legacy = LegacyStore(root / "legacy.json")
        self.ctx = SimpleNamespace(
            DB_PATH=self.db_path,
            legacy_store=self.legacy,
            migration_status=MigrationStatus(lock=threading.Lock()),
            log_system=Mock(),
            log_exception=Mock(),
        )

    def tearDown(self):
        self._tmp.cleanup()

    def _seed_example(self):
        self.legacy.set_json("profiles", [{"id": 1, "name": "X"}])
        self.legacy.set_json("customers", [{"id": 10, "name": "A", "phone": "1"}])
        self.legacy.set_json("payments", [{"id": 100, "customerId": 10, "amount": 50}])


class NeedsMigrationTests(MigrationTestCase):
    def test_gate(self):
        self.assertFalse(migration.needs_migration(self.legacy))
        self.legacy.set_json("customers", [])
        self.assertTrue(migration.needs_migration(self.legacy))
        self.legacy.set_item(migration.MIGRATED_FLAG_KEY, "true")
        self.assertFalse(migration.needs_migration(self.legacy))


class MigrateFromLegacyTests(MigrationTestCase):
    def test_example_store_migrates_without_extra_default_profile(self):
        self._seed_example()
        result = migration.run_migrations(self.ctx)
        self.assertTrue(result["ok"])
        self.assertEqual(result["migrated"], {"profiles": 1, "customers": 1, "payments": 1})

        profiles = record_store.list_profiles(self.db_path)
        self.assertEqual([item["name"] for item in profiles], ["X"])
        customer = record_store.get_customer(self.db_path, 10)
        self.assertEqual(customer["profileId"], 1)
        self.assertEqual(len(record_store.get_payments_by_customer(self.db_path, 10)), 1)
        self.assertEqual(self.legacy.get_item(migration.MIGRATED_FLAG_KEY), "true")
        self.assertEqual(self.ctx.migration_status.state, migration.DONE)

    def test_second_run_is_a_noop(self):
        self._seed_example()
        migration.run_migrations(self.ctx)
        self.assertIsNone(migration.run_migrations(self.ctx))
        self.assertEqual(record_store.count_profiles(self.db_path), 1)
        self.assertEqual(len(record_store.get_customers_by_profile(self.db_path, 1)), 1)

    def test_invalid_records_are_counted_and_skipped(self):
        self.legacy.set_json("profiles", [{"id": 1, "name": "X"}, {"name": "no id"}])
        self.legacy.set_json(
            "customers",
            [
                {"id": 10, "name": "A"},
                {"id": 11, "name": ""},
                {"id": "abc", "name": "bad id"},
                {"id": 12, "name": "B", "frequency": "yearly", "totalAmount": "oops"},
            ],
        )
        self.legacy.set_json(
            "payments",
            [
                {"id": 100, "customerId": 10, "amount": 50, "date": "2024-02-01"},
                {"id": 101, "customerId": 10, "amount": 0},
                {"id": 102, "amount": 5},
            ],
        )
        result = migration.migrate_from_legacy(self.db_path, self.legacy)
        self.assertTrue(result["ok"])
        self.assertEqual(result["skipped"], {"profiles": 1, "customers": 2, "payments": 2})
        self.assertEqual(result["migrated"], {"profiles": 1, "customers": 2, "payments": 1})
        repaired = record_store.get_customer(self.db_path, 12)
        self.assertEqual(repaired["frequency"], "monthly")
        self.assertEqual(repaired["totalAmount"], 0)
        self.assertTrue(result["warnings"])

    def test_received_entries_become_withdrawn(self):
        self.legacy.set_json(
            "profiles",
            [
                {
                    "id": 1,
                    "name": "X",
                    "investmentHistory": [
                        {"id": 1, "type": "INVESTED", "amount": 1000},
                        {"id": 2, "type": "RECEIVED", "amount": 300},
                    ],
                }
            ],
        )
        migration.migrate_from_legacy(self.db_path, self.legacy)
        profile = record_store.get_profile(self.db_path, 1)
        self.assertEqual([entry["type"] for entry in profile["investmentHistory"]], ["INVESTED", "WITHDRAWN"])
        self.assertEqual(profile["totalInvestment"], 700)

    def test_unreadable_customer_link_is_dropped_not_fatal(self):
        self.legacy.set_json(
            "profiles",
            [
                {
                    "id": 1,
                    "name": "X",
                    "investmentHistory": [
                        {"id": 5, "amount": 10, "type": "INVESTED", "customerId": "n/a"},
                        {"id": 6, "amount": "4", "type": "INVESTED", "customerId": "12"},
                    ],
                }
            ],
        )
        result = migration.migrate_from_legacy(self.db_path, self.legacy)
        self.assertTrue(result["ok"])
        self.assertEqual(result["state"], migration.DONE)
        self.assertTrue(any("customer link" in warning for warning in result["warnings"]))
        profile = record_store.get_profile(self.db_path, 1)
        entries = {entry["id"]: entry for entry in profile["investmentHistory"]}
        self.assertNotIn("customerId", entries[5])
        self.assertEqual(entries[6]["customerId"], 12)
        self.assertEqual(profile["totalInvestment"], 14)

    def test_total_without_history_becomes_opening_entry(self):
        self.legacy.set_json("profiles", [{"id": 1, "name": "X", "totalInvestment": 2500}])
        migration.migrate_from_legacy(self.db_path, self.legacy)
        profile = record_store.get_profile(self.db_path, 1)
        self.assertEqual(profile["totalInvestment"], 2500)
        self.assertEqual(len(profile["investmentHistory"]), 1)

    def test_failure_sets_no_flag_and_keeps_legacy_data(self):
        record_store.add_profile(self.db_path, {"id": 1, "name": "Already here"})
        self._seed_example()
        result = migration.run_migrations(self.ctx)
        self.assertFalse(result["ok"])
        self.assertEqual(result["state"], migration.FAILED)
        self.assertIsNone(self.legacy.get_item(migration.MIGRATED_FLAG_KEY))
        self.assertEqual(self.legacy.get_json("customers"), [{"id": 10, "name": "A", "phone": "1"}])
        self.assertIsNone(record_store.get_customer(self.db_path, 10))
        self.assertEqual(self.ctx.migration_status.state, migration.FAILED)

        # Terminal until forced.
        self.assertIsNone(migration.run_migrations(self.ctx))
        self.assertEqual(self.ctx.migration_status.state, migration.FAILED)

    def test_force_migration_recovers(self):
        record_store.add_profile(self.db_path, {"id": 1, "name": "Already here"})
        self._seed_example()
        migration.run_migrations(self.ctx)
        result = migration.force_migration(self.ctx)
        self.assertTrue(result["ok"])
        self.assertEqual(self.ctx.migration_status.state, migration.DONE)
        self.assertEqual(record_store.get_profile(self.db_path, 1)["name"], "X")

    def test_force_migration_raises_on_failure(self):
        self._seed_example()
        with patch.object(migration, "migrate_from_legacy") as migrate:
            migrate.return_value = {
                "ok": False,
                "state": migration.FAILED,
                "migrated": {},
                "skipped": {},
                "warnings": ["boom"],
            }
            with self.assertRaises(MigrationFailure):
                migration.force_migration(self.ctx)


class StartupMaintenanceTests(MigrationTestCase):
    def test_default_profile_created_once_and_adopts_orphans(self):
        record_store.add_profile(self.db_path, {"id": 1, "name": "Gone"})
        record_store.add_customer(self.db_path, {"id": 10, "name": "A", "profileId": 1})
        record_store.delete_profile(self.db_path, 1)

        profile = migration.initialize_default_profile(self.db_path)
        self.assertEqual(profile["name"], migration.DEFAULT_PROFILE_NAME)
        self.assertEqual(record_store.get_customer(self.db_path, 10)["profileId"], profile["id"])
        self.assertEqual(record_store.get_meta(self.db_path, "currentProfile")["id"], profile["id"])
        self.assertIsNone(migration.initialize_default_profile(self.db_path))
        self.assertEqual(record_store.count_profiles(self.db_path), 1)

    def test_normalize_investment_types_is_idempotent(self):
        record_store.add_profile(
            self.db_path,
            {"id": 1, "name": "X", "investmentHistory": [{"id": 3, "type": "RECEIVED", "amount": 40}]},
        )
        self.assertEqual(migration.normalize_investment_types(self.db_path), 1)
        self.assertEqual(migration.normalize_investment_types(self.db_path), 0)
        profile = record_store.get_profile(self.db_path, 1)
        self.assertEqual(profile["investmentHistory"][0]["type"], "WITHDRAWN")
        self.assertEqual(profile["totalInvestment"], -40)

    def test_legacy_cleanup_waits_for_grace_period(self):
        self._seed_example()
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        migration.migrate_from_legacy(self.db_path, self.legacy, now=now)
        self.assertFalse(migration.cleanup_old_legacy_data(self.legacy, now=now + timedelta(days=3)))
        self.assertIsNotNone(self.legacy.get_item("customers"))
        self.assertTrue(migration.cleanup_old_legacy_data(self.legacy, now=now + timedelta(days=8)))
        self.assertIsNone(self.legacy.get_item("customers"))
        self.assertEqual(self.legacy.get_item(migration.MIGRATED_FLAG_KEY), "true")


if __name__ == "__main__":
    unittest.main()
