import os
import tempfile
import unittest

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError

from itam.db import DatabaseConnector, DatabaseStorage, _integrity_error
from itam.errors import (
    BackendInitError,
    DatabaseConnectionError,
    DuplicateRecordError,
    InvalidRecordError,
    MigrationError,
    RecordNotFoundError,
    StorageError,
)
from itam.migrate import MIGRATIONS, Migration, MigrationRunner
from itam.storage import InMemoryStorage, full_permissions


class SqliteTestCase(unittest.TestCase):
    """
    Uses a file-backed SQLite database through SQLAlchemy in place of Postgres.
    """

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.url = f"sqlite+pysqlite:///{os.path.join(self.tmp.name, 'itam.db')}"
        self.engine = create_engine(self.url, future=True)

    def tearDown(self):
        self.engine.dispose()
        self.tmp.cleanup()


class MigrationRunnerTests(SqliteTestCase):
    def test_run_applies_all_then_nothing(self):
        runner = MigrationRunner(self.engine)
        applied = runner.run()
        self.assertEqual(applied, [m.name for m in MIGRATIONS])
        self.assertEqual(runner.applied(), sorted(m.name for m in MIGRATIONS))
        self.assertEqual(runner.run(), [])

    def test_failed_migration_raises_and_keeps_earlier_ones(self):
        broken = Migration(
            "0099_broken",
            lambda conn: conn.execute(text("SELECT * FROM no_such_table")),
        )
        runner = MigrationRunner(self.engine, list(MIGRATIONS) + [broken])
        with self.assertRaises(MigrationError) as ctx:
            runner.run()
        self.assertEqual(ctx.exception.migration, "0099_broken")
        self.assertNotIn("0099_broken", runner.applied())
        self.assertIn("0001_core_tables", runner.applied())


class DatabaseStorageTests(SqliteTestCase):
    def setUp(self):
        super().setUp()
        MigrationRunner(self.engine).run()
        self.db = DatabaseStorage(self.engine)

    def test_requires_migrated_schema(self):
        other = create_engine(
            f"sqlite+pysqlite:///{os.path.join(self.tmp.name, 'empty.db')}", future=True
        )
        try:
            with self.assertRaises(BackendInitError):
                DatabaseStorage(other)
        finally:
            other.dispose()

    def test_create_and_get_user(self):
        user = self.db.create_user(
            {
                "username": "admin",
                "password": "hash",
                "is_admin": True,
                "permissions": full_permissions(),
            }
        )
        self.assertTrue(user.id)
        fetched = self.db.get_user_by_username("admin")
        self.assertIsNotNone(fetched)
        self.assertTrue(fetched.is_admin)
        self.assertEqual(fetched.permissions["vmMonitoring"]["edit"], True)
        self.assertEqual(self.db.get_user(user.id).username, "admin")
        self.assertIsNone(self.db.get_user_by_username("ghost"))

    def test_duplicate_username(self):
        self.db.create_user({"username": "jdoe", "password": "hash"})
        with self.assertRaises(DuplicateRecordError):
            self.db.create_user({"username": "jdoe", "password": "hash"})

    def test_defaults_match_in_memory_records(self):
        accessory = self.db.create_accessory({"name": "Dock"})
        self.assertEqual(accessory.category, "other")
        self.assertEqual(accessory.quantity, 0)
        self.assertEqual(accessory.status, "available")

    def test_asset_update_and_delete(self):
        asset = self.db.create_asset({"asset_tag": "SRV-1", "name": "Server"})
        updated = self.db.update_asset(asset.id, {"location": "Rack 4"})
        self.assertEqual(updated.location, "Rack 4")
        self.assertGreaterEqual(updated.updated_at, asset.updated_at)
        self.assertEqual([a.asset_tag for a in self.db.list_assets()], ["SRV-1"])

        self.db.delete_asset(asset.id)
        self.assertIsNone(self.db.get_asset(asset.id))
        with self.assertRaises(RecordNotFoundError):
            self.db.update_asset(asset.id, {"name": "gone"})

    def test_license_and_consumable_roundtrip(self):
        lic = self.db.create_license({"name": "Windows", "seats": 10})
        self.assertEqual(self.db.get_license(lic.id).seats, 10)
        consumable = self.db.create_consumable({"name": "Toner", "min_quantity": 2})
        self.assertEqual(self.db.list_consumables()[0].min_quantity, 2)
        self.db.delete_consumable(consumable.id)
        self.assertEqual(self.db.list_consumables(), [])


class BackendParityTests(SqliteTestCase):
    """The same writes must succeed or fail identically on both backends."""

    def setUp(self):
        super().setUp()
        MigrationRunner(self.engine).run()
        self.backends = {
            "memory": InMemoryStorage(),
            "database": DatabaseStorage(self.engine),
        }

    def test_duplicate_asset_tag_on_update(self):
        for name, backend in self.backends.items():
            with self.subTest(backend=name):
                first = backend.create_asset({"asset_tag": "SRV-1", "name": "Server"})
                second = backend.create_asset({"asset_tag": "SRV-2", "name": "Spare"})
                with self.assertRaises(DuplicateRecordError):
                    backend.update_asset(second.id, {"asset_tag": "SRV-1"})
                self.assertEqual(backend.get_asset(second.id).asset_tag, "SRV-2")
                # Re-sending a record's own tag is not a conflict.
                updated = backend.update_asset(first.id, {"asset_tag": "SRV-1"})
                self.assertEqual(updated.asset_tag, "SRV-1")

    def test_null_for_required_field_rejected(self):
        for name, backend in self.backends.items():
            with self.subTest(backend=name):
                asset = backend.create_asset({"asset_tag": "LT-9", "name": "Laptop"})
                with self.assertRaises(InvalidRecordError):
                    backend.update_asset(asset.id, {"name": None})
                self.assertEqual(backend.get_asset(asset.id).name, "Laptop")
                with self.assertRaises(InvalidRecordError):
                    backend.create_license({"name": None})

    def test_null_for_optional_field_allowed(self):
        for name, backend in self.backends.items():
            with self.subTest(backend=name):
                asset = backend.create_asset(
                    {"asset_tag": "LT-10", "name": "Laptop", "location": "HQ"}
                )
                updated = backend.update_asset(asset.id, {"location": None})
                self.assertIsNone(updated.location)

    def test_only_unique_violations_are_duplicates(self):
        unique = Exception("duplicate key value violates unique constraint")
        unique.pgcode = "23505"
        not_null = Exception('null value in column "name" violates not-null constraint')
        not_null.pgcode = "23502"

        self.assertIsInstance(
            _integrity_error(IntegrityError("INSERT", {}, unique)), DuplicateRecordError
        )
        error = _integrity_error(IntegrityError("INSERT", {}, not_null))
        self.assertIsInstance(error, StorageError)
        self.assertNotIsInstance(error, DuplicateRecordError)


class DatabaseConnectorTests(SqliteTestCase):
    def test_unconfigured(self):
        connector = DatabaseConnector(None)
        self.assertFalse(connector.configured)
        self.assertFalse(connector.connect())
        status = connector.status()
        self.assertFalse(status.declared)
        self.assertFalse(status.handle_available)

    def test_connect_and_probe(self):
        connector = DatabaseConnector(self.url)
        self.assertFalse(connector.status().declared)
        self.assertTrue(connector.connect())
        self.assertTrue(connector.status().declared)
        self.assertTrue(connector.probe())
        self.assertFalse(connector.has_table("vm_monitoring"))

        MigrationRunner(connector.status().engine).run()
        self.assertTrue(connector.has_table("vm_monitoring"))
        connector.dispose()

    def test_unreachable_database(self):
        url = f"sqlite+pysqlite:///{os.path.join(self.tmp.name, 'missing', 'x.db')}"
        connector = DatabaseConnector(url)
        self.assertFalse(connector.connect())
        self.assertIsNotNone(connector.last_error)
        # The engine exists even though no connection could be made.
        self.assertTrue(connector.status().handle_available)
        with self.assertRaises(DatabaseConnectionError):
            connector.probe()
        connector.dispose()

    def test_probe_without_engine(self):
        with self.assertRaises(DatabaseConnectionError):
            DatabaseConnector(self.url).probe()


class WaitUntilReadyTests(unittest.IsolatedAsyncioTestCase):
    async def test_gives_up_after_timeout(self):
        with tempfile.TemporaryDirectory() as tmp:
            url = f"sqlite+pysqlite:///{os.path.join(tmp, 'missing', 'x.db')}"
            connector = DatabaseConnector(url)
            ready = await connector.wait_until_ready(
                timeout=0.2, initial_backoff=0.05, max_backoff=0.1
            )
            self.assertFalse(ready)
            connector.dispose()

    async def test_returns_immediately_when_reachable(self):
        with tempfile.TemporaryDirectory() as tmp:
            url = f"sqlite+pysqlite:///{os.path.join(tmp, 'itam.db')}"
            connector = DatabaseConnector(url)
            self.assertTrue(await connector.wait_until_ready(timeout=5))
            connector.dispose()

    async def test_unconfigured_is_never_ready(self):
        self.assertFalse(await DatabaseConnector(None).wait_until_ready(timeout=5))


if __name__ == "__main__":
    unittest.main()
