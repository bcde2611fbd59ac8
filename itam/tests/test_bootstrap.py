import itertools
import os
import tempfile
import unittest
from unittest.mock import AsyncMock, MagicMock

from itam.bootstrap import (
    MODE_DATABASE,
    MODE_MEMORY,
    Bootstrapper,
    ensure_admin_account,
    should_use_database,
)
from itam.config import Settings
from itam.db import ConnectionStatus, DatabaseConnector, DatabaseStorage
from itam.errors import LoggingError, MigrationError
from itam.event_log import EventLogger
from itam.security import verify_password
from itam.storage import InMemoryStorage, StorageHandle


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url=None,
        use_in_memory_backends=False,
        readiness_timeout_seconds=0,
        readiness_initial_backoff_seconds=0.05,
        readiness_max_backoff_seconds=0.1,
        admin_check_delay_seconds=0,
        admin_password="correct-horse",
        log_dir="logs",
    )
    values.update(overrides)
    return Settings(**values)


def fake_connector(declared=False, fresh=None, probe=True, configured=True):
    """Connector double; `fresh` is the status seen after the readiness wait."""
    engine = MagicMock(name="engine")
    connector = MagicMock(spec=DatabaseConnector)
    connector.configured = configured
    connector.wait_until_ready = AsyncMock(return_value=bool(fresh))
    connector.status.side_effect = [
        ConnectionStatus(declared=declared, engine=engine),
        ConnectionStatus(declared=declared if fresh is None else fresh, engine=engine),
    ]
    connector.probe.return_value = probe
    connector.has_table.return_value = True
    return connector


class BackendSelectionPredicateTests(unittest.TestCase):
    def test_truth_table_with_target_configured(self):
        for declared, fresh, verified in itertools.product([False, True], repeat=3):
            with self.subTest(declared=declared, fresh=fresh, verified=verified):
                self.assertEqual(
                    should_use_database(declared, fresh, verified, True, True),
                    declared or fresh or verified,
                )

    def test_never_without_target_or_handle(self):
        for declared, fresh, verified in itertools.product([False, True], repeat=3):
            for url_configured, handle in [(False, True), (True, False), (False, False)]:
                with self.subTest(
                    declared=declared,
                    fresh=fresh,
                    verified=verified,
                    url_configured=url_configured,
                    handle=handle,
                ):
                    self.assertFalse(
                        should_use_database(
                            declared, fresh, verified, url_configured, handle
                        )
                    )


class EnsureAdminAccountTests(unittest.TestCase):
    def setUp(self):
        self.handle = StorageHandle(InMemoryStorage())
        self.settings = make_settings()

    def test_idempotent(self):
        self.assertTrue(ensure_admin_account(self.handle, self.settings))
        self.assertFalse(ensure_admin_account(self.handle, self.settings))

        admins = [u for u in self.handle.list_users() if u.username == "admin"]
        self.assertEqual(len(admins), 1)
        admin = admins[0]
        self.assertTrue(admin.is_admin)
        self.assertEqual(admin.department, "IT")
        self.assertTrue(admin.permissions["admin"]["add"])
        self.assertTrue(verify_password("correct-horse", admin.password))

    def test_generates_password_when_unset(self):
        settings = make_settings(admin_password=None)
        with self.assertLogs("itam.bootstrap", level="WARNING") as logs:
            self.assertTrue(ensure_admin_account(self.handle, settings))
        self.assertTrue(any("Generated password" in line for line in logs.output))
        admin = self.handle.get_user_by_username("admin")
        self.assertNotEqual(admin.password, "admin123")

    def test_event_log_failure_does_not_change_outcome(self):
        event_logger = MagicMock(spec=EventLogger)
        event_logger.log_system.side_effect = LoggingError("disk full")

        created = ensure_admin_account(
            self.handle, self.settings, event_logger, MODE_MEMORY
        )

        self.assertTrue(created)
        self.assertIsNotNone(self.handle.get_user_by_username("admin"))
        event_logger.log_system.assert_called_once()


class BootstrapperTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.memory = InMemoryStorage()
        self.handle = StorageHandle(self.memory)
        self.event_logger = MagicMock(spec=EventLogger)

    async def test_no_database_url_uses_memory_and_creates_admin(self):
        connector = DatabaseConnector(None)
        result = await Bootstrapper(
            make_settings(), self.handle, connector, self.event_logger
        ).run()

        self.assertEqual(result.mode, MODE_MEMORY)
        self.assertFalse(result.verified)
        self.assertIs(self.handle.backend, self.memory)
        self.assertTrue(result.admin_created)
        admin = self.handle.get_user_by_username("admin")
        self.assertTrue(admin.is_admin)
        self.event_logger.log_system.assert_called_once_with(
            "user_creation", {"username": "admin", "storage": MODE_MEMORY}
        )

    async def test_forced_in_memory_skips_database(self):
        connector = fake_connector(declared=True)
        result = await Bootstrapper(
            make_settings(use_in_memory_backends=True),
            self.handle,
            connector,
            self.event_logger,
        ).run()
        self.assertEqual(result.mode, MODE_MEMORY)
        connector.wait_until_ready.assert_not_called()
        connector.probe.assert_not_called()

    async def test_migration_failure_keeps_memory_bindings(self):
        connector = fake_connector(declared=True)
        runner = MagicMock()
        runner.run.side_effect = MigrationError("column exists")
        storage_factory = MagicMock()

        result = await Bootstrapper(
            make_settings(database_url="postgresql://db/itam"),
            self.handle,
            connector,
            self.event_logger,
            migration_runner_factory=lambda engine: runner,
            database_storage_factory=storage_factory,
        ).run()

        self.assertEqual(result.mode, MODE_MEMORY)
        self.assertIs(self.handle.backend, self.memory)
        storage_factory.assert_not_called()
        self.assertTrue(any(e.startswith("migration:") for e in result.errors))
        # The admin still lands on the in-memory backend.
        self.assertIsNotNone(self.memory.get_user_by_username("admin"))

    async def test_backend_construction_failure_keeps_memory_bindings(self):
        connector = fake_connector(declared=True)
        result = await Bootstrapper(
            make_settings(database_url="postgresql://db/itam"),
            self.handle,
            connector,
            self.event_logger,
            migration_runner_factory=lambda engine: MagicMock(),
            database_storage_factory=MagicMock(side_effect=RuntimeError("no pool")),
        ).run()

        self.assertEqual(result.mode, MODE_MEMORY)
        self.assertIs(self.handle.backend, self.memory)
        self.assertTrue(any(e.startswith("backend:") for e in result.errors))

    async def test_success_rebinds_every_operation(self):
        connector = fake_connector(declared=False, fresh=False, probe=True)
        durable = MagicMock(spec=DatabaseStorage)
        durable.get_user_by_username.return_value = None

        result = await Bootstrapper(
            make_settings(database_url="postgresql://db/itam"),
            self.handle,
            connector,
            self.event_logger,
            migration_runner_factory=lambda engine: MagicMock(),
            database_storage_factory=lambda engine: durable,
        ).run()

        self.assertEqual(result.mode, MODE_DATABASE)
        self.assertTrue(result.verified)
        self.assertIs(self.handle.backend, durable)
        # The admin check went to the durable backend, not to memory.
        durable.get_user_by_username.assert_called_with("admin")
        durable.create_user.assert_called_once()
        self.assertEqual(self.memory.list_users(), [])

        durable.get_user_by_username.reset_mock()
        self.handle.get_user_by_username("jdoe")
        durable.get_user_by_username.assert_called_once_with("jdoe")
        self.handle.create_user({"username": "jdoe", "password": "x"})
        durable.create_user.assert_called_with({"username": "jdoe", "password": "x"})

    async def test_no_positive_signal_keeps_memory(self):
        connector = fake_connector(declared=False, fresh=False, probe=False)
        runner_factory = MagicMock()
        result = await Bootstrapper(
            make_settings(database_url="postgresql://db/itam"),
            self.handle,
            connector,
            self.event_logger,
            migration_runner_factory=runner_factory,
        ).run()
        self.assertEqual(result.mode, MODE_MEMORY)
        runner_factory.assert_not_called()

    async def test_missing_probe_table_does_not_gate_selection(self):
        connector = fake_connector(declared=True, probe=True)
        connector.has_table.return_value = False
        durable = MagicMock(spec=DatabaseStorage)
        durable.get_user_by_username.return_value = None

        with self.assertLogs("itam.bootstrap", level="WARNING") as logs:
            result = await Bootstrapper(
                make_settings(database_url="postgresql://db/itam"),
                self.handle,
                connector,
                self.event_logger,
                migration_runner_factory=lambda engine: MagicMock(),
                database_storage_factory=lambda engine: durable,
            ).run()

        self.assertEqual(result.mode, MODE_DATABASE)
        self.assertTrue(any("vm_monitoring" in line for line in logs.output))

    async def test_admin_failure_is_not_fatal(self):
        broken = InMemoryStorage()
        broken.create_user = MagicMock(side_effect=RuntimeError("read-only"))
        handle = StorageHandle(broken)

        result = await Bootstrapper(
            make_settings(), handle, DatabaseConnector(None), self.event_logger
        ).run()

        self.assertFalse(result.admin_created)
        self.assertTrue(any(e.startswith("admin:") for e in result.errors))
        self.event_logger.log_system.assert_called_once()
        self.assertEqual(
            self.event_logger.log_system.call_args.args[0], "user_creation_error"
        )


class SqliteBootstrapTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.event_logger = EventLogger(os.path.join(self.tmp.name, "logs"))

    def tearDown(self):
        self.event_logger.close()
        self.tmp.cleanup()

    async def run_bootstrap(self, url: str):
        settings = make_settings(database_url=url, readiness_timeout_seconds=0.3)
        connector = DatabaseConnector(url)
        handle = StorageHandle(InMemoryStorage())
        try:
            result = await Bootstrapper(settings, handle, connector, self.event_logger).run()
        finally:
            connector.dispose()
        return result, handle

    async def test_reachable_database_is_selected_and_admin_persists(self):
        url = f"sqlite+pysqlite:///{os.path.join(self.tmp.name, 'itam.db')}"
        result, handle = await self.run_bootstrap(url)

        self.assertEqual(result.mode, MODE_DATABASE)
        self.assertTrue(result.fresh)
        self.assertTrue(result.verified)
        self.assertIsInstance(handle.backend, DatabaseStorage)
        self.assertTrue(result.admin_created)
        self.assertTrue(handle.get_user_by_username("admin").is_admin)

        # A restart against the same database finds the existing admin.
        second, _ = await self.run_bootstrap(url)
        self.assertEqual(second.mode, MODE_DATABASE)
        self.assertFalse(second.admin_created)

    async def test_unreachable_database_falls_back_to_memory(self):
        url = f"sqlite+pysqlite:///{os.path.join(self.tmp.name, 'missing', 'x.db')}"
        result, handle = await self.run_bootstrap(url)

        self.assertEqual(result.mode, MODE_MEMORY)
        self.assertFalse(result.declared or result.fresh or result.verified)
        self.assertIsInstance(handle.backend, InMemoryStorage)
        self.assertIsNotNone(handle.get_user_by_username("admin"))


if __name__ == "__main__":
    unittest.main()
