import unittest
from unittest.mock import MagicMock

from itam.db import DatabaseStorage
from itam.errors import DuplicateRecordError, RecordNotFoundError
from itam.storage import (
    PERMISSION_CATEGORIES,
    STORAGE_OPERATIONS,
    InMemoryStorage,
    StorageHandle,
    full_permissions,
)


class InMemoryStorageTests(unittest.TestCase):
    def setUp(self):
        self.storage = InMemoryStorage()

    def test_create_and_lookup_user(self):
        user = self.storage.create_user(
            {"username": "jdoe", "password": "hash", "email": "jdoe@example.com"}
        )
        self.assertEqual(user.id, 1)
        self.assertIs(self.storage.get_user_by_username("jdoe"), user)
        self.assertIsNone(self.storage.get_user_by_username("nobody"))
        self.assertNotIn("password", user.as_dict())

    def test_duplicate_username_rejected(self):
        self.storage.create_user({"username": "jdoe", "password": "hash"})
        with self.assertRaises(DuplicateRecordError):
            self.storage.create_user({"username": "jdoe", "password": "other"})

    def test_asset_crud(self):
        asset = self.storage.create_asset(
            {"asset_tag": "LT-001", "name": "Laptop", "category": "laptop"}
        )
        self.assertEqual(self.storage.list_assets(), [asset])

        updated = self.storage.update_asset(asset.id, {"status": "deployed", "id": 99})
        self.assertEqual(updated.status, "deployed")
        self.assertEqual(updated.id, asset.id)

        self.storage.delete_asset(asset.id)
        self.assertIsNone(self.storage.get_asset(asset.id))
        with self.assertRaises(RecordNotFoundError):
            self.storage.delete_asset(asset.id)

    def test_ids_are_per_resource(self):
        self.storage.create_license({"name": "Office"})
        accessory = self.storage.create_accessory({"name": "Mouse", "quantity": 5})
        consumable = self.storage.create_consumable({"name": "Toner"})
        self.assertEqual(accessory.id, 1)
        self.assertEqual(consumable.id, 1)

    def test_update_missing_record(self):
        with self.assertRaises(RecordNotFoundError):
            self.storage.update_license(42, {"seats": 3})

    def test_reset(self):
        self.storage.create_user({"username": "jdoe", "password": "hash"})
        self.storage.reset()
        self.assertEqual(self.storage.list_users(), [])
        self.assertEqual(
            self.storage.create_user({"username": "x", "password": "y"}).id, 1
        )


class PermissionsTests(unittest.TestCase):
    def test_full_permissions_cover_every_category(self):
        permissions = full_permissions()
        self.assertEqual(set(permissions), set(PERMISSION_CATEGORIES))
        self.assertIn("bitlockerKeys", permissions)
        for actions in permissions.values():
            self.assertEqual(actions, {"view": True, "edit": True, "add": True})


class StorageHandleTests(unittest.TestCase):
    def test_exposes_every_operation(self):
        handle = StorageHandle(InMemoryStorage())
        for name in STORAGE_OPERATIONS:
            self.assertTrue(callable(getattr(handle, name)), name)

    def test_unknown_attribute(self):
        handle = StorageHandle(InMemoryStorage())
        with self.assertRaises(AttributeError):
            handle.reset

    def test_bind_is_seen_by_existing_holders(self):
        handle = StorageHandle(InMemoryStorage())
        holder = {"storage": handle}

        durable = MagicMock(spec=DatabaseStorage)
        durable.get_user_by_username.return_value = "db-user"
        handle.bind(durable)

        self.assertIs(holder["storage"], handle)
        self.assertEqual(holder["storage"].get_user_by_username("admin"), "db-user")
        durable.get_user_by_username.assert_called_once_with("admin")
        self.assertIs(handle.backend, durable)

    def test_bind_rejects_incomplete_backend(self):
        original = InMemoryStorage()
        handle = StorageHandle(original)

        class Partial:
            def get_user_by_username(self, username):
                return None

        with self.assertRaises(TypeError):
            handle.bind(Partial())
        self.assertIs(handle.backend, original)


if __name__ == "__main__":
    unittest.main()
