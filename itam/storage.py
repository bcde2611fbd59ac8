"""
Storage abstraction for asset-management records.

`StorageBackend` names the operations the API needs. `InMemoryStorage` is the
default backend; `itam.db.DatabaseStorage` is the durable one. Callers never
hold a backend directly: they hold the shared `StorageHandle`, which the
bootstrap rebinds once at startup.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, fields
from typing import Dict, Optional, Protocol

from itam.errors import DuplicateRecordError, InvalidRecordError, RecordNotFoundError

PERMISSION_CATEGORIES = (
    "assets",
    "components",
    "accessories",
    "consumables",
    "licenses",
    "users",
    "reports",
    "vmMonitoring",
    "networkDiscovery",
    "bitlockerKeys",
    "admin",
)

PERMISSION_ACTIONS = ("view", "edit", "add")


def full_permissions() -> dict:
    """Permission matrix granting every action on every category."""
    return {
        category: {action: True for action in PERMISSION_ACTIONS}
        for category in PERMISSION_CATEGORIES
    }


def empty_permissions() -> dict:
    return {
        category: {action: False for action in PERMISSION_ACTIONS}
        for category in PERMISSION_CATEGORIES
    }


def _now() -> float:
    return time.time()


@dataclass
class User:
    id: int
    username: str
    password: str
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    department: Optional[str] = None
    is_admin: bool = False
    permissions: dict = field(default_factory=empty_permissions)
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def as_dict(self, include_password: bool = False) -> dict:
        data = asdict(self)
        if not include_password:
            data.pop("password")
        return data


@dataclass
class Asset:
    id: int
    asset_tag: str
    name: str
    category: str = "other"
    status: str = "available"
    serial_number: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    location: Optional[str] = None
    assigned_to: Optional[int] = None
    purchase_date: Optional[str] = None
    purchase_cost: Optional[float] = None
    notes: Optional[str] = None
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class License:
    id: int
    name: str
    license_key: Optional[str] = None
    seats: int = 1
    assigned_seats: int = 0
    company: Optional[str] = None
    manufacturer: Optional[str] = None
    expiration_date: Optional[str] = None
    status: str = "active"
    notes: Optional[str] = None
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class Accessory:
    id: int
    name: str
    category: str = "other"
    quantity: int = 0
    status: str = "available"
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    location: Optional[str] = None
    assigned_to: Optional[int] = None
    notes: Optional[str] = None
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class Consumable:
    id: int
    name: str
    category: str = "other"
    quantity: int = 0
    min_quantity: int = 0
    status: str = "available"
    manufacturer: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        return asdict(self)


class StorageBackend(Protocol):
    """Operations every storage backend provides."""

    def get_user(self, user_id: int) -> Optional[User]:
        ...

    def get_user_by_username(self, username: str) -> Optional[User]:
        ...

    def list_users(self) -> list[User]:
        ...

    def create_user(self, fields: dict) -> User:
        ...

    def update_user(self, user_id: int, fields: dict) -> User:
        ...

    def delete_user(self, user_id: int) -> None:
        ...

    def get_asset(self, asset_id: int) -> Optional[Asset]:
        ...

    def list_assets(self) -> list[Asset]:
        ...

    def create_asset(self, fields: dict) -> Asset:
        ...

    def update_asset(self, asset_id: int, fields: dict) -> Asset:
        ...

    def delete_asset(self, asset_id: int) -> None:
        ...

    def get_license(self, license_id: int) -> Optional[License]:
        ...

    def list_licenses(self) -> list[License]:
        ...

    def create_license(self, fields: dict) -> License:
        ...

    def update_license(self, license_id: int, fields: dict) -> License:
        ...

    def delete_license(self, license_id: int) -> None:
        ...

    def get_accessory(self, accessory_id: int) -> Optional[Accessory]:
        ...

    def list_accessories(self) -> list[Accessory]:
        ...

    def create_accessory(self, fields: dict) -> Accessory:
        ...

    def update_accessory(self, accessory_id: int, fields: dict) -> Accessory:
        ...

    def delete_accessory(self, accessory_id: int) -> None:
        ...

    def get_consumable(self, consumable_id: int) -> Optional[Consumable]:
        ...

    def list_consumables(self) -> list[Consumable]:
        ...

    def create_consumable(self, fields: dict) -> Consumable:
        ...

    def update_consumable(self, consumable_id: int, fields: dict) -> Consumable:
        ...

    def delete_consumable(self, consumable_id: int) -> None:
        ...


# (singular, plural) names for each managed resource.
RESOURCES = (
    ("user", "users"),
    ("asset", "assets"),
    ("license", "licenses"),
    ("accessory", "accessories"),
    ("consumable", "consumables"),
)

STORAGE_OPERATIONS: tuple[str, ...] = tuple(
    name
    for singular, plural in RESOURCES
    for name in (
        f"get_{singular}",
        f"list_{plural}",
        f"create_{singular}",
        f"update_{singular}",
        f"delete_{singular}",
    )
) + ("get_user_by_username",)


def record_field_names(record_type: type) -> set[str]:
    return {f.name for f in fields(record_type)}


def check_required_fields(record_type: type, values: dict) -> None:
    """Reject writes that set a non-Optional record field to None."""
    nulls = sorted(
        f.name
        for f in fields(record_type)
        if f.name in values and values[f.name] is None and "Optional" not in str(f.type)
    )
    if nulls:
        raise InvalidRecordError(f"{', '.join(nulls)} may not be null")


class InMemoryStorage:
    """Process-memory backend. Nothing survives a restart."""

    def __init__(self):
        self.users: Dict[int, User] = {}
        self.assets: Dict[int, Asset] = {}
        self.licenses: Dict[int, License] = {}
        self.accessories: Dict[int, Accessory] = {}
        self.consumables: Dict[int, Consumable] = {}
        self._next_ids: Dict[str, int] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.users.clear()
        self.assets.clear()
        self.licenses.clear()
        self.accessories.clear()
        self.consumables.clear()
        self._next_ids.clear()

    def _allocate_id(self, kind: str) -> int:
        next_id = self._next_ids.get(kind, 1)
        self._next_ids[kind] = next_id + 1
        return next_id

    def _create(self, table: dict, record_type: type, kind: str, values: dict):
        check_required_fields(record_type, values)
        allowed = record_field_names(record_type) - {"id", "created_at", "updated_at"}
        record = record_type(
            id=self._allocate_id(kind),
            **{k: v for k, v in values.items() if k in allowed},
        )
        table[record.id] = record
        return record

    def _update(self, table: dict, record_type: type, kind: str, record_id: int, values: dict):
        record = table.get(record_id)
        if record is None:
            raise RecordNotFoundError(kind, record_id)
        check_required_fields(record_type, values)
        allowed = record_field_names(record_type) - {"id", "created_at", "updated_at"}
        for key, value in values.items():
            if key in allowed:
                setattr(record, key, value)
        record.updated_at = _now()
        return record

    def _delete(self, table: dict, kind: str, record_id: int) -> None:
        if table.pop(record_id, None) is None:
            raise RecordNotFoundError(kind, record_id)

    # Users

    def get_user(self, user_id: int) -> Optional[User]:
        return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        for user in self.users.values():
            if user.username == username:
                return user
        return None

    def list_users(self) -> list[User]:
        return list(self.users.values())

    def create_user(self, fields: dict) -> User:
        if self.get_user_by_username(fields["username"]) is not None:
            raise DuplicateRecordError(f"username {fields['username']!r} already exists")
        return self._create(self.users, User, "user", fields)

    def update_user(self, user_id: int, fields: dict) -> User:
        username = fields.get("username")
        if username is not None:
            existing = self.get_user_by_username(username)
            if existing is not None and existing.id != user_id:
                raise DuplicateRecordError(f"username {username!r} already exists")
        return self._update(self.users, User, "user", user_id, fields)

    def delete_user(self, user_id: int) -> None:
        self._delete(self.users, "user", user_id)

    # Assets

    def get_asset(self, asset_id: int) -> Optional[Asset]:
        return self.assets.get(asset_id)

    def list_assets(self) -> list[Asset]:
        return list(self.assets.values())

    def create_asset(self, fields: dict) -> Asset:
        for asset in self.assets.values():
            if asset.asset_tag == fields["asset_tag"]:
                raise DuplicateRecordError(
                    f"asset tag {fields['asset_tag']!r} already exists"
                )
        return self._create(self.assets, Asset, "asset", fields)

    def update_asset(self, asset_id: int, fields: dict) -> Asset:
        asset_tag = fields.get("asset_tag")
        if asset_tag is not None and asset_id in self.assets:
            for asset in self.assets.values():
                if asset.asset_tag == asset_tag and asset.id != asset_id:
                    raise DuplicateRecordError(f"asset tag {asset_tag!r} already exists")
        return self._update(self.assets, Asset, "asset", asset_id, fields)

    def delete_asset(self, asset_id: int) -> None:
        self._delete(self.assets, "asset", asset_id)

    # Licenses

    def get_license(self, license_id: int) -> Optional[License]:
        return self.licenses.get(license_id)

    def list_licenses(self) -> list[License]:
        return list(self.licenses.values())

    def create_license(self, fields: dict) -> License:
        return self._create(self.licenses, License, "license", fields)

    def update_license(self, license_id: int, fields: dict) -> License:
        return self._update(self.licenses, License, "license", license_id, fields)

    def delete_license(self, license_id: int) -> None:
        self._delete(self.licenses, "license", license_id)

    # Accessories

    def get_accessory(self, accessory_id: int) -> Optional[Accessory]:
        return self.accessories.get(accessory_id)

    def list_accessories(self) -> list[Accessory]:
        return list(self.accessories.values())

    def create_accessory(self, fields: dict) -> Accessory:
        return self._create(self.accessories, Accessory, "accessory", fields)

    def update_accessory(self, accessory_id: int, fields: dict) -> Accessory:
        return self._update(
            self.accessories, Accessory, "accessory", accessory_id, fields
        )

    def delete_accessory(self, accessory_id: int) -> None:
        self._delete(self.accessories, "accessory", accessory_id)

    # Consumables

    def get_consumable(self, consumable_id: int) -> Optional[Consumable]:
        return self.consumables.get(consumable_id)

    def list_consumables(self) -> list[Consumable]:
        return list(self.consumables.values())

    def create_consumable(self, fields: dict) -> Consumable:
        return self._create(self.consumables, Consumable, "consumable", fields)

    def update_consumable(self, consumable_id: int, fields: dict) -> Consumable:
        return self._update(
            self.consumables, Consumable, "consumable", consumable_id, fields
        )

    def delete_consumable(self, consumable_id: int) -> None:
        self._delete(self.consumables, "consumable", consumable_id)


class StorageHandle:
    """
    The one long-lived reference the rest of the service uses for storage.

    Every name in STORAGE_OPERATIONS resolves against the currently bound
    backend at call time, so rebinding is observed by all existing holders of
    the handle. `bind` is a single assignment and never suspends.
    """

    def __init__(self, backend: StorageBackend):
        self._backend = backend

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def backend_name(self) -> str:
        return type(self._backend).__name__

    def bind(self, backend: StorageBackend) -> None:
        missing = [
            name
            for name in STORAGE_OPERATIONS
            if not callable(getattr(backend, name, None))
        ]
        if missing:
            raise TypeError(
                f"{type(backend).__name__} is missing storage operations: "
                + ", ".join(missing)
            )
        self._backend = backend

    def __getattr__(self, name: str):
        if name in STORAGE_OPERATIONS:
            return getattr(self._backend, name)
        raise AttributeError(name)
