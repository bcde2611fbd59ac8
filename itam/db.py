"""
Durable storage backend (SQLAlchemy, Postgres expected) and the connectivity
collaborator the bootstrap uses to decide whether it is usable.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Integer,
    String,
    create_engine,
    inspect,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from itam.errors import (
    BackendInitError,
    DatabaseConnectionError,
    DuplicateRecordError,
    RecordNotFoundError,
    StorageError,
)
from itam.storage import (
    Accessory,
    Asset,
    Consumable,
    License,
    User,
    check_required_fields,
    record_field_names,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, nullable=False, unique=True, index=True)
    password = Column(String, nullable=False)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=True)
    department = Column(String, nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    permissions = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class AssetRow(Base):
    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_tag = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False, default="other")
    status = Column(String, nullable=False, default="available", index=True)
    serial_number = Column(String, nullable=True)
    manufacturer = Column(String, nullable=True)
    model = Column(String, nullable=True)
    location = Column(String, nullable=True)
    assigned_to = Column(Integer, nullable=True)
    purchase_date = Column(String, nullable=True)
    purchase_cost = Column(Float, nullable=True)
    notes = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class LicenseRow(Base):
    __tablename__ = "licenses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    license_key = Column(String, nullable=True)
    seats = Column(Integer, nullable=False, default=1)
    assigned_seats = Column(Integer, nullable=False, default=0)
    company = Column(String, nullable=True)
    manufacturer = Column(String, nullable=True)
    expiration_date = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")
    notes = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class AccessoryRow(Base):
    __tablename__ = "accessories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False, default="other")
    quantity = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="available")
    manufacturer = Column(String, nullable=True)
    model = Column(String, nullable=True)
    location = Column(String, nullable=True)
    assigned_to = Column(Integer, nullable=True)
    notes = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class ConsumableRow(Base):
    __tablename__ = "consumables"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False, default="other")
    quantity = Column(Integer, nullable=False, default=0)
    min_quantity = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="available")
    manufacturer = Column(String, nullable=True)
    location = Column(String, nullable=True)
    notes = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class VmMonitoringRow(Base):
    __tablename__ = "vm_monitoring"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vm_id = Column(String, nullable=False, index=True)
    hostname = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    status = Column(String, nullable=True)
    cpu_usage = Column(Float, nullable=True)
    memory_usage = Column(Float, nullable=True)
    disk_usage = Column(Float, nullable=True)
    uptime = Column(Integer, nullable=True)
    updated_at = Column(Float, nullable=False)


class SchemaMigrationRow(Base):
    __tablename__ = "schema_migrations"

    name = Column(String, primary_key=True)
    applied_at = Column(Float, nullable=False)


# Tables the durable backend cannot run without.
REQUIRED_TABLES = ("users", "assets", "licenses", "accessories", "consumables")

# Table the secondary startup probe looks for. Its absence is logged only.
EXPECTED_PROBE_TABLE = "vm_monitoring"

# SQLSTATE for unique_violation.
_PG_UNIQUE_VIOLATION = "23505"


def _integrity_error(exc: IntegrityError) -> StorageError:
    pgcode = getattr(exc.orig, "pgcode", None)
    if pgcode is not None:
        unique = pgcode == _PG_UNIQUE_VIOLATION
    else:
        # SQLite: "UNIQUE constraint failed: assets.asset_tag"
        unique = "unique" in str(exc.orig).lower()
    if unique:
        return DuplicateRecordError(str(exc.orig))
    return StorageError(str(exc.orig))


class DatabaseStorage:
    """
    SQLAlchemy-backed implementation of the storage operations. Accepts any
    engine (Postgres in production, SQLite in tests) whose schema has been
    migrated.
    """

    def __init__(self, engine: Engine):
        if engine is None:
            raise BackendInitError("DatabaseStorage requires an engine")
        try:
            existing = set(inspect(engine).get_table_names())
        except SQLAlchemyError as exc:
            raise BackendInitError(f"Could not inspect database schema: {exc}") from exc
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            raise BackendInitError(
                "Database schema is missing tables: " + ", ".join(missing)
            )
        self.engine = engine
        self.Session = sessionmaker(
            bind=engine, class_=Session, expire_on_commit=False, future=True
        )

    def _to_record(self, row, record_type: type):
        return record_type(
            **{name: getattr(row, name) for name in record_field_names(record_type)}
        )

    def _get(self, row_type, record_type, record_id: int):
        with self.Session() as session:
            row = session.get(row_type, record_id)
            return self._to_record(row, record_type) if row else None

    def _list(self, row_type, record_type):
        with self.Session() as session:
            rows = session.execute(select(row_type).order_by(row_type.id.asc())).scalars()
            return [self._to_record(row, record_type) for row in rows]

    def _create(self, row_type, record_type, values: dict):
        now = time.time()
        check_required_fields(record_type, values)
        allowed = record_field_names(record_type) - {"id", "created_at", "updated_at"}
        # Fill defaults from the dataclass so both backends agree on them.
        defaults = record_type(
            id=0, **{k: v for k, v in values.items() if k in allowed}
        )
        data = {name: getattr(defaults, name) for name in allowed}
        with self.Session() as session:
            row = row_type(**data, created_at=now, updated_at=now)
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise _integrity_error(exc) from exc
            session.refresh(row)
            return self._to_record(row, record_type)

    def _update(self, row_type, record_type, kind: str, record_id: int, values: dict):
        allowed = record_field_names(record_type) - {"id", "created_at", "updated_at"}
        with self.Session() as session:
            row = session.get(row_type, record_id)
            if not row:
                raise RecordNotFoundError(kind, record_id)
            check_required_fields(record_type, values)
            for key, value in values.items():
                if key in allowed:
                    setattr(row, key, value)
            row.updated_at = time.time()
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise _integrity_error(exc) from exc
            session.refresh(row)
            return self._to_record(row, record_type)

    def _delete(self, row_type, kind: str, record_id: int) -> None:
        with self.Session() as session:
            row = session.get(row_type, record_id)
            if not row:
                raise RecordNotFoundError(kind, record_id)
            session.delete(row)
            session.commit()

    # Users

    def get_user(self, user_id: int) -> Optional[User]:
        return self._get(UserRow, User, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self.Session() as session:
            stmt = select(UserRow).where(UserRow.username == username).limit(1)
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_record(row, User) if row else None

    def list_users(self) -> list[User]:
        return self._list(UserRow, User)

    def create_user(self, fields: dict) -> User:
        if self.get_user_by_username(fields["username"]) is not None:
            raise DuplicateRecordError(f"username {fields['username']!r} already exists")
        return self._create(UserRow, User, fields)

    def update_user(self, user_id: int, fields: dict) -> User:
        return self._update(UserRow, User, "user", user_id, fields)

    def delete_user(self, user_id: int) -> None:
        self._delete(UserRow, "user", user_id)

    # Assets

    def get_asset(self, asset_id: int) -> Optional[Asset]:
        return self._get(AssetRow, Asset, asset_id)

    def list_assets(self) -> list[Asset]:
        return self._list(AssetRow, Asset)

    def create_asset(self, fields: dict) -> Asset:
        return self._create(AssetRow, Asset, fields)

    def update_asset(self, asset_id: int, fields: dict) -> Asset:
        return self._update(AssetRow, Asset, "asset", asset_id, fields)

    def delete_asset(self, asset_id: int) -> None:
        self._delete(AssetRow, "asset", asset_id)

    # Licenses

    def get_license(self, license_id: int) -> Optional[License]:
        return self._get(LicenseRow, License, license_id)

    def list_licenses(self) -> list[License]:
        return self._list(LicenseRow, License)

    def create_license(self, fields: dict) -> License:
        return self._create(LicenseRow, License, fields)

    def update_license(self, license_id: int, fields: dict) -> License:
        return self._update(LicenseRow, License, "license", license_id, fields)

    def delete_license(self, license_id: int) -> None:
        self._delete(LicenseRow, "license", license_id)

    # Accessories

    def get_accessory(self, accessory_id: int) -> Optional[Accessory]:
        return self._get(AccessoryRow, Accessory, accessory_id)

    def list_accessories(self) -> list[Accessory]:
        return self._list(AccessoryRow, Accessory)

    def create_accessory(self, fields: dict) -> Accessory:
        return self._create(AccessoryRow, Accessory, fields)

    def update_accessory(self, accessory_id: int, fields: dict) -> Accessory:
        return self._update(AccessoryRow, Accessory, "accessory", accessory_id, fields)

    def delete_accessory(self, accessory_id: int) -> None:
        self._delete(AccessoryRow, "accessory", accessory_id)

    # Consumables

    def get_consumable(self, consumable_id: int) -> Optional[Consumable]:
        return self._get(ConsumableRow, Consumable, consumable_id)

    def list_consumables(self) -> list[Consumable]:
        return self._list(ConsumableRow, Consumable)

    def create_consumable(self, fields: dict) -> Consumable:
        return self._create(ConsumableRow, Consumable, fields)

    def update_consumable(self, consumable_id: int, fields: dict) -> Consumable:
        return self._update(
            ConsumableRow, Consumable, "consumable", consumable_id, fields
        )

    def delete_consumable(self, consumable_id: int) -> None:
        self._delete(ConsumableRow, "consumable", consumable_id)


@dataclass
class ConnectionStatus:
    """Snapshot of what the connector knows about the database."""

    declared: bool
    engine: Optional[Engine]

    @property
    def handle_available(self) -> bool:
        return self.engine is not None


class DatabaseConnector:
    """
    Owns the SQLAlchemy engine for DATABASE_URL and the "declared connected"
    flag. The flag is set once a first query on the engine succeeds.
    """

    def __init__(
        self,
        database_url: Optional[str],
        engine_factory: Callable[[str], Engine] | None = None,
    ):
        self.database_url = database_url
        self._engine_factory = engine_factory or self._default_engine_factory
        self._engine: Optional[Engine] = None
        self._connected = False
        self.last_error: Optional[BaseException] = None

    @staticmethod
    def _default_engine_factory(database_url: str) -> Engine:
        return create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )

    @property
    def configured(self) -> bool:
        return bool(self.database_url)

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(declared=self._connected, engine=self._engine)

    def connect(self) -> bool:
        """Create the engine if needed and try one round trip."""
        if not self.database_url:
            return False
        try:
            if self._engine is None:
                self._engine = self._engine_factory(self.database_url)
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            self._connected = True
            self.last_error = None
        except (SQLAlchemyError, ImportError) as exc:
            # Engine creation can fail on a malformed URL or missing driver.
            self._connected = False
            self.last_error = exc
            logger.warning("Database connection attempt failed: %s", exc)
        return self._connected

    async def wait_until_ready(
        self,
        timeout: float,
        initial_backoff: float = 0.25,
        max_backoff: float = 2.0,
        attempt_timeout: float | None = None,
    ) -> bool:
        """
        Retry `connect` with exponential backoff until it succeeds or
        `timeout` seconds elapse. Returns the final connected state.
        """
        if not self.database_url:
            return False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        backoff = initial_backoff
        while True:
            try:
                if await asyncio.wait_for(
                    asyncio.to_thread(self.connect), timeout=attempt_timeout
                ):
                    return True
            except asyncio.TimeoutError:
                logger.warning("Database connection attempt timed out")
            remaining = deadline - loop.time()
            if remaining <= 0:
                return self._connected
            await asyncio.sleep(min(backoff, remaining))
            backoff = min(backoff * 2, max_backoff)

    def probe(self) -> bool:
        """Direct query; verified only when at least one row comes back."""
        if self._engine is None:
            raise DatabaseConnectionError("No database engine available")
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(text("SELECT 1 AS connection_test")).fetchall()
        except SQLAlchemyError as exc:
            raise DatabaseConnectionError(str(exc)) from exc
        return len(rows) > 0

    def has_table(self, table_name: str) -> bool:
        if self._engine is None:
            return False
        quoted = self._engine.dialect.identifier_preparer.quote(table_name)
        try:
            with self._engine.connect() as conn:
                conn.execute(text(f"SELECT COUNT(*) FROM {quoted}")).scalar()
        except SQLAlchemyError:
            return False
        return True

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
