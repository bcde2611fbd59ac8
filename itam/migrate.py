"""
Ordered schema migrations for the durable backend.

Each migration is named and idempotent; applied names are recorded in
`schema_migrations` so a restart only runs what is new.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from sqlalchemy import Table, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from itam.db import (
    AccessoryRow,
    AssetRow,
    ConsumableRow,
    LicenseRow,
    SchemaMigrationRow,
    UserRow,
    VmMonitoringRow,
)
from itam.errors import MigrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    name: str
    apply: Callable[[Connection], None]


def _create_tables(*tables: Table) -> Callable[[Connection], None]:
    def apply(conn: Connection) -> None:
        for table in tables:
            table.create(bind=conn, checkfirst=True)

    return apply


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        "0001_core_tables",
        _create_tables(UserRow.__table__, AssetRow.__table__, LicenseRow.__table__),
    ),
    Migration(
        "0002_inventory_tables",
        _create_tables(AccessoryRow.__table__, ConsumableRow.__table__),
    ),
    Migration("0003_vm_monitoring", _create_tables(VmMonitoringRow.__table__)),
)


class MigrationRunner:
    def __init__(self, engine: Engine, migrations: Sequence[Migration] = MIGRATIONS):
        self.engine = engine
        self.migrations = list(migrations)

    def applied(self) -> list[str]:
        table = SchemaMigrationRow.__table__
        with self.engine.connect() as conn:
            if not self.engine.dialect.has_table(conn, table.name):
                return []
            return list(conn.execute(select(table.c.name).order_by(table.c.name)).scalars())

    def run(self) -> list[str]:
        """
        Apply pending migrations in order. Returns the names applied by this
        call. Raises MigrationError on the first failure; migrations applied
        before it stay recorded.
        """
        table = SchemaMigrationRow.__table__
        try:
            with self.engine.begin() as conn:
                table.create(bind=conn, checkfirst=True)
            done = set(self.applied())
        except SQLAlchemyError as exc:
            raise MigrationError(f"Could not read migration state: {exc}") from exc

        newly_applied: list[str] = []
        for migration in self.migrations:
            if migration.name in done:
                continue
            logger.info("Applying migration %s", migration.name)
            try:
                with self.engine.begin() as conn:
                    migration.apply(conn)
                    conn.execute(
                        table.insert().values(
                            name=migration.name, applied_at=time.time()
                        )
                    )
            except Exception as exc:
                raise MigrationError(
                    f"Migration {migration.name} failed: {exc}",
                    migration=migration.name,
                ) from exc
            newly_applied.append(migration.name)

        if newly_applied:
            logger.info("Applied %d migration(s)", len(newly_applied))
        else:
            logger.info("Database schema is up to date")
        return newly_applied
