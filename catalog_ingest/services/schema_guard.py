"""
Destination schema verification and minimal evolution.

Runs before every ingestion. Missing catalog tables abort the run. Missing
nullable or defaulted columns are added, a legacy audit column is renamed, and
the audit and lock tables are created when absent.
"""
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import Column, inspect
from sqlalchemy.ext.asyncio import AsyncEngine

from catalog_ingest.errors import SchemaMismatchError
from catalog_ingest.models.database import (
    CATALOG_TABLES,
    IngestionLockTable,
    SyncHealthTable,
)
from catalog_ingest.services.maintenance import _ensure_indexes_sync

logger = structlog.get_logger(__name__)

# old name -> current name
AUDIT_COLUMN_RENAMES = {"source": "source_file"}

SQL_DEFAULTS = {
    "error_count": "0",
    "records_processed": "0",
    "created_at": "CURRENT_TIMESTAMP",
    "updated_at": "CURRENT_TIMESTAMP",
}


class SchemaReport(BaseModel):
    """What the guard found and changed"""

    migrations_applied: list[str] = Field(default_factory=list)
    indexes_created: list[str] = Field(default_factory=list)
    has_hierarchy_support: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.migrations_applied or self.indexes_created)


class SchemaGuard:
    """Verify and minimally evolve the destination schema"""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.logger = logger.bind(component="schema_guard")

    async def verify(self) -> SchemaReport:
        """
        Check the destination and apply idempotent migrations.

        Returns:
            SchemaReport listing applied migrations

        Raises:
            SchemaMismatchError: Catalog tables or required columns are missing and
                cannot be added
        """
        try:
            async with self.engine.begin() as conn:
                report = await conn.run_sync(self._verify_sync)
        except SchemaMismatchError:
            raise
        except Exception as e:
            self.logger.error("Schema verification failed", error=str(e))
            raise SchemaMismatchError(
                f"Schema verification failed: {e}", original_error=e
            ) from e

        if report.changed:
            self.logger.info(
                "Schema evolved",
                migrations=report.migrations_applied,
                indexes=report.indexes_created,
            )
        else:
            self.logger.debug("Schema verified")
        return report

    def _verify_sync(self, sync_conn: Any) -> SchemaReport:
        report = SchemaReport()
        inspector = inspect(sync_conn)
        tables = set(inspector.get_table_names())

        missing = [
            table_class.__tablename__
            for table_class in CATALOG_TABLES
            if table_class.__tablename__ not in tables
        ]
        if missing:
            raise SchemaMismatchError(
                f"Destination is missing catalog tables: {', '.join(missing)}",
                context={"missing_tables": missing},
            )

        for table_class in CATALOG_TABLES:
            self._add_missing_columns(sync_conn, inspector, table_class.__table__, report)

        for table_class in (SyncHealthTable, IngestionLockTable):
            table = table_class.__table__
            if table.name not in tables:
                table.create(sync_conn)
                report.migrations_applied.append(f"create table {table.name}")
                continue
            if table_class is SyncHealthTable:
                self._rename_audit_columns(sync_conn, inspector, report)
            self._add_missing_columns(sync_conn, inspector, table, report)

        category_columns = {c["name"] for c in inspect(sync_conn).get_columns("categories")}
        report.has_hierarchy_support = "parent_id" in category_columns

        report.indexes_created = _ensure_indexes_sync(sync_conn)
        return report

    def _rename_audit_columns(self, sync_conn: Any, inspector: Any, report: SchemaReport) -> None:
        preparer = sync_conn.dialect.identifier_preparer
        columns = {c["name"] for c in inspector.get_columns(SyncHealthTable.__tablename__)}
        for old_name, new_name in AUDIT_COLUMN_RENAMES.items():
            if old_name in columns and new_name not in columns:
                sync_conn.exec_driver_sql(
                    f"ALTER TABLE {preparer.quote(SyncHealthTable.__tablename__)} "
                    f"RENAME COLUMN {preparer.quote(old_name)} TO {preparer.quote(new_name)}"
                )
                report.migrations_applied.append(
                    f"rename {SyncHealthTable.__tablename__}.{old_name} to {new_name}"
                )
        inspector.clear_cache()

    def _add_missing_columns(
        self, sync_conn: Any, inspector: Any, table: Any, report: SchemaReport
    ) -> None:
        existing = {c["name"] for c in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in existing:
                continue
            ddl = self._column_ddl(sync_conn, table.name, column)
            sync_conn.exec_driver_sql(ddl)
            report.migrations_applied.append(f"add column {table.name}.{column.name}")
        inspector.clear_cache()

    @staticmethod
    def _column_ddl(sync_conn: Any, table_name: str, column: Column) -> str:
        preparer = sync_conn.dialect.identifier_preparer
        column_type = column.type.compile(dialect=sync_conn.dialect)
        default = SQL_DEFAULTS.get(column.name)

        if column.primary_key or (not column.nullable and default is None):
            raise SchemaMismatchError(
                f"Required column {table_name}.{column.name} is missing and has no default",
                context={"table": table_name, "column": column.name},
            )

        ddl = (
            f"ALTER TABLE {preparer.quote(table_name)} "
            f"ADD COLUMN {preparer.quote(column.name)} {column_type}"
        )
        if default == "CURRENT_TIMESTAMP" and sync_conn.dialect.name == "sqlite":
            # SQLite only accepts constant defaults in ADD COLUMN
            default = None
        if default is not None:
            ddl += f" DEFAULT {default}"
            if not column.nullable:
                ddl += " NOT NULL"
        for foreign_key in column.foreign_keys:
            target = foreign_key.column
            ddl += (
                f" REFERENCES {preparer.quote(target.table.name)}"
                f"({preparer.quote(target.name)})"
            )
        return ddl


__all__ = ["SchemaGuard", "SchemaReport"]
