"""
Catalog maintenance operations: confirmed purge, table statistics and the index
check for the columns the loader looks rows up by.
"""
from typing import Any

import structlog
from sqlalchemy import delete, func, inspect, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from catalog_ingest.errors import PurgeNotConfirmedError
from catalog_ingest.models.database import (
    CATALOG_TABLES,
    CategoryTable,
    ImageTable,
    PriceTable,
    ProducerTable,
    ProductTable,
    StockTable,
    UnitTable,
    VariantTable,
)
from catalog_ingest.repositories.base import DatabaseSession

logger = structlog.get_logger(__name__)

# Children before parents
PURGE_ORDER = (ImageTable, PriceTable, StockTable, VariantTable, ProductTable)
REFERENCE_PURGE_ORDER = (CategoryTable, ProducerTable, UnitTable)

REQUIRED_INDEXES = (
    ("products", "code"),
    ("products", "ean"),
    ("variants", "code"),
    ("variants", "product_id"),
)


async def purge_catalog(
    session: AsyncSession, confirm: bool, include_reference_data: bool = False
) -> dict[str, int]:
    """
    Delete catalog rows inside the caller's transaction.

    Args:
        session: Session whose transaction the deletes join
        confirm: Operator confirmation; nothing is deleted without it
        include_reference_data: Also delete categories, producers and units

    Returns:
        Deleted row count per table

    Raises:
        PurgeNotConfirmedError: confirm is not True
    """
    if confirm is not True:
        raise PurgeNotConfirmedError(
            "Purge requires explicit confirmation",
            context={"include_reference_data": include_reference_data},
        )

    tables = PURGE_ORDER + (REFERENCE_PURGE_ORDER if include_reference_data else ())
    deleted: dict[str, int] = {}
    for table_class in tables:
        if table_class is CategoryTable:
            await session.execute(update(CategoryTable).values(parent_id=None))
        result = await session.execute(delete(table_class))
        deleted[table_class.__tablename__] = max(result.rowcount or 0, 0)

    logger.warning("Catalog purged", **deleted)
    return deleted


async def table_statistics(session: AsyncSession) -> dict[str, int]:
    """Row count of each catalog table"""
    counts: dict[str, int] = {}
    for table_class in CATALOG_TABLES:
        result = await session.execute(select(func.count()).select_from(table_class))
        counts[table_class.__tablename__] = result.scalar() or 0
    return counts


def _ensure_indexes_sync(sync_conn: Any) -> list[str]:
    inspector = inspect(sync_conn)
    preparer = sync_conn.dialect.identifier_preparer
    existing_tables = set(inspector.get_table_names())
    created: list[str] = []

    for table_name, column in REQUIRED_INDEXES:
        if table_name not in existing_tables:
            continue

        leading_columns = {
            index["column_names"][0]
            for index in inspector.get_indexes(table_name)
            if index.get("column_names")
        }
        leading_columns.update(
            constraint["column_names"][0]
            for constraint in inspector.get_unique_constraints(table_name)
            if constraint.get("column_names")
        )
        primary_key = inspector.get_pk_constraint(table_name).get("constrained_columns") or []
        if primary_key:
            leading_columns.add(primary_key[0])

        if column in leading_columns:
            continue

        index_name = f"idx_{table_name}_{column}"
        sync_conn.exec_driver_sql(
            f"CREATE INDEX IF NOT EXISTS {preparer.quote(index_name)} "
            f"ON {preparer.quote(table_name)} ({preparer.quote(column)})"
        )
        created.append(index_name)

    return created


async def ensure_indexes(engine: AsyncEngine) -> list[str]:
    """Create missing lookup indexes; returns the names of created indexes"""
    async with engine.begin() as conn:
        created = await conn.run_sync(_ensure_indexes_sync)
    if created:
        logger.info("Indexes created", indexes=created)
    return created


class MaintenanceService:
    """Operator-facing maintenance entry points with their own transactions"""

    def __init__(self, engine: AsyncEngine, session_factory: async_sessionmaker) -> None:
        self.engine = engine
        self.session_factory = session_factory
        self.logger = logger.bind(component="maintenance")

    async def purge(self, confirm: bool, include_reference_data: bool = False) -> dict[str, int]:
        """Purge the catalog in one transaction"""
        async with DatabaseSession(self.session_factory()) as session:
            return await purge_catalog(session, confirm, include_reference_data)

    async def table_statistics(self) -> dict[str, int]:
        async with DatabaseSession(self.session_factory()) as session:
            return await table_statistics(session)

    async def ensure_indexes(self) -> list[str]:
        return await ensure_indexes(self.engine)


__all__ = [
    "purge_catalog",
    "table_statistics",
    "ensure_indexes",
    "MaintenanceService",
    "REQUIRED_INDEXES",
]
