"""
Natural-key repositories for the catalog tables.

Each entity type is written by diffing the incoming rows against the existing rows
with the same natural key: missing keys are inserted, keys whose compared columns
differ are updated by primary key, the rest are left untouched.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_ingest.models.database import (
    CategoryTable,
    ImageTable,
    PriceTable,
    ProducerTable,
    ProductTable,
    StockTable,
    UnitTable,
    VariantTable,
)
from catalog_ingest.repositories.base import RepositoryError

logger = structlog.get_logger(__name__)

Row = dict[str, Any]


class RowDiff(BaseModel):
    """Incoming rows partitioned against the existing rows"""

    to_insert: list[Row] = Field(default_factory=list)
    to_update: list[Row] = Field(default_factory=list)
    unchanged: int = 0


def values_differ(incoming: Any, stored: Any) -> bool:
    if incoming is None or stored is None:
        return (incoming is None) != (stored is None)
    numeric = (int, float, Decimal)
    if (
        isinstance(incoming, numeric)
        and isinstance(stored, numeric)
        and not isinstance(incoming, bool)
        and not isinstance(stored, bool)
    ):
        return Decimal(str(incoming)) != Decimal(str(stored))
    return incoming != stored


class NaturalKeyRepository:
    """Batched diff-and-write access to one catalog table"""

    def __init__(
        self,
        session: AsyncSession,
        table_class: type,
        key_columns: tuple[str, ...],
        compare_columns: tuple[str, ...],
        id_column: str = "id",
        chunk_size: int = 500,
    ) -> None:
        self.session = session
        self.table_class = table_class
        self.key_columns = key_columns
        self.compare_columns = compare_columns
        self.id_column = id_column
        self.chunk_size = chunk_size
        self.has_updated_at = "updated_at" in table_class.__table__.c
        self.logger = logger.bind(
            repository=self.__class__.__name__, table=table_class.__tablename__
        )

    @property
    def table_name(self) -> str:
        return self.table_class.__tablename__

    def key_of(self, row: Row) -> Any:
        if len(self.key_columns) == 1:
            return row[self.key_columns[0]]
        return tuple(row[column] for column in self.key_columns)

    async def load_existing(self, rows: Iterable[Row]) -> dict[Any, Row]:
        """
        Load stored rows sharing a natural key with the incoming rows.

        The lookup filters on the first key column in chunks to bound the number
        of bound parameters per statement.

        Raises:
            RepositoryError: If the query fails
        """
        filter_column = self.key_columns[0]
        values = list(dict.fromkeys(row[filter_column] for row in rows))
        columns = list(dict.fromkeys((self.id_column, *self.key_columns, *self.compare_columns)))
        selected = [getattr(self.table_class, column) for column in columns]

        existing: dict[Any, Row] = {}
        try:
            for start in range(0, len(values), self.chunk_size):
                chunk = values[start : start + self.chunk_size]
                query = select(*selected).where(
                    getattr(self.table_class, filter_column).in_(chunk)
                )
                result = await self.session.execute(query)
                for mapping in result.mappings():
                    stored = dict(mapping)
                    existing[self.key_of(stored)] = stored
        except Exception as e:
            self.logger.error("Failed to load existing rows", keys=len(values), error=str(e))
            raise RepositoryError(f"Failed to load existing {self.table_name}: {e}", e) from e

        return existing

    def partition(self, rows: Iterable[Row], existing: dict[Any, Row]) -> RowDiff:
        """Split rows into inserts, updates by primary key and unchanged rows"""
        incoming: dict[Any, Row] = {}
        for row in rows:
            incoming[self.key_of(row)] = row

        diff = RowDiff()
        for key, row in incoming.items():
            stored = existing.get(key)
            if stored is None:
                diff.to_insert.append(row)
                continue

            changed = any(
                values_differ(row.get(column), stored.get(column))
                for column in self.compare_columns
            )
            if changed:
                update_row = {self.id_column: stored[self.id_column]}
                update_row.update({column: row.get(column) for column in self.compare_columns})
                diff.to_update.append(update_row)
            else:
                diff.unchanged += 1
        return diff

    async def insert_batch(self, rows: list[Row]) -> None:
        """
        Insert one batch of rows.

        Raises:
            RepositoryError: If the statement fails
        """
        if not rows:
            return
        try:
            await self.session.execute(insert(self.table_class), rows)
        except Exception as e:
            self.logger.error("Batch insert failed", rows=len(rows), error=str(e))
            raise RepositoryError(f"Failed to insert {self.table_name}: {e}", e) from e

    async def update_batch(self, rows: list[Row]) -> None:
        """
        Update one batch of rows by primary key.

        Raises:
            RepositoryError: If the statement fails
        """
        if not rows:
            return
        if self.has_updated_at:
            now = datetime.now(timezone.utc)
            rows = [{**row, "updated_at": now} for row in rows]
        try:
            await self.session.execute(update(self.table_class), rows)
        except Exception as e:
            self.logger.error("Batch update failed", rows=len(rows), error=str(e))
            raise RepositoryError(f"Failed to update {self.table_name}: {e}", e) from e

    async def fetch_ids(self, rows: Iterable[Row]) -> dict[Any, Any]:
        """Natural key to surrogate id for the given rows"""
        existing = await self.load_existing(rows)
        return {key: stored[self.id_column] for key, stored in existing.items()}


def build_catalog_repositories(
    session: AsyncSession, chunk_size: int = 500
) -> dict[str, NaturalKeyRepository]:
    """Repositories for the eight catalog tables, in write order"""

    def repo(
        table_class: type,
        key_columns: tuple[str, ...],
        compare_columns: tuple[str, ...],
        id_column: Optional[str] = None,
    ) -> NaturalKeyRepository:
        return NaturalKeyRepository(
            session,
            table_class,
            key_columns,
            compare_columns,
            id_column=id_column or "id",
            chunk_size=chunk_size,
        )

    return {
        "categories": repo(CategoryTable, ("id",), ("name", "path", "parent_id")),
        "producers": repo(ProducerTable, ("name",), ()),
        "units": repo(UnitTable, ("id",), ("name", "moq")),
        "products": repo(
            ProductTable,
            ("code",),
            (
                "name",
                "description_short",
                "description_long",
                "ean",
                "producer_code",
                "producer_id",
                "category_id",
                "unit_id",
                "vat",
                "url",
            ),
        ),
        "variants": repo(
            VariantTable, ("product_id", "code"), ("weight", "gross_weight", "ean")
        ),
        "stocks": repo(
            StockTable,
            ("variant_id",),
            ("quantity", "available", "min_order_quantity", "max_order_quantity"),
        ),
        "prices": repo(
            PriceTable,
            ("variant_id",),
            ("gross_price", "net_price", "srp_gross", "srp_net", "currency", "vat"),
        ),
        "images": repo(ImageTable, ("product_id", "url"), ()),
    }


__all__ = [
    "RowDiff",
    "NaturalKeyRepository",
    "values_differ",
    "build_catalog_repositories",
]
