"""
Unit tests for table definitions.

Reflects the schema created from the metadata on SQLite.
"""
from sqlalchemy import inspect

from catalog_ingest.models.database import (
    CATALOG_TABLES,
    CategoryTable,
    ImageTable,
    ProductTable,
    SyncHealthTable,
)


async def _reflect(engine, operation):
    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: operation(inspect(sync_conn)))


class TestCatalogTables:
    """Test the catalog table definitions"""

    def test_catalog_tables_in_write_order(self):
        """Test parents precede children"""
        names = [table.__tablename__ for table in CATALOG_TABLES]

        assert names == [
            "categories",
            "producers",
            "units",
            "products",
            "variants",
            "stocks",
            "prices",
            "images",
        ]

    def test_category_self_reference(self):
        """Test parent_id points back at categories"""
        foreign_keys = list(CategoryTable.__table__.c.parent_id.foreign_keys)

        assert foreign_keys[0].column.table.name == "categories"

    def test_images_have_no_updated_at(self):
        """Test images are insert-only"""
        assert "updated_at" not in ImageTable.__table__.c

    async def test_created_schema_has_all_tables(self, engine):
        """Test create_all produces catalog, audit and lock tables"""
        tables = set(await _reflect(engine, lambda inspector: inspector.get_table_names()))

        for table_class in CATALOG_TABLES:
            assert table_class.__tablename__ in tables
        assert "sync_health" in tables
        assert "ingestion_locks" in tables

    async def test_product_code_unique(self, engine):
        """Test natural key constraint on products"""
        constraints = await _reflect(
            engine, lambda inspector: inspector.get_unique_constraints("products")
        )

        assert ["code"] in [c["column_names"] for c in constraints]

    async def test_lookup_indexes(self, engine):
        """Test EAN and variant lookup indexes"""
        product_indexes = await _reflect(engine, lambda inspector: inspector.get_indexes("products"))
        variant_indexes = await _reflect(engine, lambda inspector: inspector.get_indexes("variants"))

        assert "idx_products_ean" in {index["name"] for index in product_indexes}
        assert {"idx_variants_code", "idx_variants_product_id"} <= {
            index["name"] for index in variant_indexes
        }


class TestRepr:
    """Test debugging representations"""

    def test_product_repr(self):
        """Test product repr shows the code"""
        assert "P-1" in repr(ProductTable(id=1, code="P-1"))

    def test_sync_health_repr(self):
        """Test audit row repr shows the status"""
        assert "running" in repr(SyncHealthTable(id=1, status="running"))
