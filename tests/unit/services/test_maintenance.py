"""
Unit tests for catalog maintenance: purge, statistics and index checks.
"""
import pytest
from sqlalchemy import insert

from catalog_ingest.errors import PurgeNotConfirmedError
from catalog_ingest.models.database import (
    CategoryTable,
    ImageTable,
    ProducerTable,
    ProductTable,
    UnitTable,
    VariantTable,
)
from catalog_ingest.services.maintenance import MaintenanceService


@pytest.fixture
def service(engine, session_factory):
    return MaintenanceService(engine, session_factory)


@pytest.fixture
async def populated(session_factory):
    """A small catalog with one product of each kind"""
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                insert(CategoryTable),
                [
                    {"id": "A", "name": "A", "path": "A", "parent_id": None},
                    {"id": "A_B", "name": "B", "path": "A/B", "parent_id": "A"},
                ],
            )
            await session.execute(insert(ProducerTable), [{"id": 1, "name": "Acme"}])
            await session.execute(insert(UnitTable), [{"id": "szt", "name": "szt", "moq": 1}])
            await session.execute(
                insert(ProductTable),
                [{"id": 1, "code": "P-1", "name": "Hammer", "producer_id": 1, "category_id": "A_B", "unit_id": "szt"}],
            )
            await session.execute(insert(VariantTable), [{"id": 1, "product_id": 1, "code": "P-1"}])
            await session.execute(insert(ImageTable), [{"product_id": 1, "url": "https://x.com/1.jpg"}])


class TestPurge:
    """Test the confirmed purge"""

    async def test_requires_confirmation(self, service, populated):
        """Test nothing is deleted without confirmation"""
        with pytest.raises(PurgeNotConfirmedError):
            await service.purge(confirm=False)

        counts = await service.table_statistics()
        assert counts["products"] == 1

    async def test_truthy_value_is_not_confirmation(self, service, populated):
        """Test only the literal True confirms"""
        with pytest.raises(PurgeNotConfirmedError):
            await service.purge(confirm="yes")

    async def test_purge_keeps_reference_data(self, service, populated):
        """Test the default purge leaves categories, producers and units"""
        deleted = await service.purge(confirm=True)
        counts = await service.table_statistics()

        assert deleted["products"] == 1
        assert deleted["images"] == 1
        assert counts["products"] == 0
        assert counts["variants"] == 0
        assert counts["categories"] == 2
        assert counts["producers"] == 1

    async def test_purge_reference_data(self, service, populated):
        """Test the full purge empties every catalog table"""
        deleted = await service.purge(confirm=True, include_reference_data=True)
        counts = await service.table_statistics()

        assert deleted["categories"] == 2
        assert set(counts.values()) == {0}


class TestStatisticsAndIndexes:
    """Test table counts and index maintenance"""

    async def test_table_statistics(self, service, populated):
        """Test every catalog table is counted"""
        counts = await service.table_statistics()

        assert list(counts) == [
            "categories",
            "producers",
            "units",
            "products",
            "variants",
            "stocks",
            "prices",
            "images",
        ]
        assert counts["categories"] == 2
        assert counts["stocks"] == 0

    async def test_ensure_indexes_noop(self, service):
        """Test an intact schema needs no indexes"""
        assert await service.ensure_indexes() == []

    async def test_ensure_indexes_recreates(self, service, engine):
        """Test dropped lookup indexes are recreated"""
        async with engine.begin() as conn:
            await conn.exec_driver_sql("DROP INDEX idx_variants_code")
            await conn.exec_driver_sql("DROP INDEX idx_variants_product_id")

        created = await service.ensure_indexes()

        # product_id still leads the (product_id, code) unique constraint
        assert created == ["idx_variants_code"]
