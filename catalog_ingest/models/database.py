"""
SQLAlchemy table definitions for the catalog store and the run audit log.

Eight catalog tables written by the loader, the append-only sync_health audit table
and the ingestion_locks table used for run mutual exclusion on engines without
advisory locks.
"""
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class CategoryTable(Base):
    """Category tree, ids derived from the category path"""

    __tablename__ = "categories"

    id = Column(Text, primary_key=True)
    name = Column(String(255), nullable=False)
    path = Column(Text)
    parent_id = Column(Text, ForeignKey("categories.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    __table_args__ = (Index("idx_categories_parent_id", "parent_id"),)

    def __repr__(self) -> str:
        return f"<Category(id='{self.id}', name='{self.name}')>"


class ProducerTable(Base):
    """Producers keyed by name"""

    __tablename__ = "producers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint("name", name="uq_producers_name"),)

    def __repr__(self) -> str:
        return f"<Producer(id={self.id}, name='{self.name}')>"


class UnitTable(Base):
    """Units of sale keyed by unit code"""

    __tablename__ = "units"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    moq = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<Unit(id='{self.id}', moq={self.moq})>"


class ProductTable(Base):
    """Products keyed by feed code"""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(100), nullable=False)
    name = Column(Text, nullable=False)
    description_short = Column(Text)
    description_long = Column(Text)
    ean = Column(String(14))
    producer_code = Column(String(100))
    producer_id = Column(Integer, ForeignKey("producers.id"), nullable=True)
    category_id = Column(Text, ForeignKey("categories.id"), nullable=True)
    unit_id = Column(String(100), ForeignKey("units.id"), nullable=True)
    vat = Column(Numeric(5, 2))
    url = Column(Text)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("code", name="uq_products_code"),
        Index("idx_products_ean", "ean"),
        Index("idx_products_category_id", "category_id"),
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, code='{self.code}')>"


class VariantTable(Base):
    """Variants keyed by (product_id, code)"""

    __tablename__ = "variants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    code = Column(String(100), nullable=False)
    weight = Column(Numeric(12, 3))
    gross_weight = Column(Numeric(12, 3))
    ean = Column(String(14))

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("product_id", "code", name="uq_variants_product_code"),
        Index("idx_variants_code", "code"),
        Index("idx_variants_product_id", "product_id"),
    )

    def __repr__(self) -> str:
        return f"<Variant(id={self.id}, code='{self.code}')>"


class StockTable(Base):
    """Stock level, one row per variant"""

    __tablename__ = "stocks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    variant_id = Column(Integer, ForeignKey("variants.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    available = Column(Boolean, nullable=False, default=False)
    min_order_quantity = Column(Integer, nullable=False, default=1)
    max_order_quantity = Column(Integer)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint("variant_id", name="uq_stocks_variant_id"),)

    def __repr__(self) -> str:
        return f"<Stock(variant_id={self.variant_id}, quantity={self.quantity})>"


class PriceTable(Base):
    """Trade and suggested retail prices, one row per variant"""

    __tablename__ = "prices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    variant_id = Column(Integer, ForeignKey("variants.id"), nullable=False)
    gross_price = Column(Numeric(12, 2))
    net_price = Column(Numeric(12, 2))
    srp_gross = Column(Numeric(12, 2))
    srp_net = Column(Numeric(12, 2))
    currency = Column(String(3), nullable=False, default="EUR")
    vat = Column(Numeric(5, 2))

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint("variant_id", name="uq_prices_variant_id"),)

    def __repr__(self) -> str:
        return f"<Price(variant_id={self.variant_id}, gross={self.gross_price})>"


class ImageTable(Base):
    """Product images keyed by (product_id, url)"""

    __tablename__ = "images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    url = Column(String(1000), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        UniqueConstraint("product_id", "url", name="uq_images_product_url"),
    )

    def __repr__(self) -> str:
        return f"<Image(product_id={self.product_id}, url='{self.url}')>"


class SyncHealthTable(Base):
    """Append-only audit row per ingestion run"""

    __tablename__ = "sync_health"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sync_type = Column(String(50), nullable=False, default="full")
    source_file = Column(String(500), nullable=False, default="")
    status = Column(String(20), nullable=False, default="running", index=True)
    start_time = Column(DateTime(timezone=True), nullable=False, default=func.now())
    end_time = Column(DateTime(timezone=True))
    duration_seconds = Column(Float)
    records_processed = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    details = Column(JSON)
    memory_usage_mb = Column(Float)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    __table_args__ = (Index("idx_sync_health_start_time", "start_time"),)

    def __repr__(self) -> str:
        return f"<SyncHealth(id={self.id}, status='{self.status}')>"


class IngestionLockTable(Base):
    """Run lock rows for engines without advisory locks"""

    __tablename__ = "ingestion_locks"

    lock_key = Column(String(64), primary_key=True)
    source_file = Column(String(500), nullable=False)
    holder = Column(String(255), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<IngestionLock(lock_key='{self.lock_key}', holder='{self.holder}')>"


CATALOG_TABLES = (
    CategoryTable,
    ProducerTable,
    UnitTable,
    ProductTable,
    VariantTable,
    StockTable,
    PriceTable,
    ImageTable,
)


__all__ = [
    "Base",
    "CategoryTable",
    "ProducerTable",
    "UnitTable",
    "ProductTable",
    "VariantTable",
    "StockTable",
    "PriceTable",
    "ImageTable",
    "SyncHealthTable",
    "IngestionLockTable",
    "CATALOG_TABLES",
]
