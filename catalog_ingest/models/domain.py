"""
Core domain models for the catalog feed ingestion pipeline.

Run options, the normalized entity graph produced by the transformer and the run
result handed back to callers. All structures use Pydantic for validation.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class SyncType(str, Enum):
    """Ingestion run modes"""

    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    """Run lifecycle: running -> succeeded | failed"""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FeedShape(str, Enum):
    """Supported root envelopes of the supplier feed"""

    OFFER = "offer"
    GEKO = "geko"


class IssueKind(str, Enum):
    """Non-fatal record-level problems"""

    VALIDATION = "VALIDATION_ERROR"
    TRANSFORM = "TRANSFORM_ERROR"


# ============================================================================
# Text fields
# ============================================================================


class PlainText(BaseModel):
    """Text field given as a bare string"""

    kind: Literal["plain"] = "plain"
    text: str


class LocalizedText(BaseModel):
    """Text field carrying a language attribute"""

    kind: Literal["localized"] = "localized"
    text: str
    lang: str


TextField = Annotated[Union[PlainText, LocalizedText], Field(discriminator="kind")]


# ============================================================================
# Entity graph
# ============================================================================


class CategoryEntity(BaseModel):
    """Category node with a path-derived id"""

    id: str
    name: str
    path: Optional[str] = None
    parent_id: Optional[str] = None


class ProducerEntity(BaseModel):
    """Producer keyed by name"""

    name: str


class UnitEntity(BaseModel):
    """Unit of sale keyed by its code"""

    id: str
    name: str
    moq: int = Field(1, ge=1, description="Minimum order quantity")


class ProductEntity(BaseModel):
    """Product keyed by its feed code"""

    code: str
    name: str
    description_short: str = ""
    description_long: str = ""
    ean: Optional[str] = None
    producer_name: Optional[str] = None
    producer_code: Optional[str] = None
    category_id: Optional[str] = None
    unit_id: Optional[str] = None
    vat: Optional[Decimal] = None
    url: Optional[str] = None


class VariantEntity(BaseModel):
    """Sellable variant of a product"""

    code: str
    product_code: str
    weight: Optional[Decimal] = None
    gross_weight: Optional[Decimal] = None
    ean: Optional[str] = None


class StockEntity(BaseModel):
    """Stock level of one variant"""

    variant_code: str
    product_code: str
    quantity: int = Field(0, ge=0)
    available: bool = False
    min_order_quantity: int = Field(1, ge=1)
    max_order_quantity: Optional[int] = Field(None, ge=1)


class PriceEntity(BaseModel):
    """Unified price of one variant"""

    variant_code: str
    product_code: str
    gross_price: Optional[Decimal] = None
    net_price: Optional[Decimal] = None
    srp_gross: Optional[Decimal] = None
    srp_net: Optional[Decimal] = None
    currency: str = "EUR"
    vat: Optional[Decimal] = None


class ImageEntity(BaseModel):
    """Product image URL"""

    product_code: str
    url: str


class EntityGraph(BaseModel):
    """Normalized entities of one run, categories ordered parents first"""

    categories: list[CategoryEntity] = Field(default_factory=list)
    producers: list[ProducerEntity] = Field(default_factory=list)
    units: list[UnitEntity] = Field(default_factory=list)
    products: list[ProductEntity] = Field(default_factory=list)
    variants: list[VariantEntity] = Field(default_factory=list)
    stocks: list[StockEntity] = Field(default_factory=list)
    prices: list[PriceEntity] = Field(default_factory=list)
    images: list[ImageEntity] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "categories": len(self.categories),
            "producers": len(self.producers),
            "units": len(self.units),
            "products": len(self.products),
            "variants": len(self.variants),
            "stocks": len(self.stocks),
            "prices": len(self.prices),
            "images": len(self.images),
        }


class RecordIssue(BaseModel):
    """A non-fatal problem found while mapping one record"""

    kind: IssueKind
    message: str
    product_code: Optional[str] = None
    field: Optional[str] = None
    record_index: Optional[int] = None


# ============================================================================
# Parser output
# ============================================================================


class ParsedFeed(BaseModel):
    """Raw product records of a recognized feed"""

    shape: FeedShape
    records: list[Any] = Field(default_factory=list)
    total_records: int = Field(0, ge=0, description="Records in the file before truncation")
    file_size_mb: float = Field(0.0, ge=0.0)


# ============================================================================
# Run options and results
# ============================================================================


class IngestOptions(BaseModel):
    """Options of one ingestion run"""

    record_limit: Optional[int] = Field(None, ge=1, description="Truncate feed to N records")
    sync_type: SyncType = SyncType.FULL
    purge_before_import: bool = False
    purge_confirmed: bool = False
    purge_reference_data: bool = Field(
        False, description="Also purge categories, producers and units"
    )
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    batch_size: Optional[int] = Field(None, ge=1, le=10000)


class EntityLoadStats(BaseModel):
    """Write counters for one entity type"""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.unchanged


class RunResult(BaseModel):
    """Outcome of one ingestion run"""

    success: bool
    status: SyncStatus
    run_id: str
    sync_health_id: Optional[int] = None
    sync_type: SyncType
    source_file: str
    records_processed: int = 0
    error_count: int = 0
    errors: list[str] = Field(default_factory=list)
    load_stats: dict[str, EntityLoadStats] = Field(default_factory=dict)
    duration_seconds: float = 0.0


class SyncHealthRecord(BaseModel):
    """Audit row of one run"""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    sync_type: SyncType
    source_file: str
    status: SyncStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_processed: int = 0
    error_count: int = 0
    details: dict[str, Any] = Field(default_factory=dict)
    memory_usage_mb: Optional[float] = None


class HealthStats(BaseModel):
    """Aggregate over audit rows in a time window"""

    total_runs: int = 0
    succeeded: int = 0
    failed: int = 0
    running: int = 0
    success_rate: float = 0.0
    average_duration_seconds: Optional[float] = None
    total_records_processed: int = 0
    total_errors: int = 0


__all__ = [
    "SyncType",
    "SyncStatus",
    "FeedShape",
    "IssueKind",
    "PlainText",
    "LocalizedText",
    "TextField",
    "CategoryEntity",
    "ProducerEntity",
    "UnitEntity",
    "ProductEntity",
    "VariantEntity",
    "StockEntity",
    "PriceEntity",
    "ImageEntity",
    "EntityGraph",
    "RecordIssue",
    "ParsedFeed",
    "IngestOptions",
    "EntityLoadStats",
    "RunResult",
    "SyncHealthRecord",
    "HealthStats",
]
