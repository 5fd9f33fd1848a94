"""
Catalog transformer: maps raw feed records into the normalized entity graph.

Each record is handled in isolation. A record without a product code is skipped
with a validation issue; an unexpected failure while mapping a record is raised as
a TransformError, recorded as a transform issue and processing continues with the
next record. Categories, producers and units first seen in a record are staged and
only join the run once that record maps cleanly.
"""
import gc
import re
from decimal import Decimal
from typing import Any, Optional

import structlog
from sqlalchemy import Column

from catalog_ingest.config.settings import IngestionSettings
from catalog_ingest.errors import TransformError, ValidationError
from catalog_ingest.models.database import (
    CategoryTable,
    ImageTable,
    PriceTable,
    ProducerTable,
    ProductTable,
    UnitTable,
    VariantTable,
)
from catalog_ingest.models.domain import (
    CategoryEntity,
    EntityGraph,
    ImageEntity,
    IssueKind,
    PriceEntity,
    ProducerEntity,
    ProductEntity,
    StockEntity,
    UnitEntity,
    VariantEntity,
)
from catalog_ingest.pipeline.category_resolver import (
    CategoryHierarchyResolver,
    order_parents_first,
    split_path,
)
from catalog_ingest.pipeline.context import RunContext
from catalog_ingest.pipeline.parser import as_list
from catalog_ingest.pipeline.validators import (
    extract_text,
    net_from_gross,
    normalize_bool,
    normalize_int,
    normalize_number,
    quantize,
    validate_ean,
    validate_url,
)

logger = structlog.get_logger(__name__)

UNKNOWN_PRODUCER = "Unknown"
SRP_PRICE_TYPES = ("srp", "srp_gross", "suggested")
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
MAX_VAT_RATE = Decimal(100)

PRODUCT_CODE_LENGTH = ProductTable.__table__.c.code.type.length
PRODUCER_CODE_LENGTH = ProductTable.__table__.c.producer_code.type.length
VARIANT_CODE_LENGTH = VariantTable.__table__.c.code.type.length
PRODUCER_NAME_LENGTH = ProducerTable.__table__.c.name.type.length
UNIT_ID_LENGTH = UnitTable.__table__.c.id.type.length
UNIT_NAME_LENGTH = UnitTable.__table__.c.name.type.length
CATEGORY_NAME_LENGTH = CategoryTable.__table__.c.name.type.length
IMAGE_URL_LENGTH = ImageTable.__table__.c.url.type.length


def _field(node: Any, *names: str) -> Any:
    """First present child or attribute among names"""
    if not isinstance(node, dict):
        return None
    for name in names:
        value = node.get(name)
        if value is not None and value != "":
            return value
    return None


def _too_long(value: Optional[str], limit: Optional[int]) -> bool:
    return value is not None and limit is not None and len(value) > limit


class _PriceDraft:
    """Accumulates the price representations found for one variant"""

    def __init__(self) -> None:
        self.gross: Optional[Decimal] = None
        self.net: Optional[Decimal] = None
        self.srp_gross: Optional[Decimal] = None
        self.srp_net: Optional[Decimal] = None
        self.currency: Optional[str] = None

    def is_empty(self) -> bool:
        return all(
            value is None for value in (self.gross, self.net, self.srp_gross, self.srp_net)
        )


class _StagedReferences:
    """Reference entities first seen in the record being mapped"""

    def __init__(self) -> None:
        self.categories: dict[str, CategoryEntity] = {}
        self.producers: dict[str, ProducerEntity] = {}
        self.units: dict[str, UnitEntity] = {}

    def merge_into(self, context: RunContext) -> None:
        context.categories.update(self.categories)
        context.producers.update(self.producers)
        context.units.update(self.units)


class CatalogTransformer:
    """Build an EntityGraph from raw records, recording issues on the run context"""

    def __init__(self, context: RunContext, settings: IngestionSettings) -> None:
        self.context = context
        self.settings = settings
        self.resolver = CategoryHierarchyResolver(
            context.categories, name_limit=CATEGORY_NAME_LENGTH
        )
        self.logger = logger.bind(component="transformer", run_id=context.run_id)

    def transform(self, records: list[Any]) -> EntityGraph:
        """
        Map every record and return the combined entity graph.

        Args:
            records: Raw product nodes from the parser

        Returns:
            EntityGraph with categories ordered parents first
        """
        graph = EntityGraph()
        skipped = 0

        for index, record in enumerate(records):
            product_code = None
            try:
                product_code = self._product_code(record)
                self._map_record(index, record, product_code, graph)
            except ValidationError as e:
                skipped += 1
                self.context.record_issue(
                    IssueKind.VALIDATION,
                    e.message,
                    product_code=product_code,
                    field=e.context.get("field"),
                    record_index=index,
                )
                self.logger.warning(
                    "Record skipped",
                    record_index=index,
                    product_code=product_code,
                    error=e.message,
                )
            except TransformError as e:
                skipped += 1
                self.context.record_issue(
                    IssueKind.TRANSFORM,
                    e.message,
                    product_code=product_code,
                    record_index=index,
                )
                self.logger.warning(
                    "Record transform failed",
                    record_index=index,
                    product_code=product_code,
                    error=e.message,
                )

            if (index + 1) % self.settings.gc_checkpoint_interval == 0:
                gc.collect()
                self.logger.debug("GC checkpoint", records_seen=index + 1)

        graph.categories = order_parents_first(self.context.categories.values())
        graph.producers = list(self.context.producers.values())
        graph.units = list(self.context.units.values())

        self.logger.info(
            "Transform completed",
            records=len(records),
            skipped=skipped,
            issues=len(self.context.issues),
            **graph.counts(),
        )
        return graph

    # ------------------------------------------------------------------
    # Record level
    # ------------------------------------------------------------------

    def _product_code(self, record: Any) -> str:
        if not isinstance(record, dict):
            raise ValidationError("Product record has no fields", context={"field": "code"})
        code = extract_text(record.get("code")) or extract_text(record.get("id"))
        if not code:
            raise ValidationError("Product code is missing", context={"field": "code"})
        if _too_long(code, PRODUCT_CODE_LENGTH):
            raise ValidationError(
                f"Product code longer than {PRODUCT_CODE_LENGTH} characters",
                context={"field": "code"},
            )
        if code in self.context.product_codes:
            raise ValidationError(
                f"Duplicate product code '{code}'", context={"field": "code"}
            )
        return code

    def _map_record(
        self, index: int, record: dict[str, Any], code: str, graph: EntityGraph
    ) -> None:
        """
        Map one record, wrapping unexpected failures.

        Raises:
            ValidationError: The record cannot be stored
            TransformError: Mapping failed for any other reason
        """
        try:
            self._transform_record(index, record, code, graph)
        except ValidationError:
            raise
        except Exception as e:
            raise TransformError(
                f"{type(e).__name__}: {e}",
                context={"product_code": code, "record_index": index},
                original_error=e,
            ) from e

    def _transform_record(
        self, index: int, record: dict[str, Any], code: str, graph: EntityGraph
    ) -> None:
        staged = _StagedReferences()
        description = record.get("description")
        if not isinstance(description, dict):
            description = {}
        name = (
            extract_text(_field(description, "name"))
            or extract_text(record.get("name"))
            or code
        )

        product = ProductEntity(
            code=code,
            name=name,
            description_short=extract_text(_field(description, "short", "short_desc")),
            description_long=extract_text(_field(description, "long", "long_desc")),
            ean=self._validated_ean(record.get("ean"), code, "ean", index),
            producer_name=self._resolve_producer(record.get("producer"), staged, code, index),
            producer_code=self._bounded_text(
                record.get("producer_code"), PRODUCER_CODE_LENGTH, code, "producer_code", index
            ),
            category_id=self._resolve_category(record.get("category"), staged, code, index),
            unit_id=self._resolve_unit(record.get("unit"), staged, code, index),
            vat=self._vat(record.get("vat"), code, index),
            url=self._validated_url(record.get("url"), code, "url", index),
        )

        variants, stocks, prices = self._variants(record, product, index)
        images = self._images(record, code, index)

        # Commit the record to the graph only once every part mapped cleanly
        staged.merge_into(self.context)
        self.context.product_codes.add(code)
        graph.products.append(product)
        graph.variants.extend(variants)
        graph.stocks.extend(stocks)
        graph.prices.extend(prices)
        graph.images.extend(images)

    def _resolve_producer(
        self, node: Any, staged: _StagedReferences, product_code: str, index: int
    ) -> Optional[str]:
        if node is None or node == "":
            return None
        if isinstance(node, dict):
            name = extract_text(node.get("name")) or extract_text(node)
        else:
            name = extract_text(node)
        name = name or UNKNOWN_PRODUCER
        if _too_long(name, PRODUCER_NAME_LENGTH):
            self._issue(
                f"Producer name longer than {PRODUCER_NAME_LENGTH} characters",
                product_code,
                "producer",
                index,
            )
            return None
        if name not in self.context.producers and name not in staged.producers:
            staged.producers[name] = ProducerEntity(name=name)
        return name

    def _resolve_category(
        self, node: Any, staged: _StagedReferences, product_code: str, index: int
    ) -> str:
        if isinstance(node, dict):
            labels = split_path(extract_text(node.get("path"))) or [
                extract_text(node.get("name")) or extract_text(node)
            ]
        else:
            labels = [extract_text(node)]
        if any(_too_long(label, CATEGORY_NAME_LENGTH) for label in labels):
            self._issue(
                f"Category name longer than {CATEGORY_NAME_LENGTH} characters was shortened",
                product_code,
                "category",
                index,
            )
        return self.resolver.resolve(node, staged=staged.categories)

    def _resolve_unit(
        self, node: Any, staged: _StagedReferences, product_code: str, index: int
    ) -> Optional[str]:
        if node is None or node == "":
            return None
        if isinstance(node, dict):
            text = extract_text(node)
            unit_id = extract_text(node.get("id")) or text or extract_text(node.get("name"))
            unit_name = extract_text(node.get("name")) or text or unit_id
            moq = normalize_int(node.get("moq"), 1)
        else:
            unit_id = unit_name = extract_text(node)
            moq = 1
        if not unit_id:
            return None
        if _too_long(unit_id, UNIT_ID_LENGTH) or _too_long(unit_name, UNIT_NAME_LENGTH):
            self._issue("Unit id or name exceeds the stored length", product_code, "unit", index)
            return None
        if unit_id not in self.context.units and unit_id not in staged.units:
            staged.units[unit_id] = UnitEntity(
                id=unit_id, name=unit_name, moq=max(1, moq or 1)
            )
        return unit_id

    def _issue(self, message: str, product_code: str, field: str, index: int) -> None:
        self.context.record_issue(
            IssueKind.VALIDATION,
            message,
            product_code=product_code,
            field=field,
            record_index=index,
        )

    def _bounded_text(
        self, raw: Any, limit: int, product_code: str, field: str, index: int
    ) -> Optional[str]:
        text = extract_text(raw) or None
        if _too_long(text, limit):
            self._issue(f"Value longer than {limit} characters dropped", product_code, field, index)
            return None
        return text

    def _scaled(
        self,
        value: Optional[Decimal],
        column: Column,
        product_code: str,
        field: str,
        index: int,
    ) -> Optional[Decimal]:
        """Round to the column scale; values the column cannot hold are dropped"""
        if value is None:
            return None
        precision, scale = column.type.precision, column.type.scale
        limit = Decimal(10) ** (precision - scale)
        rounded = quantize(value, scale) if abs(value) < limit else None
        if rounded is None or abs(rounded) >= limit:
            self._issue(
                f"Value {value} out of range for NUMERIC({precision},{scale})",
                product_code,
                field,
                index,
            )
            return None
        return rounded

    def _vat(self, raw: Any, product_code: str, index: int) -> Optional[Decimal]:
        vat = normalize_number(raw)
        if vat is None:
            return None
        if vat < 0 or vat > MAX_VAT_RATE:
            self._issue(f"VAT rate {vat} outside 0..100", product_code, "vat", index)
            return None
        return self._scaled(vat, ProductTable.__table__.c.vat, product_code, "vat", index)

    def _validated_ean(
        self, raw: Any, product_code: str, field: str, index: int
    ) -> Optional[str]:
        text = extract_text(raw)
        if not text:
            return None
        result = validate_ean(text)
        if not result.valid:
            self.context.record_issue(
                IssueKind.VALIDATION,
                f"{result.message}: '{text}'",
                product_code=product_code,
                field=field,
                record_index=index,
            )
            return None
        return result.normalized

    def _validated_url(
        self, raw: Any, product_code: str, field: str, index: int
    ) -> Optional[str]:
        text = extract_text(raw)
        if not text:
            return None
        result = validate_url(text)
        if not result.valid:
            self.context.record_issue(
                IssueKind.VALIDATION,
                f"{result.message}: '{text}'",
                product_code=product_code,
                field=field,
                record_index=index,
            )
            return None
        if result.warning:
            self.logger.debug(
                "Insecure URL", product_code=product_code, field=field, url=result.normalized
            )
        return result.normalized

    # ------------------------------------------------------------------
    # Variants, stock and prices
    # ------------------------------------------------------------------


    def _variants(
        self, record: dict[str, Any], product: ProductEntity, index: int
    ) -> tuple[list[VariantEntity], list[StockEntity], list[PriceEntity]]:
        variants_node = record.get("variants")
        sizes_node = record.get("sizes")

        if isinstance(variants_node, dict) and variants_node.get("variant") is not None:
            nodes = as_list(variants_node.get("variant"))
            from_sizes = False
        elif isinstance(sizes_node, dict) and sizes_node.get("size") is not None:
            nodes = as_list(sizes_node.get("size"))
            from_sizes = True
        else:
            # Product-level stock and prices belong to the default variant
            default_node = {"code": product.code}
            for key in ("stock", "prices", "price", "srp"):
                if key in record:
                    default_node[key] = record[key]
            nodes = [default_node]
            from_sizes = False

        variants: list[VariantEntity] = []
        stocks: list[StockEntity] = []
        prices: list[PriceEntity] = []
        seen_codes: set[str] = set()
        weight_columns = VariantTable.__table__.c

        for position, node in enumerate(nodes):
            if not isinstance(node, dict):
                node = {"code": extract_text(node)}
            code = self._variant_code(node, product.code, position, len(nodes))
            if _too_long(code, VARIANT_CODE_LENGTH):
                self._issue(
                    f"Variant code longer than {VARIANT_CODE_LENGTH} characters",
                    product.code,
                    "variant.code",
                    index,
                )
                continue
            if code in seen_codes:
                self._issue(
                    f"Duplicate variant code '{code}'", product.code, "variant.code", index
                )
                continue
            seen_codes.add(code)

            variants.append(
                VariantEntity(
                    code=code,
                    product_code=product.code,
                    weight=self._scaled(
                        normalize_number(_field(node, "weight")),
                        weight_columns.weight,
                        product.code,
                        "variant.weight",
                        index,
                    ),
                    gross_weight=self._scaled(
                        normalize_number(_field(node, "gross_weight", "grossweight")),
                        weight_columns.gross_weight,
                        product.code,
                        "variant.gross_weight",
                        index,
                    ),
                    ean=self._validated_ean(node.get("ean"), product.code, "variant.ean", index),
                )
            )

            stock = self._stock(node, product.code, code, from_sizes, index)
            if stock is not None:
                stocks.append(stock)

            price = self._price(node, product, code, index)
            if price is not None:
                prices.append(price)

        return variants, stocks, prices

    @staticmethod
    def _variant_code(node: dict[str, Any], product_code: str, position: int, count: int) -> str:
        code = extract_text(node.get("code"))
        if code:
            return code
        size_id = extract_text(node.get("id"))
        if size_id:
            return f"{product_code}-{size_id}"
        if count == 1:
            return product_code
        return f"{product_code}-{position + 1}"

    def _stock(
        self,
        node: dict[str, Any],
        product_code: str,
        variant_code: str,
        from_sizes: bool,
        index: int,
    ) -> Optional[StockEntity]:
        entries = [entry for entry in as_list(node.get("stock")) if isinstance(entry, dict)]
        if not entries:
            return None

        quantity = 0
        available = False
        for entry in entries:
            entry_quantity = normalize_int(entry.get("quantity"), 0)
            if entry_quantity < 0:
                self.context.record_issue(
                    IssueKind.VALIDATION,
                    f"Negative stock quantity {entry_quantity} clamped to 0",
                    product_code=product_code,
                    field="stock.quantity",
                    record_index=index,
                )
                entry_quantity = 0
            quantity += entry_quantity
            flag = normalize_bool(entry.get("available"))
            available = available or flag or (from_sizes and entry_quantity > 0)

        first = entries[0]
        min_order = normalize_int(first.get("min_order_quantity"), 1) or 1
        max_order = normalize_int(first.get("max_order_quantity"))
        return StockEntity(
            variant_code=variant_code,
            product_code=product_code,
            quantity=quantity,
            available=available,
            min_order_quantity=max(1, min_order),
            max_order_quantity=max_order if max_order and max_order > 0 else None,
        )

    def _price(
        self, node: dict[str, Any], product: ProductEntity, variant_code: str, index: int
    ) -> Optional[PriceEntity]:
        draft = _PriceDraft()

        prices_node = node.get("prices")
        if isinstance(prices_node, dict):
            for entry in as_list(prices_node.get("price")):
                self._apply_price_list_entry(draft, entry)

        for entry in as_list(node.get("price")):
            if isinstance(entry, dict):
                self._fill(draft, "gross", entry.get("gross"))
                self._fill(draft, "net", entry.get("net"))
                draft.currency = draft.currency or extract_text(entry.get("currency")) or None
            else:
                self._fill(draft, "gross", entry)

        for entry in as_list(node.get("srp")):
            if isinstance(entry, dict):
                self._fill(draft, "srp_gross", entry.get("gross"))
                self._fill(draft, "srp_net", entry.get("net"))
            else:
                self._fill(draft, "srp_gross", entry)

        if draft.is_empty():
            return None

        columns = PriceTable.__table__.c
        vat = product.vat
        gross = self._scaled(draft.gross, columns.gross_price, product.code, "price.gross", index)
        srp_gross = self._scaled(
            draft.srp_gross, columns.srp_gross, product.code, "price.srp_gross", index
        )
        if draft.net is not None:
            net = self._scaled(draft.net, columns.net_price, product.code, "price.net", index)
        else:
            net = net_from_gross(draft.gross, vat) if gross is not None else None
        if draft.srp_net is not None:
            srp_net = self._scaled(
                draft.srp_net, columns.srp_net, product.code, "price.srp_net", index
            )
        else:
            srp_net = net_from_gross(draft.srp_gross, vat) if srp_gross is not None else None

        if all(value is None for value in (gross, net, srp_gross, srp_net)):
            return None
        return PriceEntity(
            variant_code=variant_code,
            product_code=product.code,
            gross_price=gross,
            net_price=net,
            srp_gross=srp_gross,
            srp_net=srp_net,
            currency=self._currency(draft.currency, product.code, index),
            vat=vat,
        )

    def _currency(self, raw: Optional[str], product_code: str, index: int) -> str:
        default = self.settings.default_currency.upper()
        if not raw:
            return default
        currency = raw.strip().upper()
        if not CURRENCY_PATTERN.match(currency):
            self._issue(
                f"Currency '{raw}' is not a three-letter code; using {default}",
                product_code,
                "price.currency",
                index,
            )
            return default
        return currency

    @staticmethod
    def _fill(draft: _PriceDraft, attribute: str, raw: Any) -> None:
        """Set a price component unless an earlier representation already did"""
        if getattr(draft, attribute) is None:
            setattr(draft, attribute, normalize_number(raw))

    @classmethod
    def _apply_price_list_entry(cls, draft: _PriceDraft, entry: Any) -> None:
        if isinstance(entry, dict):
            amount = normalize_number(_field(entry, "amount") or extract_text(entry))
            price_type = extract_text(entry.get("type")).lower() or "retail"
            currency = extract_text(entry.get("currency"))
        else:
            amount = normalize_number(entry)
            price_type = "retail"
            currency = ""
        if amount is None:
            return

        if price_type in SRP_PRICE_TYPES:
            cls._fill(draft, "srp_gross", amount)
        elif price_type == "srp_net":
            cls._fill(draft, "srp_net", amount)
        elif price_type == "net":
            cls._fill(draft, "net", amount)
        else:
            cls._fill(draft, "gross", amount)

        if currency and draft.currency is None:
            draft.currency = currency

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def _images(self, record: dict[str, Any], product_code: str, index: int) -> list[ImageEntity]:
        images_node = record.get("images")
        if not isinstance(images_node, dict):
            return []

        large = images_node.get("large")
        if isinstance(large, dict) and large.get("image") is not None:
            nodes = as_list(large.get("image"))
        else:
            nodes = as_list(images_node.get("image"))

        images: list[ImageEntity] = []
        seen: set[str] = set()
        for node in nodes:
            raw = _field(node, "url") if isinstance(node, dict) else node
            url = self._validated_url(raw, product_code, "image.url", index)
            if _too_long(url, IMAGE_URL_LENGTH):
                self._issue(
                    f"Image URL longer than {IMAGE_URL_LENGTH} characters dropped",
                    product_code,
                    "image.url",
                    index,
                )
                continue
            if url and url not in seen:
                seen.add(url)
                images.append(ImageEntity(product_code=product_code, url=url))
        return images


__all__ = ["CatalogTransformer"]
