"""
Catalog loader: persists the entity graph in dependency order.

Everything is written in one transaction per run. Each entity type is diffed
against the stored rows by natural key and written in fixed-size batches. A batch
that fails is retried inside a savepoint with backoff; once retries are exhausted
the whole transaction is rolled back.
"""
import time
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_ingest.errors import BatchPersistError, IngestionError, TransactionError
from catalog_ingest.models.domain import EntityGraph, EntityLoadStats, IngestOptions, IssueKind
from catalog_ingest.pipeline.context import RunContext
from catalog_ingest.pipeline.retry import RetryPolicy
from catalog_ingest.repositories.base import RepositoryError
from catalog_ingest.repositories.catalog_repository import (
    NaturalKeyRepository,
    build_catalog_repositories,
)
from catalog_ingest.services.maintenance import purge_catalog
from catalog_ingest.services.sync_health import SyncHealthTracker, SyncTracking

logger = structlog.get_logger(__name__)

Row = dict[str, Any]


def chunked(rows: list[Row], size: int) -> list[list[Row]]:
    return [rows[start : start + size] for start in range(0, len(rows), size)]


class CatalogLoader:
    """Write an EntityGraph to the catalog tables"""

    RETRYABLE_ERRORS = (RepositoryError, SQLAlchemyError)

    def __init__(
        self,
        session_factory: async_sessionmaker,
        retry_policy: RetryPolicy,
        tracker: SyncHealthTracker,
        batch_size: int = 500,
    ) -> None:
        self.session_factory = session_factory
        self.retry_policy = retry_policy
        self.tracker = tracker
        self.batch_size = batch_size
        self.logger = logger.bind(component="loader")

    async def load(
        self,
        graph: EntityGraph,
        context: RunContext,
        tracking: SyncTracking,
        options: Optional[IngestOptions] = None,
    ) -> dict[str, EntityLoadStats]:
        """
        Persist the graph atomically.

        Args:
            graph: Entities produced by the transformer
            context: Run context; its surrogate id maps are filled here
            tracking: Health tracking of the run
            options: Run options, consulted for purge-before-import

        Returns:
            Insert/update/unchanged counters per entity type

        Raises:
            TransactionError: A batch failed after all retries or the commit failed;
                nothing from this run is committed
        """
        options = options or IngestOptions()
        run_logger = self.logger.bind(run_id=context.run_id)
        stats: dict[str, EntityLoadStats] = {}

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if options.purge_before_import:
                        await purge_catalog(
                            session,
                            options.purge_confirmed,
                            options.purge_reference_data,
                        )
                    repositories = build_catalog_repositories(session, self.batch_size)
                    await self._write_all(session, repositories, graph, context, tracking, stats)
        except IngestionError as e:
            if isinstance(e, TransactionError):
                raise
            if isinstance(e, BatchPersistError):
                raise TransactionError(
                    f"Load rolled back: {e.message}",
                    context={"operation": e.operation, "batch_size": e.batch_size},
                    original_error=e,
                ) from e
            raise
        except (RepositoryError, SQLAlchemyError) as e:
            run_logger.error("Load transaction failed", error=str(e))
            raise TransactionError(
                f"Load transaction failed: {e}", original_error=e
            ) from e

        run_logger.info(
            "Load committed",
            **{name: entity_stats.model_dump() for name, entity_stats in stats.items()},
        )
        return stats

    async def _write_all(
        self,
        session: AsyncSession,
        repositories: dict[str, NaturalKeyRepository],
        graph: EntityGraph,
        context: RunContext,
        tracking: SyncTracking,
        stats: dict[str, EntityLoadStats],
    ) -> None:
        categories = [category.model_dump() for category in graph.categories]
        stats["categories"] = await self._sync(
            session, repositories["categories"], categories, tracking
        )

        producers = [{"name": producer.name} for producer in graph.producers]
        stats["producers"] = await self._sync(
            session, repositories["producers"], producers, tracking
        )
        context.producer_ids.update(await repositories["producers"].fetch_ids(producers))

        units = [unit.model_dump() for unit in graph.units]
        stats["units"] = await self._sync(session, repositories["units"], units, tracking)

        products = [
            {
                "code": product.code,
                "name": product.name,
                "description_short": product.description_short,
                "description_long": product.description_long,
                "ean": product.ean,
                "producer_code": product.producer_code,
                "producer_id": context.producer_ids.get(product.producer_name)
                if product.producer_name
                else None,
                "category_id": product.category_id,
                "unit_id": product.unit_id,
                "vat": product.vat,
                "url": product.url,
            }
            for product in graph.products
        ]
        stats["products"] = await self._sync(
            session, repositories["products"], products, tracking
        )
        context.product_ids.update(await repositories["products"].fetch_ids(products))

        variants = []
        for variant in graph.variants:
            product_id = context.product_ids.get(variant.product_code)
            if product_id is None:
                self._missing_reference(context, tracking, "variant", variant.product_code)
                continue
            variants.append(
                {
                    "product_id": product_id,
                    "code": variant.code,
                    "weight": variant.weight,
                    "gross_weight": variant.gross_weight,
                    "ean": variant.ean,
                }
            )
        stats["variants"] = await self._sync(
            session, repositories["variants"], variants, tracking
        )
        variant_ids = await repositories["variants"].fetch_ids(variants)
        code_by_product_id = {
            product_id: code for code, product_id in context.product_ids.items()
        }
        for (product_id, variant_code), variant_id in variant_ids.items():
            context.variant_ids[(code_by_product_id[product_id], variant_code)] = variant_id

        stocks = []
        for stock in graph.stocks:
            variant_id = context.variant_ids.get((stock.product_code, stock.variant_code))
            if variant_id is None:
                self._missing_reference(context, tracking, "stock", stock.product_code)
                continue
            stocks.append(
                {
                    "variant_id": variant_id,
                    "quantity": stock.quantity,
                    "available": stock.available,
                    "min_order_quantity": stock.min_order_quantity,
                    "max_order_quantity": stock.max_order_quantity,
                }
            )
        stats["stocks"] = await self._sync(session, repositories["stocks"], stocks, tracking)

        prices = []
        for price in graph.prices:
            variant_id = context.variant_ids.get((price.product_code, price.variant_code))
            if variant_id is None:
                self._missing_reference(context, tracking, "price", price.product_code)
                continue
            prices.append(
                {
                    "variant_id": variant_id,
                    "gross_price": price.gross_price,
                    "net_price": price.net_price,
                    "srp_gross": price.srp_gross,
                    "srp_net": price.srp_net,
                    "currency": price.currency,
                    "vat": price.vat,
                }
            )
        stats["prices"] = await self._sync(session, repositories["prices"], prices, tracking)

        images = []
        for image in graph.images:
            product_id = context.product_ids.get(image.product_code)
            if product_id is None:
                self._missing_reference(context, tracking, "image", image.product_code)
                continue
            images.append({"product_id": product_id, "url": image.url})
        stats["images"] = await self._sync(session, repositories["images"], images, tracking)

    async def _sync(
        self,
        session: AsyncSession,
        repository: NaturalKeyRepository,
        rows: list[Row],
        tracking: SyncTracking,
    ) -> EntityLoadStats:
        """Diff rows against stored rows and write inserts then updates"""
        if not rows:
            return EntityLoadStats()

        existing = await repository.load_existing(rows)
        diff = repository.partition(rows, existing)
        name = repository.table_name.upper()

        for batch in chunked(diff.to_insert, self.batch_size):
            await self._write_batch(
                session, f"INSERT_{name}", repository.insert_batch, batch, tracking
            )
        for batch in chunked(diff.to_update, self.batch_size):
            await self._write_batch(
                session, f"UPDATE_{name}", repository.update_batch, batch, tracking
            )

        self.logger.debug(
            "Entity type written",
            table=repository.table_name,
            inserted=len(diff.to_insert),
            updated=len(diff.to_update),
            unchanged=diff.unchanged,
        )
        return EntityLoadStats(
            inserted=len(diff.to_insert),
            updated=len(diff.to_update),
            unchanged=diff.unchanged,
        )

    async def _write_batch(
        self,
        session: AsyncSession,
        operation: str,
        writer: Callable[[list[Row]], Awaitable[None]],
        batch: list[Row],
        tracking: SyncTracking,
    ) -> None:
        """
        Write one batch inside a savepoint, retrying with backoff.

        Raises:
            BatchPersistError: The batch failed on every attempt
        """

        async def attempt() -> None:
            async with session.begin_nested():
                await writer(batch)

        def on_retry(attempt_number: int, error: Exception, delay: float) -> None:
            self.tracker.record_error(
                tracking,
                BatchPersistError.error_type,
                str(error),
                {"operation": operation, "batch_size": len(batch), "attempt": attempt_number},
            )

        started = time.monotonic()
        try:
            await self.retry_policy.run(attempt, on_retry=on_retry, description=operation)
        except self.RETRYABLE_ERRORS as e:
            self.tracker.record_error(
                tracking,
                BatchPersistError.error_type,
                str(e),
                {
                    "operation": operation,
                    "batch_size": len(batch),
                    "attempt": self.retry_policy.max_attempts,
                },
            )
            raise BatchPersistError(
                f"{operation} failed after {self.retry_policy.max_attempts} attempts: {e}",
                operation=operation,
                batch_size=len(batch),
                original_error=e,
            ) from e
        self.tracker.record_batch(tracking, operation, len(batch), started, time.monotonic())

    def _missing_reference(
        self, context: RunContext, tracking: SyncTracking, entity: str, product_code: str
    ) -> None:
        message = f"No stored product id for {entity} of product '{product_code}'"
        context.record_issue(IssueKind.VALIDATION, message, product_code=product_code)
        self.tracker.record_error(
            tracking, IssueKind.VALIDATION.value, message, {"product_code": product_code}
        )


__all__ = ["CatalogLoader", "chunked"]
