"""
Ingestion pipeline controller.

Runs schema verification, parse, transform and load in order for one feed file
and always finalizes the run's audit row. The module-level ingest() is the single
entry point for the CLI, schedulers and tests; it returns a RunResult and does
not raise.
"""
import asyncio
import contextlib
import signal
import time
from pathlib import Path
from typing import Optional, Union
from uuid import uuid4

import structlog
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from catalog_ingest.config.settings import ApplicationSettings, validate_settings
from catalog_ingest.db import create_engine_from_settings, create_session_factory
from catalog_ingest.errors import (
    ConfigurationError,
    IngestionError,
    ParseError,
    PurgeNotConfirmedError,
)
from catalog_ingest.models.domain import (
    EntityLoadStats,
    IngestOptions,
    RunResult,
    SyncStatus,
    SyncType,
)
from catalog_ingest.pipeline.context import RunContext
from catalog_ingest.pipeline.loader import CatalogLoader
from catalog_ingest.pipeline.parser import FeedParser
from catalog_ingest.pipeline.retry import RetryPolicy
from catalog_ingest.pipeline.transformer import CatalogTransformer
from catalog_ingest.repositories.lock_repository import RunLock
from catalog_ingest.services.schema_guard import SchemaGuard
from catalog_ingest.services.sync_health import SyncHealthTracker, SyncTracking

logger = structlog.get_logger(__name__)

RUN_CANCELLED = "RUN_CANCELLED"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
MAX_RESULT_ERRORS = 100


class IngestionPipeline:
    """
    Pipeline controller for one destination database.

    Phases:
    1. Schema Guard - verify and minimally evolve the destination
    2. Parse - read the feed into raw records
    3. Transform - build the entity graph, isolating bad records
    4. Load - write the graph in one transaction
    """

    def __init__(
        self,
        engine: AsyncEngine,
        settings: ApplicationSettings,
        session_factory: Optional[async_sessionmaker] = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.settings = settings
        self.session_factory = session_factory or create_session_factory(engine)
        self.tracker = SyncHealthTracker(self.session_factory)
        self.schema_guard = SchemaGuard(engine)
        self._sleep = sleep
        self.logger = logger.bind(component="ingestion_pipeline")

    async def run(
        self, source_path: Union[str, Path], options: Optional[IngestOptions] = None
    ) -> RunResult:
        """
        Execute one ingestion run.

        Args:
            source_path: Path of the XML feed
            options: Run options

        Returns:
            RunResult; failures are reported through it and the audit row
        """
        options = options or IngestOptions()
        source_file = str(source_path)
        context = RunContext(sync_type=options.sync_type, source_file=source_file)
        run_logger = self.logger.bind(run_id=context.run_id, source_file=source_file)
        started = time.monotonic()

        tracking = await self.tracker.start(
            options.sync_type, source_file, run_id=context.run_id
        )

        status = SyncStatus.FAILED
        records_processed = 0
        load_stats: dict[str, EntityLoadStats] = {}

        try:
            self._check_options(options)
            await self.schema_guard.verify()

            async with self._run_lock(source_file):
                load_stats = await self._execute(source_file, options, context, tracking)

            records_processed = load_stats["products"].total if "products" in load_stats else 0
            status = SyncStatus.SUCCEEDED

        except IngestionError as e:
            self.tracker.record_error(tracking, e.error_type, e.message, e.context)
            run_logger.error("Ingestion run failed", error_type=e.error_type, error=e.message)
        except asyncio.CancelledError:
            self.tracker.record_error(
                tracking, RUN_CANCELLED, "Run cancelled by termination signal"
            )
            run_logger.error("Ingestion run cancelled")
        except Exception as e:
            self.tracker.record_error(
                tracking, UNEXPECTED_ERROR, f"{type(e).__name__}: {e}"
            )
            run_logger.exception("Unexpected ingestion failure", error=str(e))

        if status != SyncStatus.SUCCEEDED:
            records_processed = 0
            load_stats = {}

        audit = await self.tracker.finish(tracking, status, records_processed)

        return RunResult(
            success=status == SyncStatus.SUCCEEDED,
            status=status,
            run_id=context.run_id,
            sync_health_id=audit.id,
            sync_type=options.sync_type,
            source_file=source_file,
            records_processed=records_processed,
            error_count=audit.error_count,
            errors=[
                f"{error.type}: {error.message}"
                for error in tracking.errors[:MAX_RESULT_ERRORS]
            ],
            load_stats=load_stats,
            duration_seconds=round(time.monotonic() - started, 3),
        )

    def _check_options(self, options: IngestOptions) -> None:
        if not options.purge_before_import:
            return
        if options.sync_type != SyncType.FULL:
            raise IngestionError(
                "Purge before import is only available for full runs",
                context={"sync_type": options.sync_type.value},
            )
        if not options.purge_confirmed:
            raise PurgeNotConfirmedError(
                "Purge before import requested without confirmation"
            )

    def _run_lock(self, source_file: str):
        if not self.settings.ingestion.lock_enabled:
            return contextlib.nullcontext()
        return RunLock(
            self.engine,
            source_file,
            stale_after_seconds=self.settings.ingestion.lock_stale_after_seconds,
        )

    async def _execute(
        self,
        source_file: str,
        options: IngestOptions,
        context: RunContext,
        tracking: SyncTracking,
    ) -> dict[str, EntityLoadStats]:
        ingestion = self.settings.ingestion
        batch_size = options.batch_size or ingestion.batch_size

        self.tracker.mark_phase_start(tracking, "parse")
        parser = FeedParser(
            RetryPolicy.from_settings(
                ingestion,
                options.max_retries,
                retry_on=FeedParser.RETRYABLE_ERRORS,
                sleep=self._sleep,
            )
        )
        feed = await parser.parse(
            source_file,
            record_limit=options.record_limit,
            on_retry=lambda attempt, error, delay: self.tracker.record_error(
                tracking, ParseError.error_type, str(error), {"attempt": attempt}
            ),
        )
        self.tracker.mark_phase_end(tracking, "parse")

        self.tracker.mark_phase_start(tracking, "transform")
        graph = CatalogTransformer(context, ingestion).transform(feed.records)
        del feed
        for issue in context.issues:
            self.tracker.record_error(
                tracking,
                issue.kind.value,
                issue.message,
                {
                    "product_code": issue.product_code,
                    "field": issue.field,
                    "record_index": issue.record_index,
                },
            )
        self.tracker.mark_phase_end(tracking, "transform")

        self.tracker.mark_phase_start(tracking, "load")
        loader = CatalogLoader(
            self.session_factory,
            RetryPolicy.from_settings(
                ingestion,
                options.max_retries,
                retry_on=CatalogLoader.RETRYABLE_ERRORS,
                sleep=self._sleep,
            ),
            self.tracker,
            batch_size=batch_size,
        )
        load_stats = await loader.load(graph, context, tracking, options)
        self.tracker.mark_phase_end(tracking, "load")
        return load_stats


async def ingest(
    source_path: Union[str, Path],
    options: Optional[IngestOptions] = None,
    settings: Optional[ApplicationSettings] = None,
    engine: Optional[AsyncEngine] = None,
) -> RunResult:
    """
    Ingest one feed file into the catalog store.

    Args:
        source_path: Path of the XML feed
        options: Run options
        settings: Application settings; loaded from the environment when omitted
        engine: Existing engine to use; one is created and disposed otherwise

    Returns:
        RunResult of the run; configuration errors give a failed result without
        an audit row
    """
    owns_engine = engine is None
    try:
        settings = settings or validate_settings()
        engine = engine or create_engine_from_settings(settings.database)
    except (ValueError, ArgumentError) as e:
        error = ConfigurationError(str(e), original_error=e)
        logger.error("Ingestion not started", error_type=error.error_type, error=error.message)
        sync_type = options.sync_type if options else SyncType.FULL
        return RunResult(
            success=False,
            status=SyncStatus.FAILED,
            run_id=str(uuid4()),
            sync_type=sync_type,
            source_file=str(source_path),
            error_count=1,
            errors=[f"{error.error_type}: {error.message}"],
        )

    try:
        return await IngestionPipeline(engine, settings).run(source_path, options)
    finally:
        if owns_engine:
            await engine.dispose()


async def _ingest_until_signalled(
    source_path: Union[str, Path],
    options: Optional[IngestOptions],
    settings: Optional[ApplicationSettings],
) -> RunResult:
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    installed = []
    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, task.cancel)
            installed.append(signum)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler unavailable", signal=signum)
    try:
        return await ingest(source_path, options, settings)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def run_ingest(
    source_path: Union[str, Path],
    options: Optional[IngestOptions] = None,
    settings: Optional[ApplicationSettings] = None,
) -> RunResult:
    """
    Blocking wrapper around ingest() for processes that own the event loop.

    SIGTERM and SIGINT cancel the run; the audit row is still finalized as failed.
    """
    return asyncio.run(_ingest_until_signalled(source_path, options, settings))


__all__ = ["IngestionPipeline", "ingest", "run_ingest", "RUN_CANCELLED"]
