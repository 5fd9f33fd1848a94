"""
Run health tracking and the audit trail.

Every run gets one sync_health row: created as running when the run starts and
finalized as succeeded or failed on every exit path. Details carry the recorded
errors plus phase durations and per-operation batch throughput.
"""
import os
import time
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import psutil
import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker

from catalog_ingest.models.domain import HealthStats, SyncHealthRecord, SyncStatus, SyncType
from catalog_ingest.repositories.base import DatabaseSession
from catalog_ingest.repositories.sync_health_repository import SyncHealthRepository

logger = structlog.get_logger(__name__)

MAX_STORED_ERRORS = 1000


class TrackedError(BaseModel):
    type: str
    message: str
    timestamp: datetime
    context: dict[str, Any] = Field(default_factory=dict)


class BatchTiming(BaseModel):
    operation: str
    batch_size: int
    duration: float


class PhaseTiming(BaseModel):
    started: float
    ended: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        if self.ended is None:
            return None
        return self.ended - self.started


class SyncTracking(BaseModel):
    """In-memory accumulator of one run"""

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    audit_id: Optional[int] = None
    sync_type: SyncType
    source_file: str
    start_time: datetime
    started_monotonic: float
    errors: list[TrackedError] = Field(default_factory=list)
    batches: list[BatchTiming] = Field(default_factory=list)
    phases: dict[str, PhaseTiming] = Field(default_factory=dict)
    finished: bool = False


def current_memory_mb() -> Optional[float]:
    """Current resident set size of this process"""
    try:
        rss = psutil.Process(os.getpid()).memory_info().rss
    except psutil.Error as e:
        logger.warning("Memory reading unavailable", error=str(e))
        return None
    return round(rss / 1024 / 1024, 2)


def batch_statistics(batches: list[BatchTiming]) -> dict[str, dict[str, float]]:
    """Per-operation counts, durations and throughput"""
    grouped: dict[str, list[BatchTiming]] = {}
    for batch in batches:
        grouped.setdefault(batch.operation, []).append(batch)

    statistics: dict[str, dict[str, float]] = {}
    for operation, items in grouped.items():
        total_duration = sum(item.duration for item in items)
        total_items = sum(item.batch_size for item in items)
        statistics[operation] = {
            "total_batches": len(items),
            "total_items": total_items,
            "total_duration": round(total_duration, 6),
            "avg_duration": round(total_duration / len(items), 6),
            "items_per_second": round(total_items / total_duration, 2)
            if total_duration > 0
            else None,
        }
    return statistics


class SyncHealthTracker:
    """Records timing, throughput and errors of ingestion runs"""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory
        self.logger = logger.bind(component="sync_health")

    async def start(
        self, sync_type: SyncType, source_file: str, run_id: Optional[str] = None
    ) -> SyncTracking:
        """
        Begin tracking a run and write its running audit row.

        A failed insert is logged and retried as an insert by finish().
        """
        tracking = SyncTracking(
            run_id=run_id or str(uuid4()),
            sync_type=sync_type,
            source_file=source_file,
            start_time=datetime.now(timezone.utc),
            started_monotonic=time.monotonic(),
        )
        try:
            async with DatabaseSession(self.session_factory()) as session:
                tracking.audit_id = await SyncHealthRepository(session).create(
                    {
                        "sync_type": sync_type.value,
                        "source_file": source_file,
                        "status": SyncStatus.RUNNING.value,
                        "start_time": tracking.start_time,
                        "records_processed": 0,
                        "error_count": 0,
                        "details": {},
                    }
                )
        except Exception as e:
            self.logger.warning(
                "Could not write running audit row", run_id=tracking.run_id, error=str(e)
            )

        self.logger.info(
            "Sync tracking started",
            run_id=tracking.run_id,
            audit_id=tracking.audit_id,
            sync_type=sync_type.value,
            source_file=source_file,
        )
        return tracking

    def record_error(
        self,
        tracking: SyncTracking,
        kind: str,
        message: str,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append a structured error; never raises"""
        tracking.errors.append(
            TrackedError(
                type=kind,
                message=message,
                timestamp=datetime.now(timezone.utc),
                context={k: v for k, v in (context or {}).items() if v is not None},
            )
        )

    def record_batch(
        self,
        tracking: SyncTracking,
        operation: str,
        size: int,
        start: float,
        end: float,
    ) -> None:
        """Append timing of one batch; start and end are time.monotonic() readings"""
        tracking.batches.append(
            BatchTiming(operation=operation, batch_size=size, duration=max(end - start, 0.0))
        )

    def mark_phase_start(self, tracking: SyncTracking, phase: str) -> None:
        tracking.phases[phase] = PhaseTiming(started=time.monotonic())

    def mark_phase_end(self, tracking: SyncTracking, phase: str) -> None:
        timing = tracking.phases.get(phase)
        if timing is not None and timing.ended is None:
            timing.ended = time.monotonic()

    def build_details(self, tracking: SyncTracking) -> dict[str, Any]:
        performance: dict[str, Any] = {
            f"{phase}_duration": round(timing.duration, 6)
            for phase, timing in tracking.phases.items()
            if timing.duration is not None
        }
        if tracking.batches:
            performance["batch_statistics"] = batch_statistics(tracking.batches)

        stored = tracking.errors[:MAX_STORED_ERRORS]
        details: dict[str, Any] = {
            "run_id": tracking.run_id,
            "errors": [error.model_dump(mode="json") for error in stored],
            "performance": performance,
        }
        if len(tracking.errors) > len(stored):
            details["errors_truncated"] = len(tracking.errors) - len(stored)
        return details

    async def finish(
        self, tracking: SyncTracking, status: SyncStatus, records_processed: int
    ) -> SyncHealthRecord:
        """
        Finalize the run and persist its audit row.

        Called on every exit path. A database failure is logged and the
        in-memory record is returned without an id.
        """
        end_time = datetime.now(timezone.utc)
        duration = round(time.monotonic() - tracking.started_monotonic, 3)
        for phase in tracking.phases:
            self.mark_phase_end(tracking, phase)

        record = SyncHealthRecord(
            id=tracking.audit_id,
            sync_type=tracking.sync_type,
            source_file=tracking.source_file,
            status=status,
            start_time=tracking.start_time,
            end_time=end_time,
            duration_seconds=duration,
            records_processed=records_processed,
            error_count=len(tracking.errors),
            details=self.build_details(tracking),
            memory_usage_mb=current_memory_mb(),
        )
        values = record.model_dump(exclude={"id"}, mode="python")
        values["sync_type"] = record.sync_type.value
        values["status"] = record.status.value

        try:
            async with DatabaseSession(self.session_factory()) as session:
                repository = SyncHealthRepository(session)
                updated = False
                if tracking.audit_id is not None:
                    updated = await repository.finalize(tracking.audit_id, values)
                if not updated:
                    record.id = await repository.create(values)
                    tracking.audit_id = record.id
        except Exception as e:
            self.logger.error(
                "Failed to persist audit row", run_id=tracking.run_id, error=str(e)
            )

        tracking.finished = True
        log = self.logger.info if status == SyncStatus.SUCCEEDED else self.logger.error
        log(
            "Sync finished",
            run_id=tracking.run_id,
            audit_id=record.id,
            status=status.value,
            records_processed=records_processed,
            error_count=record.error_count,
            duration_seconds=duration,
        )
        return record

    async def recent_runs(self, limit: int = 10) -> list[SyncHealthRecord]:
        """Audit rows, newest first"""
        async with DatabaseSession(self.session_factory()) as session:
            return await SyncHealthRepository(session).recent(limit)

    async def health_stats(
        self, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> HealthStats:
        async with DatabaseSession(self.session_factory()) as session:
            return await SyncHealthRepository(session).stats(since, until)


__all__ = [
    "SyncHealthTracker",
    "SyncTracking",
    "batch_statistics",
    "current_memory_mb",
]
