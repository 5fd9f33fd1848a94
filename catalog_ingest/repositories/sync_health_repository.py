"""
Repository for the sync_health audit table.
"""
import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select, update

from catalog_ingest.models.database import SyncHealthTable
from catalog_ingest.models.domain import HealthStats, SyncHealthRecord, SyncStatus
from catalog_ingest.repositories.base import BaseRepository, RepositoryError


class SyncHealthRepository(BaseRepository[SyncHealthRecord]):
    """Audit rows: one per run, created at start and finalized at the end"""

    def __init__(self, session) -> None:
        super().__init__(session, SyncHealthTable, SyncHealthRecord)

    async def create(self, values: dict[str, Any]) -> int:
        """
        Insert an audit row.

        Args:
            values: Column values

        Returns:
            Primary key of the new row

        Raises:
            RepositoryError: If the insert fails
        """
        try:
            db_entity = SyncHealthTable(**values)
            self.session.add(db_entity)
            await self.session.flush()
            return db_entity.id
        except Exception as e:
            self.logger.error("Failed to create audit row", error=str(e))
            raise RepositoryError(f"Failed to create audit row: {e}", e) from e

    async def finalize(self, run_id: int, values: dict[str, Any]) -> bool:
        """
        Update an existing audit row.

        Returns:
            True if a row was updated

        Raises:
            RepositoryError: If the update fails
        """
        try:
            result = await self.session.execute(
                update(SyncHealthTable)
                .where(SyncHealthTable.id == run_id)
                .values(**values, updated_at=func.now())
            )
            return (result.rowcount or 0) > 0
        except Exception as e:
            self.logger.error("Failed to finalize audit row", run_id=run_id, error=str(e))
            raise RepositoryError(f"Failed to finalize audit row: {e}", e) from e

    async def recent(self, limit: int = 10) -> list[SyncHealthRecord]:
        """Most recent runs first"""
        return await self.list_all(
            limit=limit,
            order_by=(SyncHealthTable.start_time.desc()),
        )

    async def stats(
        self, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> HealthStats:
        """
        Aggregate runs started within [since, until].

        Raises:
            RepositoryError: If the query fails
        """
        try:
            query = select(
                SyncHealthTable.status,
                func.count(SyncHealthTable.id),
                func.avg(SyncHealthTable.duration_seconds),
                func.count(SyncHealthTable.duration_seconds),
                func.coalesce(func.sum(SyncHealthTable.records_processed), 0),
                func.coalesce(func.sum(SyncHealthTable.error_count), 0),
            ).group_by(SyncHealthTable.status)
            if since is not None:
                query = query.where(SyncHealthTable.start_time >= since)
            if until is not None:
                query = query.where(SyncHealthTable.start_time <= until)

            result = await self.session.execute(query)
            rows = result.all()
        except Exception as e:
            self.logger.error("Failed to aggregate audit rows", error=str(e))
            raise RepositoryError(f"Failed to aggregate audit rows: {e}", e) from e

        stats = HealthStats()
        weighted_duration = 0.0
        finished = 0
        for status, count, avg_duration, timed, records, errors in rows:
            stats.total_runs += count
            stats.total_records_processed += int(records or 0)
            stats.total_errors += int(errors or 0)
            if status == SyncStatus.SUCCEEDED.value:
                stats.succeeded += count
            elif status == SyncStatus.FAILED.value:
                stats.failed += count
            else:
                stats.running += count
            if avg_duration is not None:
                weighted_duration += float(avg_duration) * timed
                finished += timed

        if stats.total_runs:
            stats.success_rate = round(stats.succeeded / stats.total_runs, 4)
        if finished:
            stats.average_duration_seconds = round(weighted_duration / finished, 3)
        return stats

    @staticmethod
    def _details(raw: Any) -> dict[str, Any]:
        """Older audit tables store details as JSON text"""
        if not raw:
            return {}
        if isinstance(raw, str):
            try:
                parsed = json.loads(raw)
            except ValueError:
                return {"raw": raw}
            return parsed if isinstance(parsed, dict) else {"raw": parsed}
        return raw

    def _to_domain_model(self, db_entity: SyncHealthTable) -> SyncHealthRecord:
        return SyncHealthRecord(
            id=db_entity.id,
            sync_type=db_entity.sync_type,
            source_file=db_entity.source_file,
            status=db_entity.status,
            start_time=db_entity.start_time,
            end_time=db_entity.end_time,
            duration_seconds=db_entity.duration_seconds,
            records_processed=db_entity.records_processed or 0,
            error_count=db_entity.error_count or 0,
            details=self._details(db_entity.details),
            memory_usage_mb=db_entity.memory_usage_mb,
        )


__all__ = ["SyncHealthRepository"]
