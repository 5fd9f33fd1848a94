"""
Unit tests for the sync_health audit repository.
"""
from datetime import datetime, timedelta, timezone

import pytest

from catalog_ingest.models.domain import SyncStatus
from catalog_ingest.repositories.base import DatabaseSession
from catalog_ingest.repositories.sync_health_repository import SyncHealthRepository

START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def audit_values(status="succeeded", offset_minutes=0, **overrides):
    values = {
        "sync_type": "full",
        "source_file": "feed.xml",
        "status": status,
        "start_time": START + timedelta(minutes=offset_minutes),
        "records_processed": 0,
        "error_count": 0,
        "details": {},
    }
    values.update(overrides)
    return values


@pytest.fixture
async def seeded(session_factory):
    """Three finished runs and one running"""
    async with DatabaseSession(session_factory()) as session:
        repository = SyncHealthRepository(session)
        await repository.create(audit_values("succeeded", 0, duration_seconds=10.0, records_processed=100))
        await repository.create(audit_values("succeeded", 10, duration_seconds=20.0, records_processed=50, error_count=2))
        await repository.create(audit_values("failed", 20, duration_seconds=30.0, error_count=1))
        await repository.create(audit_values("running", 30))
    return session_factory


class TestSyncHealthRepository:
    """Test audit row persistence and aggregation"""

    async def test_create_and_finalize(self, session_factory):
        """Test a running row is finalized in place"""
        async with DatabaseSession(session_factory()) as session:
            run_id = await SyncHealthRepository(session).create(audit_values("running"))

        async with DatabaseSession(session_factory()) as session:
            updated = await SyncHealthRepository(session).finalize(
                run_id, {"status": "succeeded", "records_processed": 7, "details": {"run_id": "r1"}}
            )

        async with DatabaseSession(session_factory()) as session:
            record = await SyncHealthRepository(session).get_by_id(run_id)

        assert updated is True
        assert record.status == SyncStatus.SUCCEEDED
        assert record.records_processed == 7
        assert record.details == {"run_id": "r1"}

    async def test_finalize_missing_row(self, session_factory):
        """Test finalizing an unknown id reports no update"""
        async with DatabaseSession(session_factory()) as session:
            assert await SyncHealthRepository(session).finalize(999, {"status": "failed"}) is False

    async def test_recent_newest_first(self, seeded):
        """Test ordering and limit of recent runs"""
        async with DatabaseSession(seeded()) as session:
            runs = await SyncHealthRepository(session).recent(limit=2)

        assert [run.status for run in runs] == [SyncStatus.RUNNING, SyncStatus.FAILED]

    async def test_stats(self, seeded):
        """Test counts, success rate and average duration"""
        async with DatabaseSession(seeded()) as session:
            stats = await SyncHealthRepository(session).stats()

        assert stats.total_runs == 4
        assert stats.succeeded == 2
        assert stats.failed == 1
        assert stats.running == 1
        assert stats.success_rate == 0.5
        assert stats.average_duration_seconds == 20.0
        assert stats.total_records_processed == 150
        assert stats.total_errors == 3

    async def test_stats_window(self, seeded):
        """Test the since/until window on start_time"""
        async with DatabaseSession(seeded()) as session:
            stats = await SyncHealthRepository(session).stats(
                since=START + timedelta(minutes=5), until=START + timedelta(minutes=25)
            )

        assert stats.total_runs == 2
        assert stats.succeeded == 1
        assert stats.failed == 1

    async def test_stats_empty(self, session_factory):
        """Test aggregation over no rows"""
        async with DatabaseSession(session_factory()) as session:
            stats = await SyncHealthRepository(session).stats()

        assert stats.total_runs == 0
        assert stats.success_rate == 0.0
        assert stats.average_duration_seconds is None

    def test_legacy_text_details(self):
        """Test details stored as JSON text are decoded"""
        assert SyncHealthRepository._details('{"run_id": "x"}') == {"run_id": "x"}
        assert SyncHealthRepository._details("not json") == {"raw": "not json"}
        assert SyncHealthRepository._details(None) == {}
