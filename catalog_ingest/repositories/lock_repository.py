"""
Run lock keyed by destination database and feed source.

PostgreSQL uses a session-level advisory lock held on a dedicated connection.
Other engines use a row in ingestion_locks; a row older than the stale threshold
is taken over.
"""
import hashlib
import os
import socket
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import delete, insert, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from catalog_ingest.db import describe_destination
from catalog_ingest.errors import RunLockError
from catalog_ingest.models.database import IngestionLockTable

logger = structlog.get_logger(__name__)


def lock_key_for(engine: AsyncEngine, source_file: str) -> str:
    """Hex sha1 of the credential-free destination URL and absolute feed path"""
    identity = describe_destination(engine, os.path.abspath(source_file))
    return hashlib.sha1(identity.encode("utf-8")).hexdigest()


def advisory_lock_id(lock_key: str) -> int:
    """Signed 64-bit id for pg_try_advisory_lock"""
    return int.from_bytes(bytes.fromhex(lock_key)[:8], "big", signed=True)


class RunLock:
    """Async context manager holding the run lock for one destination and feed"""

    def __init__(
        self,
        engine: AsyncEngine,
        source_file: str,
        stale_after_seconds: int = 21600,
    ) -> None:
        self.engine = engine
        self.source_file = source_file
        self.lock_key = lock_key_for(engine, source_file)
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.holder = f"{socket.gethostname()}:{os.getpid()}"
        self._connection: Optional[AsyncConnection] = None
        self._acquired = False
        self.logger = logger.bind(component="run_lock", lock_key=self.lock_key)

    @property
    def uses_advisory_lock(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    async def acquire(self) -> None:
        """
        Take the lock or fail immediately.

        Raises:
            RunLockError: Another run holds the lock
        """
        if self.uses_advisory_lock:
            await self._acquire_advisory()
        else:
            await self._acquire_row()
        self._acquired = True
        self.logger.info("Run lock acquired", source_file=self.source_file)

    async def release(self) -> None:
        if not self._acquired:
            return
        try:
            if self.uses_advisory_lock:
                await self._release_advisory()
            else:
                async with self.engine.begin() as conn:
                    await conn.execute(
                        delete(IngestionLockTable).where(
                            IngestionLockTable.lock_key == self.lock_key,
                            IngestionLockTable.holder == self.holder,
                        )
                    )
            self.logger.info("Run lock released")
        finally:
            self._acquired = False

    async def __aenter__(self) -> "RunLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.release()

    async def _acquire_advisory(self) -> None:
        lock_id = advisory_lock_id(self.lock_key)
        connection = await self.engine.connect()
        try:
            result = await connection.execute(
                text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}
            )
            acquired = bool(result.scalar())
            await connection.commit()
        except Exception:
            await connection.close()
            raise

        if not acquired:
            await connection.close()
            raise RunLockError(
                "Another ingestion run holds the lock for this destination and feed",
                context={"lock_key": self.lock_key, "source_file": self.source_file},
            )
        self._connection = connection

    async def _release_advisory(self) -> None:
        if self._connection is None:
            return
        try:
            await self._connection.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"),
                {"lock_id": advisory_lock_id(self.lock_key)},
            )
            await self._connection.commit()
        finally:
            await self._connection.close()
            self._connection = None

    async def _acquire_row(self) -> None:
        now = datetime.now(timezone.utc)
        values = {
            "lock_key": self.lock_key,
            "source_file": self.source_file,
            "holder": self.holder,
            "acquired_at": now,
        }
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(IngestionLockTable).values(**values))
            return
        except IntegrityError:
            pass

        async with self.engine.begin() as conn:
            result = await conn.execute(
                select(IngestionLockTable.holder, IngestionLockTable.acquired_at).where(
                    IngestionLockTable.lock_key == self.lock_key
                )
            )
            held = result.first()
            if held is not None and not self._is_stale(held.acquired_at, now):
                raise RunLockError(
                    f"Another ingestion run ({held.holder}) holds the lock for this "
                    "destination and feed",
                    context={"lock_key": self.lock_key, "holder": held.holder},
                )

            self.logger.warning(
                "Taking over stale run lock",
                previous_holder=held.holder if held is not None else None,
            )
            await conn.execute(
                delete(IngestionLockTable).where(IngestionLockTable.lock_key == self.lock_key)
            )
            await conn.execute(insert(IngestionLockTable).values(**values))

    def _is_stale(self, acquired_at: datetime, now: datetime) -> bool:
        if acquired_at.tzinfo is None:
            acquired_at = acquired_at.replace(tzinfo=timezone.utc)
        return now - acquired_at > self.stale_after


__all__ = ["RunLock", "lock_key_for", "advisory_lock_id"]
