"""In-process challenge store with a periodic sweeper."""

from __future__ import annotations

import asyncio
import contextlib
from collections import Counter
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from captchaguard.models.challenge import StoreStats, SweepResult
from captchaguard.storage.challenge_store import ChallengeStore
from captchaguard.types import StorageKind

if TYPE_CHECKING:
    from collections.abc import Callable

    from captchaguard.models.challenge import ChallengeRecord

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class InMemoryChallengeStore(ChallengeStore):
    """Stores challenge records in a dict guarded by one asyncio lock.

    Records are held until deleted or swept; ``get`` still returns a record
    past its ``expires_at`` so the caller can tell expiry from absence.
    Nothing survives a process restart.
    """

    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self._records: dict[str, ChallengeRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def kind(self) -> StorageKind:
        return StorageKind.MEMORY

    async def put(self, challenge_id: str, record: ChallengeRecord, ttl_seconds: int) -> None:
        async with self._lock:
            self._records[challenge_id] = record.model_copy()

    async def get(self, challenge_id: str) -> ChallengeRecord | None:
        async with self._lock:
            record = self._records.get(challenge_id)
            return record.model_copy() if record else None

    async def delete(self, challenge_id: str) -> bool:
        async with self._lock:
            return self._records.pop(challenge_id, None) is not None

    async def increment_attempts(self, challenge_id: str) -> ChallengeRecord | None:
        async with self._lock:
            record = self._records.get(challenge_id)
            if record is None:
                return None
            updated = record.model_copy(update={"attempts": record.attempts + 1})
            self._records[challenge_id] = updated
            return updated.model_copy()

    async def sweep_expired(self) -> SweepResult:
        """Remove every record with ``expires_at <= now``."""
        now = self._clock()
        async with self._lock:
            scanned = len(self._records)
            expired = [cid for cid, rec in self._records.items() if rec.expires_at <= now]
            for cid in expired:
                del self._records[cid]
        if expired:
            logger.debug("memory_store_swept", removed=len(expired), scanned=scanned)
        return SweepResult(removed_count=len(expired), scanned=scanned)

    async def list_stats(self) -> StoreStats:
        now = self._clock()
        async with self._lock:
            records = list(self._records.values())
        expired = sum(1 for rec in records if rec.expires_at <= now)
        by_kind = Counter(str(rec.kind) for rec in records)
        return StoreStats(
            total=len(records),
            active=len(records) - expired,
            expired=expired,
            storage_kind=self.kind,
            by_kind=dict(by_kind),
        )

    # ------------------------------------------------------------------
    # Sweeper
    # ------------------------------------------------------------------

    def start_sweeper(self, interval_seconds: float) -> None:
        """Start the background sweep loop on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_loop(interval_seconds), name="captcha-memory-sweeper"
        )
        logger.info("memory_store_sweeper_started", interval_seconds=interval_seconds)

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                result = await self.sweep_expired()
            except Exception:
                logger.exception("memory_store_sweep_error")
                continue
            if result.removed_count:
                logger.info("memory_store_sweep_completed", removed=result.removed_count)

    async def close(self) -> None:
        """Stop the sweeper and drop all records."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        async with self._lock:
            self._records.clear()
