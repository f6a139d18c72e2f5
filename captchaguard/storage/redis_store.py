"""Redis-backed challenge store relying on native key expiry."""

from __future__ import annotations

import contextlib
from collections import Counter
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from captchaguard.exceptions import StoreUnavailableError
from captchaguard.models.challenge import ChallengeRecord, StoreStats, SweepResult
from captchaguard.storage.challenge_store import ChallengeStore
from captchaguard.types import StorageKind

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

logger = structlog.get_logger(__name__)

_SCAN_BATCH = 200
RECORD_FIELD = "record"
ATTEMPTS_FIELD = "attempts"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RedisChallengeStore(ChallengeStore):
    """Stores each challenge as a hash under ``<key_prefix><id>`` with a native TTL.

    The hash holds the record JSON (without attempts) and an integer
    ``attempts`` field, so guesses are counted with a single HINCRBY. Redis
    eviction is authoritative; sweeps and stats only look at a bounded
    number of keys.
    """

    def __init__(
        self,
        client: Redis,
        *,
        key_prefix: str = "captchaguard:",
        id_prefix: str = "captcha:",
        scan_limit: int = 1000,
        sample_size: int = 100,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._pattern = f"{key_prefix}{id_prefix}*"
        self._scan_limit = scan_limit
        self._sample_size = sample_size
        self._clock = clock

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        connect_timeout: float = 10.0,
        socket_timeout: float = 5.0,
        **kwargs: object,
    ) -> RedisChallengeStore:
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            socket_timeout=socket_timeout,
        )
        return cls(client, **kwargs)  # type: ignore[arg-type]

    @property
    def kind(self) -> StorageKind:
        return StorageKind.REDIS

    def _key(self, challenge_id: str) -> str:
        return f"{self._key_prefix}{challenge_id}"

    @contextlib.contextmanager
    def _unavailable_on_error(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisError, OSError) as exc:
            logger.error("redis_store_error", operation=operation, error=str(exc))
            msg = f"Redis challenge store unavailable during {operation}: {exc}"
            raise StoreUnavailableError(msg) from exc

    def _decode(
        self, key: str, raw: str | None, attempts: str | int | None = None
    ) -> ChallengeRecord | None:
        if raw is None:
            return None
        try:
            record = ChallengeRecord.model_validate_json(raw)
            if attempts is not None:
                record = record.model_copy(update={"attempts": int(attempts)})
        except ValueError:
            logger.warning("redis_store_corrupt_record", key=key)
            return None
        return record

    async def put(self, challenge_id: str, record: ChallengeRecord, ttl_seconds: int) -> None:
        key = self._key(challenge_id)
        with self._unavailable_on_error("put"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(
                    key,
                    mapping={
                        RECORD_FIELD: record.model_dump_json(exclude={"attempts"}),
                        ATTEMPTS_FIELD: record.attempts,
                    },
                )
                pipe.expire(key, ttl_seconds)
                await pipe.execute()

    async def get(self, challenge_id: str) -> ChallengeRecord | None:
        key = self._key(challenge_id)
        with self._unavailable_on_error("get"):
            raw, attempts = await self._client.hmget(key, [RECORD_FIELD, ATTEMPTS_FIELD])
        return self._decode(key, raw, attempts)

    async def delete(self, challenge_id: str) -> bool:
        with self._unavailable_on_error("delete"):
            removed = await self._client.delete(self._key(challenge_id))
        return removed > 0

    async def increment_attempts(self, challenge_id: str) -> ChallengeRecord | None:
        key = self._key(challenge_id)
        with self._unavailable_on_error("increment_attempts"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hincrby(key, ATTEMPTS_FIELD, 1)
                pipe.hget(key, RECORD_FIELD)
                attempts, raw = await pipe.execute()
            if raw is None:
                # HINCRBY recreated a key that had already been removed.
                await self._client.delete(key)
                return None
        return self._decode(key, raw, attempts)

    async def _scan_keys(self) -> tuple[list[str], bool]:
        """Collect up to ``scan_limit`` matching keys. Returns (keys, truncated)."""
        keys: list[str] = []
        async for key in self._client.scan_iter(match=self._pattern, count=_SCAN_BATCH):
            if len(keys) >= self._scan_limit:
                return keys, True
            keys.append(key)
        return keys, False

    async def _load_records(self, keys: list[str]) -> list[str | None]:
        async with self._client.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.hget(key, RECORD_FIELD)
            return await pipe.execute()

    async def sweep_expired(self) -> SweepResult:
        """Best-effort accounting pass over a bounded set of keys.

        Redis evicts on its own; this only deletes records whose stored
        ``expires_at`` has passed while the key somehow lingers.
        """
        now = self._clock()
        with self._unavailable_on_error("sweep_expired"):
            keys, truncated = await self._scan_keys()
            if not keys:
                return SweepResult()
            values = await self._load_records(keys)
            stale = [
                key
                for key, raw in zip(keys, values, strict=True)
                if (record := self._decode(key, raw)) is not None and record.expires_at <= now
            ]
            removed = await self._client.delete(*stale) if stale else 0
        vanished = sum(1 for raw in values if raw is None)
        logger.debug(
            "redis_store_swept",
            scanned=len(keys),
            removed=removed,
            evicted_during_scan=vanished,
            truncated=truncated,
        )
        return SweepResult(removed_count=removed, scanned=len(keys))

    async def list_stats(self) -> StoreStats:
        with self._unavailable_on_error("list_stats"):
            keys, truncated = await self._scan_keys()
            sample = keys[: self._sample_size]
            values = await self._load_records(sample) if sample else []
        by_kind = Counter(
            str(record.kind)
            for key, raw in zip(sample, values, strict=True)
            if (record := self._decode(key, raw)) is not None
        )
        return StoreStats(
            total=len(keys),
            active=len(keys),
            expired=0,
            storage_kind=self.kind,
            by_kind=dict(by_kind),
            truncated=truncated,
        )

    async def check_connection(self) -> None:
        with self._unavailable_on_error("ping"):
            await self._client.ping()

    async def close(self) -> None:
        with self._unavailable_on_error("close"):
            await self._client.aclose()
