"""Abstract challenge store interface and backend selection."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from captchaguard.config.settings import Settings
    from captchaguard.models.challenge import ChallengeRecord, StoreStats, SweepResult
    from captchaguard.types import StorageKind


class ChallengeStore(ABC):
    """Keyed, TTL-bounded storage for live challenge records.

    Implementations must keep single-key writes whole (no torn records) when
    called concurrently for the same id.
    """

    @property
    @abstractmethod
    def kind(self) -> StorageKind:
        """Which backend this is, for stats and health reports."""

    @abstractmethod
    async def put(self, challenge_id: str, record: ChallengeRecord, ttl_seconds: int) -> None:
        """Insert or replace a record and (re)set its expiry.

        The record's ``expires_at`` is authoritative for every backend.
        ``ttl_seconds`` is the same deadline as a duration, used by backends
        with native key expiry to evict the record.
        """

    @abstractmethod
    async def get(self, challenge_id: str) -> ChallengeRecord | None:
        """Return the stored record, or None if the backend no longer holds it."""

    @abstractmethod
    async def delete(self, challenge_id: str) -> bool:
        """Remove a record. Returns True if this call removed it."""

    @abstractmethod
    async def increment_attempts(self, challenge_id: str) -> ChallengeRecord | None:
        """Atomically add one attempt and return the updated record.

        Returns None if the record is gone. The expiry is left unchanged.
        """

    @abstractmethod
    async def sweep_expired(self) -> SweepResult:
        """Remove records whose expiry has passed."""

    @abstractmethod
    async def list_stats(self) -> StoreStats:
        """Diagnostic snapshot of what the store holds."""

    async def check_connection(self) -> None:
        """Raise StoreUnavailableError if the backend cannot be reached."""

    async def close(self) -> None:
        """Release background tasks and connections."""


def create_challenge_store(settings: Settings) -> ChallengeStore:
    """Factory: create the ChallengeStore selected by settings. Performs no I/O."""
    if settings.captcha_use_redis:
        from captchaguard.storage.redis_store import RedisChallengeStore

        return RedisChallengeStore.from_url(
            settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            id_prefix=settings.captcha_id_prefix,
            scan_limit=settings.captcha_scan_limit,
            sample_size=settings.captcha_stats_sample_size,
            connect_timeout=settings.redis_connect_timeout,
            socket_timeout=settings.redis_socket_timeout,
        )

    from captchaguard.storage.memory_store import InMemoryChallengeStore

    return InMemoryChallengeStore()
