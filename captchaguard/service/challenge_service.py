"""Challenge issuance and verification policy on top of a ChallengeStore."""

from __future__ import annotations

import secrets
import string
import time
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from captchaguard.exceptions import (
    InvalidKindError,
    InvalidOptionsError,
    StoreUnavailableError,
)
from captchaguard.models.challenge import (
    ChallengeOptions,
    ChallengeRecord,
    ChallengeStats,
    HealthStatus,
    IssuedChallenge,
    SweepResult,
    VerifyResult,
)
from captchaguard.render.renderer import ChallengeRenderer, RenderDefaults
from captchaguard.types import ChallengeKind, VerifyOutcome

if TYPE_CHECKING:
    from collections.abc import Callable

    from captchaguard.config.settings import Settings
    from captchaguard.storage.challenge_store import ChallengeStore

logger = structlog.get_logger(__name__)

ID_SUFFIX_ALPHABET = string.ascii_letters + string.digits
ID_SUFFIX_LENGTH = 8
HEALTH_PROBE_TTL_SECONDS = 10


def _utc_now() -> datetime:
    return datetime.now(UTC)


def normalize_answer(text: str) -> str:
    """Matching policy for every kind: case-insensitive, otherwise exact."""
    return text.lower()


def mint_challenge_id(prefix: str, now: datetime) -> str:
    """``<prefix><epoch-millis>_<8 random alphanumerics>``."""
    suffix = "".join(secrets.choice(ID_SUFFIX_ALPHABET) for _ in range(ID_SUFFIX_LENGTH))
    return f"{prefix}{int(now.timestamp() * 1000)}_{suffix}"


class ChallengeService:
    """Generates, verifies and refreshes challenges.

    Callers depend on this class only; which store backs it is decided once
    at startup (see ``captchaguard.bootstrap``).
    """

    def __init__(
        self,
        store: ChallengeStore,
        renderer: ChallengeRenderer | None = None,
        *,
        ttl_seconds: int = 300,
        max_attempts: int = 3,
        id_prefix: str = "captcha:",
        dev_bypass: tuple[str, str] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._renderer = renderer or ChallengeRenderer()
        self._ttl_seconds = ttl_seconds
        self._max_attempts = max_attempts
        self._id_prefix = id_prefix
        self._dev_bypass = dev_bypass
        self._clock = clock
        self._counters: Counter[str] = Counter()

    @classmethod
    def from_settings(cls, store: ChallengeStore, settings: Settings) -> ChallengeService:
        dev_bypass = None
        if (
            settings.environment == "development"
            and settings.dev_test_captcha_id
            and settings.dev_test_captcha_code
        ):
            dev_bypass = (settings.dev_test_captcha_id, settings.dev_test_captcha_code)
        return cls(
            store,
            ChallengeRenderer(RenderDefaults.from_settings(settings)),
            ttl_seconds=settings.captcha_ttl_seconds,
            max_attempts=settings.captcha_max_attempts,
            id_prefix=settings.captcha_id_prefix,
            dev_bypass=dev_bypass,
        )

    @property
    def store(self) -> ChallengeStore:
        return self._store

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def generate(
        self,
        kind: ChallengeKind | str = ChallengeKind.FREE_TEXT,
        options: ChallengeOptions | None = None,
    ) -> IssuedChallenge:
        """Issue a new challenge and persist its record.

        Raises InvalidKindError, InvalidOptionsError, RenderError or
        StoreUnavailableError. The answer is never part of the result.
        """
        try:
            kind = ChallengeKind.parse(kind)
        except ValueError as exc:
            msg = f"Unsupported challenge kind: {kind}"
            raise InvalidKindError(msg) from exc

        options = options or ChallengeOptions()
        ttl_seconds = self._ttl_seconds if options.ttl_seconds is None else options.ttl_seconds
        max_attempts = (
            self._max_attempts if options.max_attempts is None else options.max_attempts
        )
        if ttl_seconds <= 0:
            msg = f"ttl_seconds must be positive, got {ttl_seconds}"
            raise InvalidOptionsError(msg)
        if max_attempts <= 0:
            msg = f"max_attempts must be positive, got {max_attempts}"
            raise InvalidOptionsError(msg)

        rendered = self._renderer.render(kind, options)

        now = self._clock()
        challenge_id = mint_challenge_id(self._id_prefix, now)
        record = ChallengeRecord(
            id=challenge_id,
            answer=normalize_answer(rendered.answer),
            kind=kind,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            max_attempts=max_attempts,
        )
        await self._store.put(challenge_id, record, ttl_seconds)

        self._counters["generated"] += 1
        logger.info(
            "captcha_generated",
            captcha_id=challenge_id,
            kind=str(kind),
            length=len(rendered.display_text),
            storage=str(self._store.kind),
        )
        return IssuedChallenge(
            id=challenge_id,
            artifact=rendered.artifact,
            kind=kind,
            image_format=rendered.image_format,
            expires_at=record.expires_at,
            ttl_seconds=ttl_seconds,
        )

    async def refresh(
        self,
        challenge_id: str | None,
        kind: ChallengeKind | str = ChallengeKind.FREE_TEXT,
        options: ChallengeOptions | None = None,
    ) -> IssuedChallenge:
        """Invalidate ``challenge_id`` (if any) and issue a brand new challenge."""
        if challenge_id:
            try:
                await self._store.delete(challenge_id)
            except StoreUnavailableError as exc:
                logger.warning(
                    "captcha_refresh_invalidate_failed", captcha_id=challenge_id, error=str(exc)
                )
        issued = await self.generate(kind, options)
        self._counters["refreshed"] += 1
        logger.info("captcha_refreshed", old_captcha_id=challenge_id, captcha_id=issued.id)
        return issued

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(self, challenge_id: str, user_input: str) -> VerifyResult:
        """Check a guess. Outcomes are returned, never raised.

        Only StoreUnavailableError escapes, when the backend is unreachable.
        """
        if self._dev_bypass is not None and (challenge_id, user_input) == self._dev_bypass:
            logger.info("captcha_dev_bypass_used", captcha_id=challenge_id)
            return self._result(challenge_id, VerifyOutcome.SUCCESS)

        record = await self._store.get(challenge_id)
        if record is None:
            return self._result(challenge_id, VerifyOutcome.NOT_FOUND)

        if record.is_expired(self._clock()):
            await self._store.delete(challenge_id)
            return self._result(challenge_id, VerifyOutcome.EXPIRED)

        if record.exhausted:
            await self._store.delete(challenge_id)
            return self._result(challenge_id, VerifyOutcome.ATTEMPTS_EXHAUSTED)

        # Every counted guess, right or wrong, consumes an attempt first.
        record = await self._store.increment_attempts(challenge_id)
        if record is None:
            return self._result(challenge_id, VerifyOutcome.NOT_FOUND)

        if normalize_answer(user_input) == record.answer:
            # Only the caller whose delete removed the record wins.
            if await self._store.delete(challenge_id):
                return self._result(challenge_id, VerifyOutcome.SUCCESS, record)
            return self._result(challenge_id, VerifyOutcome.NOT_FOUND)

        if record.exhausted:
            await self._store.delete(challenge_id)
            return self._result(challenge_id, VerifyOutcome.ATTEMPTS_EXHAUSTED, record)

        return self._result(
            challenge_id, VerifyOutcome.INVALID, record, attempts_left=record.attempts_left
        )

    def _result(
        self,
        challenge_id: str,
        outcome: VerifyOutcome,
        record: ChallengeRecord | None = None,
        attempts_left: int | None = None,
    ) -> VerifyResult:
        self._counters[f"verify_{outcome}"] += 1
        log = logger.info if outcome == VerifyOutcome.SUCCESS else logger.warning
        log(
            "captcha_verified" if outcome == VerifyOutcome.SUCCESS else "captcha_verify_failed",
            captcha_id=challenge_id,
            outcome=str(outcome),
            kind=str(record.kind) if record else None,
            attempts=record.attempts if record else None,
            storage=str(self._store.kind),
        )
        return VerifyResult(outcome=outcome, attempts_left=attempts_left)

    # ------------------------------------------------------------------
    # Maintenance and observability
    # ------------------------------------------------------------------

    async def sweep(self) -> SweepResult:
        """Entry point for the external maintenance scheduler."""
        result = await self._store.sweep_expired()
        logger.info(
            "captcha_sweep_completed",
            removed=result.removed_count,
            scanned=result.scanned,
            storage=str(self._store.kind),
        )
        return result

    async def stats(self) -> ChallengeStats:
        counters = dict(self._counters)
        try:
            store_stats = await self._store.list_stats()
        except StoreUnavailableError as exc:
            logger.warning("captcha_stats_failed", error=str(exc))
            return ChallengeStats(storage_kind=self._store.kind, counters=counters, error=str(exc))
        return ChallengeStats(**store_stats.model_dump(), counters=counters)

    async def health(self) -> HealthStatus:
        """Synthetic put/get/delete round trip. Never raises."""
        now = self._clock()
        probe_id = mint_challenge_id(f"{self._id_prefix}health_check_", now)
        probe = ChallengeRecord(
            id=probe_id,
            answer=secrets.token_hex(4),
            kind=ChallengeKind.FREE_TEXT,
            created_at=now,
            expires_at=now + timedelta(seconds=HEALTH_PROBE_TTL_SECONDS),
            max_attempts=1,
        )
        storage_kind = self._store.kind
        try:
            started = time.perf_counter()
            await self._store.check_connection()
            await self._store.put(probe_id, probe, HEALTH_PROBE_TTL_SECONDS)
            retrieved = await self._store.get(probe_id)
            await self._store.delete(probe_id)
            latency_ms = round((time.perf_counter() - started) * 1000, 3)
        except Exception as exc:
            logger.warning("captcha_health_check_failed", error=str(exc), storage=str(storage_kind))
            return HealthStatus(
                healthy=False,
                message=f"Challenge store health check failed: {exc}",
                storage_kind=storage_kind,
            )

        if retrieved is None or retrieved.answer != probe.answer:
            logger.warning("captcha_health_check_mismatch", storage=str(storage_kind))
            return HealthStatus(
                healthy=False,
                message="Challenge store returned an unexpected record",
                storage_kind=storage_kind,
                latency_ms=latency_ms,
            )
        return HealthStatus(
            healthy=True,
            message="Challenge store is operational",
            storage_kind=storage_kind,
            latency_ms=latency_ms,
        )
