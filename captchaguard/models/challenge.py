"""Challenge state and the value objects exchanged with callers."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel

from captchaguard.types import ChallengeKind, ImageFormat, StorageKind, VerifyOutcome


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ChallengeRecord(BaseModel):
    """Stored state of one issued challenge.

    ``answer`` is already normalized and never changes; only ``attempts``
    is mutated, and only by verification against this ``id``.
    """

    id: str
    answer: str
    kind: ChallengeKind
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 3

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


class ChallengeOptions(BaseModel):
    """Per-call overrides; ``None`` falls back to the configured default."""

    length: int | None = None
    width: int | None = None
    height: int | None = None
    noise: int | None = None
    font_size: int | None = None
    color: bool | None = None
    background: str | None = None
    image_format: ImageFormat = ImageFormat.SVG
    ttl_seconds: int | None = None
    max_attempts: int | None = None


class IssuedChallenge(BaseModel):
    """What the caller gets back from generate/refresh. Never the answer."""

    id: str
    artifact: str
    kind: ChallengeKind
    image_format: ImageFormat = ImageFormat.SVG
    expires_at: datetime
    ttl_seconds: int


# not_found and expired must look the same to an end user
_PUBLIC_CODES = {
    VerifyOutcome.SUCCESS: "CAPTCHA_OK",
    VerifyOutcome.INVALID: "CAPTCHA_INVALID",
    VerifyOutcome.EXPIRED: "CAPTCHA_EXPIRED",
    VerifyOutcome.NOT_FOUND: "CAPTCHA_EXPIRED",
    VerifyOutcome.ATTEMPTS_EXHAUSTED: "CAPTCHA_MAX_ATTEMPTS",
}


class VerifyResult(BaseModel):
    outcome: VerifyOutcome
    attempts_left: int | None = None

    @property
    def success(self) -> bool:
        return self.outcome == VerifyOutcome.SUCCESS

    @property
    def public_code(self) -> str:
        """Code safe to show a client; hides the expired/missing distinction."""
        return _PUBLIC_CODES[self.outcome]

    @property
    def requires_new_challenge(self) -> bool:
        return self.outcome in (
            VerifyOutcome.EXPIRED,
            VerifyOutcome.NOT_FOUND,
            VerifyOutcome.ATTEMPTS_EXHAUSTED,
        )


class SweepResult(BaseModel):
    removed_count: int = 0
    scanned: int = 0


class StoreStats(BaseModel):
    total: int = 0
    active: int = 0
    expired: int = 0
    storage_kind: StorageKind
    by_kind: dict[str, int] = {}
    truncated: bool = False


class ChallengeStats(StoreStats):
    counters: dict[str, int] = {}
    error: str | None = None


class HealthStatus(BaseModel):
    healthy: bool
    message: str
    storage_kind: StorageKind
    latency_ms: float | None = None
