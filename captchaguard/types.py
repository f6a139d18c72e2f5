"""Enums and type aliases for CaptchaGuard."""

from enum import StrEnum


class ChallengeKind(StrEnum):
    FREE_TEXT = "free-text"
    ARITHMETIC = "arithmetic-expression"
    NUMERIC = "numeric-only"

    @classmethod
    def parse(cls, value: "ChallengeKind | str") -> "ChallengeKind":
        """Resolve a kind from its value or one of the legacy aliases.

        Raises ValueError for anything else.
        """
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        return cls(_KIND_ALIASES.get(key, key))


_KIND_ALIASES = {
    "default": ChallengeKind.FREE_TEXT.value,
    "text": ChallengeKind.FREE_TEXT.value,
    "math": ChallengeKind.ARITHMETIC.value,
    "numeric": ChallengeKind.NUMERIC.value,
    # Purpose labels from older clients draw the default text challenge.
    "login": ChallengeKind.FREE_TEXT.value,
    "register": ChallengeKind.FREE_TEXT.value,
    "reset_password": ChallengeKind.FREE_TEXT.value,
    "change_email": ChallengeKind.FREE_TEXT.value,
}


class VerifyOutcome(StrEnum):
    SUCCESS = "success"
    INVALID = "invalid"
    EXPIRED = "expired"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    NOT_FOUND = "not_found"


class StorageKind(StrEnum):
    MEMORY = "memory"
    REDIS = "redis"


class ImageFormat(StrEnum):
    SVG = "svg"
    PNG = "png"
