"""Exception hierarchy for CaptchaGuard."""


class CaptchaGuardError(Exception):
    """Base exception for all CaptchaGuard errors."""


class InvalidKindError(CaptchaGuardError):
    """Raised when a challenge is requested for an unsupported kind."""


class InvalidOptionsError(CaptchaGuardError):
    """Raised when issuance policy overrides (ttl, attempts) are invalid."""


class RenderError(CaptchaGuardError):
    """Raised when a challenge artifact cannot be rendered."""


class StoreUnavailableError(CaptchaGuardError):
    """Raised when the challenge store is unreachable or misconfigured."""


class ConfigError(CaptchaGuardError):
    """Raised when configuration is invalid."""
