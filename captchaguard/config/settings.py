"""Application settings via Pydantic BaseSettings."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings

from captchaguard.exceptions import ConfigError


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # App
    environment: str = "production"
    log_level: str = "INFO"
    log_json: bool = False

    # Backend selection
    captcha_use_redis: bool = False
    captcha_fallback_to_memory: bool = True

    # Rendering defaults
    captcha_length: int = 4
    captcha_width: int = 120
    captcha_height: int = 40
    captcha_font_size: int = 50
    captcha_noise: int = 2
    captcha_color: bool = True
    captcha_background: str = "#f0f0f0"

    # Issuance policy
    captcha_ttl_seconds: int = 300
    captcha_max_attempts: int = 3
    captcha_id_prefix: str = "captcha:"

    # Maintenance
    captcha_sweep_interval_seconds: float = 300.0
    captcha_scan_limit: int = 1000
    captcha_stats_sample_size: int = 100

    # Redis (only used when captcha_use_redis is set)
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "captchaguard:"
    redis_connect_timeout: float = 10.0
    redis_socket_timeout: float = 5.0

    # Development-only fixed challenge
    dev_test_captcha_id: str | None = None
    dev_test_captcha_code: str | None = None


def validate_settings(settings: Settings) -> Settings:
    """Reject settings that would make issuance or sweeping meaningless."""
    if settings.captcha_ttl_seconds <= 0:
        msg = "CAPTCHA_TTL_SECONDS must be positive"
        raise ConfigError(msg)
    if settings.captcha_max_attempts <= 0:
        msg = "CAPTCHA_MAX_ATTEMPTS must be positive"
        raise ConfigError(msg)
    if settings.captcha_sweep_interval_seconds <= 0:
        msg = "CAPTCHA_SWEEP_INTERVAL_SECONDS must be positive"
        raise ConfigError(msg)
    if settings.captcha_scan_limit <= 0:
        msg = "CAPTCHA_SCAN_LIMIT must be positive"
        raise ConfigError(msg)
    return settings


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return validate_settings(Settings())
