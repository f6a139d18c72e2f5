"""Process-wide ownership of the ChallengeService.

The backend is chosen once, here, when the host application starts. Request
handlers obtain the shared service with ``get_challenge_service()``; tests
build a ``ChallengeService`` around their own store instead.
"""

from __future__ import annotations

import asyncio

import structlog

from captchaguard.config.logging import setup_logging
from captchaguard.config.settings import Settings, get_settings, validate_settings
from captchaguard.exceptions import ConfigError, StoreUnavailableError
from captchaguard.service.challenge_service import ChallengeService
from captchaguard.storage.challenge_store import ChallengeStore, create_challenge_store
from captchaguard.storage.memory_store import InMemoryChallengeStore

logger = structlog.get_logger(__name__)

_service: ChallengeService | None = None
_init_lock = asyncio.Lock()


async def _select_store(settings: Settings) -> ChallengeStore:
    store = create_challenge_store(settings)
    try:
        await store.check_connection()
    except StoreUnavailableError as exc:
        if not settings.captcha_fallback_to_memory:
            raise
        logger.warning(
            "captcha_store_degraded",
            requested=str(store.kind),
            using="memory",
            error=str(exc),
        )
        try:
            await store.close()
        except StoreUnavailableError:
            logger.debug("captcha_store_close_failed", storage=str(store.kind))
        store = InMemoryChallengeStore()

    if isinstance(store, InMemoryChallengeStore):
        store.start_sweeper(settings.captcha_sweep_interval_seconds)
    return store


async def init_challenge_service(
    settings: Settings | None = None, configure_logging: bool = True
) -> ChallengeService:
    """Build the shared service once; later calls return the same instance."""
    global _service
    async with _init_lock:
        if _service is not None:
            return _service

        settings = validate_settings(settings) if settings is not None else get_settings()
        if configure_logging:
            setup_logging(settings.log_level, json_output=settings.log_json)

        store = await _select_store(settings)
        _service = ChallengeService.from_settings(store, settings)
        logger.info(
            "captcha_service_initialized",
            storage=str(store.kind),
            ttl_seconds=settings.captcha_ttl_seconds,
            max_attempts=settings.captcha_max_attempts,
        )
        return _service


def get_challenge_service() -> ChallengeService:
    """Return the shared service. Raises ConfigError before initialization."""
    if _service is None:
        msg = "Challenge service is not initialized; call init_challenge_service() at startup"
        raise ConfigError(msg)
    return _service


async def shutdown_challenge_service() -> None:
    """Close the active store and forget the shared service."""
    global _service
    async with _init_lock:
        if _service is None:
            return
        service, _service = _service, None
        try:
            await service.store.close()
        except StoreUnavailableError as exc:
            logger.warning("captcha_store_close_failed", error=str(exc))
        logger.info("captcha_service_shutdown", storage=str(service.store.kind))
