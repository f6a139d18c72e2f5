"""Shared test fixtures."""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from captchaguard.render.renderer import ChallengeRenderer
from captchaguard.service.challenge_service import ChallengeService
from captchaguard.storage.memory_store import InMemoryChallengeStore
from captchaguard.storage.redis_store import RedisChallengeStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC))


@pytest.fixture()
def renderer() -> ChallengeRenderer:
    return ChallengeRenderer(rng=random.Random(1234))


@pytest.fixture()
def memory_store(clock: FakeClock) -> InMemoryChallengeStore:
    return InMemoryChallengeStore(clock=clock)


@pytest.fixture()
async def redis_client():
    """Isolated in-process Redis double."""
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture()
def redis_store(redis_client: FakeAsyncRedis, clock: FakeClock) -> RedisChallengeStore:
    return RedisChallengeStore(redis_client, clock=clock)


@pytest.fixture(params=["memory", "redis"])
def store(request: pytest.FixtureRequest):
    """Each ChallengeStore backend in turn."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture()
def service(store, renderer: ChallengeRenderer, clock: FakeClock) -> ChallengeService:
    return ChallengeService(store, renderer, clock=clock)
