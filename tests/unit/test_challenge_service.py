"""Unit tests for ChallengeService, run against every store backend."""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from captchaguard.exceptions import (
    InvalidKindError,
    InvalidOptionsError,
    RenderError,
    StoreUnavailableError,
)
from captchaguard.models.challenge import ChallengeOptions, ChallengeRecord, VerifyResult
from captchaguard.service.challenge_service import (
    ChallengeService,
    mint_challenge_id,
    normalize_answer,
)
from captchaguard.types import ChallengeKind, VerifyOutcome

_ID_PATTERN = re.compile(r"^captcha:\d{13}_[A-Za-z0-9]{8}$")
_GLYPH = re.compile(r"<text[^>]*>([^<]*)</text>")


async def _answer(service: ChallengeService, challenge_id: str) -> str:
    record = await service.store.get(challenge_id)
    assert record is not None
    return record.answer


@pytest.mark.unit
class TestHelpers:
    def test_normalize_is_case_insensitive(self) -> None:
        assert normalize_answer("AbC9") == normalize_answer("aBc9") == "abc9"

    def test_normalize_does_not_fold_to_other_lengths(self) -> None:
        assert normalize_answer("ßab") != normalize_answer("ssab")
        assert normalize_answer("ÀB") == "àb"

    def test_minted_id_shape(self, clock) -> None:
        challenge_id = mint_challenge_id("captcha:", clock())
        assert _ID_PATTERN.match(challenge_id)
        assert challenge_id.startswith(f"captcha:{int(clock().timestamp() * 1000)}_")

    def test_public_code_hides_expired_vs_missing(self) -> None:
        expired = VerifyResult(outcome=VerifyOutcome.EXPIRED)
        missing = VerifyResult(outcome=VerifyOutcome.NOT_FOUND)
        assert expired.public_code == missing.public_code
        assert expired.requires_new_challenge and missing.requires_new_challenge
        assert VerifyResult(outcome=VerifyOutcome.ATTEMPTS_EXHAUSTED).requires_new_challenge
        assert not VerifyResult(outcome=VerifyOutcome.INVALID).requires_new_challenge


@pytest.mark.unit
class TestGenerate:
    async def test_generate_persists_record(self, service: ChallengeService, clock) -> None:
        issued = await service.generate(ChallengeKind.FREE_TEXT)

        assert _ID_PATTERN.match(issued.id)
        assert issued.ttl_seconds == 300
        assert issued.expires_at == clock() + timedelta(seconds=300)
        assert "answer" not in issued.model_dump()

        record = await service.store.get(issued.id)
        assert record.attempts == 0
        assert record.max_attempts == 3
        assert record.kind == ChallengeKind.FREE_TEXT
        assert record.answer == record.answer.lower()

    async def test_artifact_text_matches_answer(self, service: ChallengeService) -> None:
        for kind in (ChallengeKind.FREE_TEXT, ChallengeKind.NUMERIC):
            issued = await service.generate(kind)
            drawn = "".join(_GLYPH.findall(issued.artifact))
            assert drawn.lower() == await _answer(service, issued.id)

    async def test_ids_are_unique(self, service: ChallengeService) -> None:
        ids = {(await service.generate(ChallengeKind.NUMERIC)).id for _ in range(50)}
        assert len(ids) == 50

    async def test_options_override_policy(self, service: ChallengeService, clock) -> None:
        issued = await service.generate(
            ChallengeKind.NUMERIC, ChallengeOptions(length=6, ttl_seconds=60, max_attempts=5)
        )
        record = await service.store.get(issued.id)
        assert len(record.answer) == 6
        assert record.max_attempts == 5
        assert issued.ttl_seconds == 60
        assert record.expires_at == clock() + timedelta(seconds=60)

    async def test_legacy_kind_alias(self, service: ChallengeService) -> None:
        issued = await service.generate("math")
        assert issued.kind == ChallengeKind.ARITHMETIC

    async def test_invalid_kind(self, service: ChallengeService) -> None:
        with pytest.raises(InvalidKindError, match="Unsupported"):
            await service.generate("audio")

    @pytest.mark.parametrize(
        "options", [ChallengeOptions(ttl_seconds=0), ChallengeOptions(max_attempts=-1)]
    )
    async def test_invalid_policy_override(
        self, service: ChallengeService, options: ChallengeOptions
    ) -> None:
        with pytest.raises(InvalidOptionsError):
            await service.generate(ChallengeKind.FREE_TEXT, options)

    async def test_render_error_stores_nothing(self, service: ChallengeService) -> None:
        with pytest.raises(RenderError):
            await service.generate(ChallengeKind.FREE_TEXT, ChallengeOptions(width=1))
        assert (await service.stats()).total == 0

    async def test_store_unavailable_propagates(self, service: ChallengeService) -> None:
        service.store.put = AsyncMock(side_effect=StoreUnavailableError("down"))
        with pytest.raises(StoreUnavailableError):
            await service.generate(ChallengeKind.FREE_TEXT)


@pytest.mark.unit
class TestVerify:
    async def test_correct_answer_then_not_found(self, service: ChallengeService) -> None:
        issued = await service.generate(ChallengeKind.FREE_TEXT)
        answer = await _answer(service, issued.id)

        result = await service.verify(issued.id, answer.upper())
        assert result.outcome == VerifyOutcome.SUCCESS
        assert result.success

        again = await service.verify(issued.id, answer)
        assert again.outcome == VerifyOutcome.NOT_FOUND

    async def test_numeric_scenario(self, service: ChallengeService) -> None:
        issued = await service.generate("numeric-only", ChallengeOptions(length=4))
        answer = await _answer(service, issued.id)
        assert len(answer) == 4

        assert (await service.verify(issued.id, answer)).outcome == VerifyOutcome.SUCCESS
        assert (await service.verify(issued.id, answer)).outcome == VerifyOutcome.NOT_FOUND

    async def test_arithmetic_accepts_result(self, service: ChallengeService) -> None:
        issued = await service.generate(ChallengeKind.ARITHMETIC)
        answer = await _answer(service, issued.id)
        assert answer.isdigit()
        assert (await service.verify(issued.id, answer)).success

    async def test_wrong_answers_exhaust_attempts(self, service: ChallengeService) -> None:
        issued = await service.generate(ChallengeKind.FREE_TEXT)

        first = await service.verify(issued.id, "!wrong")
        second = await service.verify(issued.id, "!wrong")
        third = await service.verify(issued.id, "!wrong")
        fourth = await service.verify(issued.id, "!wrong")

        assert (first.outcome, first.attempts_left) == (VerifyOutcome.INVALID, 2)
        assert (second.outcome, second.attempts_left) == (VerifyOutcome.INVALID, 1)
        assert third.outcome == VerifyOutcome.ATTEMPTS_EXHAUSTED
        assert fourth.outcome == VerifyOutcome.NOT_FOUND

    async def test_success_after_wrong_guess(self, service: ChallengeService) -> None:
        issued = await service.generate(ChallengeKind.FREE_TEXT)
        answer = await _answer(service, issued.id)

        assert (await service.verify(issued.id, "!wrong")).outcome == VerifyOutcome.INVALID
        assert (await service.verify(issued.id, answer)).outcome == VerifyOutcome.SUCCESS

    async def test_sharp_s_does_not_match_double_s(self, service: ChallengeService, clock) -> None:
        record = ChallengeRecord(
            id="captcha:fold",
            answer="ssab",
            kind=ChallengeKind.FREE_TEXT,
            created_at=clock(),
            expires_at=clock() + timedelta(seconds=300),
        )
        await service.store.put(record.id, record, 300)

        result = await service.verify(record.id, "ßab")

        assert result.outcome == VerifyOutcome.INVALID
        assert (await service.verify(record.id, "SSAB")).success

    async def test_expired_then_not_found(self, service: ChallengeService, clock) -> None:
        issued = await service.generate(ChallengeKind.FREE_TEXT)
        answer = await _answer(service, issued.id)
        clock.advance(301)

        assert (await service.verify(issued.id, answer)).outcome == VerifyOutcome.EXPIRED
        assert (await service.verify(issued.id, answer)).outcome == VerifyOutcome.NOT_FOUND

    async def test_not_expired_at_exact_deadline(self, service: ChallengeService, clock) -> None:
        issued = await service.generate(ChallengeKind.FREE_TEXT)
        answer = await _answer(service, issued.id)
        clock.advance(300)

        assert (await service.verify(issued.id, answer)).outcome == VerifyOutcome.SUCCESS

    async def test_exhausted_record_rejected_before_counting(
        self, service: ChallengeService, clock
    ) -> None:
        record = ChallengeRecord(
            id="captcha:exhausted",
            answer="abcd",
            kind=ChallengeKind.FREE_TEXT,
            created_at=clock(),
            expires_at=clock() + timedelta(seconds=300),
            attempts=3,
            max_attempts=3,
        )
        await service.store.put(record.id, record, 300)

        result = await service.verify(record.id, "abcd")

        assert result.outcome == VerifyOutcome.ATTEMPTS_EXHAUSTED
        assert await service.store.get(record.id) is None

    async def test_unknown_id(self, service: ChallengeService) -> None:
        result = await service.verify("captcha:0_nothing", "abcd")
        assert result.outcome == VerifyOutcome.NOT_FOUND
        assert result.attempts_left is None

    async def test_concurrent_correct_guesses_succeed_once(
        self, service: ChallengeService
    ) -> None:
        issued = await service.generate(ChallengeKind.FREE_TEXT)
        answer = await _answer(service, issued.id)

        results = await asyncio.gather(*(service.verify(issued.id, answer) for _ in range(3)))

        outcomes = [r.outcome for r in results]
        assert outcomes.count(VerifyOutcome.SUCCESS) == 1

    async def test_concurrent_wrong_guesses_all_counted(
        self, service: ChallengeService, clock
    ) -> None:
        record = ChallengeRecord(
            id="captcha:busy",
            answer="abcd",
            kind=ChallengeKind.FREE_TEXT,
            created_at=clock(),
            expires_at=clock() + timedelta(seconds=300),
            max_attempts=50,
        )
        await service.store.put(record.id, record, 300)

        results = await asyncio.gather(*(service.verify(record.id, "!x") for _ in range(20)))

        assert {r.outcome for r in results} == {VerifyOutcome.INVALID}
        assert sorted(r.attempts_left for r in results) == list(range(30, 50))
        assert (await service.store.get(record.id)).attempts == 20

    async def test_store_unavailable_on_verify(self, service: ChallengeService) -> None:
        service.store.get = AsyncMock(side_effect=StoreUnavailableError("down"))
        with pytest.raises(StoreUnavailableError):
            await service.verify("captcha:1", "abcd")

    async def test_dev_bypass(self, store, renderer, clock) -> None:
        service = ChallengeService(
            store, renderer, dev_bypass=("captcha:dev", "1234"), clock=clock
        )
        assert (await service.verify("captcha:dev", "1234")).success
        assert (await service.verify("captcha:dev", "9999")).outcome == VerifyOutcome.NOT_FOUND


@pytest.mark.unit
class TestRefresh:
    async def test_refresh_invalidates_old_id(self, service: ChallengeService) -> None:
        old = await service.generate(ChallengeKind.FREE_TEXT)
        answer = await _answer(service, old.id)

        new = await service.refresh(old.id, ChallengeKind.NUMERIC)

        assert new.id != old.id
        assert new.kind == ChallengeKind.NUMERIC
        assert (await service.verify(old.id, answer)).outcome == VerifyOutcome.NOT_FOUND
        assert await service.store.get(new.id) is not None

    async def test_refresh_after_exhaustion(self, service: ChallengeService) -> None:
        old = await service.generate(ChallengeKind.FREE_TEXT)
        for _ in range(3):
            await service.verify(old.id, "!wrong")

        new = await service.refresh(old.id, ChallengeKind.FREE_TEXT)

        assert new.id != old.id
        assert (await service.verify(old.id, "x")).outcome == VerifyOutcome.NOT_FOUND

    async def test_refresh_without_id(self, service: ChallengeService) -> None:
        issued = await service.refresh(None, ChallengeKind.ARITHMETIC)
        assert await service.store.get(issued.id) is not None

    async def test_refresh_survives_failed_invalidation(self, service: ChallengeService) -> None:
        old = await service.generate(ChallengeKind.FREE_TEXT)
        service.store.delete = AsyncMock(side_effect=StoreUnavailableError("down"))

        new = await service.refresh(old.id, ChallengeKind.FREE_TEXT)

        assert new.id != old.id
        assert await service.store.get(new.id) is not None


@pytest.mark.unit
class TestMaintenance:
    async def test_sweep_and_stats(self, memory_store, renderer, clock) -> None:
        service = ChallengeService(memory_store, renderer, clock=clock)
        await service.generate(ChallengeKind.FREE_TEXT, ChallengeOptions(ttl_seconds=10))
        await service.generate(ChallengeKind.NUMERIC, ChallengeOptions(ttl_seconds=10))
        keep = await service.generate(ChallengeKind.FREE_TEXT, ChallengeOptions(ttl_seconds=100))
        clock.advance(10)

        before = await service.stats()
        assert before.active + before.expired == before.total == 3
        assert before.expired == 2

        result = await service.sweep()
        assert result.removed_count == 2

        after = await service.stats()
        assert after.expired == 0
        assert after.total == 1
        assert await memory_store.get(keep.id) is not None

    async def test_stats_counters(self, service: ChallengeService) -> None:
        issued = await service.generate(ChallengeKind.FREE_TEXT)
        await service.verify(issued.id, "!wrong")
        await service.verify("captcha:missing", "x")
        await service.refresh(issued.id)

        stats = await service.stats()

        assert stats.storage_kind == service.store.kind
        assert stats.counters["generated"] == 2
        assert stats.counters["refreshed"] == 1
        assert stats.counters["verify_invalid"] == 1
        assert stats.counters["verify_not_found"] == 1
        assert stats.total == 1

    async def test_stats_reports_store_failure(self, service: ChallengeService) -> None:
        service.store.list_stats = AsyncMock(side_effect=StoreUnavailableError("down"))
        stats = await service.stats()
        assert stats.error == "down"
        assert stats.total == 0

    async def test_health_ok(self, service: ChallengeService) -> None:
        health = await service.health()
        assert health.healthy is True
        assert health.storage_kind == service.store.kind
        assert health.latency_ms is not None
        assert (await service.stats()).total == 0

    async def test_concurrent_health_checks_use_distinct_keys(
        self, service: ChallengeService
    ) -> None:
        results = await asyncio.gather(*(service.health() for _ in range(10)))
        assert all(health.healthy for health in results)

    async def test_health_failure_does_not_raise(self, service: ChallengeService) -> None:
        service.store.put = AsyncMock(side_effect=StoreUnavailableError("down"))
        health = await service.health()
        assert health.healthy is False
        assert "down" in health.message

    async def test_health_detects_lost_write(self, service: ChallengeService) -> None:
        service.store.get = AsyncMock(return_value=None)
        health = await service.health()
        assert health.healthy is False
