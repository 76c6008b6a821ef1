"""Unit tests for one-time code issuance and consumption."""

import asyncio
import time
from datetime import timedelta

import pytest

from moodcircle.service.errors import (
    DependencyFailureError,
    ErrorKind,
    InvalidOrExpiredCodeError,
    RateLimitedError,
    ValidationError,
)
from moodcircle.service.otp import (
    OTPEngine,
    generate_code,
    minutes_remaining,
    normalize_email,
)
from moodcircle.storage.memory import MemoryStore
from moodcircle.storage.models import utcnow


@pytest.fixture
def engine(memory_store, sender):
    return OTPEngine(memory_store, sender, code_length=6, expiry_minutes=10)


def _advance(engine, delta):
    moved = utcnow() + delta
    engine._now = lambda: moved


class TestNormalizeEmail:
    def test_lowercases_and_trims(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    def test_strips_characters_outside_address_alphabet(self):
        assert normalize_email("al ice!#@exa(mple).com") == "alice@example.com"

    def test_keeps_plus_dot_dash_underscore(self):
        assert normalize_email("first.last+tag_x-y@mail.example.org") == (
            "first.last+tag_x-y@mail.example.org"
        )

    @pytest.mark.parametrize(
        "raw", ["", "   ", "no-at-sign", "@example.com", "user@", "a@b@c.com", "!!!"]
    )
    def test_rejects_malformed(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            normalize_email(raw)
        assert exc_info.value.kind is ErrorKind.VALIDATION_ERROR


class TestGenerateCode:
    def test_default_length_is_six_digits(self):
        code = generate_code()
        assert len(code) == 6
        assert code.isdigit()

    def test_custom_length(self):
        assert len(generate_code(8)) == 8

    def test_codes_vary(self):
        codes = {generate_code() for _ in range(50)}
        assert len(codes) > 1


class TestMinutesRemaining:
    def test_rounds_up_partial_minutes(self):
        now = utcnow()
        assert minutes_remaining(now + timedelta(minutes=9, seconds=30), now) == 10

    def test_whole_minutes(self):
        now = utcnow()
        assert minutes_remaining(now + timedelta(minutes=10), now) == 10

    def test_never_below_one(self):
        now = utcnow()
        assert minutes_remaining(now + timedelta(seconds=1), now) == 1
        assert minutes_remaining(now, now) == 1


class TestRequestCode:
    async def test_stores_and_sends_code(self, engine, memory_store, sender):
        result = await engine.request_code("User@Example.com")

        assert result.accepted is True
        assert result.expiry_minutes == 10
        stored = memory_store.codes["user@example.com"]
        assert sender.sent == [("user@example.com", stored.code, 10)]
        assert len(stored.code) == 6

    async def test_result_never_carries_code(self, engine):
        result = await engine.request_code("user@example.com")
        assert not hasattr(result, "code")

    async def test_second_request_before_expiry_is_rate_limited(self, engine, sender):
        await engine.request_code("user@example.com")

        with pytest.raises(RateLimitedError) as exc_info:
            await engine.request_code("user@example.com")

        assert exc_info.value.minutes_remaining == 10
        assert exc_info.value.message == (
            "Please wait 10 minutes before requesting a new code"
        )
        assert len(sender.sent) == 1

    async def test_rate_limit_reports_remaining_minutes(self, engine):
        await engine.request_code("user@example.com")
        _advance(engine, timedelta(minutes=7, seconds=10))

        with pytest.raises(RateLimitedError) as exc_info:
            await engine.request_code("user@example.com")
        assert exc_info.value.minutes_remaining == 3

    async def test_request_after_expiry_replaces_code(self, engine, memory_store, sender):
        await engine.request_code("user@example.com")
        first = memory_store.codes["user@example.com"]
        _advance(engine, timedelta(minutes=11))

        await engine.request_code("user@example.com")

        second = memory_store.codes["user@example.com"]
        assert second is not first
        assert second.expires_at > first.expires_at
        assert len(sender.sent) == 2

    async def test_other_emails_are_independent(self, engine):
        await engine.request_code("one@example.com")
        result = await engine.request_code("two@example.com")
        assert result.accepted

    async def test_invalid_email_is_rejected_before_storage(self, engine, memory_store):
        with pytest.raises(ValidationError):
            await engine.request_code("not-an-email")
        assert memory_store.codes == {}

    async def test_rejected_dispatch_rolls_back_code(self, memory_store, make_sender):
        sender = make_sender(result=False)
        engine = OTPEngine(memory_store, sender)

        with pytest.raises(DependencyFailureError):
            await engine.request_code("user@example.com")

        assert "user@example.com" not in memory_store.codes

    async def test_failed_dispatch_does_not_block_retry(self, memory_store, make_sender):
        failing = make_sender(error=OSError("smtp down"))
        engine = OTPEngine(memory_store, failing)
        with pytest.raises(DependencyFailureError):
            await engine.request_code("user@example.com")

        engine.email_sender = make_sender()
        result = await engine.request_code("user@example.com")
        assert result.accepted

    async def test_dispatch_timeout_is_dependency_failure(self, memory_store):
        class SlowSender:
            def send_otp(self, to_email, code, expiry_minutes):
                time.sleep(0.5)
                return True

        engine = OTPEngine(memory_store, SlowSender(), send_timeout_seconds=0.05)

        with pytest.raises(DependencyFailureError):
            await engine.request_code("user@example.com")
        assert memory_store.codes == {}


class TestConsumeCode:
    async def test_valid_code_is_consumed_once(self, engine, memory_store, sender):
        await engine.request_code("user@example.com")
        code = sender.sent[-1][1]

        assert await engine.consume_code("USER@example.com ", code) == "user@example.com"
        assert memory_store.codes == {}

        with pytest.raises(InvalidOrExpiredCodeError):
            await engine.consume_code("user@example.com", code)

    async def test_wrong_code_is_rejected(self, engine, sender):
        await engine.request_code("user@example.com")
        code = sender.sent[-1][1]
        wrong = "000000" if code != "000000" else "111111"

        with pytest.raises(InvalidOrExpiredCodeError):
            await engine.consume_code("user@example.com", wrong)

    async def test_expired_code_has_same_kind_as_wrong_code(self, engine, sender):
        await engine.request_code("user@example.com")
        code = sender.sent[-1][1]
        _advance(engine, timedelta(minutes=10, seconds=1))

        with pytest.raises(InvalidOrExpiredCodeError) as exc_info:
            await engine.consume_code("user@example.com", code)
        assert exc_info.value.kind is ErrorKind.INVALID_CODE
        assert exc_info.value.message == "Invalid or expired verification code"

    async def test_unknown_email_is_rejected(self, engine):
        with pytest.raises(InvalidOrExpiredCodeError):
            await engine.consume_code("nobody@example.com", "123456")

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "12a456"])
    async def test_malformed_code_is_rejected(self, engine, code):
        with pytest.raises(InvalidOrExpiredCodeError):
            await engine.consume_code("user@example.com", code)

    async def test_losing_the_delete_race_is_rejected(self, sender):
        class RacingStore(MemoryStore):
            def find_matching_code(self, email, code, *, now):
                record = super().find_matching_code(email, code, now=now)
                if record is not None:
                    # another verifier consumes the code first
                    super().delete_code_if_match(email, code)
                return record

        store = RacingStore()
        engine = OTPEngine(store, sender)
        await engine.request_code("user@example.com")
        code = sender.sent[-1][1]

        with pytest.raises(InvalidOrExpiredCodeError):
            await engine.consume_code("user@example.com", code)

    async def test_concurrent_verifiers_only_one_wins(self, engine, sender):
        await engine.request_code("user@example.com")
        code = sender.sent[-1][1]

        results = await asyncio.gather(
            engine.consume_code("user@example.com", code),
            engine.consume_code("user@example.com", code),
            return_exceptions=True,
        )

        assert results.count("user@example.com") == 1
        assert sum(isinstance(r, InvalidOrExpiredCodeError) for r in results) == 1


def test_purge_expired_removes_only_stale_codes(memory_store, sender):
    engine = OTPEngine(memory_store, sender)
    asyncio.run(engine.request_code("old@example.com"))
    _advance(engine, timedelta(minutes=11))
    asyncio.run(engine.request_code("new@example.com"))

    assert engine.purge_expired() == 1
    assert list(memory_store.codes) == ["new@example.com"]
