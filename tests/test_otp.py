"""OTP issuing/verification and the Redis rate limiter."""
import asyncio
from unittest.mock import patch

import pytest

from boxoffice.errors import RateLimited, TooManyAttempts
from boxoffice.helpers import ct_equal
from boxoffice.model.otp import OtpService, k_otp
from boxoffice.model.throttle import RateLimiter, k_rate


class TestOtp:
    @pytest.mark.asyncio
    async def test_issue_stores_six_digit_code_with_ttl(self, r):
        svc = OtpService(r)

        issued = await svc.issue("  Someone@Example.com ")

        assert len(issued.code) == 6 and issued.code.isdigit()
        rec = await r.hgetall(k_otp("someone@example.com"))
        assert rec["code"] == issued.code
        assert rec["attempts"] == "0"
        assert 0 < await r.ttl(k_otp("someone@example.com")) <= 301

    @pytest.mark.asyncio
    async def test_correct_code_succeeds_exactly_once(self, r):
        svc = OtpService(r)
        issued = await svc.issue("a@example.com")

        assert await svc.verify("A@example.com", issued.code) is True
        assert await svc.verify("a@example.com", issued.code) is False
        assert await svc.has_code("a@example.com") is False

    @pytest.mark.asyncio
    async def test_concurrent_correct_verifies_one_winner(self, r):
        svc = OtpService(r)
        issued = await svc.issue("a@example.com")

        results = await asyncio.gather(
            *[svc.verify("a@example.com", issued.code) for _ in range(5)],
            return_exceptions=True,
        )

        assert results.count(True) == 1
        assert all(
            x is False or isinstance(x, TooManyAttempts)
            for x in results if x is not True
        )

    @pytest.mark.asyncio
    async def test_concurrent_guesses_cannot_exceed_attempt_limit(self, r):
        svc = OtpService(r)
        issued = await svc.issue("a@example.com")
        wrong = "000000" if issued.code != "000000" else "111111"
        guesses = [wrong] * 7 + [issued.code]

        with patch("boxoffice.model.otp.ct_equal", wraps=ct_equal) as compare:
            results = await asyncio.gather(
                *[svc.verify("a@example.com", g) for g in guesses],
                return_exceptions=True,
            )

        assert compare.call_count <= 3
        assert any(isinstance(x, TooManyAttempts) for x in results)
        assert all(
            isinstance(x, (bool, TooManyAttempts)) for x in results
        )
        assert results.count(True) <= 1

    @pytest.mark.asyncio
    async def test_fourth_attempt_after_three_misses_is_locked(self, r):
        svc = OtpService(r)
        issued = await svc.issue("a@example.com")
        wrong = "000000" if issued.code != "000000" else "111111"

        for left in (2, 1, 0):
            assert await svc.verify("a@example.com", wrong) is False
            assert await svc.remaining_attempts("a@example.com") == left

        with pytest.raises(TooManyAttempts):
            await svc.verify("a@example.com", issued.code)
        assert await r.exists(k_otp("a@example.com")) == 0

    @pytest.mark.asyncio
    async def test_failed_attempt_keeps_original_expiry(self, r):
        svc = OtpService(r)
        await svc.issue("a@example.com")
        before = await r.ttl(k_otp("a@example.com"))

        await svc.verify("a@example.com", "not-it")

        assert 0 < await r.ttl(k_otp("a@example.com")) <= before

    @pytest.mark.asyncio
    async def test_expired_code_is_rejected_and_removed(self, r):
        svc = OtpService(r)
        issued = await svc.issue("a@example.com")

        # the key is still in redis; only the stored deadline has passed
        later = issued.expires_at + 1
        with patch("boxoffice.model.otp.now_ts", return_value=later):
            assert await svc.verify("a@example.com", issued.code) is False
        assert await r.exists(k_otp("a@example.com")) == 0

    @pytest.mark.asyncio
    async def test_missing_code_and_revoke(self, r):
        svc = OtpService(r)
        assert await svc.verify("nobody@example.com", "123456") is False
        assert await svc.remaining_attempts("nobody@example.com") is None

        issued = await svc.issue("a@example.com")
        await svc.revoke("a@example.com")
        assert await svc.verify("a@example.com", issued.code) is False


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_fixed_window(self, r):
        limiter = RateLimiter(r, "scan", limit=3, window_seconds=60)

        hits = [await limiter.hit("op-1") for _ in range(4)]

        assert hits == [True, True, True, False]
        assert 0 < await r.ttl(k_rate("scan", "op-1")) <= 60
        # keys are independent
        assert await limiter.hit("op-2") is True

    @pytest.mark.asyncio
    async def test_later_hits_keep_the_window_deadline(self, r):
        limiter = RateLimiter(r, "scan", limit=10, window_seconds=60)
        await limiter.hit("op-1")
        await r.expire(k_rate("scan", "op-1"), 5)

        await limiter.hit("op-1")

        assert 0 < await r.ttl(k_rate("scan", "op-1")) <= 5

    @pytest.mark.asyncio
    async def test_counter_without_deadline_gets_one(self, r):
        # left behind by a crash between INCR and EXPIRE
        await r.set(k_rate("scan", "op-1"), 4)
        limiter = RateLimiter(r, "scan", limit=10, window_seconds=60)

        assert await limiter.hit("op-1") is True

        assert 0 < await r.ttl(k_rate("scan", "op-1")) <= 60
        assert await r.get(k_rate("scan", "op-1")) == "5"

    @pytest.mark.asyncio
    async def test_check_raises_and_reset_clears(self, r):
        limiter = RateLimiter(r, "otp_send", limit=1, window_seconds=60)
        await limiter.check("a@example.com")

        with pytest.raises(RateLimited):
            await limiter.check("a@example.com")

        await limiter.reset("a@example.com")
        await limiter.check("a@example.com")
