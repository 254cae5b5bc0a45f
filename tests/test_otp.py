"""Tests for password-reset code issuance and validation."""

import pytest

from bookingauth.config import Settings
from bookingauth.service.errors import InvalidOTPError, ServerError
from bookingauth.service.otp import OTPManager
from bookingauth.storage.errors import CacheUnavailable
from bookingauth.storage.memory_cache import MemoryCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def otp(cache, settings):
    return OTPManager(cache, settings)


async def test_issued_code_is_six_digits(otp, cache):
    code = await otp.issue_otp("bob@example.com")

    assert len(code) == 6
    assert code.isdigit()
    assert await cache.get_otp("bob@example.com") == code


async def test_issue_then_validate_succeeds_exactly_once(otp):
    code = await otp.issue_otp("bob@example.com")

    await otp.validate_otp("bob@example.com", code)
    with pytest.raises(InvalidOTPError):
        await otp.validate_otp("bob@example.com", code)


async def test_wrong_code_consumes_stored_code(otp, cache):
    code = await otp.issue_otp("bob@example.com")
    wrong = "000000" if code != "000000" else "111111"

    with pytest.raises(InvalidOTPError) as exc_info:
        await otp.validate_otp("bob@example.com", wrong)
    assert exc_info.value.message == "Invalid or expired OTP"
    assert exc_info.value.error_code == "invalid_or_expired_otp"

    assert await cache.get_otp("bob@example.com") is None
    with pytest.raises(InvalidOTPError):
        await otp.validate_otp("bob@example.com", code)


async def test_new_code_overwrites_previous(otp):
    first = await otp.issue_otp("bob@example.com")
    second = await otp.issue_otp("bob@example.com")

    if first != second:
        with pytest.raises(InvalidOTPError):
            await otp.validate_otp("bob@example.com", first)
        second = await otp.issue_otp("bob@example.com")
    await otp.validate_otp("bob@example.com", second)


async def test_codes_are_scoped_per_email(otp):
    code = await otp.issue_otp("bob@example.com")

    with pytest.raises(InvalidOTPError):
        await otp.validate_otp("alice@example.com", code)
    await otp.validate_otp("bob@example.com", code)


async def test_code_expires_after_ttl(otp, clock):
    code = await otp.issue_otp("bob@example.com")

    clock.now += 15 * 60 + 1

    with pytest.raises(InvalidOTPError):
        await otp.validate_otp("bob@example.com", code)


async def test_code_valid_just_before_ttl(otp, clock):
    code = await otp.issue_otp("bob@example.com")

    clock.now += 15 * 60 - 1

    await otp.validate_otp("bob@example.com", code)


async def test_code_length_follows_settings(cache):
    settings = Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!", otp_length=8
    )
    code = await OTPManager(cache, settings).issue_otp("bob@example.com")
    assert len(code) == 8 and code.isdigit()


class DownCache(MemoryCache):
    async def set_otp(self, email, code, ttl_seconds):
        raise CacheUnavailable("set_otp", {"reason": "ConnectionError"})

    async def pop_otp(self, email):
        raise CacheUnavailable("pop_otp", {"reason": "timeout"})


async def test_store_outage(settings):
    otp = OTPManager(DownCache(), settings)

    with pytest.raises(ServerError):
        await otp.issue_otp("bob@example.com")
    with pytest.raises(InvalidOTPError):
        await otp.validate_otp("bob@example.com", "123456")
