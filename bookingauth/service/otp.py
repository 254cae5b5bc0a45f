from __future__ import annotations

import hmac
import secrets

from bookingauth.config import Settings
from bookingauth.logging import get_logger, hash_email
from bookingauth.service.errors import InvalidOTPError, ServerError
from bookingauth.storage.errors import CacheUnavailable
from bookingauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class OTPManager:
    """Random numeric password-reset codes, one live code per email."""

    def __init__(self, cache: RedisCache, settings: Settings):
        self.cache = cache
        self.settings = settings

    def _generate(self) -> str:
        length = self.settings.otp_length
        return str(secrets.randbelow(10**length)).zfill(length)

    async def issue_otp(self, email: str) -> str:
        code = self._generate()
        try:
            # Overwrites any earlier code and restarts the TTL
            await self.cache.set_otp(email, code, self.settings.otp_ttl_minutes * 60)
        except CacheUnavailable as exc:
            raise ServerError("OTP store unavailable", detail=exc.detail) from exc
        logger.info("otp_issued", email_hash=hash_email(email))
        return code

    async def validate_otp(self, email: str, code: str) -> None:
        """Consume the stored code for ``email`` and compare it with ``code``.

        The stored code is gone after any attempt, right or wrong.

        Raises:
            InvalidOTPError: when no code is stored, the codes differ, or the
                store cannot be reached.
        """
        try:
            stored = await self.cache.pop_otp(email)
        except CacheUnavailable:
            logger.warning("otp_store_unavailable", email_hash=hash_email(email))
            raise InvalidOTPError("Invalid or expired OTP")
        if stored is None or not isinstance(code, str):
            logger.info("otp_rejected", email_hash=hash_email(email), reason="missing")
            raise InvalidOTPError("Invalid or expired OTP")
        if not hmac.compare_digest(stored.encode(), code.encode()):
            logger.info("otp_rejected", email_hash=hash_email(email), reason="mismatch")
            raise InvalidOTPError("Invalid or expired OTP")
        logger.info("otp_validated", email_hash=hash_email(email))
