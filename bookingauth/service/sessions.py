from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from bookingauth.config import Settings
from bookingauth.logging import get_logger
from bookingauth.service.errors import AuthenticationError, ServerError
from bookingauth.service.tokens import TokenCodec
from bookingauth.storage.errors import CacheUnavailable
from bookingauth.storage.models import SessionRecord, TokenPair
from bookingauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class SessionRotator:
    """Mints token pairs backed by single-use refresh sessions.

    A session id is Active from the moment it is written until it is consumed
    by a refresh, deleted by logout, or expired by the store TTL. Nothing moves
    a session back to Active.
    """

    def __init__(self, cache: RedisCache, codec: TokenCodec, settings: Settings):
        self.cache = cache
        self.codec = codec
        self.settings = settings

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _issue_pair(self, record: SessionRecord) -> TokenPair:
        try:
            access = self.codec.issue(
                {"userID": record.user_id, "email": record.email}, self.access_ttl
            )
            refresh = self.codec.issue(
                {"sessionID": record.session_id}, self.refresh_ttl
            )
        except (TypeError, ValueError) as exc:
            # The session record stays in place and expires with its TTL
            logger.error(
                "token_signing_failed",
                user_id=record.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Failed to issue tokens") from exc
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_at=datetime.now(timezone.utc) + self.access_ttl,
        )

    async def _persist(self, record: SessionRecord) -> None:
        try:
            await self.cache.set_session(record, self.settings.session_ttl_seconds)
        except CacheUnavailable as exc:
            raise ServerError("Session store unavailable", detail=exc.detail) from exc

    def _session_id_from(self, refresh_token: str) -> str:
        claims = self.codec.verify(refresh_token)
        session_id = claims.get("sessionID")
        if not isinstance(session_id, str) or not session_id:
            logger.info("refresh_token_missing_session_id")
            raise AuthenticationError("Invalid refresh token")
        return session_id

    async def start_session(self, user_id: str, email: str) -> TokenPair:
        record = SessionRecord.new(user_id, email)
        await self._persist(record)
        logger.info("session_started", user_id=user_id, session_id=record.session_id)
        return self._issue_pair(record)

    async def rotate(self, refresh_token: str) -> TokenPair:
        """Consume the session behind ``refresh_token`` and mint a fresh pair.

        The old session is removed with a single atomic pop, so of two
        concurrent calls presenting the same token only one gets a record back.
        """
        session_id = self._session_id_from(refresh_token)
        try:
            record = await self.cache.pop_session(session_id)
        except CacheUnavailable as exc:
            raise ServerError("Session store unavailable", detail=exc.detail) from exc
        if record is None:
            logger.info("refresh_session_missing", session_id=session_id)
            raise AuthenticationError("Session expired or revoked")

        replacement = SessionRecord.new(record.user_id, record.email)
        await self._persist(replacement)
        logger.info(
            "session_rotated",
            user_id=record.user_id,
            old_session_id=session_id,
            session_id=replacement.session_id,
        )
        return self._issue_pair(replacement)

    async def end_session(self, refresh_token: Optional[str]) -> None:
        if not refresh_token:
            return
        session_id = self._session_id_from(refresh_token)
        try:
            deleted = await self.cache.delete_session(session_id)
        except CacheUnavailable as exc:
            raise ServerError("Session store unavailable", detail=exc.detail) from exc
        logger.info("refresh_session_revoked", session_id=session_id, existed=deleted)

    async def revoke_all(self, user_id: str) -> int:
        try:
            count = await self.cache.revoke_user_sessions(user_id)
        except CacheUnavailable as exc:
            raise ServerError("Session store unavailable", detail=exc.detail) from exc
        logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count
