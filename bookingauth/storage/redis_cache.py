from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, ResponseError

from bookingauth.logging import get_logger, hash_email
from bookingauth.storage.errors import CacheUnavailable
from bookingauth.storage.models import SessionRecord

logger = get_logger(__name__)

T = TypeVar("T")


def otp_key(email: str) -> str:
    return f"otp:{email}"


def user_sessions_key(user_id: str) -> str:
    return f"user_sessions:{user_id}"


class RedisCache:
    """Thin Redis wrapper for refresh sessions and password-reset codes.

    Session records live under the bare session id, OTP codes under
    ``otp:<email>``. Every round trip is bounded by ``operation_timeout`` and
    infrastructure failures surface as :class:`CacheUnavailable`.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic get-and-delete for servers without GETDEL (Redis < 6.2)
    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    # Session ids are keys of their own, so the script touches undeclared keys
    # and needs a single-node (non-cluster) deployment
    _REVOKE_INDEX_SCRIPT = """
local ids = redis.call('SMEMBERS', KEYS[1])
for _, id in ipairs(ids) do
    redis.call('DEL', id)
end
redis.call('DEL', KEYS[1])
return #ids
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: Optional[float] = None,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout or self.DEFAULT_OPERATION_TIMEOUT
        if client is not None:
            self.client = client
        else:
            self.client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("cache_operation_timeout", operation=operation)
            raise CacheUnavailable(operation, {"reason": "timeout"}) from exc
        except (RedisError, OSError) as exc:
            logger.warning(
                "cache_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CacheUnavailable(operation, {"reason": type(exc).__name__}) from exc

    async def _getdel(self, key: str) -> Optional[str]:
        try:
            return await self.client.getdel(key)
        except (AttributeError, ResponseError):
            # Older servers reject GETDEL; the script keeps the pop atomic
            return await self.client.eval(self._GETDEL_SCRIPT, 1, key)

    @staticmethod
    def _decode_session(session_id: str, raw: Optional[str]) -> Optional[SessionRecord]:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("session_record_corrupted", session_id=session_id)
            return None
        if not isinstance(data, dict):
            logger.warning("session_record_corrupted", session_id=session_id)
            return None
        return SessionRecord.from_wire(session_id, data)

    # ------------------------------------------------------------------
    # Refresh sessions
    # ------------------------------------------------------------------

    async def set_session(self, record: SessionRecord, ttl_seconds: int) -> None:
        ttl = max(1, int(ttl_seconds))
        payload = json.dumps(record.to_wire(), separators=(",", ":"))
        index_key = user_sessions_key(record.user_id)
        pipe = self.client.pipeline()
        pipe.set(record.session_id, payload, ex=ttl)
        # Track session in the user's set for bulk revocation
        pipe.sadd(index_key, record.session_id)
        pipe.expire(index_key, ttl)
        await self._call("set_session", pipe.execute())

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self._call("get_session", self.client.get(session_id))
        return self._decode_session(session_id, raw)

    async def pop_session(self, session_id: str) -> Optional[SessionRecord]:
        """Atomically fetch and delete a session record.

        Exactly one caller observes the record; concurrent callers presenting the
        same session id get ``None``.
        """
        raw = await self._call("pop_session", self._getdel(session_id))
        record = self._decode_session(session_id, raw)
        if record is not None:
            await self._untrack_session(record)
        return record

    async def delete_session(self, session_id: str) -> bool:
        return await self.pop_session(session_id) is not None

    async def _untrack_session(self, record: SessionRecord) -> None:
        # The index entry expires with the session TTL, so a failed SREM only
        # leaves a dangling id behind.
        try:
            await self._call(
                "untrack_session",
                self.client.srem(user_sessions_key(record.user_id), record.session_id),
            )
        except CacheUnavailable as exc:
            logger.warning(
                "session_index_cleanup_failed",
                user_id=record.user_id,
                reason=exc.detail.get("reason"),
            )

    async def revoke_user_sessions(self, user_id: str) -> int:
        """Delete every tracked session of a user.

        The index read and the deletes run as one script, so a session added
        to the index concurrently is either deleted with the rest or written
        after the revocation completes.

        Returns:
            Number of session ids that were tracked for the user
        """
        revoked = await self._call(
            "revoke_user_sessions", self._revoke_index(user_sessions_key(user_id))
        )
        return int(revoked or 0)

    async def _revoke_index(self, index_key: str) -> int:
        return await self.client.eval(self._REVOKE_INDEX_SCRIPT, 1, index_key)

    # ------------------------------------------------------------------
    # Password-reset codes
    # ------------------------------------------------------------------

    async def set_otp(self, email: str, code: str, ttl_seconds: int) -> None:
        await self._call(
            "set_otp", self.client.set(otp_key(email), code, ex=max(1, int(ttl_seconds)))
        )
        logger.debug("otp_stored", email_hash=hash_email(email), ttl_seconds=ttl_seconds)

    async def get_otp(self, email: str) -> Optional[str]:
        return await self._call("get_otp", self.client.get(otp_key(email)))

    async def pop_otp(self, email: str) -> Optional[str]:
        return await self._call("pop_otp", self._getdel(otp_key(email)))

    async def delete_otp(self, email: str) -> None:
        await self._call("delete_otp", self.client.delete(otp_key(email)))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
