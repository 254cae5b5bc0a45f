from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from bookingauth.storage.redis_cache import RedisCache

_Value = Union[str, Set[str]]


class MemoryRedisClient:
    """In-process stand-in for the subset of redis commands the cache uses.

    Keys carry an optional monotonic deadline. Every command runs under one
    lock, so GETDEL is atomic across threads as well as across tasks.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[_Value, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[_Value]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            return None
        return value

    def _deadline(self, ex: Optional[int]) -> Optional[float]:
        return None if ex is None else self._clock() + ex

    # Commands below assume the lock is held
    def _set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._data[key] = (str(value), self._deadline(ex))
        return True

    def _get(self, key: str) -> Optional[str]:
        value = self._live(key)
        if isinstance(value, set):
            raise TypeError(f"WRONGTYPE {key} holds a set")
        return value

    def _delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self._data.pop(key, None)
        return removed

    def _sadd(self, key: str, *members: str) -> int:
        current = self._live(key)
        members_set = set(current) if isinstance(current, set) else set()
        before = len(members_set)
        members_set.update(members)
        deadline = self._data[key][1] if key in self._data else None
        self._data[key] = (members_set, deadline)
        return len(members_set) - before

    def _srem(self, key: str, *members: str) -> int:
        current = self._live(key)
        if not isinstance(current, set):
            return 0
        removed = len(current.intersection(members))
        current.difference_update(members)
        if not current:
            self._data.pop(key, None)
        return removed

    def _expire(self, key: str, ttl: int) -> bool:
        value = self._live(key)
        if value is None:
            return False
        self._data[key] = (value, self._deadline(ttl))
        return True

    def _dispatch(self, command: str, args: tuple, kwargs: dict) -> Any:
        return getattr(self, f"_{command}")(*args, **kwargs)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        with self._lock:
            return self._set(key, value, ex=ex)

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._get(key)
            self._data.pop(key, None)
            return value

    async def delete(self, *keys: str) -> int:
        with self._lock:
            return self._delete(*keys)

    async def exists(self, key: str) -> int:
        with self._lock:
            return int(self._live(key) is not None)

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            return self._sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            return self._srem(key, *members)

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            value = self._live(key)
            return set(value) if isinstance(value, set) else set()

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            return self._expire(key, ttl)

    async def revoke_index(self, key: str) -> int:
        """Delete every member key of the set at ``key``, then the set itself."""
        with self._lock:
            members = self._live(key)
            if not isinstance(members, set):
                self._data.pop(key, None)
                return 0
            for member in members:
                self._data.pop(member, None)
            self._data.pop(key, None)
            return len(members)

    async def ttl(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return -2
            deadline = self._data[key][1]
            if deadline is None:
                return -1
            return max(0, int(round(deadline - self._clock())))

    async def ping(self) -> bool:
        return True

    def pipeline(self) -> "_MemoryPipeline":
        return _MemoryPipeline(self)

    async def aclose(self) -> None:
        with self._lock:
            self._data.clear()


class _MemoryPipeline:
    """Queues commands and applies them under a single lock acquisition."""

    def __init__(self, client: MemoryRedisClient) -> None:
        self._client = client
        self._commands: List[Tuple[str, tuple, dict]] = []

    def _queue(self, command: str, *args: Any, **kwargs: Any) -> "_MemoryPipeline":
        self._commands.append((command, args, kwargs))
        return self

    def set(self, key: str, value: str, ex: Optional[int] = None) -> "_MemoryPipeline":
        return self._queue("set", key, value, ex=ex)

    def delete(self, *keys: str) -> "_MemoryPipeline":
        return self._queue("delete", *keys)

    def sadd(self, key: str, *members: str) -> "_MemoryPipeline":
        return self._queue("sadd", key, *members)

    def expire(self, key: str, ttl: int) -> "_MemoryPipeline":
        return self._queue("expire", key, ttl)

    async def execute(self) -> List[Any]:
        commands, self._commands = self._commands, []
        with self._client._lock:
            return [
                self._client._dispatch(command, args, kwargs)
                for command, args, kwargs in commands
            ]


class MemoryCache(RedisCache):
    """Process-local session/OTP cache for tests and Redis-less development.

    State is not shared between processes, so it only fits single-worker
    deployments.
    """

    def __init__(
        self,
        *,
        operation_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(
            "memory://",
            operation_timeout=operation_timeout,
            client=MemoryRedisClient(clock=clock),
        )

    def verify_connection(self) -> None:
        return None

    async def _revoke_index(self, index_key: str) -> int:
        return await self.client.revoke_index(index_key)
