from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

import redis

from oops.constants import RUN_TRACKER_KEY_FORMAT, RUN_TRACKER_TTL_SECONDS
from oops.errors import TransportError

LOGGER = logging.getLogger("oops.tracker")

# Returns nil when the key is absent or expired. Zero is returned only by the decrement that
# reaches it; a counter left at zero by a failed cleanup is deleted and reported as nil.
_DECREMENT_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    return nil
end
current = tonumber(current)
if current <= 0 then
    redis.call('DEL', KEYS[1])
    return nil
end
local remaining = redis.call('DECR', KEYS[1])
redis.call('EXPIRE', KEYS[1], ARGV[1])
return remaining
"""


def tracker_key(run_id: str) -> str:
    return RUN_TRACKER_KEY_FORMAT.format(run_id=run_id)


class RunTracker:
    """Remaining-count per run id shared by every replica handling that run.

    ``decrement`` returns the new count, or ``None`` when the run is unknown to the backing
    store (never set, expired, or already deleted). ``None`` means the completion state is
    unknown; it is never a synonym for zero. Only the decrement that moves a run from one to
    zero returns ``0``; a further decrement clears the leftover entry and returns ``None``, so
    counts never go below zero and completion is observed once.
    """

    name = "abstract"

    def set(self, run_id: str, total: int) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def decrement(self, run_id: str) -> Optional[int]:  # pragma: no cover - interface stub
        raise NotImplementedError

    def get(self, run_id: str) -> Optional[int]:  # pragma: no cover - interface stub
        raise NotImplementedError

    def delete(self, run_id: str) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError


class RedisRunTracker(RunTracker):
    name = "redis"

    def __init__(self, client: "redis.Redis", ttl_seconds: int = RUN_TRACKER_TTL_SECONDS) -> None:
        self._client = client
        self._ttl = ttl_seconds
        self._decrement = client.register_script(_DECREMENT_SCRIPT)

    def set(self, run_id: str, total: int) -> None:
        try:
            self._client.setex(tracker_key(run_id), self._ttl, max(0, int(total)))
        except redis.RedisError as exc:
            raise TransportError(f"redis SETEX for run {run_id} failed: {exc}") from exc

    def decrement(self, run_id: str) -> Optional[int]:
        try:
            value = self._decrement(keys=[tracker_key(run_id)], args=[self._ttl])
        except redis.RedisError as exc:
            raise TransportError(f"redis decrement for run {run_id} failed: {exc}") from exc
        return None if value is None else int(value)

    def get(self, run_id: str) -> Optional[int]:
        try:
            value = self._client.get(tracker_key(run_id))
        except redis.RedisError as exc:
            raise TransportError(f"redis GET for run {run_id} failed: {exc}") from exc
        return None if value is None else int(value)

    def delete(self, run_id: str) -> None:
        try:
            self._client.delete(tracker_key(run_id))
        except redis.RedisError as exc:
            raise TransportError(f"redis DEL for run {run_id} failed: {exc}") from exc


class LocalRunTracker(RunTracker):
    """Process-local counter with the same contract as the Redis tracker.

    Completion detection is only meaningful when every unit of a run lands on this process.
    """

    name = "memory"

    def __init__(
        self,
        ttl_seconds: int = RUN_TRACKER_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[int, float]] = {}

    def _live(self, run_id: str) -> Optional[int]:
        entry = self._entries.get(run_id)
        if entry is None:
            return None
        remaining, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[run_id]
            return None
        return remaining

    def set(self, run_id: str, total: int) -> None:
        with self._lock:
            self._entries[run_id] = (max(0, int(total)), self._clock() + self._ttl)

    def decrement(self, run_id: str) -> Optional[int]:
        with self._lock:
            remaining = self._live(run_id)
            if remaining is None:
                return None
            if remaining <= 0:
                del self._entries[run_id]
                return None
            remaining -= 1
            self._entries[run_id] = (remaining, self._clock() + self._ttl)
            return remaining

    def get(self, run_id: str) -> Optional[int]:
        with self._lock:
            return self._live(run_id)

    def delete(self, run_id: str) -> None:
        with self._lock:
            self._entries.pop(run_id, None)


def _redis_client(host: str, password: Optional[str], timeout_seconds: Optional[int]) -> "redis.Redis":
    address, _, port = host.partition(":")
    return redis.Redis(
        host=address or "localhost",
        port=int(port) if port else 6379,
        password=password or None,
        socket_connect_timeout=timeout_seconds,
        max_connections=4,
        decode_responses=True,
    )


def create_run_tracker(
    host: Optional[str],
    *,
    password: Optional[str] = None,
    timeout_seconds: Optional[int] = None,
) -> RunTracker:
    """Prefer the shared Redis counter; fall back to the in-process one when it is unusable."""
    if not host:
        LOGGER.info("REDIS_HOST not set, using in-memory run tracker")
        return LocalRunTracker()
    try:
        client = _redis_client(host, password, timeout_seconds)
        client.ping()
    except (redis.RedisError, ValueError) as exc:
        LOGGER.warning("redis PING failed, falling back to in-memory tracker: %s", exc)
        return LocalRunTracker()
    LOGGER.info("redis tracker connected (host=%s)", host)
    return RedisRunTracker(client)
