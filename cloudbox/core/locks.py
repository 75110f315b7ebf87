from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Tuple

from cloudbox.core.exceptions import ServiceUnavailable

logger = logging.getLogger("cloudbox.locks")


class UserLockRegistry:
    """Per-user mutual exclusion, backed by Redis when reachable, in-memory otherwise.

    The in-memory mode only serializes callers inside one process; run with
    REDIS_URL set when several workers share the database.
    """

    def __init__(self, redis_url: str = "", timeout_seconds: float = 30.0) -> None:
        self.timeout_seconds = timeout_seconds
        self._redis_client = self._connect_redis(redis_url)
        self._guard = threading.Lock()
        # user_id -> (lock, number of holders or waiters)
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    @property
    def use_redis(self) -> bool:
        return self._redis_client is not None

    def _connect_redis(self, redis_url: str):
        if not redis_url:
            return None
        try:
            import redis

            client = redis.from_url(redis_url)
            client.ping()
            return client
        except Exception as exc:
            logger.warning("event=lock_backend_fallback backend=memory error=%s", exc)
            return None

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        if self._redis_client is not None:
            with self._hold_redis(user_id):
                yield
        else:
            with self._hold_memory(user_id):
                yield

    @contextmanager
    def _hold_redis(self, user_id: str) -> Iterator[None]:
        lock = self._redis_client.lock(
            f"user_lock:{user_id}",
            timeout=self.timeout_seconds,
            blocking_timeout=self.timeout_seconds,
        )
        if not lock.acquire():
            logger.warning("event=user_lock_timeout user_id=%s backend=redis", user_id)
            raise ServiceUnavailable("Timed out waiting for a concurrent update to finish")
        try:
            yield
        finally:
            try:
                lock.release()
            except Exception as exc:
                # Expired locks raise on release; the work itself already finished.
                logger.warning("event=user_lock_release_failed user_id=%s error=%s", user_id, exc)

    @contextmanager
    def _hold_memory(self, user_id: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(user_id, (threading.Lock(), 0))
            self._locks[user_id] = (lock, users + 1)
        try:
            if not lock.acquire(timeout=self.timeout_seconds):
                logger.warning("event=user_lock_timeout user_id=%s backend=memory", user_id)
                raise ServiceUnavailable("Timed out waiting for a concurrent update to finish")
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                lock, users = self._locks[user_id]
                if users <= 1:
                    del self._locks[user_id]
                else:
                    self._locks[user_id] = (lock, users - 1)
