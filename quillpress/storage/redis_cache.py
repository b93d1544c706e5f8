from __future__ import annotations

from typing import Optional

from redis import Redis


class RedisKeyValueStore:
    """Thin Redis wrapper backing OAuth state, CSRF tokens and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "quillpress:",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    def get(self, key: str) -> Optional[str]:
        return self.client.get(self._key(key))

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None:
            # Redis rejects non-positive expiries; an already expired entry is a delete
            if ttl_seconds <= 0:
                self.client.delete(self._key(key))
                return
            self.client.set(self._key(key), value, ex=ttl_seconds)
        else:
            self.client.set(self._key(key), value)

    def delete(self, key: str) -> None:
        self.client.delete(self._key(key))

    def pop(self, key: str) -> Optional[str]:
        """Atomically get and delete via GETDEL (Redis 6.2+)."""
        return self.client.getdel(self._key(key))

    def incr(self, key: str, ttl_seconds: int) -> int:
        namespaced = self._key(key)
        pipe = self.client.pipeline()
        pipe.incr(namespaced)
        pipe.expire(namespaced, max(ttl_seconds, 1), nx=True)
        count, _ = pipe.execute()
        return int(count)
