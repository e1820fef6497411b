import json
import logging
from typing import Any, Dict

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "ethcopilot"


class RedisJsonStore:
    """Namespaced JSON documents in Redis.

    Connection failures after ``connect()`` are logged and reported as a miss
    or a failed write; they never reach the conversation loop.
    """

    def __init__(self, url: str, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._url = url
        self._namespace = namespace
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Connect and ping. Idempotent; raises if Redis is unreachable."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def connected(self) -> bool:
        return self._client is not None

    def key(self, kind: str, name: str) -> str:
        """Build a namespaced key, e.g. ``ethcopilot:session:<id>``."""
        return f"{self._namespace}:{kind}:{name}"

    async def get_json(self, key: str) -> Dict[str, Any] | None:
        """Return the decoded document at ``key``; None if missing, unreadable or on error."""
        if self._client is None:
            return None
        try:
            raw = await self._client.get(key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON at %s: %s", key, e)
            return None
        if not isinstance(value, dict):
            logger.warning("Unexpected document type at %s: %s", key, type(value).__name__)
            return None
        return value

    async def set_json(self, key: str, value: Dict[str, Any], ttl_seconds: int | None = None) -> bool:
        """Store ``value`` as JSON at ``key``.

        Args:
            key: Full Redis key (str).
            value: JSON-serialisable document.
            ttl_seconds: Expiry in seconds; no expiry when None or not positive.

        Returns:
            bool: True if written, False when not connected or on error.
        """
        if self._client is None:
            return False
        try:
            payload = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning("Serialization failed for %s: %s", key, e)
            return False
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.setex(key, ttl_seconds, payload)
            else:
                await self._client.set(key, payload)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns False when not connected or on error."""
        if self._client is None:
            return False
        try:
            await self._client.delete(key)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", key, e)
            return False


def get_redis_store() -> RedisJsonStore | None:
    """Return a store for ``redis_url``, or None when persistence is not configured."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisJsonStore(settings.redis_url.strip())
