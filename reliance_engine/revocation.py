"""
Revocation registry backed by the shared Redis store.

Fail closed: if the store cannot be reached, every call raises
RevocationUnavailable. Nothing here ever answers "not revoked" on a
guess, and a revocation never appears to succeed when it did not.
"""

import logging
from typing import Optional

import redis

from . import config
from .errors import RevocationUnavailable
from .logging_config import event_log
from .util import sha256_hex

logger = logging.getLogger(__name__)

REVOKED_SET_KEY = "revoked_tokens"

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Process-wide client for the shared store."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=config.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=config.REDIS_SOCKET_TIMEOUT,
        )
    return _redis_client


def token_digest(token: str) -> str:
    """Members of the set are digests, so the store never holds live credentials."""
    return sha256_hex(token.encode("utf-8"))


class RevocationRegistry:
    """Write-once set of revoked credential tokens."""

    def __init__(self, client: redis.Redis, key: str = REVOKED_SET_KEY):
        self._redis = client
        self._key = key

    def revoke(self, token: str) -> int:
        """
        Add ``token`` to the revoked set.

        Returns:
            Total number of revoked tokens after the add.
        """
        try:
            pipe = self._redis.pipeline()
            pipe.sadd(self._key, token_digest(token))
            pipe.scard(self._key)
            _, total = pipe.execute()
        except redis.RedisError as e:
            logger.error("Revocation store unreachable during revoke: %s", e)
            raise RevocationUnavailable("revocation list unavailable; token NOT revoked") from e
        event_log.credential_revoked(token)
        return int(total)

    def is_revoked(self, token: str) -> bool:
        try:
            return bool(self._redis.sismember(self._key, token_digest(token)))
        except redis.RedisError as e:
            event_log.security_event("REVOCATION_CHECK_FAILED", "high", error=str(e))
            raise RevocationUnavailable() from e

    def revoked_count(self) -> int:
        try:
            return int(self._redis.scard(self._key))
        except redis.RedisError as e:
            raise RevocationUnavailable() from e

    def ping(self) -> bool:
        """Reachability for health reporting; never raises."""
        try:
            return bool(self._redis.ping())
        except redis.RedisError:
            return False
