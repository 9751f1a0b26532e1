"""
Token Blacklist Service
Revoked access tokens, kept until the token would have expired anyway.

Uses Redis when REDIS_URL is set so every worker sees the same list;
otherwise falls back to in-process memory (single-instance deployments).
"""

import hashlib
import os
import time
import logging
from typing import Dict, Optional
from threading import Lock

import redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "clinic:revoked:"


class TokenBlacklist:
    """Revocation list keyed by JWT ``jti`` (or a token hash when absent)"""

    def __init__(self, redis_url: Optional[str] = None, cleanup_interval: int = 300):
        self._redis_client: Optional[redis.Redis] = None
        self._memory_expiry: Dict[str, float] = {}  # key -> expiry timestamp
        self._memory_lock = Lock()
        self._last_cleanup = time.time()
        self._cleanup_interval = cleanup_interval

        if redis_url:
            try:
                self._redis_client = redis.from_url(redis_url, decode_responses=True)
                self._redis_client.ping()
                logger.info("Token blacklist using Redis")
            except redis.RedisError as e:
                logger.warning(f"Failed to connect to Redis: {e}. Using in-memory blacklist.")
                self._redis_client = None
        else:
            logger.info("Token blacklist using in-memory storage")

    @staticmethod
    def _key(token: str, token_jti: Optional[str]) -> str:
        if token_jti:
            return token_jti
        return hashlib.sha256(token.encode()).hexdigest()[:32]

    def add(self, token: str, token_jti: Optional[str] = None, expires_in_seconds: int = 3600) -> bool:
        """Revoke a token for ``expires_in_seconds``; returns False if storage failed"""
        key = self._key(token, token_jti)
        expires_in_seconds = max(int(expires_in_seconds), 1)

        if self._redis_client:
            try:
                self._redis_client.setex(f"{KEY_PREFIX}{key}", expires_in_seconds, "1")
                return True
            except redis.RedisError as e:
                logger.error(f"Failed to add token to blacklist: {e}")
                return False

        with self._memory_lock:
            self._memory_expiry[key] = time.time() + expires_in_seconds
            self._cleanup_expired()
        return True

    def is_blacklisted(self, token: str, token_jti: Optional[str] = None) -> bool:
        key = self._key(token, token_jti)

        if self._redis_client:
            try:
                return self._redis_client.exists(f"{KEY_PREFIX}{key}") > 0
            except redis.RedisError as e:
                logger.error(f"Failed to check blacklist: {e}")
                return False

        with self._memory_lock:
            expiry = self._memory_expiry.get(key)
            if expiry is None:
                return False
            if expiry < time.time():
                self._memory_expiry.pop(key, None)
                return False
            return True

    def _cleanup_expired(self):
        now = time.time()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        expired = [k for k, v in self._memory_expiry.items() if v < now]
        for key in expired:
            self._memory_expiry.pop(key, None)

        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired blacklist entries")

    def clear(self):
        """Forget every revoked token (tests)"""
        if self._redis_client:
            keys = self._redis_client.keys(f"{KEY_PREFIX}*")
            if keys:
                self._redis_client.delete(*keys)
        else:
            with self._memory_lock:
                self._memory_expiry.clear()


# Global instance
token_blacklist = TokenBlacklist(os.getenv("REDIS_URL"))


def blacklist_token(token: str, token_jti: Optional[str] = None, expires_in_seconds: int = 3600) -> bool:
    return token_blacklist.add(token, token_jti, expires_in_seconds)


def is_token_blacklisted(token: str, token_jti: Optional[str] = None) -> bool:
    return token_blacklist.is_blacklisted(token, token_jti)
