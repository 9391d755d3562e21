"""
Flask-Passkey-Ceremony Session Cache
====================================
Short-lived storage for ceremony challenge state between the begin and
finish calls.

- One live entry per (ceremony kind, username); a new begin overwrites it.
- Entries expire after a fixed TTL.
- A missing entry is not an error here; the orchestrator decides what it means.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum

import redis

from . import errors


class CeremonyKind(str, Enum):
    REGISTER = "register"
    LOGIN = "login"


_KEY_PREFIXES = {
    CeremonyKind.REGISTER: "webauthn_session:",
    CeremonyKind.LOGIN: "webauthn_login_session:",
}


def session_key(kind, username):
    """Cache key for the ceremony of ``kind`` in progress for ``username``."""
    return _KEY_PREFIXES[CeremonyKind(kind)] + username


class SessionCache(ABC):
    """Base session cache interface"""

    @abstractmethod
    def set(self, key, value, ttl):
        """Store ``value`` under ``key`` for ``ttl`` seconds, replacing any entry"""
        pass

    @abstractmethod
    def get(self, key):
        """Return the stored string, or None if absent or expired"""
        pass

    @abstractmethod
    def delete(self, key):
        """Remove ``key`` if present"""
        pass

    @abstractmethod
    def ttl(self, key):
        """Remaining lifetime in seconds, or None if absent"""
        pass


class InMemorySessionCache(SessionCache):
    """
    In-memory session cache for development only.
    DO NOT USE IN PRODUCTION - entries are per-process and lost on restart.
    """

    def __init__(self):
        self.entries = {}

    def set(self, key, value, ttl):
        now = datetime.now(timezone.utc)
        self.entries[key] = {
            'value': value,
            'ttl': int(ttl),
            'created_at': now,
            'expires_at': now + timedelta(seconds=int(ttl)),
        }

    def get(self, key):
        entry = self.entries.get(key)
        if not entry:
            return None

        if entry['expires_at'] <= datetime.now(timezone.utc):
            del self.entries[key]
            return None

        return entry['value']

    def delete(self, key):
        self.entries.pop(key, None)

    def ttl(self, key):
        if self.get(key) is None:
            return None
        remaining = self.entries[key]['expires_at'] - datetime.now(timezone.utc)
        return max(0, int(remaining.total_seconds()))

    def cleanup_expired(self):
        """Remove expired entries"""
        now = datetime.now(timezone.utc)
        expired = [k for k, v in self.entries.items() if v['expires_at'] <= now]
        for k in expired:
            del self.entries[k]


class RedisSessionCache(SessionCache):
    """
    Redis-backed session cache.

    Features:
    - Native key expiry (SET ... EX)
    - Shared across workers and processes
    """

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_url(cls, url, **kwargs):
        kwargs.setdefault('decode_responses', True)
        return cls(redis.Redis.from_url(url, **kwargs))

    def set(self, key, value, ttl):
        try:
            self.client.set(key, value, ex=int(ttl))
        except redis.RedisError as e:
            raise errors.cache_error("REDIS_SET_ERROR", "Failed to persist session data", e) from e

    def get(self, key):
        try:
            value = self.client.get(key)
        except redis.RedisError as e:
            raise errors.cache_error("REDIS_GET_ERROR", "Failed to get session data", e) from e

        if isinstance(value, bytes):
            value = value.decode('utf-8')
        return value

    def delete(self, key):
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            raise errors.cache_error("REDIS_DELETE_ERROR", "Failed to delete session data", e) from e

    def ttl(self, key):
        try:
            remaining = self.client.ttl(key)
        except redis.RedisError as e:
            raise errors.cache_error("REDIS_GET_ERROR", "Failed to get session data", e) from e

        # -2: no such key, -1: key without expiry
        if remaining is None or remaining == -2:
            return None
        return remaining
