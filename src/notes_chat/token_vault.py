"""Google Drive access token vault.

One vault per browsing session. The token lives in memory and is mirrored to
session-scoped storage (Redis in production) so it survives a page reload but
not a new browser session. A missing or expired token is a normal state:
callers re-authenticate, nothing here retries.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Protocol

import redis.asyncio as redis

from .errors import AuthenticationError

logger = logging.getLogger(__name__)

TOKEN_STORAGE_KEY = "google_drive_access_token"
TOKEN_EXPIRY_KEY = "google_drive_token_expiry"
DEFAULT_TTL_SECONDS = 3600

Clock = Callable[[], datetime]
Authorizer = Callable[[], Awaitable[dict[str, Any]]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessToken:
    """Bearer credential with an absolute expiry."""

    value: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class SessionStorage(Protocol):
    """Key/value storage scoped to one browsing session."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, *keys: str) -> None: ...


class InMemorySessionStorage:
    """Process-local session storage (tests, single-process dev)."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self.data.pop(key, None)


class RedisSessionStorage:
    """Session storage in Redis; every key expires with the session."""

    def __init__(self, redis_client: redis.Redis, session_id: str, session_ttl_seconds: int):
        self.redis = redis_client
        self.session_id = session_id
        self.session_ttl_seconds = session_ttl_seconds

    def _key(self, key: str) -> str:
        return f"session:{self.session_id}:{key}"

    async def get(self, key: str) -> str | None:
        return await self.redis.get(self._key(key))

    async def set(self, key: str, value: str) -> None:
        await self.redis.set(self._key(key), value, ex=self.session_ttl_seconds)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self.redis.delete(*(self._key(k) for k in keys))


class TokenVault:
    """Owns the Drive access token for one browsing session."""

    def __init__(
        self,
        storage: SessionStorage,
        *,
        clock: Clock = utc_now,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ):
        self.storage = storage
        self.clock = clock
        self.default_ttl_seconds = default_ttl_seconds
        self._token: AccessToken | None = None
        self._sign_in_lock = asyncio.Lock()

    async def store(self, token: str, ttl_seconds: int | None = None) -> AccessToken:
        """Record a token and its absolute expiry (now + ttl)."""
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        expires_at = self.clock() + timedelta(seconds=ttl)
        self._token = AccessToken(value=token, expires_at=expires_at)
        try:
            await self.storage.set(TOKEN_STORAGE_KEY, token)
            await self.storage.set(TOKEN_EXPIRY_KEY, str(int(expires_at.timestamp() * 1000)))
        except Exception as e:
            # The in-memory copy is still usable for this process
            logger.warning("[TOKEN_VAULT] Could not save token to storage: %s", e)
        logger.info("[TOKEN_VAULT] Stored Drive token (expires %s)", expires_at.isoformat())
        return self._token

    async def retrieve(self) -> str | None:
        """Return the token if present and unexpired, from memory or storage."""
        now = self.clock()
        if self._token is not None:
            if not self._token.is_expired(now):
                return self._token.value
            logger.info("[TOKEN_VAULT] In-memory token expired, clearing")
            await self.clear()
            return None

        try:
            value = await self.storage.get(TOKEN_STORAGE_KEY)
            expiry = await self.storage.get(TOKEN_EXPIRY_KEY)
        except Exception as e:
            logger.warning("[TOKEN_VAULT] Could not retrieve token from storage: %s", e)
            return None

        if not value or not expiry:
            return None

        try:
            expires_at = datetime.fromtimestamp(int(expiry) / 1000, tz=timezone.utc)
        except ValueError:
            logger.warning("[TOKEN_VAULT] Unreadable token expiry %r, clearing", expiry)
            await self.clear()
            return None

        token = AccessToken(value=value, expires_at=expires_at)
        if token.is_expired(now):
            await self.clear()
            return None

        self._token = token
        return token.value

    def is_valid(self) -> bool:
        """Expiry check on the in-memory token. No I/O."""
        return self._token is not None and not self._token.is_expired(self.clock())

    async def clear(self) -> None:
        """Forget the token (sign-out, or a consumer got a 401)."""
        self._token = None
        try:
            await self.storage.delete(TOKEN_STORAGE_KEY, TOKEN_EXPIRY_KEY)
        except Exception as e:
            logger.warning("[TOKEN_VAULT] Could not clear stored token: %s", e)

    async def ensure(self, authorize: Authorizer) -> str:
        """Return a valid token, running ``authorize`` at most once at a time.

        Concurrent callers without a token wait on the same consent flow
        instead of each starting their own.
        """
        async with self._sign_in_lock:
            token = await self.retrieve()
            if token:
                return token

            response = await authorize()
            if response.get("error") or not response.get("access_token"):
                raise AuthenticationError(
                    f"Google sign-in failed: {response.get('error') or 'no access token returned'}"
                )
            stored = await self.store(response["access_token"], response.get("expires_in"))
            return stored.value
