"""Gemini API key pool and rotation policies.

The pool is re-parsed from configuration on every call so key edits take
effect without a restart. Which key an attempt uses is decided by a policy
object: random (uniform, repeats allowed) or round-robin with wraparound.
"""

from __future__ import annotations

import logging
import random
import re
import threading
from dataclasses import dataclass
from typing import Protocol

from .config import Settings
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# "rate" only as a whole word so "generate" or "accurate" do not match
QUOTA_PATTERN = re.compile(r"quota|\brate\b|rate[ _-]?limit|resource_exhausted|\b429\b", re.IGNORECASE)


@dataclass(frozen=True)
class KeyPool:
    """Ordered, non-empty set of Gemini API keys."""

    keys: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.keys:
            raise ConfigurationError("No Gemini API keys configured in GEMINI_API_KEYS")

    def __len__(self) -> int:
        return len(self.keys)

    @classmethod
    def parse(cls, raw: str | None, delimiter: str = ",") -> KeyPool:
        keys = tuple(k.strip() for k in (raw or "").split(delimiter) if k.strip())
        return cls(keys)


def load_key_pool(settings: Settings | None = None) -> KeyPool:
    """Build the key pool from a fresh read of the environment / .env.

    Deliberately bypasses the cached ``get_settings()``.
    """
    resolved = settings or Settings()  # type: ignore[call-arg]
    keys = resolved.gemini_api_keys_list
    if not keys:
        logger.warning("[API_KEY_PROVIDER] No Gemini API keys configured")
    pool = KeyPool(tuple(keys))
    logger.debug("[API_KEY_PROVIDER] Loaded %d Gemini API key(s)", len(pool))
    return pool


class KeyRotationPolicy(Protocol):
    def select(self, pool: KeyPool, attempt: int) -> int:
        """Return the pool index to use for this attempt."""
        ...


class RandomKeyPolicy:
    """Uniform random choice per attempt; the same key may be picked twice."""

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    def select(self, pool: KeyPool, attempt: int) -> int:
        return self._rng.randrange(len(pool))


class RoundRobinKeyPolicy:
    """Thread-safe round-robin across calls, wrapping around the pool."""

    def __init__(self, start: int = 0):
        self._lock = threading.Lock()
        self._index = start

    def select(self, pool: KeyPool, attempt: int) -> int:
        with self._lock:
            idx = self._index % len(pool)
            self._index = idx + 1
        return idx


def make_policy(name: str) -> KeyRotationPolicy:
    if name == "round_robin":
        return RoundRobinKeyPolicy()
    if name == "random":
        return RandomKeyPolicy()
    raise ConfigurationError(f"Unknown key rotation policy: {name}")


def is_quota_exhausted(exc: BaseException | int) -> bool:
    """Return True if the exception or status code indicates quota / rate limiting."""
    if isinstance(exc, int):
        return exc == 429
    if getattr(exc, "quota", False):
        return True
    return bool(QUOTA_PATTERN.search(str(exc)))
