"""Save scheduling for chat sessions.

Two triggers write the same Firestore document: a debounced autosave and an
immediate save after each completed turn. ``SessionSaver`` funnels both
through one queue per session key: at most one write is in flight, and
requests that arrive meanwhile collapse into the newest snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from .models import ChatMessage
from .storage.conversations import SaveResult

logger = logging.getLogger(__name__)

SaveFn = Callable[[Sequence[ChatMessage]], Awaitable[SaveResult]]


class SessionSaver:
    """Serialized, coalescing writer for one chat session."""

    def __init__(self, key: str, save: SaveFn):
        self.key = key
        self._save = save
        self._pending: list[ChatMessage] | None = None
        self._waiters: list[asyncio.Future[SaveResult]] = []
        self._task: asyncio.Task | None = None
        self.writes = 0

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def request(self, messages: Sequence[ChatMessage]) -> asyncio.Future[SaveResult]:
        """Queue a snapshot; the returned future resolves with the write that covers it."""
        future: asyncio.Future[SaveResult] = asyncio.get_running_loop().create_future()
        self._pending = list(messages)
        self._waiters.append(future)
        if not self.busy:
            self._task = asyncio.create_task(self._drain())
        return future

    async def _drain(self) -> None:
        while self._pending is not None:
            snapshot, waiters = self._pending, self._waiters
            self._pending, self._waiters = None, []
            try:
                result = await self._save(snapshot)
            except Exception as e:
                logger.exception("[AUTOSAVE] Save for %s raised: %s", self.key, e)
                result = SaveResult(ok=False, reason=str(e))
            self.writes += 1
            if len(waiters) > 1:
                logger.debug("[AUTOSAVE] Coalesced %d save requests for %s", len(waiters), self.key)
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(result)

    async def flush(self) -> None:
        """Wait until every queued request has been written."""
        while self.busy:
            await asyncio.shield(self._task)


class Debouncer:
    """Runs ``callback`` once ``delay`` seconds after the last ``trigger()``."""

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        self.cancel()
        self._handle = asyncio.get_running_loop().call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def fire_now(self) -> None:
        """Run a pending callback immediately (e.g. before switching sessions)."""
        if self._handle is not None:
            self.cancel()
            self.callback()

    def _fire(self) -> None:
        self._handle = None
        self.callback()
