"""Per-process registry of token vaults and chat orchestrators."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

import httpx
import redis.asyncio as redis

from ..config import Settings
from ..drive import DocumentFetcher
from ..gemini import KeyRotatingGenerationClient
from ..models import ChatState
from ..orchestrator import ChatSessionOrchestrator
from ..storage.conversations import ConversationStore
from ..token_vault import InMemorySessionStorage, RedisSessionStorage, SessionStorage, TokenVault

logger = logging.getLogger(__name__)


class ChatRegistry:
    """Shared clients plus one vault per browsing session and one orchestrator per (session, user).

    Entries are dropped once idle for ``SESSION_IDLE_SECONDS``; ``start_sweeper``
    runs that check in the background.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        store: ConversationStore,
        redis_client: redis.Redis | None = None,
        generator: KeyRotatingGenerationClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.http_client = http_client
        self.store = store
        self.redis = redis_client
        self.generator = generator or KeyRotatingGenerationClient(http_client, settings=settings)
        self._clock = clock
        self._vaults: dict[str, TokenVault] = {}
        self._orchestrators: dict[tuple[str, str], ChatSessionOrchestrator] = {}
        self._vault_used: dict[str, float] = {}
        self._orchestrator_used: dict[tuple[str, str], float] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._orchestrators)

    def _session_storage(self, session_id: str) -> SessionStorage:
        if self.redis is not None:
            return RedisSessionStorage(self.redis, session_id, self.settings.session_ttl_seconds)
        return InMemorySessionStorage()

    def vault(self, session_id: str) -> TokenVault:
        vault = self._vaults.get(session_id)
        if vault is None:
            vault = TokenVault(
                self._session_storage(session_id),
                default_ttl_seconds=self.settings.drive_token_default_ttl_seconds,
            )
            self._vaults[session_id] = vault
        self._vault_used[session_id] = self._clock()
        return vault

    def orchestrator(self, session_id: str, user_id: str) -> ChatSessionOrchestrator:
        key = (session_id, user_id)
        orchestrator = self._orchestrators.get(key)
        if orchestrator is None:
            vault = self.vault(session_id)
            orchestrator = ChatSessionOrchestrator(
                fetcher=DocumentFetcher(self.http_client, vault, self.settings),
                generator=self.generator,
                store=self.store,
                user_profile=user_id,
                vault=vault,
                settings=self.settings,
            )
            self._orchestrators[key] = orchestrator
        else:
            self._vault_used[session_id] = self._clock()
        self._orchestrator_used[key] = self._clock()
        return orchestrator

    async def evict_idle(self, max_idle_seconds: float | None = None) -> int:
        """Flush and drop orchestrators and vaults unused for ``max_idle_seconds``.

        Orchestrators waiting on an answer for their open chat are kept.
        Returns the number of orchestrators dropped.
        """
        if max_idle_seconds is None:
            max_idle_seconds = self.settings.session_idle_seconds
        cutoff = self._clock() - max_idle_seconds

        evicted = 0
        for key, orchestrator in list(self._orchestrators.items()):
            if self._orchestrator_used.get(key, 0) > cutoff or orchestrator.state == ChatState.AWAITING_RESPONSE:
                continue
            del self._orchestrators[key]
            self._orchestrator_used.pop(key, None)
            evicted += 1
            try:
                await orchestrator.close()
            except Exception as e:
                logger.warning("Error flushing idle chat for session %s: %s", key[0], e)

        in_use = {session_id for session_id, _ in self._orchestrators}
        for session_id in list(self._vaults):
            if session_id not in in_use and self._vault_used.get(session_id, 0) <= cutoff:
                del self._vaults[session_id]
                self._vault_used.pop(session_id, None)

        if evicted:
            logger.info("[REGISTRY] Dropped %d idle chat sessions, %d remain", evicted, len(self._orchestrators))
        return evicted

    async def start_sweeper(self) -> None:
        """Start the background idle-session sweep."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())
            logger.info("[REGISTRY] Idle session sweeper started")

    async def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.session_sweep_interval_seconds)
            try:
                await self.evict_idle()
            except Exception:
                logger.exception("[REGISTRY] Error sweeping idle sessions")

    async def close(self) -> None:
        """Stop the sweeper and flush pending chat saves."""
        await self.stop_sweeper()
        for key, orchestrator in list(self._orchestrators.items()):
            try:
                await orchestrator.close()
            except Exception as e:
                logger.warning("Error flushing chat for session %s: %s", key[0], e)
        self._orchestrators.clear()
        self._orchestrator_used.clear()
        self._vaults.clear()
        self._vault_used.clear()
