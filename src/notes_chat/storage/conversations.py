"""Chat history persistence in Firestore.

Document structure:
chats/{noteId}_{userId}
{
  noteId: string
  userId: string
  chatHistory: [{id, sender, text, timestamp (ISO), messageId}]
  messageCount: number
  lastUpdated: server timestamp
  createdAt: server timestamp (first save only)
  version: number
}

``save`` and ``load`` report failures as data instead of raising: a storage
hiccup must not take down the conversation, the in-memory history stays
authoritative. ``remove`` raises.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from firebase_admin import firestore

from ..config import Settings, get_settings
from ..errors import PersistenceError
from ..models import ChatMessage, ChatSession, chat_doc_id
from .firebase import get_firestore_client

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

PrincipalProvider = Callable[[], Optional[str]]


@dataclass(frozen=True)
class SaveResult:
    ok: bool
    doc_id: str | None = None
    uid: str | None = None
    reason: str | None = None
    code: str | None = None


def resolve_user_id(user_profile: Any) -> str | None:
    """Accept a uid string, a mapping with ``uid`` or an object with ``.uid``."""
    if user_profile is None:
        return None
    if isinstance(user_profile, str):
        return user_profile or None
    if isinstance(user_profile, Mapping):
        return user_profile.get("uid") or None
    return getattr(user_profile, "uid", None) or None


def _serialize(message: Any, message_id: str) -> dict[str, Any]:
    if not isinstance(message, ChatMessage):
        message = ChatMessage.from_dict(dict(message))
    return message.to_dict(message_id=message_id)


class ConversationStore:
    """Upsert / restore / delete chat sessions keyed by ``{noteId}_{userId}``."""

    def __init__(
        self,
        db=None,
        *,
        settings: Settings | None = None,
        current_principal: PrincipalProvider | None = None,
    ):
        self.settings = settings or get_settings()
        self._db = db
        self.current_principal = current_principal

    @property
    def db(self):
        if self._db is None:
            self._db = get_firestore_client(self.settings)
        return self._db

    def _resolve_uid(self, user_profile: Any) -> str | None:
        uid = resolve_user_id(user_profile)
        if not uid and self.current_principal is not None:
            uid = self.current_principal()
        return uid or None

    def _doc_ref(self, doc_id: str):
        return self.db.collection(self.settings.chats_collection).document(doc_id)

    async def save(
        self,
        note_id: str | None,
        messages: Sequence[Any],
        user_profile: Any = None,
    ) -> SaveResult:
        """Merge-upsert the full message list. Never raises."""
        if not note_id:
            logger.error("[CHAT_STORE] Save skipped: missing noteId")
            return SaveResult(ok=False, reason="missing-noteId")

        uid = self._resolve_uid(user_profile)
        if not uid:
            logger.error("[CHAT_STORE] Save skipped: no authenticated user for note %s", note_id)
            return SaveResult(ok=False, reason="no-authentication")

        if not messages:
            logger.warning("[CHAT_STORE] Save skipped: empty history for note %s", note_id)
            return SaveResult(ok=False, reason="empty-history")

        doc_id = chat_doc_id(note_id, uid)
        try:
            stamp = int(time.time() * 1000)
            chat_history = [_serialize(msg, f"{stamp}_{i}") for i, msg in enumerate(messages)]
            data = {
                "noteId": note_id,
                "userId": uid,
                "chatHistory": chat_history,
                "messageCount": len(chat_history),
                "lastUpdated": firestore.SERVER_TIMESTAMP,
                "version": SCHEMA_VERSION,
            }

            doc_ref = self._doc_ref(doc_id)
            snapshot = await asyncio.to_thread(doc_ref.get)
            if not snapshot.exists:
                data["createdAt"] = firestore.SERVER_TIMESTAMP

            await asyncio.to_thread(doc_ref.set, data, merge=True)
        except Exception as e:
            logger.exception("[CHAT_STORE] Failed to save chats/%s: %s", doc_id, e)
            code = getattr(e, "code", None)
            return SaveResult(ok=False, doc_id=doc_id, uid=uid, reason=str(e), code=str(code) if code else None)

        logger.info("[CHAT_STORE] Saved %d messages to chats/%s", len(chat_history), doc_id)
        return SaveResult(ok=True, doc_id=doc_id, uid=uid)

    async def load(
        self,
        note_id: str | None,
        user_profile: Any = None,
        *,
        strict: bool = False,
    ) -> list[ChatMessage]:
        """Restore the message list; empty when missing or unauthenticated.

        Read errors also give an empty list unless ``strict`` is set, in which
        case they raise PersistenceError. Callers that write the result back
        use ``strict`` so a failed read never overwrites the stored chat.
        """
        if not note_id:
            logger.warning("[CHAT_STORE] Load skipped: missing noteId")
            return []

        uid = self._resolve_uid(user_profile)
        if not uid:
            logger.warning("[CHAT_STORE] No user id available, returning empty chat")
            return []

        doc_id = chat_doc_id(note_id, uid)
        try:
            snapshot = await asyncio.to_thread(self._doc_ref(doc_id).get)
            if not snapshot.exists:
                logger.info("[CHAT_STORE] No chat found at chats/%s", doc_id)
                return []
            session = ChatSession.from_dict(snapshot.to_dict() or {})
        except Exception as e:
            logger.exception("[CHAT_STORE] Failed to load chats/%s: %s", doc_id, e)
            if strict:
                raise PersistenceError(f"Failed to load chat {doc_id}: {e}") from e
            return []

        logger.info("[CHAT_STORE] Loaded %d messages from chats/%s", len(session.messages), doc_id)
        return session.messages

    async def remove(self, note_id: str | None, user_profile: Any = None) -> bool:
        """Hard-delete the session document. Raises PersistenceError on failure.

        Returns False (without touching Firestore) when no note or user is known.
        """
        uid = self._resolve_uid(user_profile)
        if not note_id or not uid:
            logger.error("[CHAT_STORE] Delete skipped: noteId=%s uid=%s", note_id, uid)
            return False

        doc_id = chat_doc_id(note_id, uid)
        try:
            await asyncio.to_thread(self._doc_ref(doc_id).delete)
        except Exception as e:
            logger.error("[CHAT_STORE] Failed to delete chats/%s: %s", doc_id, e)
            raise PersistenceError(f"Failed to delete chat {doc_id}: {e}") from e

        logger.info("[CHAT_STORE] Deleted chats/%s", doc_id)
        return True
