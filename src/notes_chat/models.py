"""Chat type definitions."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .timestamps import to_datetime, to_iso

logger = logging.getLogger(__name__)


class Sender(str, Enum):
    """Who wrote a chat message."""

    USER = "user"
    AI = "ai"


class ChatState(str, Enum):
    """Orchestrator state for the active chat."""

    IDLE = "idle"
    AWAITING_RESPONSE = "awaitingResponse"


def chat_doc_id(note_id: str, user_id: str) -> str:
    """Firestore document id for a (note, user) chat session."""
    return f"{note_id}_{user_id}"


def _message_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def _sender(value: Any) -> Sender:
    if value is None:
        return Sender.AI
    try:
        return Sender(value)
    except ValueError:
        logger.warning("Unknown sender %r in stored message, reading it as ai", value)
        return Sender.AI


@dataclass(frozen=True)
class ChatMessage:
    """A single immutable chat message."""

    id: str
    sender: Sender
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def user(cls, text: str) -> ChatMessage:
        return cls(id=_message_id("user"), sender=Sender.USER, text=text)

    @classmethod
    def ai(cls, text: str) -> ChatMessage:
        return cls(id=_message_id("ai"), sender=Sender.AI, text=text)

    @classmethod
    def ai_error(cls, text: str) -> ChatMessage:
        return cls(id=_message_id("error"), sender=Sender.AI, text=text)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        """Create from a stored chatHistory entry; timestamp may be any accepted shape."""
        return cls(
            id=data.get("id") or data.get("messageId") or _message_id(data.get("sender", "msg")),
            sender=_sender(data.get("sender")),
            text=data.get("text", ""),
            timestamp=to_datetime(data.get("timestamp")),
        )

    def to_dict(self, message_id: str | None = None) -> dict[str, Any]:
        """Convert to the Firestore chatHistory entry shape."""
        result = {
            "id": self.id,
            "sender": self.sender.value,
            "text": self.text,
            "timestamp": to_iso(self.timestamp),
        }
        if message_id:
            result["messageId"] = message_id
        return result


@dataclass
class ChatSession:
    """Persisted chat for one (note, user) pair."""

    note_id: str
    user_id: str
    messages: list[ChatMessage] = field(default_factory=list)
    message_count: int = 0
    last_updated: datetime | None = None
    created_at: datetime | None = None
    version: int = 1

    @property
    def doc_id(self) -> str:
        return chat_doc_id(self.note_id, self.user_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatSession:
        messages = []
        for entry in data.get("chatHistory") or []:
            if not isinstance(entry, dict):
                logger.warning("Skipping malformed chatHistory entry: %r", entry)
                continue
            messages.append(ChatMessage.from_dict(entry))
        return cls(
            note_id=data.get("noteId", ""),
            user_id=data.get("userId", ""),
            messages=messages,
            message_count=data.get("messageCount", len(messages)),
            last_updated=to_datetime(data["lastUpdated"]) if data.get("lastUpdated") else None,
            created_at=to_datetime(data["createdAt"]) if data.get("createdAt") else None,
            version=data.get("version", 1),
        )


@dataclass(frozen=True)
class Notice:
    """Dismissible, non-blocking message for the user."""

    kind: str  # "success" | "info" | "error"
    text: str
