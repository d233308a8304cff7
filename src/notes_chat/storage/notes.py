"""Read-only access to note metadata needed by the chat."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from firebase_admin import firestore

from ..config import Settings, get_settings
from ..drive import PDF_MIME_TYPE
from .firebase import get_firestore_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoteRecord:
    """The slice of a note document the chat layer touches."""

    id: str
    file_id: str
    file_name: str
    title: str = ""
    mime_type: str = PDF_MIME_TYPE

    @property
    def is_pdf(self) -> bool:
        return self.file_name.lower().endswith(".pdf") or self.title.lower().endswith(".pdf")

    @classmethod
    def from_dict(cls, note_id: str, data: dict[str, Any]) -> NoteRecord:
        title = data.get("title") or ""
        return cls(
            id=note_id,
            file_id=data.get("fileId", ""),
            # Older notes only have a title
            file_name=data.get("fileName") or f"{title}.pdf",
            title=title,
            mime_type=data.get("mimeType") or PDF_MIME_TYPE,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fileId": self.file_id,
            "fileName": self.file_name,
            "title": self.title,
            "mimeType": self.mime_type,
        }


async def get_note(note_id: str, db=None, settings: Settings | None = None) -> NoteRecord | None:
    """Get a note by ID."""
    settings = settings or get_settings()
    db = db or get_firestore_client(settings)

    doc = await asyncio.to_thread(db.collection(settings.notes_collection).document(note_id).get)
    if not doc.exists:
        return None
    return NoteRecord.from_dict(doc.id, doc.to_dict() or {})


async def list_chat_notes(db=None, settings: Settings | None = None) -> list[NoteRecord]:
    """List PDF notes, newest upload first."""
    settings = settings or get_settings()
    db = db or get_firestore_client(settings)

    def _query() -> list[tuple[str, dict[str, Any]]]:
        docs = (
            db.collection(settings.notes_collection)
            .order_by("uploadedAt", direction=firestore.Query.DESCENDING)
            .stream()
        )
        return [(doc.id, doc.to_dict() or {}) for doc in docs]

    rows = await asyncio.to_thread(_query)
    notes = [NoteRecord.from_dict(note_id, data) for note_id, data in rows]
    pdf_notes = [note for note in notes if note.is_pdf]
    logger.info("Found %d PDF notes out of %d", len(pdf_notes), len(notes))
    return pdf_notes
