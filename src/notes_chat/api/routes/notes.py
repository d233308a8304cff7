"""Note listing routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from ...drive import get_file_url
from ...storage.notes import list_chat_notes
from ..identity import current_user_id
from ..registry import ChatRegistry

router = APIRouter()


class NoteResponse(BaseModel):
    """Response model for a chat-capable note."""

    id: str
    title: str
    fileId: str
    fileName: str
    mimeType: str
    fileUrl: str


@router.get("", response_model=list[NoteResponse], dependencies=[Depends(current_user_id)])
async def list_notes(request: Request):
    """List PDF notes available for chat, newest first."""
    registry: ChatRegistry = request.app.state.registry
    notes = await list_chat_notes(db=registry.store.db, settings=registry.settings)
    return [
        NoteResponse(
            id=note.id,
            title=note.title,
            fileId=note.file_id,
            fileName=note.file_name,
            mimeType=note.mime_type,
            fileUrl=get_file_url(note.file_id, registry.settings),
        )
        for note in notes
    ]
