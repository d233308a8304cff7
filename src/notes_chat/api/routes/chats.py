"""Chat API routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from ...models import ChatMessage, ChatState
from ...orchestrator import QUICK_QUESTIONS, ChatSessionOrchestrator
from ...storage.notes import get_note
from ...timestamps import to_iso
from ..identity import Caller, current_caller
from ..registry import ChatRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


class MessageResponse(BaseModel):
    """Response model for a chat message."""

    id: str
    sender: str
    text: str
    timestamp: str


class NoticeResponse(BaseModel):
    kind: str
    text: str


class ChatStateResponse(BaseModel):
    """Response model for a chat session."""

    noteId: str
    state: str
    loaded: bool
    messages: list[MessageResponse]
    notices: list[NoticeResponse] = []
    quickQuestions: list[str] = list(QUICK_QUESTIONS)


class AskRequest(BaseModel):
    """Request model for asking a question."""

    question: str = Field(min_length=1)


class AskResponse(ChatStateResponse):
    reply: MessageResponse | None = None


def _orchestrator(request: Request, caller: Caller) -> ChatSessionOrchestrator:
    registry: ChatRegistry = request.app.state.registry
    return registry.orchestrator(caller.session_key, caller.user_id)


def _message(msg: ChatMessage) -> MessageResponse:
    return MessageResponse(id=msg.id, sender=msg.sender.value, text=msg.text, timestamp=to_iso(msg.timestamp))


def _state(orchestrator: ChatSessionOrchestrator, note_id: str) -> ChatStateResponse:
    return ChatStateResponse(
        noteId=note_id,
        state=orchestrator.state.value,
        loaded=orchestrator.document is not None,
        messages=[_message(m) for m in orchestrator.messages],
        notices=[NoticeResponse(kind=n.kind, text=n.text) for n in orchestrator.take_notices()],
    )


def _require_open(orchestrator: ChatSessionOrchestrator, note_id: str) -> None:
    if orchestrator.note_id != note_id or orchestrator.document is None:
        raise HTTPException(status_code=409, detail=f"Note {note_id} is not open in this session")


@router.post("/{note_id}/open", response_model=ChatStateResponse)
async def open_chat(
    note_id: str,
    request: Request,
    caller: Caller = Depends(current_caller),
):
    """Fetch the note's document and restore its chat history."""
    registry: ChatRegistry = request.app.state.registry
    note = await get_note(note_id, db=registry.store.db, settings=registry.settings)
    if note is None:
        raise HTTPException(status_code=404, detail=f"Note {note_id} not found")

    orchestrator = _orchestrator(request, caller)
    await orchestrator.open_note(note)
    return _state(orchestrator, note_id)


@router.post("/{note_id}/messages", response_model=AskResponse)
async def ask_question(
    note_id: str,
    body: AskRequest,
    request: Request,
    caller: Caller = Depends(current_caller),
):
    """Ask a question about the open note."""
    orchestrator = _orchestrator(request, caller)
    _require_open(orchestrator, note_id)
    if orchestrator.state == ChatState.AWAITING_RESPONSE:
        raise HTTPException(status_code=409, detail="A response is already pending for this chat")

    reply = await orchestrator.ask(body.question)
    if reply is None:
        raise HTTPException(status_code=400, detail="Question was not accepted")

    state = _state(orchestrator, note_id)
    return AskResponse(**state.model_dump(), reply=_message(reply))


@router.get("/{note_id}", response_model=ChatStateResponse)
async def get_chat(
    note_id: str,
    request: Request,
    caller: Caller = Depends(current_caller),
):
    """Current chat for the note; the stored copy if the note is not open here."""
    registry: ChatRegistry = request.app.state.registry
    orchestrator = _orchestrator(request, caller)
    if orchestrator.note_id == note_id:
        return _state(orchestrator, note_id)

    messages = await registry.store.load(note_id, caller.user_id)
    return ChatStateResponse(
        noteId=note_id,
        state=ChatState.IDLE.value,
        loaded=False,
        messages=[_message(m) for m in messages],
    )


@router.delete("/{note_id}", response_model=ChatStateResponse)
async def clear_chat(
    note_id: str,
    request: Request,
    caller: Caller = Depends(current_caller),
):
    """Clear the chat and delete its stored copy."""
    registry: ChatRegistry = request.app.state.registry
    orchestrator = _orchestrator(request, caller)
    if orchestrator.note_id == note_id:
        await orchestrator.clear_chat()
        return _state(orchestrator, note_id)

    # PersistenceError is mapped to 503 by the app
    await registry.store.remove(note_id, caller.user_id)
    return ChatStateResponse(noteId=note_id, state=ChatState.IDLE.value, loaded=False, messages=[])


@router.get("/{note_id}/export", response_class=PlainTextResponse)
async def export_chat(
    note_id: str,
    request: Request,
    caller: Caller = Depends(current_caller),
):
    """Download the open chat as a plain-text transcript."""
    orchestrator = _orchestrator(request, caller)
    _require_open(orchestrator, note_id)
    return PlainTextResponse(
        orchestrator.export_transcript(),
        headers={"Content-Disposition": f'attachment; filename="chat-{note_id}.txt"'},
    )
