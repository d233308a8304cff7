from .firebase import get_firestore_client
from .conversations import ConversationStore, SaveResult, resolve_user_id
from .notes import NoteRecord, get_note, list_chat_notes

__all__ = [
    "get_firestore_client",
    "ConversationStore",
    "SaveResult",
    "resolve_user_id",
    "NoteRecord",
    "get_note",
    "list_chat_notes",
]
