"""Shared test fixtures and configuration."""

from __future__ import annotations

import pytest

from notes_chat.api_key_provider import KeyPool, RoundRobinKeyPolicy
from notes_chat.config import Settings
from notes_chat.drive import PDF_MIME_TYPE, DocumentHandle
from notes_chat.storage.conversations import ConversationStore
from notes_chat.storage.notes import NoteRecord
from notes_chat.token_vault import InMemorySessionStorage, TokenVault
from tests.helpers import FakeFirestore


@pytest.fixture
def mock_settings():
    """Settings with test endpoints and short timers."""
    return Settings(
        GEMINI_API_KEYS="key-a,key-b",
        GEMINI_KEY_ROTATION="round_robin",
        GEMINI_MAX_RETRIES=3,
        GEMINI_BASE_URL="https://gemini.test/v1beta",
        DRIVE_API_BASE_URL="https://drive-api.test/drive/v3",
        DRIVE_PUBLIC_BASE_URL="https://drive.test",
        OAUTH_REVOKE_URL="https://oauth.test/revoke",
        TOKEN_STORAGE_BACKEND="memory",
        AUTOSAVE_DEBOUNCE_SECONDS=0.05,
        FIREBASE_SERVICE_ACCOUNT_KEY=None,
    )


@pytest.fixture
def key_pool():
    return KeyPool(("key-a", "key-b"))


@pytest.fixture
def round_robin():
    return RoundRobinKeyPolicy()


@pytest.fixture
def fake_db():
    """In-memory Firestore double."""
    return FakeFirestore()


@pytest.fixture
def store(fake_db, mock_settings):
    return ConversationStore(fake_db, settings=mock_settings)


@pytest.fixture
def session_storage():
    return InMemorySessionStorage()


@pytest.fixture
def vault(session_storage):
    return TokenVault(session_storage)


@pytest.fixture
def sample_pdf():
    """A small in-memory PDF."""
    return DocumentHandle("file-123", "lecture.pdf", PDF_MIME_TYPE, b"%PDF-1.4 lecture notes")


@pytest.fixture
def sample_note():
    return NoteRecord(id="noteA", file_id="file-123", file_name="lecture.pdf", title="Lecture 1")


@pytest.fixture
def sample_notes():
    """Note documents as stored in Firestore."""
    return {
        "noteA": {
            "title": "Lecture 1",
            "fileId": "file-123",
            "fileName": "lecture.pdf",
            "mimeType": "application/pdf",
            "uploadedAt": "2024-01-15T10:30:00Z",
        },
        "noteB": {
            "title": "Lab photos",
            "fileId": "file-456",
            "fileName": "photos.zip",
            "mimeType": "application/zip",
            "uploadedAt": "2024-01-16T10:30:00Z",
        },
        "noteC": {
            "title": "Syllabus",
            "fileId": "file-789",
            "uploadedAt": "2024-01-17T10:30:00Z",
        },
    }
