"""Tests for the chat session orchestrator."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from notes_chat.api_key_provider import RoundRobinKeyPolicy
from notes_chat.drive import PDF_MIME_TYPE, DocumentFetcher
from notes_chat.errors import (
    ConfigurationError,
    DocumentTooLargeError,
    GenerationError,
    QuotaExhaustedError,
)
from notes_chat.gemini import KeyRotatingGenerationClient
from notes_chat.models import ChatMessage, ChatState, Sender
from notes_chat.orchestrator import (
    CONFIG_REPLY,
    GENERIC_REPLY,
    QUOTA_REPLY,
    TOO_LARGE_REPLY,
    ChatSessionOrchestrator,
    error_reply,
)
from notes_chat.storage.notes import NoteRecord
from tests.helpers import GatedGenerator, PerQuestionGenerator, RecordingTransport, gemini_response

PDF_BYTES = b"%PDF-1.4 thermodynamics"


def drive_handler(request: httpx.Request) -> httpx.Response:
    if request.url.params.get("id") == "missing":
        return httpx.Response(404)
    return httpx.Response(200, content=PDF_BYTES)


@pytest.fixture
def drive_transport():
    return RecordingTransport(drive_handler)


@pytest.fixture
def fetcher(drive_transport, vault, mock_settings):
    return DocumentFetcher(httpx.AsyncClient(transport=drive_transport), vault, mock_settings)


@pytest.fixture
def make_orchestrator(fetcher, store, vault, mock_settings):
    def _make(generator, **kwargs):
        kwargs.setdefault("user_profile", {"uid": "user1"})
        return ChatSessionOrchestrator(
            fetcher=fetcher,
            generator=generator,
            store=store,
            vault=vault,
            settings=mock_settings,
            **kwargs,
        )

    return _make


@pytest.fixture
def gemini_generator(mock_settings, key_pool):
    transport = RecordingTransport(lambda r: gemini_response("It covers thermodynamics."))
    return KeyRotatingGenerationClient(
        httpx.AsyncClient(transport=transport),
        settings=mock_settings,
        policy=RoundRobinKeyPolicy(),
        key_pool_loader=lambda: key_pool,
        sleep=AsyncMock(),
    )


@pytest.fixture
def note_b():
    return NoteRecord(id="noteB", file_id="file-456", file_name="lab.pdf", title="Lab")


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_first_question_is_persisted(self, make_orchestrator, gemini_generator, sample_note, fake_db):
        orchestrator = make_orchestrator(gemini_generator)

        assert await orchestrator.open_note(sample_note) is True
        reply = await orchestrator.ask("Summarize the document")

        assert reply.sender == Sender.AI
        assert reply.text == "It covers thermodynamics."
        doc = fake_db.docs("chats")["noteA_user1"]
        assert doc["messageCount"] == 2
        assert [m["sender"] for m in doc["chatHistory"]] == ["user", "ai"]
        assert doc["chatHistory"][0]["text"] == "Summarize the document"
        assert orchestrator.state == ChatState.IDLE

        await orchestrator.close()
        # Immediate save plus the debounced save of the same turn
        assert len(fake_db.writes) == 2
        assert fake_db.docs("chats")["noteA_user1"]["messageCount"] == 2


class TestOpenNote:
    """Tests for open_note / open_upload."""

    @pytest.mark.asyncio
    async def test_restores_previous_history(self, make_orchestrator, store, sample_note):
        await store.save("noteA", [ChatMessage.user("Earlier"), ChatMessage.ai("Reply")], "user1")
        orchestrator = make_orchestrator(GatedGenerator())

        assert await orchestrator.open_note(sample_note) is True

        assert [m.text for m in orchestrator.messages] == ["Earlier", "Reply"]
        notices = orchestrator.take_notices()
        assert notices[-1].kind == "success"
        assert notices[-1].text == 'Loaded "Lecture 1" successfully! Ready to chat. (2 previous messages loaded)'
        assert orchestrator.take_notices() == []

    @pytest.mark.asyncio
    async def test_non_pdf_note_is_refused(self, make_orchestrator):
        orchestrator = make_orchestrator(GatedGenerator())
        note = NoteRecord(id="noteZ", file_id="f", file_name="photos.zip", title="Photos")

        assert await orchestrator.open_note(note) is False
        assert "Only PDF files" in orchestrator.take_notices()[0].text
        assert orchestrator.note_id is None

    @pytest.mark.asyncio
    async def test_download_failure_becomes_notice(self, make_orchestrator):
        orchestrator = make_orchestrator(GatedGenerator())
        note = NoteRecord(id="noteX", file_id="missing", file_name="gone.pdf")

        assert await orchestrator.open_note(note) is False

        notice = orchestrator.take_notices()[0]
        assert notice.kind == "error"
        assert notice.text.startswith("Failed to load note: Failed to download file: 404")
        assert orchestrator.document is None

    @pytest.mark.asyncio
    async def test_failed_sign_in_asks_for_authentication(self, make_orchestrator, sample_note):
        authorize = AsyncMock(return_value={"error": "popup_closed_by_user"})
        orchestrator = make_orchestrator(GatedGenerator(), authorize=authorize)

        assert await orchestrator.open_note(sample_note) is False

        authorize.assert_awaited_once()
        assert "Authentication required" in orchestrator.take_notices()[0].text

    @pytest.mark.asyncio
    async def test_sign_in_runs_before_download(self, make_orchestrator, vault, sample_note):
        authorize = AsyncMock(return_value={"access_token": "tok-1", "expires_in": 3600})
        orchestrator = make_orchestrator(GatedGenerator(), authorize=authorize)

        assert await orchestrator.open_note(sample_note) is True
        assert vault.is_valid() is True

    @pytest.mark.asyncio
    async def test_documents_are_cached_per_file(self, make_orchestrator, drive_transport, sample_note, note_b):
        orchestrator = make_orchestrator(GatedGenerator())

        await orchestrator.open_note(sample_note)
        await orchestrator.open_note(note_b)
        await orchestrator.open_note(sample_note)

        assert len(drive_transport.requests) == 2

    @pytest.mark.asyncio
    async def test_document_cache_keeps_most_recent_files(self, make_orchestrator, drive_transport, sample_note, note_b):
        orchestrator = make_orchestrator(GatedGenerator())
        note_c = NoteRecord(id="noteC", file_id="file-789", file_name="syllabus.pdf", title="Syllabus")

        for note in (sample_note, note_b, note_c, sample_note):
            await orchestrator.open_note(note)
        assert len(drive_transport.requests) == 4

        # noteC is still cached, noteB was evicted when noteA came back
        await orchestrator.open_note(note_c)
        assert len(drive_transport.requests) == 4
        await orchestrator.open_note(note_b)
        assert len(drive_transport.requests) == 5

    @pytest.mark.asyncio
    async def test_close_releases_cached_documents(self, make_orchestrator, drive_transport, sample_note):
        orchestrator = make_orchestrator(GatedGenerator())
        await orchestrator.open_note(sample_note)

        await orchestrator.close()
        await orchestrator.open_note(sample_note)

        assert len(drive_transport.requests) == 2

    def test_upload_validation(self, make_orchestrator):
        orchestrator = make_orchestrator(GatedGenerator())

        assert orchestrator.open_upload("notes.png", "image/png", b"x") is False
        assert orchestrator.document is None

        assert orchestrator.open_upload("notes.pdf", PDF_MIME_TYPE, PDF_BYTES) is True
        assert orchestrator.document.blob == PDF_BYTES
        assert orchestrator.note_id is None


class TestAsk:
    """Tests for ask()."""

    @pytest.mark.asyncio
    async def test_rejected_without_document(self, make_orchestrator):
        orchestrator = make_orchestrator(GatedGenerator())
        assert await orchestrator.ask("Anything?") is None
        assert orchestrator.messages == ()

    @pytest.mark.asyncio
    async def test_rejected_when_blank(self, make_orchestrator, sample_note):
        orchestrator = make_orchestrator(GatedGenerator())
        await orchestrator.open_note(sample_note)

        assert await orchestrator.ask("   ") is None

    @pytest.mark.asyncio
    async def test_second_question_rejected_while_awaiting(self, make_orchestrator, sample_note):
        generator = GatedGenerator()
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)

        first = asyncio.create_task(orchestrator.ask("First?"))
        await asyncio.sleep(0)
        assert orchestrator.state == ChatState.AWAITING_RESPONSE
        assert [m.text for m in orchestrator.messages] == ["First?"]

        assert await orchestrator.ask("Second?") is None

        generator.release.set()
        await first
        assert orchestrator.state == ChatState.IDLE
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_history_excludes_the_new_question(self, make_orchestrator, sample_note):
        generator = GatedGenerator()
        generator.release.set()
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)

        await orchestrator.ask("One?")
        await orchestrator.ask("Two?")

        question, history = generator.calls[1]
        assert question == "Two?"
        assert [m.text for m in history] == ["One?", "It covers thermodynamics."]

    @pytest.mark.asyncio
    async def test_quota_failure_becomes_ai_message(self, make_orchestrator, sample_note, fake_db):
        generator = AsyncMock()
        generator.generate.side_effect = QuotaExhaustedError(
            "All Gemini API keys failed: quota", attempts=3, last_error=GenerationError("quota", 429, quota=True)
        )
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)

        reply = await orchestrator.ask("Summarize")

        assert reply.text == QUOTA_REPLY
        assert reply.id.startswith("error_")
        assert fake_db.docs("chats")["noteA_user1"]["chatHistory"][1]["text"] == QUOTA_REPLY

    @pytest.mark.asyncio
    async def test_save_failure_is_reported_and_history_kept(self, make_orchestrator, sample_note, fake_db):
        generator = GatedGenerator()
        generator.release.set()
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)
        orchestrator.take_notices()
        fake_db.failures["set"] = RuntimeError("offline")

        await orchestrator.ask("Summarize")

        assert len(orchestrator.messages) == 2
        assert orchestrator.take_notices()[0].text == "Failed to save chat: offline. Your messages are still local."

    @pytest.mark.asyncio
    async def test_failed_turn_save_is_retried(self, make_orchestrator, sample_note, fake_db):
        generator = GatedGenerator()
        generator.release.set()
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)
        fake_db.failures["set"] = RuntimeError("offline")

        await orchestrator.ask("Summarize")
        assert "noteA_user1" not in fake_db.docs("chats")

        del fake_db.failures["set"]
        await asyncio.sleep(0.15)

        doc = fake_db.docs("chats")["noteA_user1"]
        assert doc["messageCount"] == 2
        assert [m["sender"] for m in doc["chatHistory"]] == ["user", "ai"]

    @pytest.mark.asyncio
    async def test_late_answer_goes_to_its_own_chat(self, make_orchestrator, sample_note, note_b, fake_db):
        generator = GatedGenerator()
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)

        pending = asyncio.create_task(orchestrator.ask("Question about A"))
        await asyncio.sleep(0)
        await orchestrator.open_note(note_b)
        assert orchestrator.state == ChatState.IDLE

        generator.release.set()
        await pending
        await orchestrator.close()

        assert orchestrator.note_id == "noteB"
        assert orchestrator.messages == ()
        saved = fake_db.docs("chats")["noteA_user1"]["chatHistory"]
        assert [m["text"] for m in saved] == ["Question about A", "It covers thermodynamics."]
        assert "noteB_user1" not in fake_db.docs("chats")

    @pytest.mark.asyncio
    async def test_late_answer_after_clear_is_dropped(self, make_orchestrator, sample_note, fake_db):
        generator = GatedGenerator()
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)

        pending = asyncio.create_task(orchestrator.ask("Question"))
        await asyncio.sleep(0)
        await orchestrator.clear_chat()

        generator.release.set()
        await pending
        await orchestrator.close()

        assert orchestrator.messages == ()
        assert "noteA_user1" not in fake_db.docs("chats")

    @pytest.mark.asyncio
    async def test_late_answer_merges_into_reopened_chat(self, make_orchestrator, sample_note, note_b, fake_db):
        generator = PerQuestionGenerator({"Q1": "A1", "Q2": "A2"})
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)

        pending = asyncio.create_task(orchestrator.ask("Q1"))
        await asyncio.sleep(0)
        await orchestrator.open_note(note_b)
        await orchestrator.open_note(sample_note)
        generator.gates["Q2"].set()
        await orchestrator.ask("Q2")

        generator.gates["Q1"].set()
        await pending
        await orchestrator.close()

        assert [m.text for m in orchestrator.messages] == ["Q2", "A2", "Q1", "A1"]
        saved = fake_db.docs("chats")["noteA_user1"]["chatHistory"]
        assert [m["text"] for m in saved] == ["Q2", "A2", "Q1", "A1"]

    @pytest.mark.asyncio
    async def test_late_answer_keeps_turns_saved_since(self, make_orchestrator, sample_note, note_b, fake_db):
        generator = PerQuestionGenerator({"Q1": "A1", "Q2": "A2"})
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)

        pending = asyncio.create_task(orchestrator.ask("Q1"))
        await asyncio.sleep(0)
        await orchestrator.open_note(note_b)
        await orchestrator.open_note(sample_note)
        generator.gates["Q2"].set()
        await orchestrator.ask("Q2")
        await orchestrator.open_note(note_b)

        generator.gates["Q1"].set()
        await pending
        await orchestrator.close()

        assert orchestrator.note_id == "noteB"
        saved = fake_db.docs("chats")["noteA_user1"]["chatHistory"]
        assert [m["text"] for m in saved] == ["Q2", "A2", "Q1", "A1"]

    @pytest.mark.asyncio
    async def test_late_answer_keeps_unsaved_history(self, make_orchestrator, sample_note, note_b, fake_db):
        generator = GatedGenerator()
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)
        orchestrator.append_message(ChatMessage.user("draft"))

        pending = asyncio.create_task(orchestrator.ask("Question about A"))
        await asyncio.sleep(0)
        await orchestrator.open_note(note_b)

        generator.release.set()
        await pending
        await orchestrator.close()

        saved = fake_db.docs("chats")["noteA_user1"]["chatHistory"]
        assert [m["text"] for m in saved] == ["draft", "Question about A", "It covers thermodynamics."]

    @pytest.mark.asyncio
    async def test_late_answer_never_overwrites_unreadable_chat(
        self, make_orchestrator, store, sample_note, note_b, fake_db
    ):
        await store.save("noteA", [ChatMessage.user("Earlier"), ChatMessage.ai("Reply")], "user1")
        generator = GatedGenerator()
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)

        pending = asyncio.create_task(orchestrator.ask("Question about A"))
        await asyncio.sleep(0)
        await orchestrator.open_note(note_b)
        orchestrator.take_notices()
        fake_db.failures["get"] = RuntimeError("unavailable")

        generator.release.set()
        await pending
        await orchestrator.close()

        saved = fake_db.docs("chats")["noteA_user1"]["chatHistory"]
        assert [m["text"] for m in saved] == ["Earlier", "Reply"]
        assert orchestrator.take_notices()[0].text.startswith('Failed to save the answer for "Lecture 1"')

    @pytest.mark.asyncio
    async def test_late_answer_after_reopen_and_clear_is_dropped(
        self, make_orchestrator, sample_note, note_b, fake_db
    ):
        generator = GatedGenerator()
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)

        pending = asyncio.create_task(orchestrator.ask("Question"))
        await asyncio.sleep(0)
        await orchestrator.open_note(note_b)
        await orchestrator.open_note(sample_note)
        await orchestrator.clear_chat()

        generator.release.set()
        await pending
        await orchestrator.close()

        assert orchestrator.messages == ()
        assert "noteA_user1" not in fake_db.docs("chats")


class TestAutosave:
    @pytest.mark.asyncio
    async def test_burst_of_changes_saves_once(self, make_orchestrator, sample_note, fake_db):
        orchestrator = make_orchestrator(GatedGenerator())
        await orchestrator.open_note(sample_note)

        for i in range(5):
            orchestrator.append_message(ChatMessage.user(f"note {i}"))
        await asyncio.sleep(0.15)
        assert len(fake_db.writes) == 1
        assert fake_db.docs("chats")["noteA_user1"]["messageCount"] == 5

        orchestrator.append_message(ChatMessage.ai("later"))
        await asyncio.sleep(0.15)
        assert len(fake_db.writes) == 2
        assert fake_db.docs("chats")["noteA_user1"]["messageCount"] == 6

    @pytest.mark.asyncio
    async def test_switching_notes_flushes_pending_autosave(self, make_orchestrator, sample_note, note_b, fake_db):
        orchestrator = make_orchestrator(GatedGenerator())
        await orchestrator.open_note(sample_note)
        orchestrator.append_message(ChatMessage.user("draft"))

        await orchestrator.open_note(note_b)
        await orchestrator.close()

        assert fake_db.docs("chats")["noteA_user1"]["messageCount"] == 1

    @pytest.mark.asyncio
    async def test_unauthenticated_user_never_writes(self, make_orchestrator, sample_note, fake_db):
        orchestrator = make_orchestrator(GatedGenerator(), user_profile=None)
        await orchestrator.open_note(sample_note)

        orchestrator.append_message(ChatMessage.user("hello"))
        await asyncio.sleep(0.15)

        assert fake_db.writes == []
        assert "Auto-save failed: no-authentication" in orchestrator.take_notices()[-1].text


class TestClearAndExport:
    @pytest.mark.asyncio
    async def test_clear_deletes_stored_chat(self, make_orchestrator, sample_note, fake_db):
        generator = GatedGenerator()
        generator.release.set()
        orchestrator = make_orchestrator(generator)
        await orchestrator.open_note(sample_note)
        await orchestrator.ask("Summarize")
        orchestrator.take_notices()

        await orchestrator.clear_chat()

        assert orchestrator.messages == ()
        assert "noteA_user1" not in fake_db.docs("chats")
        assert orchestrator.take_notices()[0].text == "Chat history cleared."

    @pytest.mark.asyncio
    async def test_clear_failure_is_reported(self, make_orchestrator, sample_note, fake_db):
        orchestrator = make_orchestrator(GatedGenerator())
        await orchestrator.open_note(sample_note)
        orchestrator.take_notices()
        fake_db.failures["delete"] = RuntimeError("unavailable")

        await orchestrator.clear_chat()

        assert orchestrator.take_notices()[0].kind == "error"

    def test_export_transcript(self, make_orchestrator):
        orchestrator = make_orchestrator(GatedGenerator())
        asked = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        answered = datetime(2024, 1, 15, 10, 31, tzinfo=timezone.utc)
        orchestrator.append_message(ChatMessage("u1", Sender.USER, "What is entropy?", asked))
        orchestrator.append_message(ChatMessage("a1", Sender.AI, "A measure of disorder.", answered))

        assert orchestrator.export_transcript() == (
            "Q: What is entropy?\nTime: 2024-01-15 10:30:00\n"
            "\n"
            "A: A measure of disorder.\nTime: 2024-01-15 10:31:00\n"
        )


class TestErrorReply:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (ConfigurationError("No Gemini API keys configured"), CONFIG_REPLY),
            (DocumentTooLargeError("too big", size=10, limit=5), TOO_LARGE_REPLY),
            (GenerationError("Request payload file size exceeds the limit"), TOO_LARGE_REPLY),
            (QuotaExhaustedError("failed", 3, GenerationError("Resource exhausted", 429, quota=True)), QUOTA_REPLY),
            (QuotaExhaustedError("failed", 3, GenerationError("Internal error", 500)), GENERIC_REPLY),
            (RuntimeError("boom"), GENERIC_REPLY),
        ],
    )
    def test_categories(self, error, expected):
        assert error_reply(error) == expected
