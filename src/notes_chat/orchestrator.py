"""Chat session orchestration for one user.

State machine: ``idle`` -> ``awaitingResponse`` -> ``idle``. A question is
accepted only when it is non-empty, a document is loaded and no response is
pending for the active chat. The user message is appended before the
generation request goes out; the AI message (answer or synthetic error) is
appended after the request settles, then saved immediately and the autosave
debounce is armed as for any other mutation while idle, so a failed
immediate save is retried.

In-flight requests are not cancelled when the user opens another note. A late
answer is merged into the chat it was asked in: into the live list when that
chat has been reopened, otherwise into its stored copy. It is dropped when
that chat was cleared after the question was asked.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Sequence

from .api_key_provider import is_quota_exhausted
from .config import Settings, get_settings
from .drive import DocumentFetcher, DocumentHandle, validate_pdf_upload
from .errors import (
    AuthenticationError,
    ConfigurationError,
    DocumentTooLargeError,
    InvalidDocumentError,
    NotesChatError,
    PersistenceError,
    QuotaExhaustedError,
)
from .gemini import KeyRotatingGenerationClient
from .models import ChatMessage, ChatState, Notice, Sender
from .persistence import Debouncer, SessionSaver
from .storage.conversations import ConversationStore, SaveResult
from .storage.notes import NoteRecord
from .token_vault import TokenVault

logger = logging.getLogger(__name__)

QUICK_QUESTIONS = (
    "Summarize the main topics covered in this document",
    "What are the most important concepts I should focus on?",
    "Create practice questions to test my understanding",
    "Make a study plan based on this content",
    "What topics are likely to appear in exams?",
    "Explain the most difficult concepts in simple terms",
)

QUOTA_REPLY = "API quota exceeded. Please try again in a moment."
CONFIG_REPLY = "Gemini API not configured. Please contact administrator."
TOO_LARGE_REPLY = "File is too large for processing. Please try a smaller file."
GENERIC_REPLY = "Sorry, I encountered an error while processing your question."


def error_reply(exc: BaseException) -> str:
    """Pick the user-facing text for a failed generation."""
    if isinstance(exc, ConfigurationError):
        return CONFIG_REPLY
    cause = exc.last_error if isinstance(exc, QuotaExhaustedError) and exc.last_error else exc
    message = str(cause).lower()
    if isinstance(cause, DocumentTooLargeError) or "too large" in message or "file size" in message:
        return TOO_LARGE_REPLY
    if is_quota_exhausted(cause):
        return QUOTA_REPLY
    return GENERIC_REPLY


def merge_messages(base: Sequence[ChatMessage], extra: Sequence[ChatMessage]) -> list[ChatMessage]:
    """Append the messages of ``extra`` that ``base`` lacks, matched by id."""
    seen = {m.id for m in base}
    return [*base, *(m for m in extra if m.id not in seen)]


class ChatSessionOrchestrator:
    """Drives document chat for a single user."""

    def __init__(
        self,
        *,
        fetcher: DocumentFetcher,
        generator: KeyRotatingGenerationClient,
        store: ConversationStore,
        user_profile: Any = None,
        vault: TokenVault | None = None,
        authorize: Callable[[], Awaitable[dict[str, Any]]] | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.fetcher = fetcher
        self.generator = generator
        self.store = store
        self.user_profile = user_profile
        self.vault = vault
        self.authorize = authorize

        self.active_note: NoteRecord | None = None
        self.document: DocumentHandle | None = None
        self._messages: list[ChatMessage] = []
        self._notices: list[Notice] = []
        # Most recently used last
        self._documents: OrderedDict[str, DocumentHandle] = OrderedDict()
        self._savers: dict[str, SessionSaver] = {}
        # Bumped whenever the active chat is replaced or cleared
        self._epoch = 0
        # Clears per note id, so a late answer can tell its chat was emptied
        self._clears: dict[str, int] = {}
        self._pending_epochs: set[int] = set()
        self._debouncer = Debouncer(self.settings.autosave_debounce_seconds, self._autosave)

    # ── State ────────────────────────────────────────────────

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def state(self) -> ChatState:
        if self._epoch in self._pending_epochs:
            return ChatState.AWAITING_RESPONSE
        return ChatState.IDLE

    @property
    def note_id(self) -> str | None:
        return self.active_note.id if self.active_note else None

    def notify(self, kind: str, text: str) -> None:
        self._notices.append(Notice(kind, text))

    def take_notices(self) -> list[Notice]:
        """Return and dismiss all pending notices."""
        notices, self._notices = self._notices, []
        return notices

    # ── Opening documents ────────────────────────────────────

    def _start_session(self, note: NoteRecord | None, document: DocumentHandle | None) -> None:
        # Don't drop a pending autosave for the chat being left
        self._debouncer.fire_now()
        self._epoch += 1
        self.active_note = note
        self.document = document
        self._messages = []

    async def open_note(self, note: NoteRecord) -> bool:
        """Fetch the note's PDF and restore its chat. Failures become notices."""
        if not note.is_pdf:
            self.notify("error", "This note is not a PDF file. Only PDF files are supported for chat.")
            return False

        self._start_session(note, None)
        epoch = self._epoch
        try:
            if self.vault is not None and self.authorize is not None and not await self.vault.retrieve():
                await self.vault.ensure(self.authorize)

            document = await self._document(note)
            previous = await self.store.load(note.id, self.user_profile)
        except AuthenticationError as e:
            logger.warning("[CHAT] Drive authentication needed for note %s: %s", note.id, e)
            self.notify("error", "Authentication required. Please sign in to Google Drive to access your notes.")
            return False
        except NotesChatError as e:
            logger.warning("[CHAT] Failed to load note %s: %s", note.id, e)
            self.notify("error", f"Failed to load note: {e}")
            return False

        if epoch != self._epoch:
            # Another note was opened while this one was loading
            return False

        self.document = document
        # Keep late answers merged in while the history was loading
        self._messages = merge_messages(previous, self._messages)
        self._on_messages_changed()

        suffix = f" ({len(previous)} previous messages loaded)" if previous else ""
        self.notify("success", f'Loaded "{note.title or note.file_name}" successfully! Ready to chat.{suffix}')
        logger.info("[CHAT] Opened note %s with %d previous messages", note.id, len(previous))
        return True

    async def _document(self, note: NoteRecord) -> DocumentHandle:
        document = self._documents.get(note.file_id)
        if document is not None:
            self._documents.move_to_end(note.file_id)
            return document

        document = await self.fetcher.fetch(note.file_id, note.file_name, note.mime_type)
        self._documents[note.file_id] = document
        while len(self._documents) > self.settings.document_cache_size:
            evicted, _ = self._documents.popitem(last=False)
            logger.debug("[CHAT] Evicted cached document %s", evicted)
        return document

    def open_upload(self, file_name: str, mime_type: str, blob: bytes) -> bool:
        """Start an unsaved chat on a locally uploaded PDF."""
        try:
            validate_pdf_upload(file_name, mime_type, len(blob), self.settings)
        except InvalidDocumentError as e:
            self.notify("error", str(e))
            return False

        self._start_session(None, DocumentHandle(f"upload:{file_name}", file_name, mime_type, blob))
        self.notify("success", f'PDF file "{file_name}" uploaded successfully and ready for chat!')
        return True

    # ── Conversation ─────────────────────────────────────────

    def append_message(self, message: ChatMessage) -> None:
        """Append a message to the active chat."""
        self._messages.append(message)
        self._on_messages_changed()

    async def ask(self, question: str) -> ChatMessage | None:
        """Ask a question about the open document.

        Returns the appended AI message, or None when the question was not accepted.
        """
        question = (question or "").strip()
        if not question or self.document is None or self.state == ChatState.AWAITING_RESPONSE:
            logger.warning(
                "[CHAT] Question rejected: has_question=%s has_document=%s state=%s",
                bool(question),
                self.document is not None,
                self.state.value,
            )
            return None

        epoch = self._epoch
        note = self.active_note
        clears = self._clears.get(note.id, 0) if note else 0
        document = self.document
        history = list(self._messages)
        user_message = ChatMessage.user(question)

        self._pending_epochs.add(epoch)
        self._debouncer.cancel()
        self._messages.append(user_message)

        try:
            text = await self.generator.generate(document, question, history)
            reply = ChatMessage.ai(text)
        except Exception as e:
            logger.error("[CHAT] Generation failed: %s", e)
            reply = ChatMessage.ai_error(error_reply(e))
        finally:
            self._pending_epochs.discard(epoch)

        if epoch != self._epoch:
            if note is None or self._clears.get(note.id, 0) != clears:
                logger.warning("[CHAT] Dropping late answer for a cleared or unsaved chat")
                return reply
            await self._save_late_turn(note, [*history, user_message, reply])
            return reply

        self._messages.append(reply)
        await self._save_turn()
        return reply

    async def _save_turn(self) -> None:
        result = await self._save_now()
        if result is not None and not result.ok:
            self.notify("error", f"Failed to save chat: {result.reason}. Your messages are still local.")
        # The debounced save follows every turn and retries a failed one
        self._on_messages_changed()

    async def _save_late_turn(self, note: NoteRecord, turn: list[ChatMessage]) -> None:
        if note.id != self.note_id:
            saver = self._saver(note.id)
            await saver.flush()
            try:
                stored = await self.store.load(note.id, self.user_profile, strict=True)
            except PersistenceError as e:
                logger.error("[CHAT] Late answer for note %s not saved: %s", note.id, e)
                self.notify("error", f'Failed to save the answer for "{note.title or note.file_name}": {e}')
                return
            if note.id != self.note_id:
                logger.warning("[CHAT] Late answer for note %s arrived after switching chats; saving it there", note.id)
                saver.request(merge_messages(stored, turn))
                return

        # The chat was reopened while the answer was pending
        logger.info("[CHAT] Late answer for note %s merged into the reopened chat", note.id)
        self._messages = merge_messages(self._messages, turn)
        if self.state == ChatState.IDLE:
            await self._save_turn()

    async def clear_chat(self) -> None:
        """Empty the active chat and delete its stored copy."""
        self._debouncer.cancel()
        self._epoch += 1
        self._messages = []

        note_id = self.note_id
        if note_id is not None:
            self._clears[note_id] = self._clears.get(note_id, 0) + 1
            saver = self._savers.get(note_id)
            if saver is not None:
                await saver.flush()
            try:
                await self.store.remove(note_id, self.user_profile)
            except PersistenceError as e:
                logger.error("[CHAT] Failed to clear chat for note %s: %s", note_id, e)
                self.notify("error", "Failed to delete the saved chat. Please try again.")
                return
        self.notify("info", "Chat history cleared.")

    def export_transcript(self) -> str:
        """Plain-text Q/A transcript of the active chat."""
        return "\n".join(
            f"{'Q' if msg.sender == Sender.USER else 'A'}: {msg.text}\n"
            f"Time: {msg.timestamp.strftime('%Y-%m-%d %H:%M:%S')}\n"
            for msg in self._messages
        )

    async def close(self) -> None:
        """Write any pending autosave and wait for in-flight writes."""
        self._debouncer.fire_now()
        for saver in list(self._savers.values()):
            await saver.flush()
        self._documents.clear()

    # ── Persistence ──────────────────────────────────────────

    def _saver(self, note_id: str) -> SessionSaver:
        saver = self._savers.get(note_id)
        if saver is None:
            user_profile = self.user_profile

            async def _save(messages: Sequence[ChatMessage]) -> SaveResult:
                return await self.store.save(note_id, messages, user_profile)

            saver = SessionSaver(note_id, _save)
            self._savers[note_id] = saver
        return saver

    def _on_messages_changed(self) -> None:
        if self.note_id and self._messages and self.state == ChatState.IDLE:
            self._debouncer.trigger()

    def _autosave(self) -> None:
        if self.state == ChatState.AWAITING_RESPONSE or not self.note_id or not self._messages:
            return
        logger.info("[AUTOSAVE] Saving %d messages for note %s", len(self._messages), self.note_id)
        future = self._saver(self.note_id).request(self._messages)
        future.add_done_callback(self._report_autosave)

    def _report_autosave(self, future) -> None:
        result = future.result()
        if not result.ok:
            logger.error("[AUTOSAVE] Failed: %s", result.reason)
            self.notify("error", f"Auto-save failed: {result.reason}. Your messages are still local.")

    async def _save_now(self) -> SaveResult | None:
        if not self.note_id or not self._messages:
            return None
        return await self._saver(self.note_id).request(self._messages)
