"""Error taxonomy for document access, generation and chat persistence.

DocumentFetcher and the generation client raise these; the chat orchestrator
is the one place that catches them and turns them into chat messages or notices.
"""

from __future__ import annotations


class NotesChatError(Exception):
    """Base class for all service errors."""


class AuthenticationError(NotesChatError):
    """No usable Drive token. The caller must sign in again; never retried."""


class IdentityError(NotesChatError):
    """The API caller did not present a valid Firebase ID token."""


class ConfigurationError(NotesChatError):
    """Required configuration (e.g. Gemini API keys) is missing."""


class DocumentPermissionError(NotesChatError, PermissionError):
    """Both download tiers denied access to the document."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(NotesChatError):
    """The document could not be downloaded for a reason other than access denial."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidDocumentError(NotesChatError):
    """The document is not something the chat can work with (e.g. not a PDF)."""


class DocumentTooLargeError(InvalidDocumentError):
    """The document exceeds the upload or inline request size limit."""

    def __init__(self, message: str, size: int, limit: int):
        super().__init__(message)
        self.size = size
        self.limit = limit


class GenerationError(NotesChatError):
    """A single failed generation attempt."""

    def __init__(self, message: str, status_code: int | None = None, quota: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.quota = quota


class MalformedResponseError(GenerationError):
    """The generation response had no candidates[0].content.parts[0].text."""


class QuotaExhaustedError(NotesChatError):
    """Every attempt in the retry budget failed."""

    def __init__(self, message: str, attempts: int, last_error: BaseException | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class PersistenceError(NotesChatError):
    """A conversation could not be written to or removed from Firestore."""
