"""Google Drive document download.

Files are resolved in a fixed order, never in parallel:

1. Drive API media endpoint with the session's bearer token (if one is valid).
2. The unauthenticated public download endpoint, for "anyone with the link" files.

The first 2xx wins. If both fail, a 403/404 becomes ``DocumentPermissionError``
and anything else ``TransientNetworkError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import quote

import httpx

from .config import Settings, get_settings
from .errors import (
    AuthenticationError,
    DocumentPermissionError,
    DocumentTooLargeError,
    InvalidDocumentError,
    TransientNetworkError,
)
from .token_vault import TokenVault

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"


@dataclass(frozen=True)
class DocumentHandle:
    """A downloaded document, held in memory for one chat session."""

    file_id: str
    file_name: str
    mime_type: str
    blob: bytes

    @property
    def size(self) -> int:
        return len(self.blob)


def get_file_url(file_id: str, settings: Settings | None = None) -> str:
    """Browser URL for viewing a Drive file."""
    settings = settings or get_settings()
    return f"{settings.drive_public_base_url}/file/d/{quote(file_id, safe='')}/view"


def public_download_url(file_id: str, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return f"{settings.drive_public_base_url}/uc?export=download&id={quote(file_id, safe='')}"


def validate_pdf_upload(
    file_name: str,
    mime_type: str,
    size: int,
    settings: Settings | None = None,
) -> None:
    """Reject anything that is not a PDF within the upload size limit."""
    settings = settings or get_settings()
    if mime_type != PDF_MIME_TYPE:
        raise InvalidDocumentError(
            f"Please upload a PDF file only (got {mime_type or 'unknown type'})."
        )
    if not file_name.lower().endswith(".pdf"):
        raise InvalidDocumentError("Please upload a PDF file only (file name must end in .pdf).")
    if size > settings.max_upload_bytes:
        raise DocumentTooLargeError(
            f"File is too large ({size} bytes, limit {settings.max_upload_bytes}).",
            size=size,
            limit=settings.max_upload_bytes,
        )


async def revoke_token(client: httpx.AsyncClient, token: str, settings: Settings | None = None) -> bool:
    """Revoke an OAuth token. Best effort: failures are logged and reported as False."""
    settings = settings or get_settings()
    try:
        response = await client.post(
            settings.oauth_revoke_url,
            params={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
    except httpx.HTTPError as e:
        logger.warning("[DRIVE] Could not revoke token: %s", e)
        return False
    if response.status_code != 200:
        logger.warning("[DRIVE] Token revoke returned %s", response.status_code)
        return False
    return True


class DocumentFetcher:
    """Resolves a Drive file id to a ``DocumentHandle``."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        vault: TokenVault | None = None,
        settings: Settings | None = None,
    ):
        self.client = client
        self.vault = vault
        self.settings = settings or get_settings()

    async def fetch(self, file_id: str, file_name: str, mime_type: str) -> DocumentHandle:
        encoded_id = quote(file_id, safe="")
        last_status: int | None = None
        unauthorized = False

        token = await self.vault.retrieve() if self.vault is not None else None

        # 1) Drive API with the session token
        if token:
            try:
                response = await self.client.get(
                    f"{self.settings.drive_api_base_url}/files/{encoded_id}",
                    params={"alt": "media", "supportsAllDrives": "true"},
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self.settings.drive_timeout_seconds,
                    follow_redirects=True,
                )
                if response.is_success:
                    logger.info("[DRIVE] Fetched %s via Drive API (%d bytes)", file_id, len(response.content))
                    return DocumentHandle(file_id, file_name, mime_type, response.content)
                last_status = response.status_code
                logger.warning("[DRIVE] Drive API fetch failed for %s: %s", file_id, response.status_code)
                if response.status_code == 401:
                    unauthorized = True
                    await self.vault.clear()
            except httpx.HTTPError as e:
                logger.warning("[DRIVE] Drive API request for %s raised: %s", file_id, e)

        # 2) Public "anyone with the link" endpoint, no Authorization header
        try:
            response = await self.client.get(
                f"{self.settings.drive_public_base_url}/uc",
                params={"export": "download", "id": file_id},
                timeout=self.settings.drive_timeout_seconds,
                follow_redirects=True,
            )
            if response.is_success:
                logger.info("[DRIVE] Fetched %s via public endpoint (%d bytes)", file_id, len(response.content))
                return DocumentHandle(file_id, file_name, mime_type, response.content)
            last_status = response.status_code
            logger.warning("[DRIVE] Public download failed for %s: %s", file_id, response.status_code)
        except httpx.HTTPError as e:
            logger.warning("[DRIVE] Public download request for %s raised: %s", file_id, e)

        if unauthorized:
            raise AuthenticationError("Authentication expired. Please sign in to Google Drive again.")

        if last_status in (403, 404):
            raise DocumentPermissionError(
                f"Failed to download file: {last_status} - check fileId and sharing settings "
                "(is it public or in a Shared Drive?).",
                status_code=last_status,
            )

        raise TransientNetworkError(
            f"Failed to download file {file_id}"
            + (f": HTTP {last_status}" if last_status else ": network error"),
            status_code=last_status,
        )
