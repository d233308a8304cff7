"""Caller identity for API requests.

Every chat and token route runs as the user named by a verified Firebase ID
token (``Authorization: Bearer <idToken>``). Browsing sessions are scoped to
that user, so a session id alone never reaches another user's Drive token.
With ``AUTH_REQUIRED=false`` (local development only) the ``X-User-Id``
header is trusted instead.
"""

from __future__ import annotations

import asyncio
import logging
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from fastapi import Depends, Header, Request
from firebase_admin import auth

from ..config import Settings
from ..errors import IdentityError, TransientNetworkError
from ..storage.firebase import verify_id_token

logger = logging.getLogger(__name__)

TokenVerifier = Callable[[str], Awaitable[dict[str, Any]]]

# Uid of the caller handled by the current request
request_user_id: ContextVar[Optional[str]] = ContextVar("request_user_id", default=None)


@dataclass(frozen=True)
class Caller:
    user_id: str
    session_id: str

    @property
    def session_key(self) -> str:
        return f"{self.user_id}:{self.session_id}"


def firebase_verifier(settings: Settings) -> TokenVerifier:
    """Verify ID tokens with Firebase Admin off the event loop."""

    async def _verify(id_token: str) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(verify_id_token, id_token, settings)
        except auth.CertificateFetchError as e:
            raise TransientNetworkError(f"Could not fetch Firebase signing keys: {e}") from e
        except (auth.InvalidIdTokenError, ValueError) as e:
            raise IdentityError(f"Invalid ID token: {e}") from e

    return _verify


def _bearer_token(authorization: str | None) -> str | None:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def current_user_id(
    request: Request,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
) -> str:
    settings: Settings = request.app.state.settings
    if settings.auth_required:
        token = _bearer_token(authorization)
        if token is None:
            raise IdentityError("Missing bearer ID token")
        claims = await request.app.state.verify_token(token)
        user_id = claims.get("uid") or claims.get("sub")
    else:
        user_id = x_user_id

    if not user_id:
        raise IdentityError("No user id for this request")
    request_user_id.set(user_id)
    return user_id


async def current_caller(
    user_id: str = Depends(current_user_id),
    x_session_id: str = Header(...),
) -> Caller:
    return Caller(user_id=user_id, session_id=x_session_id)
