"""Drive token handoff routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from ...drive import revoke_token
from ..identity import Caller, current_caller
from ..registry import ChatRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


class DriveTokenRequest(BaseModel):
    """Token obtained by the browser's Google sign-in."""

    access_token: str = Field(min_length=1)
    expires_in: int | None = Field(default=None, gt=0)


class DriveTokenStatus(BaseModel):
    authenticated: bool
    expiresAt: str | None = None


def _registry(request: Request) -> ChatRegistry:
    return request.app.state.registry


@router.put("/drive-token", response_model=DriveTokenStatus)
async def store_drive_token(
    body: DriveTokenRequest,
    request: Request,
    caller: Caller = Depends(current_caller),
):
    """Hand a fresh Drive token to this browsing session."""
    vault = _registry(request).vault(caller.session_key)
    token = await vault.store(body.access_token, body.expires_in)
    return DriveTokenStatus(authenticated=True, expiresAt=token.expires_at.isoformat())


@router.get("/drive-token", response_model=DriveTokenStatus)
async def drive_token_status(request: Request, caller: Caller = Depends(current_caller)):
    vault = _registry(request).vault(caller.session_key)
    await vault.retrieve()
    return DriveTokenStatus(authenticated=vault.is_valid())


@router.delete("/drive-token")
async def sign_out(request: Request, caller: Caller = Depends(current_caller)):
    """Revoke (best effort) and forget the session's Drive token."""
    registry = _registry(request)
    vault = registry.vault(caller.session_key)
    token = await vault.retrieve()
    revoked = False
    if token:
        revoked = await revoke_token(registry.http_client, token, registry.settings)
    await vault.clear()
    logger.info("Signed out session %s from Google Drive (revoked=%s)", caller.session_id, revoked)
    return {"status": "signed_out", "revoked": revoked}
