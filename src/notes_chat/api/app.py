"""FastAPI application setup."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..errors import (
    AuthenticationError,
    ConfigurationError,
    DocumentPermissionError,
    IdentityError,
    InvalidDocumentError,
    NotesChatError,
    PersistenceError,
    TransientNetworkError,
)
from ..storage.conversations import ConversationStore
from .identity import TokenVerifier, firebase_verifier, request_user_id
from .registry import ChatRegistry
from .routes import auth, chats, notes

logger = logging.getLogger(__name__)

# First match wins, so subclasses come before their bases
ERROR_STATUS_CODES: list[tuple[type[NotesChatError], int]] = [
    (AuthenticationError, 401),
    (IdentityError, 401),
    (DocumentPermissionError, 403),
    (InvalidDocumentError, 400),
    (TransientNetworkError, 502),
    (PersistenceError, 503),
    (ConfigurationError, 503),
]


def status_code_for(exc: NotesChatError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def notes_chat_error_handler(request: Request, exc: NotesChatError) -> JSONResponse:
    status_code = status_code_for(exc)
    logger.warning("%s %s failed with %s: %s", request.method, request.url.path, status_code, exc)
    return JSONResponse(status_code=status_code, content={"error": str(exc)})


def build_registry(settings: Settings) -> ChatRegistry:
    """Create the shared HTTP client, Redis client and chat store."""
    http_client = httpx.AsyncClient(follow_redirects=True)
    redis_client = None
    if settings.token_storage_backend == "redis":
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    return ChatRegistry(
        settings,
        http_client,
        ConversationStore(settings=settings, current_principal=request_user_id.get),
        redis_client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Notes chat service starting...")
    owns_registry = getattr(app.state, "registry", None) is None
    if owns_registry:
        app.state.registry = build_registry(app.state.settings)
    await app.state.registry.start_sweeper()

    yield

    logger.info("Notes chat service shutting down...")
    registry: ChatRegistry = app.state.registry
    try:
        # Use timeout to prevent hanging during shutdown
        await asyncio.wait_for(registry.close(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Flushing pending chat saves timed out")

    if owns_registry:
        await registry.http_client.aclose()
        if registry.redis is not None:
            try:
                await registry.redis.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis connection: {e}")
        app.state.registry = None

    logger.info("Notes chat service shutdown complete")


def create_app(
    settings: Settings | None = None,
    registry: ChatRegistry | None = None,
    verify_token: TokenVerifier | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``registry`` and ``verify_token`` default to the production wiring
    (Firestore, Redis and Firebase ID token checks).
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Notes Chat Service",
        description="Chat with your PDF notes, powered by Gemini",
        version="1.0.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.verify_token = verify_token or firebase_verifier(settings)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(NotesChatError, notes_chat_error_handler)

    # Include routers
    app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
    app.include_router(chats.router, prefix="/api/chats", tags=["chats"])
    app.include_router(notes.router, prefix="/api/notes", tags=["notes"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
