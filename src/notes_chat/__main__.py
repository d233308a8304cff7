"""Run the notes chat service with uvicorn."""

import logging

import uvicorn

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

# Client libraries that log every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "urllib3", "google.auth")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    level = max(logging.getLevelName(settings.log_level), logging.WARNING)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(level)


def main():
    """Configure logging and serve the app built by ``create_app``."""
    settings = get_settings()
    configure_logging(settings)

    if not settings.auth_required:
        logger.warning("AUTH_REQUIRED is off, X-User-Id is trusted without verification")
    if not settings.gemini_api_keys_list:
        logger.warning("No Gemini API keys configured, questions will get an error reply")

    logger.info("Starting notes chat service on %s:%s", settings.app_host, settings.app_port)
    uvicorn.run(
        "notes_chat.api.app:create_app",
        factory=True,
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
