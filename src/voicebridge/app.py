"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .pipeline.manager import SessionManager
from .routers.sessions import router as sessions_router
from .routers.voice import router as voice_router
from .upstream import UpstreamFactory

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers: list[logging.Handler] = []

    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("voicebridge").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # Frame-level chatter from the transports is only useful at DEBUG
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("websockets").setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    *,
    factory: Optional[UpstreamFactory] = None,
) -> FastAPI:
    # Configure logging first thing
    _configure_logging()

    settings = settings or get_settings()
    manager = SessionManager(settings, factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            try:
                await asyncio.wait_for(manager.shutdown(), timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Session manager shutdown timed out after 10s")
            except Exception as exc:
                logger.warning("Error during session manager shutdown: %s", exc)

    app = FastAPI(
        title="Voice Bridge",
        version="0.1.0",
        description="Streaming voice agent bridging recognition, generation and synthesis.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(voice_router)
    app.include_router(sessions_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str | int | bool]:
        return {
            "status": "ok",
            "active_sessions": len(manager.sessions),
            "recognition_enabled": settings.recognition_enabled,
            "generation_model": settings.generation_model,
        }

    return app


__all__ = ["create_app"]
