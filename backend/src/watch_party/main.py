#!/usr/bin/env python3
from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, HTTPException, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
import uvicorn

from watch_party.config import Settings
from watch_party.session_registry.session_registry import SessionRegistry
from watch_party.session_registry.signaling_relay import SignalingRelay
from watch_party.signaling_server import serve_connection

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file is not None:
        handlers.append(logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=settings.log_level,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    # Settings gets initialized from environment variables.
    settings = settings or Settings()

    registry = SessionRegistry(idle_session_ttl=settings.idle_session_ttl_secs)
    relay = SignalingRelay(registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """idle session sweep runs for the lifetime of the app"""
        await registry.start_background_services(settings.session_sweep_interval_secs)
        yield
        await registry.stop_background_services()

    app = FastAPI(
        title="Watch Party Signaling Server",
        description="Pairs two participants per session and relays their negotiation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.registry = registry

    app.add_middleware(
        # pyrefly: ignore[bad-argument-type]
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "Watch Party Signaling Server",
            "sessions": registry.session_count(),
            "connections": registry.connection_count(),
        }

    @app.get("/sessions/{session_id}")
    async def describe_session(session_id: str):
        """
        Occupancy of a session, so a shared link can tell whether it can
        still be joined.
        """
        snapshot = registry.describe_session(session_id)
        if snapshot is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="Session not found"
            )
        return {
            "session_id": snapshot.session_id,
            "participants": len(snapshot.participants),
            "full": snapshot.is_full,
            "has_content": snapshot.content_reference is not None,
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await serve_connection(
            websocket,
            registry,
            relay,
            message_buffer_size=settings.message_buffer_size,
        )

    if settings.static_dir is not None:
        # Mounted last so the routes above take precedence
        app.mount(
            "/", StaticFiles(directory=settings.static_dir, html=True), name="static"
        )

    return app


def run() -> None:
    settings = Settings()
    configure_logging(settings)
    try:
        uvicorn.run(
            create_app(settings),
            host=settings.server_host,
            port=settings.server_port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        logger.info("🛑 Server stopped by user")


if __name__ == "__main__":
    run()
