"""
FastAPI server for the call relay.

Endpoints:
- GET /health: Health check (voice provider, active sessions, uptime)
- WS /media-stream: Twilio Media Streams WebSocket
"""

import sys
import time
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.callrelay import __version__
from src.callrelay.config import get_config, init_config, ConfigError
from src.callrelay.session import SessionRegistry


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call relay server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        logger.info(
            "Server ready",
            port=config.port,
            version=__version__,
            voice_provider=config.voice_provider,
        )
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...", active_sessions=len(app.state.registry))
    await app.state.registry.close_all("shutdown")


app = FastAPI(
    title="Call Relay",
    description="Turn-taking audio relay between Twilio Media Streams and OpenAI Realtime",
    version=__version__,
    lifespan=lifespan,
)
app.state.registry = SessionRegistry()
app.state.started_at = time.time()


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    config = get_config()
    return JSONResponse(
        content={
            "status": "ok",
            "version": __version__,
            "voice_provider": config.voice_provider,
            "active_sessions": len(app.state.registry),
            "uptime_seconds": round(time.time() - app.state.started_at, 2),
        }
    )


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One connection is one call leg. The loop ends when Twilio disconnects or
    the call session tears itself down.
    """
    await websocket.accept()
    logger.info("WebSocket connected", client=str(websocket.client) if websocket.client else None)

    from src.callrelay.pipeline import create_pipeline

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.warning("Failed to send WebSocket message", error=str(e))

    async def close_telephony() -> None:
        try:
            await websocket.close()
        except RuntimeError as e:
            logger.debug("WebSocket already closed", error=str(e))

    pipeline = await create_pipeline(
        send_message,
        close_telephony,
        app.state.registry,
        query_params=websocket.query_params,
    )

    try:
        while not pipeline.closed:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", stream_sid=pipeline.stream_sid or None)
                break
            except RuntimeError as e:
                # Receive after our own close().
                logger.debug("WebSocket receive ended", error=str(e))
                break

            await pipeline.handle_message(message)

    finally:
        await pipeline.stop()
        logger.info(
            "Call ended",
            stream_sid=pipeline.stream_sid or None,
            active_sessions=len(app.state.registry),
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
