"""
FastAPI server for the Twilio voice relay.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twilio/voice: Inbound call webhook (authorize caller, return TwiML)
- WS /twilio/stream: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from src.relay.config import ConfigError, get_config, init_config
from src.relay.registry import SessionRegistry
from src.relay.twiml import authorize_call, is_valid_twilio_signature


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


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    calls_accepted: int = 0
    calls_rejected: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "active_calls": len(registry),
            "calls_accepted": self.calls_accepted,
            "calls_rejected": self.calls_rejected,
            "errors": self.errors,
        }


# Global state
metrics = ServerMetrics()
registry = SessionRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Twilio voice relay...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host or "(request host)",
        )
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...", active_calls=len(registry))


app = FastAPI(
    title="Twilio Voice Relay",
    description="Phone-call voice assistant relay over Twilio Media Streams",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": len(registry),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


def _webhook_url(request: Request) -> str:
    """URL Twilio signed; behind a tunnel this is the public host, not ours."""
    config = get_config()
    if config.public_host:
        url = f"https://{config.public_host}{request.url.path}"
        if request.url.query:
            url += f"?{request.url.query}"
        return url
    return str(request.url)


@app.post("/twilio/voice")
async def twilio_voice(request: Request) -> Response:
    """
    Inbound call webhook.

    Whitelisted (or any, with an empty whitelist) callers get TwiML that
    connects a media stream; others hear a short message and are rejected.
    """
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    signature = request.headers.get("X-Twilio-Signature", "")
    if not is_valid_twilio_signature(_webhook_url(request), params, signature):
        logger.warning("Invalid Twilio signature", path=request.url.path)
        return Response(status_code=403, content="Invalid signature")

    caller = params.get("From", "")
    decision = authorize_call(caller, request.headers.get("host", ""))
    if decision.accepted:
        metrics.calls_accepted += 1
    else:
        metrics.calls_rejected += 1

    return Response(content=decision.twiml, media_type="application/xml")


@app.websocket("/twilio/stream")
async def twilio_stream(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One turn controller per connection; its session lives in the process
    registry from `start` until `stop` or disconnect.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    connection_id = f"conn_{uuid.uuid4().hex[:12]}"
    log = logger.bind(connection_id=connection_id)
    log.info("WebSocket connected", active_connections=metrics.active_connections)

    # Import here to keep webhook-only startup light
    from src.relay.controller import TurnController

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            log.error("Failed to send WebSocket message", error=str(e))
            raise

    controller = None
    try:
        controller = TurnController(connection_id, send_message, registry)

        while True:
            try:
                message = await websocket.receive_text()
                await controller.handle_message(message)

            except WebSocketDisconnect:
                log.info("WebSocket disconnected")
                break
            except Exception as e:
                log.error("Error handling WebSocket message", error=str(e))
                metrics.errors += 1
                # Don't crash the call on a single bad message
                continue

    except Exception as e:
        log.error("WebSocket handler error", error=str(e))
        metrics.errors += 1

    finally:
        if controller is not None:
            try:
                await controller.close()
            except Exception as e:
                log.error("Error stopping controller", error=str(e))
        else:
            registry.close(connection_id)

        metrics.active_connections -= 1
        log.info("Connection closed", active_calls=len(registry))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

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
