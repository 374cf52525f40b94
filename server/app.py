"""
FastAPI server for the appointment-booking voice agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /twiml: TwiML connecting the call to the media stream
- WS /media-stream: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio where available (not on Windows)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.telecaller.config import ConfigError, get_config, init_config


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
    total_calls: int = 0
    completed_calls: int = 0
    bookings: int = 0
    errors: int = 0

    def to_dict(self, active_calls: int = 0) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": active_calls,
            "completed_calls": self.completed_calls,
            "bookings": self.bookings,
            "errors": self.errors,
        }


metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the process-wide session registry, booking service and business directory."""
    from src.telecaller.booking import create_booking_service
    from src.telecaller.directory import create_business_directory
    from src.telecaller.registry import SessionRegistry

    logger.info("Starting voice booking server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    app.state.registry = SessionRegistry(grace_seconds=config.session_grace_seconds)
    app.state.booking_service = create_booking_service(config)
    app.state.directory = create_business_directory(config)

    logger.info(
        "Server ready",
        port=config.port,
        public_host=config.public_host,
        ws_url=config.ws_url,
        voice_mode=config.voice_mode,
    )

    yield

    logger.info("Shutting down server...")
    await app.state.registry.close_all()
    await app.state.booking_service.close()
    await app.state.directory.close()


app = FastAPI(
    title="Voice Booking Agent",
    description="Books appointments over Twilio phone calls",
    version="1.0.0",
    lifespan=lifespan,
)


def _active_calls(app: FastAPI) -> int:
    registry = getattr(app.state, "registry", None)
    return len(registry) if registry is not None else 0


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": _active_calls(request.app),
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict(active_calls=_active_calls(request.app)))


def build_twiml(ws_url: str, params: Mapping[str, str]) -> str:
    """TwiML that connects the call to the media stream, passing caller/callee as parameters."""
    response = VoiceResponse()
    connect = Connect()
    stream = connect.stream(url=ws_url)
    for name, value in params.items():
        if value:
            stream.parameter(name=name, value=value)
    response.append(connect)
    return str(response)


@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """Twilio voice webhook."""
    config = get_config()

    values: Dict[str, str] = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        values.update({key: str(value) for key, value in form.items()})

    params = {"from": values.get("From", ""), "to": values.get("To", "")}
    if values.get("businessId"):
        params["businessId"] = values["businessId"]

    logger.info("Generated TwiML", ws_url=config.ws_url, call_sid=values.get("CallSid"))
    return Response(content=build_twiml(config.ws_url, params), media_type="application/xml")


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One bridge per connection; the session it creates lives in the shared
    registry until the stream stops.
    """
    from src.telecaller.bridge import MediaStreamBridge
    from src.telecaller.events import SessionCompleted, SessionError

    await websocket.accept()
    config = get_config()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1

    async def send_message(message: str) -> None:
        await websocket.send_text(message)

    async def on_event(event: Any) -> None:
        if isinstance(event, SessionCompleted):
            metrics.completed_calls += 1
            if event.booking_id:
                metrics.bookings += 1
        elif isinstance(event, SessionError) and event.fatal:
            metrics.errors += 1

    bridge = MediaStreamBridge(
        send_message,
        websocket.app.state.registry,
        config,
        booking_service=websocket.app.state.booking_service,
        directory=websocket.app.state.directory,
        on_event=on_event,
    )

    try:
        while True:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_sid=bridge.call_sid)
                break
            try:
                await bridge.handle_message(message)
            except Exception as e:
                logger.error("Error handling WebSocket message", call_sid=bridge.call_sid, error=str(e))
                metrics.errors += 1
    finally:
        await bridge.close(reason="disconnect")
        metrics.active_connections -= 1
        logger.info("Call ended", call_sid=bridge.call_sid, active_calls=_active_calls(websocket.app))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error("Unhandled exception", path=request.url.path, error=str(exc))
    metrics.errors += 1
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


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
