import asyncio
import logging
from datetime import UTC, datetime

import msgspec
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from uci_stream.config import ServerConfig, get_config
from uci_stream.errors import ServerBusy
from uci_stream.governor import ConcurrencyGovernor
from uci_stream.session import AnalysisSession, ClientMessage

logger = logging.getLogger(__name__)

SERVICE_NAME = "UCI Stream Service"

# "Try again later" close code
CLOSE_TRY_AGAIN_LATER = 1013


async def _send_event(websocket: WebSocket, event: str, data: dict) -> None:
    if websocket.client_state != WebSocketState.CONNECTED:
        logger.debug(f"Not sending {event}, socket is closed")
        return
    try:
        await websocket.send_text(msgspec.json.encode({"event": event, "data": data}).decode())
    except (WebSocketDisconnect, RuntimeError, OSError) as e:
        logger.debug(f"Failed to send {event}: {e}")


def create_app(
    cfg: ServerConfig | None = None,
    governor: ConcurrencyGovernor | None = None,
) -> FastAPI:
    """Build the HTTP/WebSocket application.

    Args:
        cfg: Server configuration, read from the environment if omitted
        governor: Concurrency limits shared by all connections of the app

    Returns:
        The FastAPI application
    """
    cfg = cfg or get_config()
    governor = governor or ConcurrencyGovernor(cfg.max_engines, cfg.max_active_analysis)

    app = FastAPI(title=SERVICE_NAME)
    app.state.config = cfg
    app.state.governor = governor

    @app.get("/")
    async def status() -> dict:
        limits = cfg.limits()
        return {
            "ok": True,
            "service": SERVICE_NAME,
            **governor.snapshot(),
            "defaults": cfg.defaults(),
            "limits": {
                "engine": {
                    "maxThreads": limits["maxThreads"],
                    "maxHashMb": limits["maxHashMb"],
                    "maxMultiPv": limits["maxMultiPv"],
                },
                "analysis": {
                    "maxDepth": limits["maxDepth"],
                    "maxMovetimeMs": limits["maxMovetimeMs"],
                },
            },
            "time": datetime.now(UTC).isoformat(),
        }

    @app.websocket("/ws")
    async def analysis_socket(websocket: WebSocket) -> None:
        """One connection, one engine process, one analysis session."""
        await websocket.accept()
        client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        logger.info(f"Client connected: {client}")

        engine_lease = governor.acquire_engine()
        if engine_lease is None:
            error = ServerBusy("Server busy (engine limit reached). Try again later.")
            await _send_event(websocket, "engine:ready", {"ok": False, **error.to_payload()})
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
            return

        async def emit(event: str, data: dict) -> None:
            await _send_event(websocket, event, data)

        session = AnalysisSession(cfg=cfg, governor=governor, emit=emit, engine_lease=engine_lease)
        runner = asyncio.create_task(session.run())
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    message = msgspec.json.decode(text, type=ClientMessage)
                except msgspec.DecodeError as e:
                    session.reject(str(e))
                    continue
                session.submit(message.event, message.data)
        except WebSocketDisconnect:
            logger.info(f"Client disconnected: {client}")
        finally:
            session.disconnect()
            await runner

    return app
