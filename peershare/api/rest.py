"""
Coordination Service

Design Decision: Coordination Transport
=======================================

Options Considered:
1. Plain REST + polling
   - Simple, cacheable
   - Notifications (receiver joined, download requested) arrive late

2. Server-Sent Events + REST
   - Push from server
   - Two channels to correlate per participant

3. WebSocket
   - One bidirectional channel per participant
   - A closed socket is a reliable disconnect signal for cleanup

Decision: FastAPI with one WebSocket endpoint (/ws)
- Each socket is one coordination connection with a server-issued id
- Frames are JSON: {"event": ..., "data": {...}, "ack": n}
- Requests carrying "ack" get {"event": "ack", "ack": n, "data": reply}
- Plain HTTP endpoints expose share lookups, stats and the entry pages
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.responses import FileResponse
from pydantic import BaseModel
from starlette.websockets import WebSocketDisconnect

from .. import __version__
from ..config import Config
from ..session.coordinator import MessageBus, RendezvousCoordinator
from ..session.models import ACK, CONNECTED, ERROR
from ..session.registry import SessionRegistry

logger = logging.getLogger(__name__)


# === Pydantic Models ===

class ShareInfo(BaseModel):
    """Public summary of a share."""
    share_id: str
    phase: str
    owner_ready: bool
    total_receivers: int
    metadata: Optional[Dict[str, Any]] = None
    created_at: float


# === Message bus ===

class ConnectionManager(MessageBus):
    """
    Tracks open coordination sockets and delivers notifications to them.

    Sends to one socket are serialized with a per-connection lock.
    """

    def __init__(self):
        self._connections: Dict[str, WebSocket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, connection_id: str, websocket: WebSocket):
        self._connections[connection_id] = websocket
        self._locks[connection_id] = asyncio.Lock()

    def unregister(self, connection_id: str):
        self._connections.pop(connection_id, None)
        self._locks.pop(connection_id, None)

    async def send(self, connection_id: str, event: str,
                   payload: Dict[str, Any]) -> bool:
        return await self.send_frame(connection_id, {'event': event, 'data': payload})

    async def send_frame(self, connection_id: str, frame: Dict[str, Any]) -> bool:
        websocket = self._connections.get(connection_id)
        lock = self._locks.get(connection_id)
        if websocket is None or lock is None:
            return False

        try:
            async with lock:
                await websocket.send_json(frame)
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Could not deliver to {connection_id}: {e}")
            return False


# === API Creation ===

def create_app(config: Optional[Config] = None,
               registry: Optional[SessionRegistry] = None) -> FastAPI:
    """
    Create the coordination service.

    Args:
        config: Service configuration (defaults if not provided)
        registry: Session registry to use (a fresh one if not provided)

    Returns:
        FastAPI application
    """
    config = config or Config()
    registry = registry or SessionRegistry(session_ttl=config.session_ttl)
    manager = ConnectionManager()
    coordinator = RendezvousCoordinator(registry, manager)

    async def expire_loop():
        while True:
            await asyncio.sleep(config.expiry_interval)
            expired = await coordinator.expire_sessions()
            if expired:
                logger.info(f"Expired {expired} share(s)")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("Coordination service starting...")
        task = None
        if config.session_ttl > 0:
            task = asyncio.create_task(expire_loop())
        yield
        if task:
            task.cancel()
        logger.info("Coordination service stopping...")

    app = FastAPI(
        title="PeerShare Coordination Service",
        description="Rendezvous service for direct peer-to-peer file sharing",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.registry = registry
    app.state.coordinator = coordinator
    app.state.connections = manager

    def static_page(name: str) -> Optional[Path]:
        if config.static_dir is None:
            return None
        path = Path(config.static_dir) / name
        return path if path.is_file() else None

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """Sender entry page, or basic service info."""
        page = static_page("index.html")
        if page:
            return FileResponse(page)
        return {
            "name": "PeerShare",
            "version": __version__,
            "status": "running",
        }

    @app.get("/share/{share_id}", tags=["General"])
    async def receive_page(share_id: str):
        """Receiver entry page for a share link."""
        logger.info(f"Serving receive page for share {share_id}")
        page = static_page("receive.html")
        if page:
            return FileResponse(page)
        return {"share_id": share_id, "active": share_id in registry}

    @app.get("/shares/{share_id}", response_model=ShareInfo, tags=["Shares"])
    async def get_share(share_id: str):
        """Get a summary of an active share."""
        session = registry.get(share_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Share not found or expired")
        return ShareInfo(**session.to_dict())

    @app.get("/stats", tags=["General"])
    async def get_stats():
        """Get coordination statistics."""
        return {
            **coordinator.get_stats(),
            'connections': len(manager),
        }

    @app.websocket("/ws")
    async def coordination_channel(websocket: WebSocket):
        """One participant's coordination connection."""
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        manager.register(connection_id, websocket)
        logger.info(f"A participant connected: {connection_id}")

        await manager.send(connection_id, CONNECTED, {'connection_id': connection_id})

        try:
            while True:
                message = await websocket.receive()
                if message['type'] == 'websocket.disconnect':
                    break

                frame = _parse_frame(message.get('text'))
                if frame is None:
                    await manager.send(connection_id, ERROR, {
                        'ok': False,
                        'error': 'bad_request',
                        'message': 'Malformed frame',
                    })
                    continue

                reply = await coordinator.handle(connection_id, frame['event'], frame.get('data'))
                if frame.get('ack') is not None:
                    await manager.send_frame(connection_id, {
                        'event': ACK,
                        'ack': frame['ack'],
                        'data': reply,
                    })
        except WebSocketDisconnect:
            pass
        finally:
            manager.unregister(connection_id)
            await coordinator.disconnect(connection_id)

    return app


def _parse_frame(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode a client frame; None if it is not a JSON object with an event."""
    if text is None:
        return None
    try:
        frame = json.loads(text)
    except ValueError:
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get('event'), str):
        return None
    return frame


async def run_api_server(config: Config):
    """
    Run the coordination service.

    Args:
        config: Service configuration (host, port, static dir, TTL)
    """
    import uvicorn

    app = create_app(config)

    server_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
    server = uvicorn.Server(server_config)
    await server.serve()
