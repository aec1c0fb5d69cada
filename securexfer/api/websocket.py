"""WebSocket event stream for the local UI."""

import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from securexfer.discovery.models import PeerRecord

logger = logging.getLogger(__name__)


class EventHub:
    """
    Fans out discovery and transfer events to every connected UI client.

    Messages are JSON objects ``{"event": <name>, "data": <object>}``.
    """

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._snapshot = None  # fn() -> list of (event, data) sent on connect

    def set_snapshot(self, provider) -> None:
        self._snapshot = provider

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client connection until it goes away."""
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"UI client connected. Total: {len(self._connections)}")

        try:
            if self._snapshot:
                for event, data in self._snapshot():
                    await websocket.send_text(json.dumps({"event": event, "data": data}))
            while True:
                # Clients only listen; incoming text is ignored
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            async with self._lock:
                if websocket in self._connections:
                    self._connections.remove(websocket)
            logger.info(f"UI client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, event: str, data) -> None:
        """Send an event to all connected clients, dropping dead ones."""
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except (WebSocketDisconnect, RuntimeError, OSError):
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Event handler compatible with TransferManager.on_event()."""
        await self.broadcast(event_type, data)

    async def handle_peer_change(self, event: str, peer: PeerRecord) -> None:
        """Event handler compatible with DiscoveryService.on_peer_change()."""
        await self.broadcast(event, peer.model_dump())
