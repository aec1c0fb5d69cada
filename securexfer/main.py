"""
SecureXfer — FastAPI application entry point.

Creates this process's identity, starts the transfer listener and the
discovery service on startup, and serves the local REST API and the event
WebSocket used by the UI.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from securexfer.api.routes import init_routes, router
from securexfer.api.websocket import EventHub
from securexfer.config import (
    API_HOST,
    API_PORT,
    DATA_DIR,
    DEFAULT_SAVE_DIR,
    DISCOVERY_INTERVAL,
    LOG_FILE,
)
from securexfer.discovery.service import DiscoveryService
from securexfer.errors import IdentityError
from securexfer.security.identity import IdentityService
from securexfer.transfer.manager import TransferManager

logger = logging.getLogger(__name__)

event_hub = EventHub()


def setup_logging(level: int = logging.INFO) -> None:
    """Console logging plus a debug.log that starts empty on every run."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        os.makedirs(DATA_DIR, exist_ok=True)
        handler = logging.FileHandler(LOG_FILE, mode="w", encoding="utf-8")
    except OSError as e:
        logger.warning(f"File logging disabled: {e}")
        return
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    ))
    logging.getLogger().addHandler(handler)


async def _poll_peers(discovery: DiscoveryService) -> None:
    """Query the LAN and publish the live peer list every few seconds."""
    while True:
        discovery.discover()
        peers = discovery.get_peers()
        await event_hub.broadcast("peer_list", [p.model_dump() for p in peers])
        await asyncio.sleep(DISCOVERY_INTERVAL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting SecureXfer services...")

    try:
        identity_service = await asyncio.to_thread(IdentityService)
    except IdentityError as e:
        logger.critical(f"Cannot create identity: {e}")
        raise

    os.makedirs(DEFAULT_SAVE_DIR, exist_ok=True)
    transfer_manager = TransferManager(identity_service, save_dir=DEFAULT_SAVE_DIR)
    discovery_service = None
    poll_task = None

    try:
        # Wire up event broadcasting
        transfer_manager.on_event(event_hub.handle_event)

        port = await transfer_manager.start()
        discovery_service = DiscoveryService(identity_service.identity(port))
        discovery_service.on_peer_change(event_hub.handle_peer_change)
        event_hub.set_snapshot(lambda: [
            ("peer_list", [p.model_dump() for p in discovery_service.get_peers()]),
        ])

        await discovery_service.start()
        discovery_service.announce()
        poll_task = asyncio.create_task(_poll_peers(discovery_service))

        init_routes(discovery_service, transfer_manager)

        logger.info(
            f"SecureXfer ready — "
            f"API: {API_HOST}:{API_PORT}, "
            f"Listener port: {port}, "
            f"Fingerprint: {identity_service.fingerprint}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        # Shutdown
        logger.info("Shutting down SecureXfer services...")
        if poll_task:
            poll_task.cancel()
            await asyncio.gather(poll_task, return_exceptions=True)
        await transfer_manager.stop()
        if discovery_service:
            await discovery_service.stop()


# --- FastAPI app ---
app = FastAPI(
    title="SecureXfer",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await event_hub.serve(websocket)


def run() -> None:
    setup_logging()
    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
