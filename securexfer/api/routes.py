"""REST API routes for SecureXfer."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from securexfer.transfer.models import SendFilesBody

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_discovery_service = None
_transfer_manager = None


def init_routes(discovery_service, transfer_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _discovery_service, _transfer_manager
    _discovery_service = discovery_service
    _transfer_manager = transfer_manager


# --- Device Discovery ---

@router.get("/devices")
async def list_devices():
    """Return peers seen within the peer timeout."""
    peers = _discovery_service.get_peers()
    return {"devices": [p.model_dump() for p in peers]}


# --- Transfers ---

@router.get("/transfers")
async def list_transfers():
    """Return all transfers (active + completed)."""
    transfers = _transfer_manager.get_transfers()
    return {"transfers": [t.model_dump() for t in transfers]}


@router.post("/transfers")
async def create_transfer(body: SendFilesBody):
    """Send files and folders, given as absolute paths, to a discovered peer."""
    peer = _discovery_service.get_peer(body.peer_id)
    if not peer:
        raise HTTPException(status_code=404, detail="Peer not found")

    try:
        info = await _transfer_manager.send_files(peer, body.file_paths)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "transfer": info.model_dump(),
        "message": f"Sending {info.file_count} file(s) to {peer.display_name}",
    }


@router.post("/transfers/{transfer_id}/cancel")
async def cancel_transfer(transfer_id: str):
    if not await _transfer_manager.cancel_transfer(transfer_id):
        raise HTTPException(status_code=404, detail="No active outgoing transfer")
    return {"status": "cancelled"}


@router.post("/transfers/{transfer_id}/accept")
async def accept_transfer(transfer_id: str):
    if not await _transfer_manager.resolve_incoming(transfer_id, True):
        raise HTTPException(status_code=404, detail="No pending request")
    return {"status": "accepted"}


@router.post("/transfers/{transfer_id}/reject")
async def reject_transfer(transfer_id: str):
    if not await _transfer_manager.resolve_incoming(transfer_id, False):
        raise HTTPException(status_code=404, detail="No pending request")
    return {"status": "rejected"}


# --- Settings ---

class SettingsBody(BaseModel):
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    identity = _discovery_service.identity
    return {
        "device_name": identity.display_name,
        "device_id": identity.process_id,
        "fingerprint": identity.fingerprint,
        "save_dir": _transfer_manager.save_dir,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.save_dir is not None:
        if not os.path.isabs(body.save_dir):
            raise HTTPException(status_code=400, detail="save_dir must be absolute")
        try:
            _transfer_manager.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(
                status_code=400, detail=f"Invalid directory: {e}"
            )
        logger.info(f"Save directory set to {body.save_dir}")
    return {"status": "updated"}
