"""
Transfer Manager — orchestrates outgoing and incoming transfers.

Owns the transfer listener, starts one initiator task per outgoing
transfer, tracks the state of every transfer in both directions and
forwards everything to registered event callbacks.
"""

import asyncio
import logging
import os
import uuid

from securexfer.config import DECISION_TIMEOUT, DEFAULT_SAVE_DIR, LISTEN_HOST
from securexfer.discovery.models import PeerRecord
from securexfer.errors import TransferError
from securexfer.security.identity import IdentityService
from securexfer.transfer.files import collect_files, describe_selection
from securexfer.transfer.initiator import send_files
from securexfer.transfer.listener import TransferListener
from securexfer.transfer.models import (
    StatusPhase,
    TransferDirection,
    TransferInfo,
    TransferRequest,
    TransferState,
    TransferStatus,
)
from securexfer.transfer.progress import progress_percent

logger = logging.getLogger(__name__)


class TransferManager:
    """Manages all active and completed file transfers."""

    def __init__(
        self,
        identity_service: IdentityService,
        save_dir: str = DEFAULT_SAVE_DIR,
        decision_timeout: float = DECISION_TIMEOUT,
    ) -> None:
        self._identity_service = identity_service
        self._decision_timeout = decision_timeout
        self._transfers: dict[str, TransferInfo] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._event_callbacks: list = []  # async fn(event_type, data)
        # bytes of fully received files, per incoming transfer
        self._received_offsets: dict[str, int] = {}
        self._listener = TransferListener(identity_service.credentials, save_dir=save_dir)
        self._listener.on_event(self._on_listener_event)

    @property
    def save_dir(self) -> str:
        return self._listener.save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._listener.save_dir = path

    @property
    def receiver_port(self) -> int:
        return self._listener.port

    @property
    def listener(self) -> TransferListener:
        return self._listener

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def start(self, host: str = LISTEN_HOST, port: int = 0) -> int:
        """Start the receiver listener. Returns its port."""
        return await self._listener.start(host=host, port=port)

    async def stop(self) -> None:
        """Stop all transfers and the receiver listener."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        await self._listener.stop()
        logger.info("Transfer manager stopped")

    def get_transfers(self) -> list[TransferInfo]:
        """Return all transfers."""
        return list(self._transfers.values())

    def get_transfer(self, transfer_id: str) -> TransferInfo | None:
        return self._transfers.get(transfer_id)

    # --- Sending ---

    async def send_files(self, peer: PeerRecord, file_paths: list[str]) -> TransferInfo:
        """
        Start sending the selected files and folders to a peer as one transfer.

        Returns immediately with the new TransferInfo; progress and the
        outcome arrive as events.
        """
        files = await asyncio.to_thread(collect_files, file_paths)
        if not files:
            raise ValueError("No valid files selected")

        info = TransferInfo(
            transfer_id=str(uuid.uuid4()),
            file_name=describe_selection(files),
            file_size=sum(f.size for f in files),
            file_count=len(files),
            direction=TransferDirection.SENDING,
            peer_device_id=peer.peer_id,
            peer_device_name=peer.display_name,
        )
        self._transfers[info.transfer_id] = info

        task = asyncio.create_task(self._send_task(peer, files, info))
        self._tasks[info.transfer_id] = task
        await self._emit("transfer_state", info.model_dump())
        return info

    async def _send_task(self, peer: PeerRecord, files, info: TransferInfo) -> None:
        """Task wrapper for one outgoing transfer."""
        try:
            await send_files(
                peer=peer,
                files=files,
                transfer_info=info,
                progress_callback=self._on_progress,
                state_callback=self._on_state_change,
                sender_name=self._identity_service.display_name,
                decision_timeout=self._decision_timeout,
            )
        except TransferError as e:
            # Already reflected in info.state / info.error_message
            logger.info(f"Transfer {info.transfer_id} ended: {e}")
        except asyncio.CancelledError:
            pass
        finally:
            self._tasks.pop(info.transfer_id, None)

    async def cancel_transfer(self, transfer_id: str) -> bool:
        """Cancel an outgoing transfer that has not finished yet."""
        task = self._tasks.get(transfer_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    # --- Receiving ---

    async def resolve_incoming(self, transfer_id: str, allowed: bool) -> bool:
        """Accept or decline an incoming request. False if it is no longer pending."""
        if not self._listener.resolve_decision(transfer_id, allowed):
            return False
        info = self._transfers.get(transfer_id)
        if info is not None:
            info.advance(TransferState.ACCEPTED if allowed else TransferState.DECLINED)
            await self._on_state_change(info)
        return True

    async def _on_listener_event(self, event_type: str, data: dict) -> None:
        if event_type == "incoming_transfer":
            await self._on_incoming(TransferRequest.model_validate(data))
        elif event_type == "transfer_withdrawn":
            info = self._transfers.get(data["transfer_id"])
            await self._emit("transfer_withdrawn", data)
            if info is not None and info.advance(TransferState.CANCELLED):
                await self._on_state_change(info)
        elif event_type == "transfer_status":
            await self._on_receive_status(TransferStatus.model_validate(data))

    async def _on_incoming(self, request: TransferRequest) -> None:
        if request.transfer_id in self._transfers:
            logger.warning(f"Ignoring request reusing transfer id {request.transfer_id}")
            return
        total = request.total_size if request.total_size is not None else request.file_size
        info = TransferInfo(
            transfer_id=request.transfer_id,
            file_name=request.file_name,
            file_size=total,
            file_count=request.file_count or 1,
            state=TransferState.OPEN,
            direction=TransferDirection.RECEIVING,
            peer_device_id=request.sender_ip,
            peer_device_name=request.sender_name,
        )
        self._transfers[info.transfer_id] = info
        self._received_offsets[info.transfer_id] = 0
        # Emit so the caller can show the acceptance dialog
        await self._emit("transfer_request", request.model_dump())

    async def _on_receive_status(self, status: TransferStatus) -> None:
        await self._emit("transfer_status", status.model_dump())

        info = self._transfers.get(status.transfer_id)
        if info is None or info.direction != TransferDirection.RECEIVING:
            return

        if status.status == StatusPhase.ERROR:
            if info.advance(TransferState.FAILED, status.message):
                await self._on_state_change(info)
            return

        if info.state == TransferState.ACCEPTED:
            info.advance(TransferState.TRANSFERRING)
            await self._on_state_change(info)

        offset = self._received_offsets.get(info.transfer_id, 0)
        info.transferred_bytes = offset + status.bytes_received
        percent = progress_percent(info.transferred_bytes, info.file_size)
        if percent is not None:
            info.progress_percent = float(percent)

        if status.status == StatusPhase.COMPLETED:
            info.files_completed += 1
            self._received_offsets[info.transfer_id] = info.transferred_bytes
            if status.path:
                info.saved_paths.append(status.path)
            if info.files_completed >= info.file_count:
                info.progress_percent = 100.0
                self._received_offsets.pop(info.transfer_id, None)
                if info.advance(TransferState.COMPLETED):
                    await self._on_state_change(info)
                return

        await self._on_progress(info)

    # --- Events ---

    async def _on_progress(self, info: TransferInfo) -> None:
        """Called on progress updates for either direction."""
        await self._emit("transfer_progress", info.model_dump())

    async def _on_state_change(self, info: TransferInfo) -> None:
        """Called on state changes for either direction."""
        await self._emit("transfer_state", info.model_dump())

        # Generate user-facing notifications
        notification = None
        if info.state == TransferState.COMPLETED:
            direction = "sent" if info.direction == TransferDirection.SENDING else "received"
            notification = {
                "type": "success",
                "message": f"'{info.file_name}' {direction} successfully!",
            }
        elif info.state == TransferState.FAILED:
            notification = {
                "type": "error",
                "message": f"Transfer of '{info.file_name}' failed: {info.error_message}",
            }
        elif info.state == TransferState.CANCELLED:
            notification = {
                "type": "info",
                "message": f"Transfer of '{info.file_name}' cancelled.",
            }
        elif info.state == TransferState.DECLINED:
            notification = {
                "type": "warning",
                "message": f"Transfer of '{info.file_name}' was declined.",
            }
        elif info.state == TransferState.TIMED_OUT:
            notification = {
                "type": "warning",
                "message": f"Transfer of '{info.file_name}' timed out: {info.error_message}",
            }

        if notification:
            await self._emit("notification", {**notification, "transfer_id": info.transfer_id})
