"""
Transfer Initiator: asks a peer for permission and streams files to it.

Every connection to the peer is pinned to the certificate fingerprint the
peer advertised in discovery. A mismatch raises TrustError before the
request (or any file data) is written.
"""

import asyncio
import logging
import mimetypes
import time

import aiohttp

from securexfer.config import CHUNK_SIZE, DECISION_TIMEOUT, DEVICE_NAME
from securexfer.discovery.models import PeerRecord
from securexfer.errors import DecisionTimeoutError, TransferError, TransferIOError, TrustError
from securexfer.security.trust import pinned_ssl
from securexfer.transfer.files import describe_selection
from securexfer.transfer.models import (
    ControlEvent,
    LocalFile,
    TransferInfo,
    TransferRequest,
    TransferState,
)
from securexfer.transfer.progress import SpeedTracker, progress_percent

logger = logging.getLogger(__name__)


def build_request(
    transfer_id: str, sender_name: str, files: list[LocalFile]
) -> TransferRequest:
    total = sum(f.size for f in files)
    file_type = ""
    if len(files) == 1:
        file_type = mimetypes.guess_type(files[0].name)[0] or ""
    return TransferRequest(
        transfer_id=transfer_id,
        sender_name=sender_name,
        file_name=describe_selection(files),
        file_size=total,
        file_type=file_type,
        file_count=len(files),
        total_size=total,
    )


async def _connect(
    session: aiohttp.ClientSession, peer: PeerRecord, ssl, transfer_id: str
) -> aiohttp.ClientWebSocketResponse:
    url = f"wss://{peer.ip_address}:{peer.port}/ws"
    try:
        return await session.ws_connect(url, ssl=ssl)
    except aiohttp.ServerFingerprintMismatch as e:
        raise TrustError(
            f"Certificate of {peer.display_name} ({peer.ip_address}) does not "
            f"match its advertised fingerprint",
            transfer_id,
        ) from e
    except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
        raise TransferIOError(
            f"Could not connect to {peer.display_name}: {e}", transfer_id
        ) from e


async def _await_decision(
    ws: aiohttp.ClientWebSocketResponse, transfer_id: str
) -> bool:
    """Read control messages until the decision for transfer_id arrives."""
    async for msg in ws:
        if msg.type != aiohttp.WSMsgType.TEXT:
            continue
        try:
            payload = msg.json()
        except ValueError:
            continue
        if not isinstance(payload, dict):
            continue
        data = payload.get("data")
        if (
            payload.get("event") == ControlEvent.TRANSFER_DECISION
            and isinstance(data, dict)
            and data.get("id") == transfer_id
        ):
            return bool(data.get("allowed"))
    raise TransferIOError(
        "Connection closed before the recipient decided", transfer_id
    )


async def _send_cancel(ws: aiohttp.ClientWebSocketResponse, transfer_id: str) -> None:
    try:
        await ws.send_json({
            "event": ControlEvent.CANCEL_TRANSFER,
            "data": {"id": transfer_id},
        })
    except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
        logger.debug(f"Could not send cancel for {transfer_id}: {e}")


async def _read_chunks(path: str, chunk_size: int, on_chunk):
    f = await asyncio.to_thread(open, path, "rb")
    try:
        while True:
            chunk = await asyncio.to_thread(f.read, chunk_size)
            if not chunk:
                break
            yield chunk
            await on_chunk(len(chunk))
    finally:
        await asyncio.to_thread(f.close)


async def _upload_all(
    session: aiohttp.ClientSession,
    peer: PeerRecord,
    ssl,
    files: list[LocalFile],
    transfer_info: TransferInfo,
    progress_callback,
    chunk_size: int,
) -> None:
    """Upload files one after another. The first failure stops the queue."""
    url = f"https://{peer.ip_address}:{peer.port}/upload"
    tracker = SpeedTracker()
    last_percent = -1

    async def on_chunk(byte_count: int) -> None:
        nonlocal last_percent
        transfer_info.transferred_bytes += byte_count
        tracker.record(byte_count)
        percent = progress_percent(
            transfer_info.transferred_bytes, transfer_info.file_size
        )
        if percent is None or percent == last_percent:
            return
        last_percent = percent
        transfer_info.progress_percent = float(percent)
        transfer_info.speed_bps = tracker.get_speed()
        transfer_info.eta_seconds = tracker.eta(
            transfer_info.file_size - transfer_info.transferred_bytes
        )
        await progress_callback(transfer_info)

    for local_file in files:
        logger.info(f"Uploading {local_file.relative_path} to {peer.display_name}")
        params = {
            "filename": local_file.relative_path,
            "id": transfer_info.transfer_id,
            "size": str(local_file.size),
        }
        try:
            async with session.post(
                url,
                params=params,
                data=_read_chunks(local_file.path, chunk_size, on_chunk),
                headers={"Content-Type": "application/octet-stream"},
                ssl=ssl,
            ) as resp:
                if resp.status != 200:
                    detail = await resp.text()
                    raise TransferIOError(
                        f"Upload of {local_file.name} failed "
                        f"({resp.status}): {detail}",
                        transfer_info.transfer_id,
                    )
        except aiohttp.ServerFingerprintMismatch as e:
            raise TrustError(
                f"Certificate of {peer.display_name} changed during the transfer",
                transfer_info.transfer_id,
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransferIOError(
                f"Upload of {local_file.name} failed: {e}",
                transfer_info.transfer_id,
            ) from e
        transfer_info.files_completed += 1


async def send_files(
    peer: PeerRecord,
    files: list[LocalFile],
    transfer_info: TransferInfo,
    progress_callback,
    state_callback,
    sender_name: str = DEVICE_NAME,
    decision_timeout: float = DECISION_TIMEOUT,
    chunk_size: int = CHUNK_SIZE,
) -> TransferInfo:
    """
    Send a set of files to a peer as one transfer.

    Args:
        peer: Discovery record of the receiver, including its fingerprint.
        files: Files to upload, in order.
        transfer_info: TransferInfo object (mutated in-place for progress).
        progress_callback: async fn(transfer_info) called on progress.
        state_callback: async fn(transfer_info) called on state change.

    Returns the TransferInfo in its final state when the transfer completed
    or was declined.

    Raises:
        TrustError: the peer's certificate does not match ``peer.fingerprint``.
        DecisionTimeoutError: no decision within ``decision_timeout`` seconds.
        TransferIOError: the connection or an upload failed.
    """
    transfer_id = transfer_info.transfer_id

    async def set_state(state: TransferState, error: str | None = None) -> None:
        if transfer_info.advance(state, error):
            await state_callback(transfer_info)

    request = build_request(transfer_id, sender_name, files)
    start_time = time.monotonic()

    try:
        ssl = pinned_ssl(peer.fingerprint)
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=10)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            await set_state(TransferState.CONNECTING)
            ws = await _connect(session, peer, ssl, transfer_id)

            async with ws:
                await ws.send_json({
                    "event": ControlEvent.REQUEST_TRANSFER,
                    "data": request.to_wire(),
                })
                await set_state(TransferState.OPEN)
                logger.info(f"Waiting for {peer.display_name} to accept {transfer_id}")

                try:
                    allowed = await asyncio.wait_for(
                        _await_decision(ws, transfer_id), timeout=decision_timeout
                    )
                except asyncio.TimeoutError:
                    message = "Recipient did not respond."
                    await set_state(TransferState.TIMED_OUT, message)
                    await _send_cancel(ws, transfer_id)
                    raise DecisionTimeoutError(message, transfer_id)
                except asyncio.CancelledError:
                    await _send_cancel(ws, transfer_id)
                    raise

                if not allowed:
                    logger.info(f"Transfer {transfer_id} denied by {peer.display_name}")
                    await set_state(TransferState.DECLINED)
                    return transfer_info

                await set_state(TransferState.ACCEPTED)
                await set_state(TransferState.TRANSFERRING)
                await _upload_all(
                    session, peer, ssl, files, transfer_info,
                    progress_callback, chunk_size,
                )

        duration = time.monotonic() - start_time
        logger.info(f"Transfer {transfer_id} sent in {duration:.1f}s")
        transfer_info.progress_percent = 100.0
        transfer_info.speed_bps = 0
        transfer_info.eta_seconds = 0
        await set_state(TransferState.COMPLETED)
        return transfer_info

    except asyncio.CancelledError:
        await set_state(TransferState.CANCELLED)
        raise
    except TransferError as e:
        e.transfer_id = e.transfer_id or transfer_id
        logger.error(f"Send error for {transfer_id}: {e}")
        # No-op when the state is already terminal (e.g. TIMED_OUT)
        await set_state(TransferState.FAILED, str(e))
        raise
