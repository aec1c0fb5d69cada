"""
Transfer Listener: the TLS endpoint peers send files to.

A small FastAPI app served by an embedded uvicorn server on an ephemeral
port, using this process's self-signed certificate. Two routes:

- ``/ws``: control channel. Carries ``request-transfer``, ``cancel-transfer``
  and the ``transfer-decision`` answer as JSON ``{"event", "data"}`` messages.
- ``/upload``: one streamed POST per file, accepted only for transfers the
  user approved on a control connection that is still open.

Client certificates are not requested. Trust is established by the sender,
which pins our certificate fingerprint.
"""

import asyncio
import contextlib
import json
import logging
import os
import shutil
import socket
import tempfile
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.requests import ClientDisconnect

from securexfer.config import DEFAULT_SAVE_DIR, LISTEN_HOST
from securexfer.errors import TransferIOError
from securexfer.security.identity import Credentials
from securexfer.transfer.decisions import DecisionArbitrator
from securexfer.transfer.files import resolve_save_path
from securexfer.transfer.models import (
    ControlEvent,
    StatusPhase,
    TransferRequest,
    TransferStatus,
)
from securexfer.transfer.progress import progress_percent

logger = logging.getLogger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class TransferListener:
    """Accepts transfer requests and receives approved uploads."""

    def __init__(
        self,
        credentials: Credentials,
        save_dir: str = DEFAULT_SAVE_DIR,
        arbitrator: DecisionArbitrator | None = None,
    ) -> None:
        self._credentials = credentials
        self.save_dir = save_dir
        self.arbitrator = arbitrator or DecisionArbitrator()
        self._accepted: set[str] = set()
        # every transfer id ever requested; ids are single-use
        self._seen: set[str] = set()
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._server: _EmbeddedServer | None = None
        self._serve_task: asyncio.Task | None = None
        self._port = 0
        self.app = self._build_app()

    @property
    def port(self) -> int:
        return self._port

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _build_app(self) -> FastAPI:
        app = FastAPI(
            title="SecureXfer listener",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )
        app.add_api_websocket_route("/ws", self._control_channel)
        app.add_api_route("/upload", self._upload, methods=["POST"])
        return app

    # --- Lifecycle ---

    async def start(self, host: str = LISTEN_HOST, port: int = 0) -> int:
        """Bind and start serving. Returns the bound port."""
        cert_dir = Path(tempfile.mkdtemp(prefix="securexfer-"))
        try:
            key_path = cert_dir / "key.pem"
            cert_path = cert_dir / "cert.pem"
            key_path.write_bytes(self._credentials.key_pem)
            os.chmod(key_path, 0o600)
            cert_path.write_bytes(self._credentials.cert_pem)

            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            self._port = sock.getsockname()[1]

            config = uvicorn.Config(
                self.app,
                ssl_keyfile=str(key_path),
                ssl_certfile=str(cert_path),
                lifespan="off",
                log_config=None,
                access_log=False,
                # Senders do not read the control socket while uploading
                ws_ping_interval=None,
                timeout_graceful_shutdown=5,
            )
            self._server = _EmbeddedServer(config)
            self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))

            while not self._server.started:
                if self._serve_task.done():
                    self._serve_task.result()
                    raise RuntimeError("Transfer listener stopped during startup")
                await asyncio.sleep(0.02)
        finally:
            # The TLS context is loaded by now, the PEM files are not needed
            shutil.rmtree(cert_dir, ignore_errors=True)

        logger.info(f"Transfer listener on {host}:{self._port}")
        return self._port

    async def stop(self) -> None:
        if self._server:
            self._server.should_exit = True
        if self._serve_task:
            await self._serve_task
            self._serve_task = None
        logger.info("Transfer listener stopped")

    # --- Decisions ---

    def resolve_decision(self, transfer_id: str, allowed: bool) -> bool:
        """
        Answer a pending request. The outcome is sent back over the
        connection the request arrived on. Unknown or already settled ids
        are ignored and return False.
        """
        return self.arbitrator.resolve(transfer_id, allowed)

    def is_pending(self, transfer_id: str) -> bool:
        return transfer_id in self.arbitrator

    async def _withdraw(self, transfer_id: str) -> None:
        if self.arbitrator.discard(transfer_id):
            await self._emit("transfer_withdrawn", {"transfer_id": transfer_id})

    async def _relay_decision(
        self, websocket: WebSocket, transfer_id: str, future: asyncio.Future
    ) -> None:
        try:
            allowed = await future
        except asyncio.CancelledError:
            return

        if allowed:
            self._accepted.add(transfer_id)
        try:
            await websocket.send_json({
                "event": ControlEvent.TRANSFER_DECISION,
                "data": {"id": transfer_id, "allowed": allowed},
            })
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._accepted.discard(transfer_id)
            logger.warning(f"Could not deliver decision for {transfer_id}: {e}")

    # --- Control channel ---

    async def _control_channel(self, websocket: WebSocket) -> None:
        await websocket.accept()
        peer_ip = websocket.client.host if websocket.client else ""
        opened: set[str] = set()
        relays: set[asyncio.Task] = set()

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break

                try:
                    payload = json.loads(message.get("text") or "")
                    event = payload["event"]
                    data = payload.get("data") or {}
                    if not isinstance(data, dict):
                        raise TypeError("data is not an object")
                except (ValueError, KeyError, TypeError, AttributeError) as e:
                    logger.debug(f"Ignoring malformed control message from {peer_ip}: {e}")
                    continue

                if event == ControlEvent.REQUEST_TRANSFER:
                    await self._on_request(websocket, data, peer_ip, opened, relays)
                elif event == ControlEvent.CANCEL_TRANSFER:
                    transfer_id = data.get("id")
                    # Only the connection that opened a request may withdraw it
                    if transfer_id in opened:
                        logger.info(f"Transfer {transfer_id} cancelled by sender")
                        await self._withdraw(transfer_id)
                else:
                    logger.debug(f"Unknown control event {event!r} from {peer_ip}")
        except WebSocketDisconnect:
            pass
        finally:
            for transfer_id in opened:
                self._accepted.discard(transfer_id)
                await self._withdraw(transfer_id)
            for task in relays:
                task.cancel()
            logger.debug(f"Control connection from {peer_ip} closed")

    async def _on_request(
        self,
        websocket: WebSocket,
        data: dict,
        peer_ip: str,
        opened: set[str],
        relays: set[asyncio.Task],
    ) -> None:
        try:
            request = TransferRequest.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Invalid transfer request from {peer_ip}: {e}")
            return
        request = request.model_copy(update={"sender_ip": peer_ip})

        if request.transfer_id in self._seen:
            logger.warning(
                f"Ignoring repeated request for transfer {request.transfer_id} from {peer_ip}"
            )
            return
        future = self.arbitrator.open(request.transfer_id)
        if future is None:
            return
        self._seen.add(request.transfer_id)
        opened.add(request.transfer_id)

        task = asyncio.create_task(
            self._relay_decision(websocket, request.transfer_id, future)
        )
        relays.add(task)
        task.add_done_callback(relays.discard)

        logger.info(
            f"Transfer request {request.transfer_id} from "
            f"{request.sender_name} ({peer_ip}): {request.file_name}"
        )
        await self._emit("incoming_transfer", request.model_dump())

    # --- Upload ---

    async def _emit_status(self, status: TransferStatus) -> None:
        await self._emit("transfer_status", status.model_dump())

    async def _upload(
        self,
        request: Request,
        filename: str = Query(...),
        transfer_id: str = Query(..., alias="id"),
        size: int = Query(0, ge=0),
    ):
        if transfer_id not in self._accepted:
            logger.warning(f"Rejected upload for unapproved transfer {transfer_id}")
            return JSONResponse({"error": "Transfer not approved"}, status_code=403)

        try:
            save_path = resolve_save_path(self.save_dir, filename)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        logger.info(f"Incoming upload {filename} ({size} bytes) for {transfer_id}")
        try:
            received = await self._write_stream(request, save_path, transfer_id, size)
        except TransferIOError as e:
            # Partial data stays on disk
            logger.error(f"Upload of {filename} failed: {e}")
            await self._emit_status(TransferStatus(
                transfer_id=transfer_id,
                status=StatusPhase.ERROR,
                message=str(e),
            ))
            return JSONResponse({"error": str(e)}, status_code=500)

        logger.info(f"Successfully saved file to: {save_path}")
        await self._emit_status(TransferStatus(
            transfer_id=transfer_id,
            status=StatusPhase.COMPLETED,
            progress=100,
            path=str(save_path),
            bytes_received=received,
        ))
        return {"message": "Success"}

    async def _write_stream(
        self, request: Request, save_path: Path, transfer_id: str, size: int
    ) -> int:
        """Copy the request body to save_path, emitting progress per chunk."""
        received = 0
        last_percent: int | None = -1
        try:
            await asyncio.to_thread(save_path.parent.mkdir, parents=True, exist_ok=True)
            f = await asyncio.to_thread(open, save_path, "wb")
            try:
                async for chunk in request.stream():
                    if not chunk:
                        continue
                    await asyncio.to_thread(f.write, chunk)
                    received += len(chunk)

                    percent = progress_percent(received, size)
                    if percent is None or percent != last_percent:
                        last_percent = percent
                        await self._emit_status(TransferStatus(
                            transfer_id=transfer_id,
                            status=StatusPhase.PROGRESS,
                            progress=percent,
                            bytes_received=received,
                        ))
            finally:
                await asyncio.to_thread(f.close)
        except OSError as e:
            raise TransferIOError(f"Cannot write {save_path.name}: {e}", transfer_id) from e
        except ClientDisconnect as e:
            raise TransferIOError("Sender disconnected mid-upload", transfer_id) from e
        return received
