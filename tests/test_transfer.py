"""End-to-end transfers between the initiator and a real TLS listener."""

import asyncio
import os

import aiohttp
import pytest

from securexfer.errors import DecisionTimeoutError, TransferIOError, TrustError
from securexfer.security.trust import pinned_ssl
from securexfer.transfer.files import collect_files
from securexfer.transfer.initiator import send_files
from securexfer.transfer.models import (
    TransferDirection,
    TransferInfo,
    TransferState,
)

from conftest import wait_until


def new_info(files, transfer_id="t-1") -> TransferInfo:
    return TransferInfo(
        transfer_id=transfer_id,
        file_name=files[0].name if len(files) == 1 else f"{len(files)} items",
        file_size=sum(f.size for f in files),
        file_count=len(files),
        direction=TransferDirection.SENDING,
        peer_device_id="receiver-1",
        peer_device_name="receiver",
    )


class SenderLog:
    def __init__(self):
        self.progress: list[float] = []
        self.states: list[TransferState] = []

    async def on_progress(self, info):
        self.progress.append(info.progress_percent)

    async def on_state(self, info):
        self.states.append(info.state)


def start_send(peer, files, info, log, **kwargs) -> asyncio.Task:
    return asyncio.create_task(send_files(
        peer, files, info, log.on_progress, log.on_state, sender_name="sender", **kwargs
    ))


async def incoming(recorder) -> dict:
    await wait_until(lambda: recorder.of("incoming_transfer"))
    return recorder.of("incoming_transfer")[0]


async def test_accepted_transfer_writes_file(listener, recorder, peer, tmp_path):
    payload = os.urandom(1000)
    src = tmp_path / "hello.bin"
    src.write_bytes(payload)
    files = collect_files([str(src)])
    info = new_info(files)
    log = SenderLog()

    task = start_send(peer, files, info, log, chunk_size=256)
    request = await incoming(recorder)
    assert request["transfer_id"] == "t-1"
    assert request["sender_name"] == "sender"
    assert request["file_name"] == "hello.bin"
    assert request["file_size"] == 1000
    assert request["sender_ip"] == "127.0.0.1"
    assert listener.is_pending("t-1")

    assert listener.resolve_decision("t-1", True)
    result = await asyncio.wait_for(task, 10)

    assert result.is_completed
    assert result.progress_percent == 100
    assert log.states == [
        TransferState.CONNECTING,
        TransferState.OPEN,
        TransferState.ACCEPTED,
        TransferState.TRANSFERRING,
        TransferState.COMPLETED,
    ]
    assert log.progress == sorted(log.progress)

    saved = tmp_path / "inbox" / "hello.bin"
    assert saved.read_bytes() == payload

    statuses = recorder.of("transfer_status")
    final = statuses[-1]
    assert final["status"] == "completed"
    assert final["progress"] == 100
    assert final["path"] == str(saved.resolve())
    progress = [s["progress"] for s in statuses[:-1]]
    assert progress == sorted(progress)
    assert all(0 <= p <= 100 for p in progress)


async def test_declined_transfer_sends_nothing(listener, recorder, peer, tmp_path):
    src = tmp_path / "secret.txt"
    src.write_text("nope")
    files = collect_files([str(src)])
    info = new_info(files)
    log = SenderLog()

    task = start_send(peer, files, info, log)
    await incoming(recorder)
    listener.resolve_decision("t-1", False)
    result = await asyncio.wait_for(task, 10)

    assert result.state == TransferState.DECLINED
    assert not (tmp_path / "inbox" / "secret.txt").exists()
    assert recorder.of("transfer_status") == []


async def test_decision_timeout(listener, recorder, peer, tmp_path):
    src = tmp_path / "slow.txt"
    src.write_text("waiting")
    files = collect_files([str(src)])
    info = new_info(files)
    log = SenderLog()

    with pytest.raises(DecisionTimeoutError) as excinfo:
        await send_files(
            peer, files, info, log.on_progress, log.on_state, decision_timeout=0.3
        )

    assert isinstance(excinfo.value, TimeoutError)
    assert excinfo.value.transfer_id == "t-1"
    assert info.state == TransferState.TIMED_OUT
    assert info.error_message == "Recipient did not respond."

    await wait_until(lambda: recorder.of("transfer_withdrawn"))
    assert not listener.is_pending("t-1")
    assert recorder.of("transfer_withdrawn") == [{"transfer_id": "t-1"}]
    assert not listener.resolve_decision("t-1", True)


async def test_fingerprint_mismatch_aborts_before_request(listener, recorder, peer, tmp_path):
    src = tmp_path / "a.txt"
    src.write_text("data")
    files = collect_files([str(src)])
    info = new_info(files)
    log = SenderLog()
    impostor = peer.model_copy(update={"fingerprint": "00" * 32})

    with pytest.raises(TrustError):
        await send_files(impostor, files, info, log.on_progress, log.on_state)

    assert info.state == TransferState.FAILED
    assert info.error_message
    await asyncio.sleep(0.1)
    assert recorder.of("incoming_transfer") == []
    assert len(listener.arbitrator) == 0


async def test_malformed_fingerprint_fails_without_connecting(recorder, peer, tmp_path):
    src = tmp_path / "a.txt"
    src.write_text("data")
    files = collect_files([str(src)])
    info = new_info(files)
    log = SenderLog()

    with pytest.raises(TrustError):
        await send_files(
            peer.model_copy(update={"fingerprint": "xyz"}),
            files, info, log.on_progress, log.on_state,
        )
    assert log.states == [TransferState.FAILED]


async def test_unreachable_peer_fails(peer, tmp_path):
    src = tmp_path / "a.txt"
    src.write_text("data")
    files = collect_files([str(src)])
    info = new_info(files)
    log = SenderLog()

    # Nothing listens on port 1
    with pytest.raises(TransferIOError):
        await send_files(
            peer.model_copy(update={"port": 1}),
            files, info, log.on_progress, log.on_state,
        )
    assert info.state == TransferState.FAILED


async def test_disconnect_withdraws_pending_request(listener, recorder, peer):
    request = {
        "event": "request-transfer",
        "data": {"id": "t-9", "senderName": "x", "fileName": "f", "fileSize": 1},
    }
    async with aiohttp.ClientSession() as session:
        async with session.ws_connect(
            f"wss://127.0.0.1:{peer.port}/ws", ssl=pinned_ssl(peer.fingerprint)
        ) as ws:
            await ws.send_json(request)
            await incoming(recorder)
            assert listener.is_pending("t-9")

    await wait_until(lambda: recorder.of("transfer_withdrawn"))
    assert not listener.is_pending("t-9")
    assert not listener.resolve_decision("t-9", True)


async def test_cancel_from_sender_withdraws(listener, recorder, peer):
    async with aiohttp.ClientSession() as session:
        async with session.ws_connect(
            f"wss://127.0.0.1:{peer.port}/ws", ssl=pinned_ssl(peer.fingerprint)
        ) as ws:
            await ws.send_json({
                "event": "request-transfer",
                "data": {"id": "t-5", "senderName": "x", "fileName": "f", "fileSize": 1},
            })
            await incoming(recorder)
            await ws.send_json({"event": "cancel-transfer", "data": {"id": "t-5"}})
            await wait_until(lambda: recorder.of("transfer_withdrawn"))
            assert not listener.is_pending("t-5")


async def test_malformed_control_messages_are_ignored(listener, recorder, peer):
    async with aiohttp.ClientSession() as session:
        async with session.ws_connect(
            f"wss://127.0.0.1:{peer.port}/ws", ssl=pinned_ssl(peer.fingerprint)
        ) as ws:
            await ws.send_str("not json")
            await ws.send_json({"event": "request-transfer", "data": {"id": ""}})
            await ws.send_json({"event": "request-transfer", "data": [1, 2]})
            await ws.send_json({
                "event": "request-transfer",
                "data": {"id": "ok", "senderName": "x", "fileName": "f", "fileSize": 1},
            })
            request = await incoming(recorder)

    assert request["transfer_id"] == "ok"
    assert len(recorder.of("incoming_transfer")) == 1


async def test_folder_transfer_recreates_tree(listener, recorder, peer, tmp_path):
    root = tmp_path / "album"
    (root / "raw").mkdir(parents=True)
    (root / "cover.jpg").write_bytes(b"c" * 300)
    (root / "raw" / "img1.dng").write_bytes(b"r" * 700)
    files = collect_files([str(root)])
    info = new_info(files)
    log = SenderLog()

    task = start_send(peer, files, info, log, chunk_size=128)
    request = await incoming(recorder)
    assert request["file_count"] == 2
    assert request["total_size"] == 1000
    listener.resolve_decision("t-1", True)
    result = await asyncio.wait_for(task, 10)

    assert result.is_completed
    assert result.files_completed == 2
    inbox = tmp_path / "inbox"
    assert (inbox / "album" / "cover.jpg").read_bytes() == b"c" * 300
    assert (inbox / "album" / "raw" / "img1.dng").read_bytes() == b"r" * 700
    assert log.progress == sorted(log.progress)


async def test_write_failure_fails_transfer(listener, recorder, peer, tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    listener.save_dir = str(blocker)

    src = tmp_path / "a.txt"
    src.write_text("data")
    files = collect_files([str(src)])
    info = new_info(files)
    log = SenderLog()

    task = start_send(peer, files, info, log)
    await incoming(recorder)
    listener.resolve_decision("t-1", True)

    with pytest.raises(TransferIOError):
        await asyncio.wait_for(task, 10)
    assert info.state == TransferState.FAILED
    errors = [s for s in recorder.of("transfer_status") if s["status"] == "error"]
    assert errors and errors[0]["transfer_id"] == "t-1"


async def test_upload_requires_accepted_transfer(listener, peer):
    async with aiohttp.ClientSession() as session:
        async with session.post(
            f"https://127.0.0.1:{peer.port}/upload",
            params={"filename": "x.txt", "id": "never-asked", "size": "4"},
            data=b"evil",
            ssl=pinned_ssl(peer.fingerprint),
        ) as resp:
            assert resp.status == 403


async def test_upload_rejects_path_escape(listener, recorder, peer, tmp_path):
    ssl = pinned_ssl(peer.fingerprint)
    async with aiohttp.ClientSession() as session:
        async with session.ws_connect(f"wss://127.0.0.1:{peer.port}/ws", ssl=ssl) as ws:
            await ws.send_json({
                "event": "request-transfer",
                "data": {"id": "t-7", "senderName": "x", "fileName": "f", "fileSize": 4},
            })
            await incoming(recorder)
            listener.resolve_decision("t-7", True)
            decision = await ws.receive_json(timeout=5)
            assert decision == {
                "event": "transfer-decision",
                "data": {"id": "t-7", "allowed": True},
            }

            async with session.post(
                f"https://127.0.0.1:{peer.port}/upload",
                params={"filename": "../escape.txt", "id": "t-7", "size": "4"},
                data=b"evil",
                ssl=ssl,
            ) as resp:
                assert resp.status == 400

    assert not (tmp_path / "escape.txt").exists()


async def test_reused_transfer_id_is_refused(listener, recorder, peer, tmp_path):
    ssl = pinned_ssl(peer.fingerprint)
    request = {
        "event": "request-transfer",
        "data": {"id": "t-1", "senderName": "x", "fileName": "a.txt", "fileSize": 4},
    }
    async with aiohttp.ClientSession() as session:
        async with session.ws_connect(f"wss://127.0.0.1:{peer.port}/ws", ssl=ssl) as owner:
            await owner.send_json(request)
            await incoming(recorder)
            listener.resolve_decision("t-1", True)
            decision = await owner.receive_json(timeout=5)
            assert decision["data"] == {"id": "t-1", "allowed": True}

            async with session.ws_connect(
                f"wss://127.0.0.1:{peer.port}/ws", ssl=ssl
            ) as intruder:
                await intruder.send_json(request)
                await intruder.send_json(
                    {"event": "cancel-transfer", "data": {"id": "t-1"}}
                )
            await asyncio.sleep(0.2)

            assert len(recorder.of("incoming_transfer")) == 1
            assert recorder.of("transfer_withdrawn") == []
            assert not listener.is_pending("t-1")

            async with session.post(
                f"https://127.0.0.1:{peer.port}/upload",
                params={"filename": "a.txt", "id": "t-1", "size": "4"},
                data=b"data",
                ssl=ssl,
            ) as resp:
                assert resp.status == 200

    assert (tmp_path / "inbox" / "a.txt").read_bytes() == b"data"


async def test_upload_without_size_reports_unknown_progress(listener, recorder, peer, tmp_path):
    ssl = pinned_ssl(peer.fingerprint)
    async with aiohttp.ClientSession() as session:
        async with session.ws_connect(f"wss://127.0.0.1:{peer.port}/ws", ssl=ssl) as ws:
            await ws.send_json({
                "event": "request-transfer",
                "data": {"id": "t-8", "senderName": "x", "fileName": "n.bin", "fileSize": 0},
            })
            await incoming(recorder)
            listener.resolve_decision("t-8", True)
            await ws.receive_json(timeout=5)

            async with session.post(
                f"https://127.0.0.1:{peer.port}/upload",
                params={"filename": "n.bin", "id": "t-8"},
                data=b"z" * 300,
                ssl=ssl,
            ) as resp:
                assert resp.status == 200

    statuses = recorder.of("transfer_status")
    progress = [s for s in statuses if s["status"] == "progress"]
    assert progress
    assert all(s["progress"] is None for s in progress)
    assert progress[-1]["bytes_received"] == 300
    assert statuses[-1]["status"] == "completed"
    assert statuses[-1]["progress"] == 100
    assert (tmp_path / "inbox" / "n.bin").read_bytes() == b"z" * 300
