import asyncio

import pytest

from securexfer.discovery.models import PeerRecord
from securexfer.security.identity import initialize_identity
from securexfer.transfer.listener import TransferListener


class EventRecorder:
    """Async event callback that keeps everything it is given."""

    def __init__(self):
        self.events: list[tuple[str, object]] = []

    async def __call__(self, event_type, data):
        self.events.append((event_type, data))

    def of(self, event_type: str) -> list:
        return [data for name, data in self.events if name == event_type]


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture(scope="session")
def credentials():
    return initialize_identity()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
async def listener(credentials, tmp_path, recorder):
    listener = TransferListener(credentials, save_dir=str(tmp_path / "inbox"))
    listener.on_event(recorder)
    await listener.start(host="127.0.0.1")
    yield listener
    await listener.stop()


@pytest.fixture
def peer(listener, credentials):
    """Discovery record pointing at the running listener."""
    return PeerRecord(
        peer_id="receiver-1",
        display_name="receiver",
        ip_address="127.0.0.1",
        port=listener.port,
        fingerprint=credentials.fingerprint,
        last_seen=0.0,
    )
