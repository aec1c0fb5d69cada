"""
mDNS-based LAN discovery service.

Answers queries for our service name with an announcement carrying our id,
name and certificate fingerprint, and keeps a table of peers built from the
announcements of other SecureXfer instances on the same LAN.
"""

import asyncio
import logging
import socket
import struct
import time
from typing import Callable

from securexfer.config import (
    DEVICE_NAME,
    MDNS_ADDRESS,
    MDNS_PORT,
    PEER_TIMEOUT,
    SERVICE_NAME,
)
from securexfer.discovery import mdns
from securexfer.discovery.interfaces import select_address
from securexfer.discovery.models import Identity, PeerRecord
from securexfer.errors import DiscoveryParseError

logger = logging.getLogger(__name__)


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol receiving mDNS queries and responses."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            self.service.handle_packet(data, addr)
        except DiscoveryParseError as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
        except Exception as e:
            # Foreign packets must never take the listener down
            logger.warning(f"Error handling discovery packet from {addr}: {e}")

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class DiscoveryService:
    """Manages LAN device discovery via mDNS multicast."""

    def __init__(
        self,
        identity: Identity,
        service_name: str = SERVICE_NAME,
        hostname: str = DEVICE_NAME,
        peer_timeout: float = PEER_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        address_selector: Callable[[], str] = select_address,
    ) -> None:
        self.identity = identity
        self.service_name = service_name
        self._hostname = hostname
        self._peer_timeout = peer_timeout
        self._clock = clock
        self._select_address = address_selector
        self._peers: dict[str, PeerRecord] = {}
        self._transport: asyncio.DatagramTransport | None = None
        self._on_peer_change: list = []  # callbacks: async def fn(event, peer)

    def on_peer_change(self, callback) -> None:
        """Register a callback for peer discovered/lost events."""
        self._on_peer_change.append(callback)

    def _notify(self, event: str, peer: PeerRecord) -> None:
        for cb in self._on_peer_change:
            asyncio.ensure_future(cb(event, peer))

    async def start(self) -> None:
        """Join the mDNS group and start listening."""
        logger.info(f"Starting discovery on UDP port {MDNS_PORT}")

        loop = asyncio.get_running_loop()

        # Other mDNS responders (avahi, Bonjour) usually own 5353 already,
        # so the port has to be shared
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            except OSError:
                pass
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 255)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
        sock.bind(("", MDNS_PORT))
        membership = struct.pack(
            "4s4s", socket.inet_aton(MDNS_ADDRESS), socket.inet_aton("0.0.0.0")
        )
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
        sock.setblocking(False)

        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self),
            sock=sock,
        )
        self._transport = transport
        logger.info("Discovery service started")

    async def stop(self) -> None:
        """Stop the discovery service."""
        if self._transport:
            self._transport.close()
            self._transport = None
        logger.info("Discovery service stopped")

    def _send(self, packets: list[bytes]) -> None:
        if not self._transport:
            return
        for packet in packets:
            try:
                self._transport.sendto(packet, (MDNS_ADDRESS, MDNS_PORT))
            except OSError as e:
                logger.warning(f"Multicast send failed: {e}")

    def announce(self) -> None:
        """Multicast one response advertising this host."""
        packets = mdns.build_announcement(
            service_name=self.service_name,
            hostname=self._hostname,
            peer_id=self.identity.process_id,
            display_name=self.identity.display_name,
            fingerprint=self.identity.fingerprint,
            ip_address=self._select_address(),
            port=self.identity.listen_port,
        )
        self._send(packets)

    def discover(self) -> None:
        """Multicast one query for the service. Answers arrive asynchronously."""
        self._send(mdns.build_query(self.service_name))

    def handle_packet(self, data: bytes, addr: tuple[str, int] | None = None) -> None:
        """Decode a datagram and dispatch it as a query or a response."""
        msg = mdns.parse_packet(data)
        if msg.is_query():
            self.handle_query(msg)
        elif msg.is_response():
            self.handle_response(msg)

    def handle_query(self, msg) -> None:
        if mdns.asks_for(msg, self.service_name):
            self.announce()

    def handle_response(self, msg) -> None:
        announcement = mdns.parse_announcement(msg, self.service_name)
        if announcement is None:
            return
        # Our own announcements loop back through the multicast group
        if announcement.peer_id == self.identity.process_id:
            return

        self.update_peer(PeerRecord(
            peer_id=announcement.peer_id,
            display_name=announcement.display_name,
            ip_address=announcement.ip_address,
            port=announcement.port,
            fingerprint=announcement.fingerprint,
            last_seen=self._clock(),
        ))

    def update_peer(self, peer: PeerRecord) -> None:
        """Add or update a peer in the registry."""
        # Same address under a new id means the peer process restarted
        for peer_id, existing in list(self._peers.items()):
            if existing.ip_address == peer.ip_address and peer_id != peer.peer_id:
                del self._peers[peer_id]
                logger.info(
                    f"Peer {existing.display_name} ({existing.ip_address}) "
                    f"restarted as {peer.peer_id}"
                )
                self._notify("peer_lost", existing)

        is_new = peer.peer_id not in self._peers
        self._peers[peer.peer_id] = peer

        if is_new:
            logger.info(f"Discovered peer: {peer.display_name} ({peer.ip_address})")
            self._notify("peer_discovered", peer)

    def get_peers(self) -> list[PeerRecord]:
        """Evict stale peers, then return the ones still alive."""
        now = self._clock()
        for peer_id, peer in list(self._peers.items()):
            if now - peer.last_seen > self._peer_timeout:
                del self._peers[peer_id]
                logger.info(f"Peer lost: {peer.display_name} ({peer.ip_address})")
                self._notify("peer_lost", peer)
        return list(self._peers.values())

    def get_peer(self, peer_id: str) -> PeerRecord | None:
        return next((p for p in self.get_peers() if p.peer_id == peer_id), None)
