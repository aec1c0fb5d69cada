"""
mDNS packet encoding/decoding for the discovery service.

Uses zeroconf's wire codec (``DNSOutgoing``/``DNSIncoming``) directly rather
than its service browser, so the records we publish and accept stay under
our control.
"""

import socket

from zeroconf import (
    DNSAddress,
    DNSIncoming,
    DNSOutgoing,
    DNSPointer,
    DNSQuestion,
    DNSService,
    DNSText,
)

from securexfer.config import RECORD_TTL
from securexfer.discovery.models import Announcement
from securexfer.errors import DiscoveryParseError

# DNS record types and flags (RFC 1035 / RFC 6762)
TYPE_A = 1
TYPE_PTR = 12
TYPE_TXT = 16
TYPE_SRV = 33
CLASS_IN = 1
FLAGS_QUERY = 0x0000
FLAGS_RESPONSE = 0x8400  # QR + AA

TXT_KEYS = ("id", "name", "fp")


def encode_txt(tokens: list[str]) -> bytes:
    """Length-prefix each ASCII token as DNS character-strings."""
    out = bytearray()
    for token in tokens:
        data = token.encode("ascii")
        if len(data) > 255:
            raise ValueError(f"TXT token too long: {token[:20]}...")
        out.append(len(data))
        out += data
    return bytes(out)


def decode_txt(data: bytes) -> dict[str, str]:
    """Parse DNS character-strings of the form ``key=value``."""
    values: dict[str, str] = {}
    offset = 0
    while offset < len(data):
        length = data[offset]
        chunk = data[offset + 1:offset + 1 + length]
        if len(chunk) != length:
            raise DiscoveryParseError("Truncated TXT record")
        offset += 1 + length
        key, sep, value = chunk.decode("ascii", errors="replace").partition("=")
        if sep:
            values.setdefault(key, value)
    return values


def build_query(service_name: str) -> list[bytes]:
    """One PTR question for the service."""
    out = DNSOutgoing(FLAGS_QUERY, multicast=True)
    out.add_question(DNSQuestion(service_name, TYPE_PTR, CLASS_IN))
    return out.packets()


def build_announcement(
    service_name: str,
    hostname: str,
    peer_id: str,
    display_name: str,
    fingerprint: str,
    ip_address: str,
    port: int,
    ttl: int = RECORD_TTL,
) -> list[bytes]:
    """PTR answer plus SRV, TXT and A additionals describing this host."""
    instance = f"{hostname}.{service_name}"
    target = f"{hostname}.local."

    out = DNSOutgoing(FLAGS_RESPONSE, multicast=True)
    out.add_answer_at_time(
        DNSPointer(service_name, TYPE_PTR, CLASS_IN, ttl, instance), 0
    )
    out.add_additional_answer(
        DNSService(instance, TYPE_SRV, CLASS_IN, ttl, 0, 0, port, target)
    )
    out.add_additional_answer(
        DNSText(
            instance,
            TYPE_TXT,
            CLASS_IN,
            ttl,
            encode_txt([
                f"id={peer_id}",
                f"name={display_name}",
                f"fp={fingerprint}",
            ]),
        )
    )
    out.add_additional_answer(
        DNSAddress(target, TYPE_A, CLASS_IN, ttl, socket.inet_aton(ip_address))
    )
    return out.packets()


def parse_packet(data: bytes) -> DNSIncoming:
    """Decode a raw datagram, raising DiscoveryParseError if it is not DNS."""
    try:
        msg = DNSIncoming(data)
    except Exception as e:
        raise DiscoveryParseError(f"Undecodable packet: {e}") from e
    if not msg.valid:
        raise DiscoveryParseError("Invalid DNS packet")
    return msg


def asks_for(msg: DNSIncoming, service_name: str) -> bool:
    """True if any question in the query names the service."""
    wanted = service_name.lower()
    return any(q.name.lower() == wanted for q in msg.questions)


def parse_announcement(msg: DNSIncoming, service_name: str) -> Announcement | None:
    """
    Extract a peer announcement from a response.

    Returns None unless the response carries a PTR for the service plus TXT,
    SRV and A records, and the TXT has all of id, name and fp.
    """
    records = msg.answers()
    wanted = service_name.lower()

    ptr = next(
        (r for r in records if r.type == TYPE_PTR and r.name.lower() == wanted),
        None,
    )
    if ptr is None:
        return None

    txt = next((r for r in records if r.type == TYPE_TXT), None)
    srv = next((r for r in records if r.type == TYPE_SRV), None)
    a_record = next((r for r in records if r.type == TYPE_A), None)
    if txt is None or srv is None or a_record is None:
        return None

    values = decode_txt(txt.text)
    if any(not values.get(key) for key in TXT_KEYS):
        return None

    try:
        ip_address = socket.inet_ntoa(a_record.address)
    except OSError as e:
        raise DiscoveryParseError(f"Bad A record: {e}") from e

    return Announcement(
        peer_id=values["id"],
        display_name=values["name"],
        fingerprint=values["fp"],
        ip_address=ip_address,
        port=srv.port,
    )
