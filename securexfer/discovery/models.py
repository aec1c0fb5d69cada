"""Pydantic models for peer discovery."""

from pydantic import BaseModel, ConfigDict


class Identity(BaseModel):
    """What this process advertises about itself. Fixed for its lifetime."""
    model_config = ConfigDict(frozen=True)

    process_id: str
    display_name: str
    fingerprint: str  # uppercase hex SHA-256 of our certificate
    listen_port: int


class PeerRecord(BaseModel):
    """Represents a discovered device on the LAN."""
    peer_id: str
    display_name: str
    ip_address: str
    port: int  # TLS port of the peer's transfer listener
    fingerprint: str
    last_seen: float  # monotonic seconds


class Announcement(BaseModel):
    """Decoded contents of one discovery response."""
    peer_id: str
    display_name: str
    fingerprint: str
    ip_address: str
    port: int
