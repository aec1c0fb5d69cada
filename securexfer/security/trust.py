"""
Fingerprint pinning for connections to a peer's transfer listener.

Peers use self-signed certificates, so chain validation is off. The only
trust check is that the server certificate hashes to the fingerprint the
peer advertised during discovery.
"""

import string

import aiohttp

from securexfer.errors import TrustError

FINGERPRINT_LENGTH = 64  # hex chars of a SHA-256 digest


def normalize_fingerprint(fingerprint: str) -> str:
    """Return the fingerprint as 64 uppercase hex chars, colons stripped."""
    value = fingerprint.replace(":", "").strip().upper()
    if len(value) != FINGERPRINT_LENGTH or any(
        c not in string.hexdigits for c in value
    ):
        raise TrustError(f"Malformed certificate fingerprint: {fingerprint!r}")
    return value


def pinned_ssl(fingerprint: str) -> aiohttp.Fingerprint:
    """
    Build the ``ssl=`` argument for aiohttp requests to a peer.

    aiohttp accepts any certificate at the TLS layer and then compares the
    SHA-256 of the server's DER certificate with this digest, failing with
    ``ServerFingerprintMismatch`` before the request is written.
    """
    return aiohttp.Fingerprint(bytes.fromhex(normalize_fingerprint(fingerprint)))
