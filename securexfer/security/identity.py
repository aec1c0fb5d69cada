"""
Identity Service: per-process key pair, self-signed certificate and fingerprint.

Nothing is persisted. Every run gets a fresh certificate, and peers learn its
fingerprint through discovery.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from securexfer.config import (
    CERT_COMMON_NAME,
    CERT_VALIDITY_DAYS,
    DEVICE_NAME,
    KEY_SIZE,
)
from securexfer.discovery.models import Identity
from securexfer.errors import IdentityError

logger = logging.getLogger(__name__)


def certificate_fingerprint(der: bytes) -> str:
    """Uppercase hex SHA-256 of a DER-encoded certificate."""
    return hashlib.sha256(der).hexdigest().upper()


@dataclass(frozen=True)
class Credentials:
    """Key material handed to the transfer listener."""
    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    fingerprint: str

    @property
    def key_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    @property
    def cert_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)


def initialize_identity(
    common_name: str = CERT_COMMON_NAME,
    validity_days: int = CERT_VALIDITY_DAYS,
) -> Credentials:
    """
    Generate an RSA key pair and a self-signed certificate.

    Raises:
        IdentityError: if key or certificate generation fails for any reason.
    """
    try:
        private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=KEY_SIZE,
        )
        subject = issuer = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ])
        now = datetime.now(timezone.utc)
        certificate = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=validity_days))
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(common_name)]),
                critical=False,
            )
            .sign(private_key, hashes.SHA256())
        )
        der = certificate.public_bytes(serialization.Encoding.DER)
    except Exception as e:
        raise IdentityError(f"Failed to generate certificate: {e}") from e

    return Credentials(
        private_key=private_key,
        certificate=certificate,
        fingerprint=certificate_fingerprint(der),
    )


class IdentityService:
    """Holds this process's credentials, id and display name."""

    def __init__(self, display_name: str = DEVICE_NAME) -> None:
        # Changes on every run, so a restarted host looks like a new peer
        self.process_id = str(uuid.uuid4())
        self.display_name = display_name
        self.credentials = initialize_identity()

        logger.info(
            f"Initialized identity {self.process_id} "
            f"(fingerprint {self.fingerprint[:16]}...)"
        )

    @property
    def fingerprint(self) -> str:
        return self.credentials.fingerprint

    def identity(self, listen_port: int) -> Identity:
        """Freeze the advertised identity once the listener port is known."""
        return Identity(
            process_id=self.process_id,
            display_name=self.display_name,
            fingerprint=self.fingerprint,
            listen_port=listen_port,
        )
