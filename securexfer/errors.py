"""Exception hierarchy shared by discovery, identity and transfer code."""


class SecureXferError(Exception):
    """Base class for all SecureXfer errors."""


class IdentityError(SecureXferError):
    """Key pair or certificate generation failed. Fatal at startup."""


class DiscoveryParseError(SecureXferError):
    """A discovery packet from the network could not be decoded."""


class TransferError(SecureXferError):
    """A single transfer failed. Carries the transfer id for display."""

    def __init__(self, message: str, transfer_id: str | None = None) -> None:
        super().__init__(message)
        self.transfer_id = transfer_id


class TrustError(TransferError):
    """The peer's certificate does not match its advertised fingerprint."""


class TransferIOError(TransferError):
    """Reading, writing or streaming file data failed mid-transfer."""


class DecisionTimeoutError(TransferError, TimeoutError):
    """The recipient did not accept or decline in time."""
