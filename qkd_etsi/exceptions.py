"""
QKD Client Exceptions

Raised inside backends and mapped onto protocol status codes before a
result leaves the API.
"""


class QKDError(Exception):
    """Base exception for QKD backend failures."""
    pass


class TransportError(QKDError):
    """Peer or KME not reachable, or the exchange was cut short."""
    pass


class ResponseDecodeError(QKDError):
    """Response arrived but its body could not be decoded."""
    pass


class FrameError(ResponseDecodeError):
    """Malformed or truncated legacy wire frame."""
    pass


class CredentialError(QKDError):
    """Certificate/key/CA triple for the requested role is incomplete."""
    pass


class BackendNotConfiguredError(QKDError):
    """Unknown backend name at configuration time."""
    pass
