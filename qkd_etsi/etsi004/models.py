"""
Stream API Data Models

Status codes, QoS parameters, metadata buffers and result records for the
ETSI GS QKD 004 key-stream interface.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

KSID_SIZE = 16
ZERO_KSID = bytes(KSID_SIZE)
METADATA_MIMETYPE_SIZE = 256
METADATA_MAX_SIZE = 1024


class StreamStatus(IntEnum):
    """Status codes defined by ETSI GS QKD 004."""
    SUCCESS = 0
    PEER_DISCONNECTED = 1
    INSUFFICIENT_KEY = 2
    PEER_NOT_CONNECTED_GET_KEY = 3
    NO_CONNECTION = 4
    KSID_IN_USE = 5
    TIMEOUT = 6
    QOS_NOT_MET = 7
    METADATA_SIZE_INSUFFICIENT = 8


@dataclass
class QoS:
    """Quality of service negotiated at OPEN_CONNECT."""
    key_chunk_size: int
    max_bps: int
    min_bps: int
    jitter: int = 0
    priority: int = 0
    timeout: int = 0
    ttl: int = 0
    metadata_mimetype: str = "application/json"

    def is_feasible(self) -> bool:
        return self.key_chunk_size > 0 and self.min_bps <= self.max_bps


@dataclass
class MetadataBuffer:
    """
    Caller-owned metadata buffer.

    The backend writes ``data`` only when it fits ``capacity``. When it does
    not, ``data`` stays empty and ``required_size`` tells the caller how much
    room to provide on the next call.
    """
    capacity: int = METADATA_MAX_SIZE
    data: bytes = b""
    required_size: int = 0

    def fill(self, payload: bytes) -> bool:
        self.required_size = len(payload)
        if len(payload) > self.capacity:
            self.data = b""
            return False
        self.data = payload
        return True


@dataclass
class OpenConnectResult:
    status: StreamStatus
    key_stream_id: Optional[bytes] = None
    qos: Optional[QoS] = None

    @property
    def ok(self) -> bool:
        return self.status in (StreamStatus.SUCCESS, StreamStatus.PEER_DISCONNECTED)


@dataclass
class GetKeyResult:
    status: StreamStatus
    key: bytes = b""
    index: Optional[int] = None
    metadata: Optional[MetadataBuffer] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status == StreamStatus.SUCCESS


@dataclass
class CloseResult:
    status: StreamStatus

    @property
    def ok(self) -> bool:
        return self.status == StreamStatus.SUCCESS


def is_zero_ksid(key_stream_id: bytes) -> bool:
    return bytes(key_stream_id) == ZERO_KSID
