"""
ETSI GS QKD 004 entry points.

Each call validates its arguments, confirms the context carries a stream
backend with the requested operation, and forwards. A missing backend is
reported as NO_CONNECTION rather than raised.
"""

import logging
from typing import TYPE_CHECKING, Optional

from .models import (
    KSID_SIZE,
    CloseResult,
    GetKeyResult,
    MetadataBuffer,
    OpenConnectResult,
    QoS,
    StreamStatus,
)

if TYPE_CHECKING:
    from ..registry import QKDContext

logger = logging.getLogger(__name__)


def _operation(ctx: "QKDContext", name: str):
    backend = ctx.stream_backend if ctx is not None else None
    if backend is None:
        logger.error("No QKD stream backend registered")
        return None
    op = getattr(backend, name)
    if op is None:
        logger.error("Stream backend %s does not implement %s", backend.name, name)
    return op


def open_connect(
    ctx: "QKDContext",
    source: str,
    destination: str,
    qos: QoS,
    key_stream_id: Optional[bytes] = None,
) -> OpenConnectResult:
    """
    Open a key stream.

    Args:
        ctx: Configuration carrying the active stream backend
        source: Local URI
        destination: Peer URI
        qos: Requested quality of service
        key_stream_id: 16-byte KSID; all zeros (the default) opens as initiator

    Returns:
        OpenConnectResult with status, KSID and the QoS in force
    """
    if key_stream_id is None:
        key_stream_id = bytes(KSID_SIZE)

    if not source or not destination or qos is None:
        logger.error("Invalid parameters in OPEN_CONNECT")
        return OpenConnectResult(StreamStatus.NO_CONNECTION)

    op = _operation(ctx, "open_connect")
    if op is None:
        return OpenConnectResult(StreamStatus.NO_CONNECTION)
    return op(source, destination, qos, bytes(key_stream_id))


def get_key(
    ctx: "QKDContext",
    key_stream_id: bytes,
    index: int,
    metadata: Optional[MetadataBuffer] = None,
) -> GetKeyResult:
    """
    Fetch the key chunk at ``index`` of an open stream.

    Metadata is written into ``metadata`` only when it fits its capacity.
    """
    if key_stream_id is None or index is None:
        logger.error("Invalid parameters in GET_KEY")
        return GetKeyResult(StreamStatus.NO_CONNECTION)

    op = _operation(ctx, "get_key")
    if op is None:
        return GetKeyResult(StreamStatus.NO_CONNECTION)
    return op(bytes(key_stream_id), index, metadata)


def close(ctx: "QKDContext", key_stream_id: bytes) -> CloseResult:
    if key_stream_id is None:
        logger.error("Invalid parameters in CLOSE")
        return CloseResult(StreamStatus.NO_CONNECTION)

    op = _operation(ctx, "close")
    if op is None:
        return CloseResult(StreamStatus.NO_CONNECTION)
    return op(bytes(key_stream_id))
