"""
Key-Stream Engine

In-memory implementation of the ETSI 004 session state machine:

    UNALLOCATED -> OPEN(initiator|responder) -> SOFT_CLOSED -> FREED

Sessions live in a fixed-capacity table scanned linearly, so allocation
order and exhaustion are observable. The table is not synchronized;
callers sharing an engine across threads must serialize access themselves.
"""

import hashlib
import json
import logging
import struct
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from .models import (
    KSID_SIZE,
    ZERO_KSID,
    CloseResult,
    GetKeyResult,
    MetadataBuffer,
    OpenConnectResult,
    QoS,
    StreamStatus,
    is_zero_ksid,
)

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 16
MAX_INDEX = 0xFFFFFFFF


def monotonic_ms() -> int:
    return time.monotonic_ns() // 1_000_000


def derive_key(index: int, size: int) -> bytes:
    """
    Derive ``size`` bytes of key material for a stream index.

    The first block is SHA-256 over the little-endian 32-bit index; longer
    chunks append SHA-256(index || counter) blocks. Both peers obtain the
    same bytes for the same index without exchanging anything.
    """
    seed = struct.pack("<I", index)
    material = bytearray(hashlib.sha256(seed).digest())
    counter = 1
    while len(material) < size:
        material.extend(hashlib.sha256(seed + struct.pack("<I", counter)).digest())
        counter += 1
    return bytes(material[:size])


def max_deliverable_index(elapsed_ms: int, qos: QoS) -> int:
    return (elapsed_ms * qos.max_bps) // (8000 * qos.key_chunk_size)


def fill_metadata(metadata: MetadataBuffer, fields: Dict[str, Any]) -> bool:
    """Write ``fields`` as JSON into the caller's buffer if it fits."""
    if metadata.fill(json.dumps(fields).encode("utf-8")):
        return True
    logger.warning(
        "GET_KEY: metadata needs %d bytes, buffer holds %d",
        metadata.required_size, metadata.capacity,
    )
    return False


@dataclass
class KeyStreamSession:
    key_stream_id: bytes = ZERO_KSID
    qos: Optional[QoS] = None
    created_at_ms: int = 0
    is_initiator: bool = False
    last_index: int = 0
    pending_close: bool = False
    in_use: bool = False

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.created_at_ms

    def ttl_elapsed(self, now_ms: int) -> bool:
        return self.age_ms(now_ms) >= self.qos.ttl * 1000

    def is_expired(self, now_ms: int) -> bool:
        # TTL 0 means the stream never lapses on its own; CLOSE frees it at once.
        return self.in_use and self.qos.ttl > 0 and self.ttl_elapsed(now_ms)

    def open(self, key_stream_id: bytes, qos: QoS, now_ms: int, is_initiator: bool) -> None:
        self.key_stream_id = key_stream_id
        self.qos = replace(qos)
        self.created_at_ms = now_ms
        self.is_initiator = is_initiator
        self.last_index = 0
        self.pending_close = False
        self.in_use = True

    def clear(self) -> None:
        self.key_stream_id = ZERO_KSID
        self.qos = None
        self.created_at_ms = 0
        self.is_initiator = False
        self.last_index = 0
        self.pending_close = False
        self.in_use = False


class SessionTable:

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("Session table capacity must be positive")
        self._slots: List[KeyStreamSession] = [KeyStreamSession() for _ in range(capacity)]

    @property
    def capacity(self) -> int:
        return len(self._slots)

    def find(self, key_stream_id: bytes, now_ms: int, include_expired: bool = False) -> Optional[KeyStreamSession]:
        for session in self._slots:
            if not session.in_use or session.key_stream_id != key_stream_id:
                continue
            if not include_expired and session.is_expired(now_ms):
                continue
            return session
        return None

    def allocate(self, now_ms: int) -> Optional[KeyStreamSession]:
        for slot, session in enumerate(self._slots):
            if not session.in_use:
                return session
            if session.is_expired(now_ms):
                logger.debug("Reclaiming expired stream slot %d", slot)
                session.clear()
                return session
        return None

    def active(self, now_ms: int) -> List[KeyStreamSession]:
        return [s for s in self._slots if s.in_use and not s.is_expired(now_ms)]


class StreamEngine:
    """Session table plus QoS admission control, rate limiting and TTL closure."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, clock: Optional[Callable[[], int]] = None):
        self.sessions = SessionTable(capacity)
        self._clock = clock or monotonic_ms

    def open_connect(
        self,
        source: str,
        destination: str,
        qos: QoS,
        key_stream_id: bytes,
    ) -> OpenConnectResult:
        if not source or not destination or qos is None or key_stream_id is None:
            logger.error("OPEN_CONNECT: missing required argument")
            return OpenConnectResult(StreamStatus.NO_CONNECTION)

        if len(key_stream_id) != KSID_SIZE:
            logger.error("OPEN_CONNECT: KSID must be %d bytes, got %d", KSID_SIZE, len(key_stream_id))
            return OpenConnectResult(StreamStatus.NO_CONNECTION)

        if not qos.is_feasible():
            logger.warning(
                "OPEN_CONNECT: QoS not met (chunk=%d, min_bps=%d, max_bps=%d)",
                qos.key_chunk_size, qos.min_bps, qos.max_bps,
            )
            return OpenConnectResult(StreamStatus.QOS_NOT_MET, qos=qos)

        now = self._clock()
        is_initiator = is_zero_ksid(key_stream_id)

        if is_initiator:
            ksid = self._fresh_ksid(now)
        else:
            ksid = bytes(key_stream_id)
            if self.sessions.find(ksid, now) is not None:
                logger.warning("OPEN_CONNECT: KSID %s already in use", ksid.hex())
                return OpenConnectResult(StreamStatus.KSID_IN_USE, key_stream_id=ksid)

        session = self.sessions.allocate(now)
        if session is None:
            logger.error("OPEN_CONNECT: session table full (%d slots)", self.sessions.capacity)
            return OpenConnectResult(StreamStatus.NO_CONNECTION)

        session.open(ksid, qos, now, is_initiator)

        logger.info(
            "Opened key stream %s as %s, %s -> %s",
            ksid.hex(), "initiator" if is_initiator else "responder", source, destination,
        )

        status = StreamStatus.PEER_DISCONNECTED if is_initiator else StreamStatus.SUCCESS
        return OpenConnectResult(status, key_stream_id=ksid, qos=replace(session.qos))

    def get_key(
        self,
        key_stream_id: bytes,
        index: int,
        metadata: Optional[MetadataBuffer] = None,
    ) -> GetKeyResult:
        if key_stream_id is None or index is None:
            logger.error("GET_KEY: missing required argument")
            return GetKeyResult(StreamStatus.NO_CONNECTION)

        if not 0 <= index <= MAX_INDEX:
            logger.error("GET_KEY: index %d out of range", index)
            return GetKeyResult(StreamStatus.NO_CONNECTION)

        now = self._clock()
        session = self.sessions.find(bytes(key_stream_id), now)
        if session is None:
            return GetKeyResult(StreamStatus.PEER_NOT_CONNECTED_GET_KEY, index=index)

        age = session.age_ms(now)
        bound = max_deliverable_index(age, session.qos)
        if index > bound:
            logger.debug("GET_KEY: index %d beyond rate bound %d after %d ms", index, bound, age)
            return GetKeyResult(StreamStatus.INSUFFICIENT_KEY, index=index)

        result = self.deliver(session, index, age, metadata)
        if result.ok:
            session.last_index = index
        return result

    def deliver(
        self,
        session: KeyStreamSession,
        index: int,
        age_ms: int,
        metadata: Optional[MetadataBuffer],
    ) -> GetKeyResult:
        """
        Produce the chunk for an index that passed session and rate checks.

        Subclasses override this to source key material elsewhere; the
        session table, QoS admission and TTL handling stay in the engine.
        """
        if metadata is not None and not fill_metadata(metadata, {"age": age_ms, "hops": 0}):
            return GetKeyResult(StreamStatus.METADATA_SIZE_INSUFFICIENT, index=index, metadata=metadata)

        key = derive_key(index, session.qos.key_chunk_size)
        return GetKeyResult(StreamStatus.SUCCESS, key=key, index=index, metadata=metadata)

    def close(self, key_stream_id: bytes) -> CloseResult:
        if key_stream_id is None:
            logger.error("CLOSE: missing key stream id")
            return CloseResult(StreamStatus.NO_CONNECTION)

        now = self._clock()
        session = self.sessions.find(bytes(key_stream_id), now, include_expired=True)
        if session is None:
            return CloseResult(StreamStatus.PEER_NOT_CONNECTED_GET_KEY)

        if not session.ttl_elapsed(now):
            session.pending_close = True
            logger.debug("Key stream %s pending close", session.key_stream_id.hex())
            return CloseResult(StreamStatus.SUCCESS)

        logger.info("Key stream %s closed", session.key_stream_id.hex())
        session.clear()
        return CloseResult(StreamStatus.SUCCESS)

    def _fresh_ksid(self, now_ms: int) -> bytes:
        while True:
            candidate = uuid4().bytes
            if self.sessions.find(candidate, now_ms, include_expired=True) is None:
                return candidate
