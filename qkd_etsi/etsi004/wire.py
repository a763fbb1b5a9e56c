"""
Legacy ETSI 004 wire format.

Frame layout:

    [major:1][minor:1][patch:1][service_type:1, signed][payload_length:4, BE][payload]

QoS block: seven big-endian uint32 fields (chunk size, max bps, min bps,
jitter, priority, timeout, TTL) followed by a 256-byte NUL-padded
mime-type string.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple

from ..exceptions import FrameError
from .models import KSID_SIZE, METADATA_MIMETYPE_SIZE, QoS

PROTOCOL_VERSION = (1, 0, 1)

HEADER = struct.Struct("!BBBbI")
QOS_FIELDS = struct.Struct("!7I")
QOS_SIZE = QOS_FIELDS.size + METADATA_MIMETYPE_SIZE
U32 = struct.Struct("!I")


class ServiceType(IntEnum):
    OPEN_CONNECT_REQUEST = 0x02
    OPEN_CONNECT_RESPONSE = 0x03
    GET_KEY_REQUEST = 0x04
    GET_KEY_RESPONSE = 0x05
    CLOSE_REQUEST = 0x08
    CLOSE_RESPONSE = 0x09


@dataclass
class FrameHeader:
    version: Tuple[int, int, int]
    service_type: int
    payload_length: int


@dataclass
class OpenConnectResponse:
    status: int
    qos: Optional[QoS]
    key_stream_id: bytes


@dataclass
class GetKeyResponse:
    status: int
    index: int = 0
    key: bytes = b""
    metadata: bytes = b""


def encode_frame(service_type: int, payload: bytes, version: Tuple[int, int, int] = PROTOCOL_VERSION) -> bytes:
    return HEADER.pack(*version, service_type, len(payload)) + payload


def decode_header(data: bytes) -> FrameHeader:
    if len(data) < HEADER.size:
        raise FrameError(f"Incomplete header: {len(data)} of {HEADER.size} bytes")
    major, minor, patch, service_type, length = HEADER.unpack_from(data)
    return FrameHeader((major, minor, patch), service_type, length)


def decode_frame(data: bytes) -> Tuple[FrameHeader, bytes]:
    header = decode_header(data)
    payload = data[HEADER.size:HEADER.size + header.payload_length]
    if len(payload) < header.payload_length:
        raise FrameError(f"Incomplete payload: {len(payload)} of {header.payload_length} bytes")
    return header, payload


def encode_qos(qos: QoS) -> bytes:
    fields = QOS_FIELDS.pack(
        qos.key_chunk_size,
        qos.max_bps,
        qos.min_bps,
        qos.jitter,
        qos.priority,
        qos.timeout,
        qos.ttl,
    )
    mimetype = qos.metadata_mimetype.encode("utf-8")[:METADATA_MIMETYPE_SIZE]
    return fields + mimetype.ljust(METADATA_MIMETYPE_SIZE, b"\x00")


def decode_qos(data: bytes) -> QoS:
    if len(data) < QOS_SIZE:
        raise FrameError(f"Incomplete QoS block: {len(data)} of {QOS_SIZE} bytes")
    fields = QOS_FIELDS.unpack_from(data)
    raw_mimetype = data[QOS_FIELDS.size:QOS_SIZE].split(b"\x00", 1)[0]
    return QoS(
        key_chunk_size=fields[0],
        max_bps=fields[1],
        min_bps=fields[2],
        jitter=fields[3],
        priority=fields[4],
        timeout=fields[5],
        ttl=fields[6],
        metadata_mimetype=raw_mimetype.decode("utf-8", errors="replace"),
    )


def _check_ksid(key_stream_id: bytes) -> bytes:
    if len(key_stream_id) != KSID_SIZE:
        raise FrameError(f"KSID must be {KSID_SIZE} bytes, got {len(key_stream_id)}")
    return bytes(key_stream_id)


def _c_string(value: str) -> bytes:
    encoded = value.encode("utf-8")
    if b"\x00" in encoded:
        raise FrameError("URI must not contain NUL bytes")
    return encoded + b"\x00"


def encode_open_connect_request(source: str, destination: str, qos: QoS, key_stream_id: bytes) -> bytes:
    payload = _c_string(source) + _c_string(destination) + encode_qos(qos) + _check_ksid(key_stream_id)
    return encode_frame(ServiceType.OPEN_CONNECT_REQUEST, payload)


def decode_open_connect_request(payload: bytes) -> Tuple[str, str, QoS, bytes]:
    try:
        source, rest = payload.split(b"\x00", 1)
        destination, rest = rest.split(b"\x00", 1)
    except ValueError as e:
        raise FrameError("Unterminated URI in OPEN_CONNECT request") from e
    if len(rest) != QOS_SIZE + KSID_SIZE:
        raise FrameError(f"OPEN_CONNECT request tail is {len(rest)} bytes")
    return source.decode("utf-8"), destination.decode("utf-8"), decode_qos(rest), rest[QOS_SIZE:]


def encode_get_key_request(key_stream_id: bytes, index: int, metadata_size: int) -> bytes:
    payload = _check_ksid(key_stream_id) + U32.pack(index) + U32.pack(metadata_size)
    return encode_frame(ServiceType.GET_KEY_REQUEST, payload)


def encode_close_request(key_stream_id: bytes) -> bytes:
    return encode_frame(ServiceType.CLOSE_REQUEST, _check_ksid(key_stream_id))


def encode_open_connect_response(status: int, qos: QoS, key_stream_id: bytes) -> bytes:
    payload = U32.pack(status) + encode_qos(qos) + _check_ksid(key_stream_id)
    return encode_frame(ServiceType.OPEN_CONNECT_RESPONSE, payload)


def encode_get_key_response(status: int, index: int = 0, key: bytes = b"", metadata: bytes = b"") -> bytes:
    payload = U32.pack(status)
    if status == 0:
        payload += U32.pack(index) + U32.pack(len(key)) + key + U32.pack(len(metadata)) + metadata
    return encode_frame(ServiceType.GET_KEY_RESPONSE, payload)


def encode_close_response(status: int) -> bytes:
    return encode_frame(ServiceType.CLOSE_RESPONSE, U32.pack(status))


def _status(payload: bytes) -> int:
    if len(payload) < U32.size:
        raise FrameError("Response payload lacks status field")
    return U32.unpack_from(payload)[0]


def decode_open_connect_response(payload: bytes, key_stream_id: bytes = b"") -> OpenConnectResponse:
    """
    Decode an OPEN_CONNECT response payload.

    Only SUCCESS (0) and QOS_NOT_MET (7) carry the negotiated QoS and KSID;
    for other statuses the caller's QoS is not echoed back.
    """
    status = _status(payload)
    if status not in (0, 7):
        return OpenConnectResponse(status, qos=None, key_stream_id=key_stream_id)
    body = payload[U32.size:]
    if len(body) < QOS_SIZE + KSID_SIZE:
        raise FrameError(f"OPEN_CONNECT response body is {len(body)} bytes")
    return OpenConnectResponse(status, decode_qos(body), bytes(body[QOS_SIZE:QOS_SIZE + KSID_SIZE]))


def decode_get_key_response(payload: bytes) -> GetKeyResponse:
    status = _status(payload)
    if status != 0:
        return GetKeyResponse(status)

    offset = U32.size
    try:
        index, chunk = struct.unpack_from("!II", payload, offset)
        offset += 8
        key = payload[offset:offset + chunk]
        offset += chunk
        (metadata_size,) = U32.unpack_from(payload, offset)
        offset += U32.size
    except struct.error as e:
        raise FrameError("Truncated GET_KEY response") from e

    metadata = payload[offset:offset + metadata_size]
    if len(key) != chunk or len(metadata) != metadata_size:
        raise FrameError("GET_KEY response shorter than its declared sizes")
    return GetKeyResponse(status, index, bytes(key), bytes(metadata))


def decode_close_response(payload: bytes) -> int:
    return _status(payload)
