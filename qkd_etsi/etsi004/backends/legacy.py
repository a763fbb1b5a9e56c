"""
Legacy Wire-Protocol Stream Backend

Speaks the binary ETSI 004 frame format to a pre-existing key-stream server
over a plain TCP socket, wrapped in mutual TLS when the client certificate,
client key and server certificate are all configured.
"""

import logging
import socket
import ssl
import struct
from typing import Callable, Optional, Tuple
from urllib.parse import urlsplit

from ...config import Settings, get_settings
from ...exceptions import FrameError, TransportError
from .. import wire
from ..backend import StreamBackend
from ..engine import MAX_INDEX
from ..models import (
    KSID_SIZE,
    ZERO_KSID,
    CloseResult,
    GetKeyResult,
    MetadataBuffer,
    OpenConnectResult,
    QoS,
    StreamStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 25575
# upper bound on a response payload; larger length fields are rejected unread
MAX_PAYLOAD_SIZE = 16 * 1024 * 1024

SocketFactory = Callable[[str, int], socket.socket]


def parse_destination(destination: str) -> Tuple[str, int]:
    """Split a ``server://host:port`` URI; the port defaults to 25575."""
    parts = urlsplit(destination)
    if parts.scheme != "server" or not parts.hostname:
        raise ValueError(f"Invalid destination URI format: {destination}")
    return parts.hostname, parts.port or DEFAULT_PORT


def _to_status(value: int) -> StreamStatus:
    try:
        return StreamStatus(value)
    except ValueError:
        logger.error("Server returned unknown status %d", value)
        return StreamStatus.NO_CONNECTION


class LegacyStreamClient:
    """
    Single-connection client for the legacy key-stream server.

    OPEN_CONNECT dials the server named by the destination URI; CLOSE sends
    the close request and drops the connection.
    """

    def __init__(self, settings: Optional[Settings] = None, socket_factory: Optional[SocketFactory] = None):
        self._settings = settings or get_settings()
        self._socket_factory = socket_factory or self._open_socket
        self._sock: Optional[socket.socket] = None
        self.key_stream_id = ZERO_KSID

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        s = self._settings
        if not (s.server_cert_pem and s.client_cert_pem and s.client_cert_key):
            return None
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=str(s.server_cert_pem))
        context.load_cert_chain(certfile=str(s.client_cert_pem), keyfile=str(s.client_cert_key))
        return context

    def _open_socket(self, host: str, port: int) -> socket.socket:
        raw_sock = socket.create_connection((host, port), timeout=self._settings.legacy_connect_timeout)
        context = self._ssl_context()
        if context is None:
            return raw_sock
        return context.wrap_socket(raw_sock, server_hostname=host)

    def _disconnect(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.close()
        except OSError as e:
            logger.debug("Error closing stream socket: %s", e)
        self._sock = None

    def _recv_exact(self, length: int) -> bytes:
        data = bytearray()
        while len(data) < length:
            chunk = self._sock.recv(length - len(data))
            if not chunk:
                raise FrameError(f"Connection closed after {len(data)} of {length} bytes")
            data.extend(chunk)
        return bytes(data)

    def _exchange(self, request: bytes, expected: wire.ServiceType) -> bytes:
        if self._sock is None:
            raise TransportError("Not connected to a key-stream server")

        try:
            self._sock.sendall(request)
            header = wire.decode_header(self._recv_exact(wire.HEADER.size))
            if header.payload_length > MAX_PAYLOAD_SIZE:
                raise FrameError(f"Payload length {header.payload_length} exceeds {MAX_PAYLOAD_SIZE} bytes")
            payload = self._recv_exact(header.payload_length)
        except OSError as e:
            raise TransportError(str(e)) from e

        logger.debug(
            "Version %d.%d.%d. Received service type: %d",
            *header.version, header.service_type,
        )
        if header.service_type != expected:
            raise FrameError(f"Expected service type {int(expected)}, got {header.service_type}")
        return payload

    def open_connect(self, source: str, destination: str, qos: QoS, key_stream_id: bytes) -> OpenConnectResult:
        if not source or not destination or qos is None or key_stream_id is None:
            return OpenConnectResult(StreamStatus.NO_CONNECTION)

        try:
            host, port = parse_destination(destination)
        except ValueError as e:
            logger.error("%s", e)
            return OpenConnectResult(StreamStatus.NO_CONNECTION)

        try:
            request = wire.encode_open_connect_request(source, destination, qos, key_stream_id)
        except (FrameError, struct.error) as e:
            logger.error("Cannot encode OPEN_CONNECT request: %s", e)
            return OpenConnectResult(StreamStatus.NO_CONNECTION)

        self._disconnect()
        try:
            self._sock = self._socket_factory(host, port)
        except OSError as e:
            logger.error("OPEN_CONNECT failed, cannot reach %s:%d: %s", host, port, e)
            return OpenConnectResult(StreamStatus.PEER_DISCONNECTED)

        logger.info("Connected to server at %s:%d", host, port)

        try:
            payload = self._exchange(request, wire.ServiceType.OPEN_CONNECT_RESPONSE)
            response = wire.decode_open_connect_response(payload, bytes(key_stream_id))
        except (TransportError, FrameError) as e:
            logger.error("OPEN_CONNECT exchange failed: %s", e)
            self._disconnect()
            return OpenConnectResult(StreamStatus.NO_CONNECTION)

        status = _to_status(response.status)
        if status not in (StreamStatus.SUCCESS, StreamStatus.QOS_NOT_MET):
            logger.error("OPEN_CONNECT failed with status: %d", status)
            self._disconnect()
            return OpenConnectResult(status)

        if status == StreamStatus.QOS_NOT_MET:
            logger.warning("QoS not met. Adjusted QoS provided by server: %s", response.qos)

        self.key_stream_id = response.key_stream_id
        logger.info("OPEN_CONNECT status: %d, Key_stream_ID: %s", status, self.key_stream_id.hex())
        return OpenConnectResult(status, key_stream_id=response.key_stream_id, qos=response.qos)

    def get_key(self, key_stream_id: bytes, index: int, metadata: Optional[MetadataBuffer] = None) -> GetKeyResult:
        if key_stream_id is None or index is None:
            return GetKeyResult(StreamStatus.NO_CONNECTION)
        if len(key_stream_id) != KSID_SIZE or not 0 <= index <= MAX_INDEX:
            logger.error("GET_KEY: invalid KSID or index %d out of range", index)
            return GetKeyResult(StreamStatus.NO_CONNECTION)
        if self._sock is None:
            logger.error("GET_KEY without an open connection")
            return GetKeyResult(StreamStatus.NO_CONNECTION)

        capacity = metadata.capacity if metadata is not None else 0

        try:
            request = wire.encode_get_key_request(key_stream_id, index, capacity)
            payload = self._exchange(request, wire.ServiceType.GET_KEY_RESPONSE)
            response = wire.decode_get_key_response(payload)
        except (TransportError, FrameError) as e:
            logger.error("GET_KEY failed: %s", e)
            return GetKeyResult(StreamStatus.PEER_NOT_CONNECTED_GET_KEY, index=index)

        status = _to_status(response.status)
        if status != StreamStatus.SUCCESS:
            logger.error("GET_KEY failed with status: %d", status)
            return GetKeyResult(status, index=index)

        if metadata is not None and not metadata.fill(response.metadata):
            return GetKeyResult(StreamStatus.METADATA_SIZE_INSUFFICIENT, index=index, metadata=metadata)

        logger.info("GET_KEY status: %d, index %d, key length: %d", status, response.index, len(response.key))
        return GetKeyResult(StreamStatus.SUCCESS, key=response.key, index=response.index, metadata=metadata)

    def close(self, key_stream_id: bytes) -> CloseResult:
        if key_stream_id is None:
            return CloseResult(StreamStatus.NO_CONNECTION)
        if self._sock is None:
            logger.error("CLOSE without an open connection")
            return CloseResult(StreamStatus.NO_CONNECTION)

        try:
            payload = self._exchange(wire.encode_close_request(key_stream_id), wire.ServiceType.CLOSE_RESPONSE)
            status = _to_status(wire.decode_close_response(payload))
        except (TransportError, FrameError) as e:
            logger.error("CLOSE failed: %s", e)
            return CloseResult(StreamStatus.PEER_DISCONNECTED)
        finally:
            self._disconnect()

        if status == StreamStatus.SUCCESS:
            logger.info("CLOSE status: %d, Key_stream_ID: %s", status, bytes(key_stream_id).hex())
            self.key_stream_id = ZERO_KSID
        else:
            logger.error("CLOSE failed with status: %d", status)
        return CloseResult(status)


def create_backend(settings: Optional[Settings] = None, socket_factory: Optional[SocketFactory] = None) -> StreamBackend:
    client = LegacyStreamClient(settings, socket_factory=socket_factory)
    return StreamBackend(
        name="legacy",
        open_connect=client.open_connect,
        get_key=client.get_key,
        close=client.close,
    )
