"""
REST Stream Backend

Serves the Stream API from an ETSI 014 KME. The StreamEngine keeps the
session table, QoS admission, rate limit and TTL; only the chunk itself comes
from the KME instead of local derivation.

The initiator draws each chunk through enc_keys and receives its key ID in
the metadata buffer. The responder hands that metadata back in and obtains
the same chunk through dec_keys.
"""

import json
import logging
from typing import Callable, Dict, Optional, Tuple

from ...config import Settings, get_settings
from ...etsi014.backends.rest import KMEClient
from ...etsi014.models import Key, KeyRequest, VaultStatus
from ..backend import StreamBackend
from ..engine import KeyStreamSession, StreamEngine, fill_metadata
from ..models import CloseResult, GetKeyResult, MetadataBuffer, StreamStatus

logger = logging.getLogger(__name__)

VAULT_TO_STREAM_STATUS = {
    VaultStatus.BAD_REQUEST: StreamStatus.INSUFFICIENT_KEY,
    VaultStatus.UNAUTHORIZED: StreamStatus.NO_CONNECTION,
    VaultStatus.SERVER_ERROR: StreamStatus.PEER_NOT_CONNECTED_GET_KEY,
}


def read_key_id(metadata: MetadataBuffer) -> Optional[str]:
    """Key ID from metadata written by the initiator side, or None."""
    if not metadata.data:
        return None
    try:
        key_id = json.loads(metadata.data).get("key_ID")
    except (ValueError, AttributeError):
        return None
    return key_id if isinstance(key_id, str) and key_id else None


class RestStreamEngine(StreamEngine):

    def __init__(
        self,
        client: KMEClient,
        settings: Settings,
        capacity: Optional[int] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(capacity=capacity or settings.stream_table_capacity, clock=clock)
        self._client = client
        self._settings = settings
        # chunks already taken from the KME whose metadata did not fit, by (KSID, index)
        self._undelivered: Dict[Tuple[bytes, int], Key] = {}

    def deliver(
        self,
        session: KeyStreamSession,
        index: int,
        age_ms: int,
        metadata: Optional[MetadataBuffer],
    ) -> GetKeyResult:
        if metadata is None:
            logger.error("GET_KEY: a metadata buffer is required to carry the key ID")
            return GetKeyResult(StreamStatus.NO_CONNECTION, index=index)

        slot = (session.key_stream_id, index)
        key = self._undelivered.pop(slot, None)
        if key is None:
            status, key = self._fetch(session, metadata)
            if key is None:
                return GetKeyResult(status, index=index)

        if not fill_metadata(metadata, {"key_ID": key.key_id, "age": age_ms, "hops": 0}):
            self._undelivered[slot] = key
            return GetKeyResult(StreamStatus.METADATA_SIZE_INSUFFICIENT, index=index, metadata=metadata)

        return GetKeyResult(StreamStatus.SUCCESS, key=key.key, index=index, metadata=metadata)

    def _fetch(self, session: KeyStreamSession, metadata: MetadataBuffer) -> Tuple[StreamStatus, Optional[Key]]:
        s = self._settings

        if session.is_initiator:
            if not s.qkd_master_kme_hostname or not s.qkd_slave_sae:
                logger.error("GET_KEY: master KME hostname and slave SAE must be configured")
                return StreamStatus.NO_CONNECTION, None
            request = KeyRequest(number=1, size=session.qos.key_chunk_size * 8)
            result = self._client.get_key(s.qkd_master_kme_hostname, s.qkd_slave_sae, request)
        else:
            key_id = read_key_id(metadata)
            host = s.qkd_slave_kme_hostname or s.qkd_master_kme_hostname
            if key_id is None:
                logger.error("GET_KEY: responder metadata carries no key_ID")
                return StreamStatus.NO_CONNECTION, None
            if not host or not s.qkd_master_sae:
                logger.error("GET_KEY: slave KME hostname and master SAE must be configured")
                return StreamStatus.NO_CONNECTION, None
            result = self._client.get_key_with_ids(host, s.qkd_master_sae, [key_id])

        if not result.ok:
            status = VAULT_TO_STREAM_STATUS.get(result.code, StreamStatus.PEER_NOT_CONNECTED_GET_KEY)
            logger.error("GET_KEY: KME answered %s, reporting %s", result.code.name, status.name)
            return status, None

        return StreamStatus.SUCCESS, result.container.keys[0]

    def close(self, key_stream_id: bytes) -> CloseResult:
        result = super().close(key_stream_id)
        if key_stream_id is None:
            return result

        ksid = bytes(key_stream_id)
        if self.sessions.find(ksid, self._clock(), include_expired=True) is None:
            for slot in [slot for slot in self._undelivered if slot[0] == ksid]:
                del self._undelivered[slot]
        return result


def create_backend(
    settings: Optional[Settings] = None,
    clock: Optional[Callable[[], int]] = None,
    **client_kwargs,
) -> StreamBackend:
    settings = settings or get_settings()
    engine = RestStreamEngine(KMEClient(settings, **client_kwargs), settings, clock=clock)

    return StreamBackend(
        name="rest",
        open_connect=engine.open_connect,
        get_key=engine.get_key,
        close=engine.close,
    )
