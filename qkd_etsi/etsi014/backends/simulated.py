import logging
import os
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from ..backend import VaultBackend
from ..models import (
    Key,
    KeyContainer,
    KeyContainerResult,
    KeyRequest,
    Status,
    StatusResult,
    VaultStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY_SIZE = 256
MIN_KEY_SIZE = 8
MAX_KEY_SIZE = 8192


@dataclass
class StoredKey:
    key_id: str
    key_material: bytearray
    slave_sae_id: str
    created_at: datetime


class SimulatedKeyVault:

    def __init__(self, max_key_count: int = 1024, max_key_per_request: int = 128,
                 default_key_size: int = DEFAULT_KEY_SIZE):
        self._lock = threading.RLock()
        self._keys: "OrderedDict[str, StoredKey]" = OrderedDict()
        self._max_key_count = max_key_count
        self._max_key_per_request = max_key_per_request
        self._default_key_size = default_key_size

        self._stats = {
            "total_allocated": 0,
            "total_delivered": 0,
            "evicted": 0,
        }

    def get_status(self, kme_hostname: str, slave_sae_id: str) -> StatusResult:
        if not kme_hostname or not slave_sae_id:
            logger.error("get_status: missing hostname or slave SAE ID")
            return StatusResult(VaultStatus.BAD_REQUEST)

        with self._lock:
            status = Status(
                source_kme_id=kme_hostname,
                slave_sae_id=slave_sae_id,
                key_size=self._default_key_size,
                stored_key_count=len(self._keys),
                max_key_count=self._max_key_count,
                max_key_per_request=self._max_key_per_request,
                max_key_size=MAX_KEY_SIZE,
                min_key_size=MIN_KEY_SIZE,
                max_sae_id_count=0,
            )
        return StatusResult(VaultStatus.OK, status)

    def get_key(self, kme_hostname: str, slave_sae_id: str,
                request: Optional[KeyRequest] = None) -> KeyContainerResult:
        if not kme_hostname or not slave_sae_id:
            return KeyContainerResult(VaultStatus.BAD_REQUEST)

        request = request or KeyRequest()
        size = request.size if request.size is not None else self._default_key_size

        if not 0 < request.number <= min(self._max_key_per_request, self._max_key_count):
            logger.warning("get_key: %d keys requested, limit is %d", request.number, self._max_key_per_request)
            return KeyContainerResult(VaultStatus.BAD_REQUEST)

        if not MIN_KEY_SIZE <= size <= MAX_KEY_SIZE or size % 8:
            logger.warning("get_key: unsupported key size %d bits", size)
            return KeyContainerResult(VaultStatus.BAD_REQUEST)

        now = datetime.now(timezone.utc)
        generated = [
            StoredKey(
                key_id=str(uuid4()),
                key_material=bytearray(os.urandom(size // 8)),
                slave_sae_id=slave_sae_id,
                created_at=now,
            )
            for _ in range(request.number)
        ]

        with self._lock:
            while len(self._keys) + len(generated) > self._max_key_count:
                _, oldest = self._keys.popitem(last=False)
                self._zeroize_key(oldest)
                self._stats["evicted"] += 1

            for entry in generated:
                self._keys[entry.key_id] = entry
            self._stats["total_allocated"] += len(generated)

        logger.info("Allocated %d simulated key(s) of %d bits for %s", len(generated), size, slave_sae_id)

        container = KeyContainer(keys=[Key(key_id=e.key_id, key=bytes(e.key_material)) for e in generated])
        return KeyContainerResult(VaultStatus.OK, container)

    def get_key_with_ids(self, kme_hostname: str, master_sae_id: str,
                         key_ids: List[str]) -> KeyContainerResult:
        if not kme_hostname or not master_sae_id or not key_ids:
            return KeyContainerResult(VaultStatus.BAD_REQUEST)

        with self._lock:
            missing = [k for k in key_ids if k not in self._keys]
            if missing:
                logger.warning("get_key_with_ids: unknown key IDs %s", missing)
                return KeyContainerResult(VaultStatus.BAD_REQUEST)

            # Retrieval does not consume; repeated requests for one ID all succeed.
            keys = [Key(key_id=k, key=bytes(self._keys[k].key_material)) for k in key_ids]
            self._stats["total_delivered"] += len(keys)

        return KeyContainerResult(VaultStatus.OK, KeyContainer(keys=keys))

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "stored": len(self._keys),
                "max_key_count": self._max_key_count,
                **self._stats,
            }

    def shutdown(self) -> None:
        with self._lock:
            for entry in self._keys.values():
                self._zeroize_key(entry)
            self._keys.clear()
            logger.info("Simulated vault shutdown complete - all keys zeroized")

    def _zeroize_key(self, entry: StoredKey) -> None:
        for i in range(len(entry.key_material)):
            entry.key_material[i] = 0


def create_backend(settings=None, vault: Optional[SimulatedKeyVault] = None) -> VaultBackend:
    if vault is None:
        if settings is not None:
            vault = SimulatedKeyVault(
                max_key_count=settings.vault_max_key_count,
                max_key_per_request=settings.vault_max_key_per_request,
                default_key_size=settings.default_key_size,
            )
        else:
            vault = SimulatedKeyVault()

    return VaultBackend(
        name="simulated",
        get_status=vault.get_status,
        get_key=vault.get_key,
        get_key_with_ids=vault.get_key_with_ids,
    )
