"""
Vault API Data Models

Status codes and entities for the ETSI GS QKD 014 key-delivery interface.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional


class VaultStatus(IntEnum):
    OK = 200
    BAD_REQUEST = 400
    UNAUTHORIZED = 401
    SERVER_ERROR = 503


def status_from_http(code: int) -> VaultStatus:
    """Map a non-success HTTP response code onto the Vault error classes."""
    if code == 401:
        return VaultStatus.UNAUTHORIZED
    if code >= 500:
        return VaultStatus.SERVER_ERROR
    return VaultStatus.BAD_REQUEST


@dataclass
class Status:
    """KME capability snapshot (ETSI 014 section 6.1)."""
    source_kme_id: Optional[str] = None
    target_kme_id: Optional[str] = None
    master_sae_id: Optional[str] = None
    slave_sae_id: Optional[str] = None
    key_size: int = 0
    stored_key_count: int = 0
    max_key_count: int = 0
    max_key_per_request: int = 0
    max_key_size: int = 0
    min_key_size: int = 0
    max_sae_id_count: int = 0
    status_extension: Optional[Dict[str, Any]] = None


@dataclass
class KeyRequest:
    """Key request (section 6.2). ``size`` is in bits; None means backend default."""
    number: int = 1
    size: Optional[int] = None
    additional_slave_sae_ids: List[str] = field(default_factory=list)
    extension_mandatory: Optional[List[Dict[str, Any]]] = None
    extension_optional: Optional[List[Dict[str, Any]]] = None

    @property
    def needs_post(self) -> bool:
        return bool(self.additional_slave_sae_ids or self.extension_mandatory or self.extension_optional)


@dataclass
class Key:
    key_id: str
    key: bytes = field(repr=False)
    key_id_extension: Optional[Dict[str, Any]] = None
    key_extension: Optional[Dict[str, Any]] = None


@dataclass
class KeyContainer:
    """Ordered batch of keys (section 6.3)."""
    keys: List[Key] = field(default_factory=list)
    key_container_extension: Optional[Dict[str, Any]] = None

    def __len__(self) -> int:
        return len(self.keys)

    def key_ids(self) -> List[str]:
        return [k.key_id for k in self.keys]


@dataclass
class StatusResult:
    code: VaultStatus
    status: Optional[Status] = None

    @property
    def ok(self) -> bool:
        return self.code == VaultStatus.OK


@dataclass
class KeyContainerResult:
    code: VaultStatus
    container: Optional[KeyContainer] = None

    @property
    def ok(self) -> bool:
        return self.code == VaultStatus.OK
