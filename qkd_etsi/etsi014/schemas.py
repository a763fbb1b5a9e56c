"""
JSON bodies exchanged with an ETSI 014 KME.

Field names follow the wire format exactly. Decoding is all-or-nothing: one
malformed key entry rejects the whole container.
"""

import base64
import binascii
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..exceptions import ResponseDecodeError
from .models import Key, KeyContainer, KeyRequest, Status


class StatusBody(BaseModel):
    source_KME_ID: Optional[str] = None
    target_KME_ID: Optional[str] = None
    master_SAE_ID: Optional[str] = None
    slave_SAE_ID: Optional[str] = None
    key_size: int = 0
    stored_key_count: int = 0
    max_key_count: int = 0
    max_key_per_request: int = 0
    max_key_size: int = 0
    min_key_size: int = 0
    max_SAE_ID_count: int = 0
    status_extension: Optional[Dict[str, Any]] = None

    def to_status(self) -> Status:
        return Status(
            source_kme_id=self.source_KME_ID,
            target_kme_id=self.target_KME_ID,
            master_sae_id=self.master_SAE_ID,
            slave_sae_id=self.slave_SAE_ID,
            key_size=self.key_size,
            stored_key_count=self.stored_key_count,
            max_key_count=self.max_key_count,
            max_key_per_request=self.max_key_per_request,
            max_key_size=self.max_key_size,
            min_key_size=self.min_key_size,
            max_sae_id_count=self.max_SAE_ID_count,
            status_extension=self.status_extension,
        )


class KeyBody(BaseModel):
    key_ID: str = Field(min_length=1)
    key: str = Field(min_length=1)
    key_ID_extension: Optional[Dict[str, Any]] = None
    key_extension: Optional[Dict[str, Any]] = None

    @field_validator("key")
    @classmethod
    def validate_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except binascii.Error as e:
            raise ValueError(f"key is not valid base64: {e}") from e
        return v

    def to_key(self) -> Key:
        return Key(
            key_id=self.key_ID,
            key=base64.b64decode(self.key),
            key_id_extension=self.key_ID_extension,
            key_extension=self.key_extension,
        )


class KeyContainerBody(BaseModel):
    keys: List[KeyBody]
    key_container_extension: Optional[Dict[str, Any]] = None

    def to_container(self) -> KeyContainer:
        return KeyContainer(
            keys=[k.to_key() for k in self.keys],
            key_container_extension=self.key_container_extension,
        )


class KeyIdEntry(BaseModel):
    key_ID: str
    master_SAE_ID: Optional[str] = None


class KeyIdsBody(BaseModel):
    key_IDs: List[KeyIdEntry]


class KeyRequestBody(BaseModel):
    number: int = Field(default=1, gt=0)
    size: Optional[int] = Field(default=None, gt=0)
    additional_slave_SAE_IDs: Optional[List[str]] = None
    extension_mandatory: Optional[List[Dict[str, Any]]] = None
    extension_optional: Optional[List[Dict[str, Any]]] = None


def decode_status(content: bytes) -> Status:
    try:
        return StatusBody.model_validate_json(content).to_status()
    except ValidationError as e:
        raise ResponseDecodeError(f"Invalid status body: {e.error_count()} error(s)") from e


def decode_key_container(content: bytes) -> KeyContainer:
    try:
        return KeyContainerBody.model_validate_json(content).to_container()
    except ValidationError as e:
        raise ResponseDecodeError(f"Invalid key container: {e.error_count()} error(s)") from e


def encode_key_ids(key_ids: List[str], master_sae_id: Optional[str] = None) -> Dict[str, Any]:
    body = KeyIdsBody(key_IDs=[KeyIdEntry(key_ID=k, master_SAE_ID=master_sae_id) for k in key_ids])
    return body.model_dump(exclude_none=True)


def encode_key_request(request: KeyRequest, size: int) -> Dict[str, Any]:
    body = KeyRequestBody(
        number=request.number,
        size=size,
        additional_slave_SAE_IDs=request.additional_slave_sae_ids or None,
        extension_mandatory=request.extension_mandatory,
        extension_optional=request.extension_optional,
    )
    return body.model_dump(exclude_none=True)
