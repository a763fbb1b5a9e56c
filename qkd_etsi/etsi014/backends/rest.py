"""
ETSI 014 KME REST Backend

Synchronous REST client for an ETSI GS QKD 014 Key Management Entity.
Every call presents a client certificate chosen by role: initiator calls
(status, enc_keys) use the master triple, responder calls (dec_keys) use
the slave triple. Credentials are resolved on each call.
"""

import logging
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple, Union
from urllib.parse import quote

import httpx

from ...config import Settings, get_settings
from ...exceptions import CredentialError, ResponseDecodeError, TransportError
from ..backend import VaultBackend
from ..models import (
    KeyContainer,
    KeyContainerResult,
    KeyRequest,
    StatusResult,
    VaultStatus,
    status_from_http,
)
from ..schemas import decode_key_container, decode_status, encode_key_ids, encode_key_request

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialSet:
    cert_path: Path
    key_path: Path
    ca_cert_path: Path


def resolve_credentials(settings: Settings, initiator: bool) -> CredentialSet:
    """
    Select the certificate/key/CA triple for a role.

    Args:
        settings: Source of the qkd_master_* and qkd_slave_* paths
        initiator: True for master credentials, False for slave credentials

    Raises:
        CredentialError: If any path of the selected triple is unset
    """
    if initiator:
        role = "MASTER"
        triple = (settings.qkd_master_cert_path, settings.qkd_master_key_path, settings.qkd_master_ca_cert_path)
    else:
        role = "SLAVE"
        triple = (settings.qkd_slave_cert_path, settings.qkd_slave_key_path, settings.qkd_slave_ca_cert_path)

    if not all(triple):
        raise CredentialError(f"Required {role} certificate settings not set")

    logger.debug("%s credentials: cert=%s key=%s ca=%s", role, *triple)
    return CredentialSet(*triple)


def resolve_fixed_credentials(settings: Settings, initiator: bool) -> CredentialSet:
    """One certificate/key/CA triple for every call, regardless of role."""
    triple = (settings.qkd_cert_path, settings.qkd_key_path, settings.qkd_ca_cert_path)
    if not all(triple):
        raise CredentialError("Required certificate settings not set: QKD_CERT_PATH, QKD_KEY_PATH, QKD_CA_CERT_PATH")
    return CredentialSet(*triple)


def build_ssl_context(credentials: CredentialSet) -> ssl.SSLContext:
    """Mutual-TLS context: CA signatures are verified, certificate names are not."""
    try:
        context = ssl.create_default_context(cafile=str(credentials.ca_cert_path))
        context.check_hostname = False
        context.load_cert_chain(certfile=str(credentials.cert_path), keyfile=str(credentials.key_path))
    except (OSError, ssl.SSLError) as e:
        raise CredentialError(f"Cannot load TLS credentials: {e}") from e
    return context


CredentialResolver = Callable[[Settings, bool], CredentialSet]


def base_url(kme_hostname: str) -> str:
    if "://" not in kme_hostname:
        kme_hostname = f"https://{kme_hostname}"
    return kme_hostname.rstrip("/")


class KMEClient:

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None,
        ssl_context_factory: Callable[[CredentialSet], Union[ssl.SSLContext, bool]] = build_ssl_context,
        credential_resolver: CredentialResolver = resolve_credentials,
        dialect: Optional[str] = None,
    ):
        self._settings = settings or get_settings()
        self._transport = transport
        self._ssl_context_factory = ssl_context_factory
        self._credential_resolver = credential_resolver
        self._dialect = dialect or self._settings.kme_dialect

    def _send(self, method: str, url: str, initiator: bool, **kwargs) -> httpx.Response:
        credentials = self._credential_resolver(self._settings, initiator)
        verify = self._ssl_context_factory(credentials)

        try:
            with httpx.Client(
                verify=verify,
                timeout=self._settings.kme_timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            ) as client:
                return client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"KME request timed out: {url}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"KME not reachable: {e}") from e

    def _call(self, label: str, method: str, url: str, initiator: bool,
              decode: Callable[[bytes], Any], **kwargs) -> Tuple[VaultStatus, Any]:
        try:
            response = self._send(method, url, initiator, **kwargs)
        except CredentialError as e:
            logger.error("[%s] - %s", label, e)
            return VaultStatus.BAD_REQUEST, None
        except TransportError as e:
            logger.error("[%s] - %s", label, e)
            return VaultStatus.SERVER_ERROR, None

        logger.info("[%s] - HTTP RSP Code: %d", label, response.status_code)

        if response.status_code >= 400:
            logger.error("[%s] - HTTP request failed: %s", label, response.text)
            return status_from_http(response.status_code), None

        try:
            return VaultStatus.OK, decode(response.content)
        except ResponseDecodeError as e:
            logger.error("[%s] - Error parsing JSON: %s", label, e)
            return VaultStatus.BAD_REQUEST, None

    def get_status(self, kme_hostname: str, slave_sae_id: str) -> StatusResult:
        url = f"{base_url(kme_hostname)}/api/v1/keys/{quote(slave_sae_id, safe='')}/status"
        code, status = self._call("GET_STATUS", "GET", url, True, decode_status)
        return StatusResult(code, status)

    def get_key(self, kme_hostname: str, slave_sae_id: str,
                request: Optional[KeyRequest] = None) -> KeyContainerResult:
        request = request or KeyRequest()
        size = request.size if request.size is not None else self._settings.default_key_size
        url = f"{base_url(kme_hostname)}/api/v1/keys/{quote(slave_sae_id, safe='')}/enc_keys"

        def decode(content: bytes) -> KeyContainer:
            container = decode_key_container(content)
            if len(container) != request.number:
                raise ResponseDecodeError(f"Expected {request.number} keys, got {len(container)}")
            return container

        if request.needs_post:
            code, container = self._call(
                "GET_KEY", "POST", url, True, decode, json=encode_key_request(request, size),
            )
        else:
            code, container = self._call(
                "GET_KEY", "GET", url, True, decode, params={"number": request.number, "size": size},
            )
        return KeyContainerResult(code, container)

    def get_key_with_ids(self, kme_hostname: str, master_sae_id: str,
                         key_ids: List[str]) -> KeyContainerResult:
        url = f"{base_url(kme_hostname)}/api/v1/keys/{quote(master_sae_id, safe='')}/dec_keys"
        body_master = master_sae_id if self._dialect == "qukaydee" else None
        body = encode_key_ids(key_ids, body_master)
        logger.debug("POST DATA: %s", body)

        def decode(content: bytes) -> KeyContainer:
            container = decode_key_container(content)
            by_id = {k.key_id: k for k in container.keys}
            missing = [k for k in key_ids if k not in by_id]
            if missing:
                raise ResponseDecodeError(f"Response lacks requested key IDs {missing}")
            container.keys = [by_id[k] for k in key_ids]
            return container

        code, container = self._call("GET_KEY_WITH_IDS", "POST", url, False, decode, json=body)
        return KeyContainerResult(code, container)


def create_backend(settings: Optional[Settings] = None, **client_kwargs) -> VaultBackend:
    client = KMEClient(settings, **client_kwargs)
    return VaultBackend(
        name="rest",
        get_status=client.get_status,
        get_key=client.get_key,
        get_key_with_ids=client.get_key_with_ids,
    )
