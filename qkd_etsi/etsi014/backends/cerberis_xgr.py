"""
Cerberis XGR KME Backend

Same REST surface as the generic KME backend, but the device issues a single
client certificate: every call presents the QKD_CERT_PATH / QKD_KEY_PATH /
QKD_CA_CERT_PATH triple whatever the role, and dec_keys bodies carry only
key IDs.
"""

import logging
from typing import Optional

from ...config import Settings
from ..backend import VaultBackend
from .rest import KMEClient, resolve_fixed_credentials

logger = logging.getLogger(__name__)


def create_backend(settings: Optional[Settings] = None, **client_kwargs) -> VaultBackend:
    client_kwargs.setdefault("credential_resolver", resolve_fixed_credentials)
    client = KMEClient(settings, dialect="standard", **client_kwargs)
    logger.debug("Cerberis XGR backend: one credential triple for all roles")
    return VaultBackend(
        name="cerberis_xgr",
        get_status=client.get_status,
        get_key=client.get_key,
        get_key_with_ids=client.get_key_with_ids,
    )
