"""
ETSI GS QKD 014 entry points.

Arguments are checked before dispatch. A context without a vault backend,
or a backend lacking the operation, yields SERVER_ERROR.
"""

import logging
from typing import TYPE_CHECKING, List, Optional

from .models import KeyContainerResult, KeyRequest, StatusResult, VaultStatus

if TYPE_CHECKING:
    from ..registry import QKDContext

logger = logging.getLogger(__name__)


def _operation(ctx: "QKDContext", name: str):
    backend = ctx.vault_backend if ctx is not None else None
    if backend is None:
        logger.error("No QKD vault backend registered")
        return None
    op = getattr(backend, name)
    if op is None:
        logger.error("Vault backend %s does not implement %s", backend.name, name)
    return op


def get_status(ctx: "QKDContext", kme_hostname: str, slave_sae_id: str) -> StatusResult:
    if not kme_hostname or not slave_sae_id:
        logger.error("Invalid parameters in GET_STATUS")
        return StatusResult(VaultStatus.BAD_REQUEST)

    op = _operation(ctx, "get_status")
    if op is None:
        return StatusResult(VaultStatus.SERVER_ERROR)
    return op(kme_hostname, slave_sae_id)


def get_key(
    ctx: "QKDContext",
    kme_hostname: str,
    slave_sae_id: str,
    request: Optional[KeyRequest] = None,
) -> KeyContainerResult:
    """
    Request fresh keys shared with ``slave_sae_id``.

    Args:
        ctx: Configuration carrying the active vault backend
        kme_hostname: Master KME, with or without scheme
        slave_sae_id: Peer SAE the keys are shared with
        request: Number, size and extensions; one default-size key if omitted

    Returns:
        KeyContainerResult; the container is set only when code is OK
    """
    if not kme_hostname or not slave_sae_id:
        logger.error("Invalid parameters in GET_KEY")
        return KeyContainerResult(VaultStatus.BAD_REQUEST)
    if request is not None and request.number < 1:
        logger.error("GET_KEY number must be positive, got %d", request.number)
        return KeyContainerResult(VaultStatus.BAD_REQUEST)

    op = _operation(ctx, "get_key")
    if op is None:
        return KeyContainerResult(VaultStatus.SERVER_ERROR)
    return op(kme_hostname, slave_sae_id, request)


def get_key_with_ids(
    ctx: "QKDContext",
    kme_hostname: str,
    master_sae_id: str,
    key_ids: List[str],
) -> KeyContainerResult:
    """Retrieve keys the master SAE already obtained, by their IDs."""
    if not kme_hostname or not master_sae_id or not key_ids:
        logger.error("Invalid parameters in GET_KEY_WITH_IDS")
        return KeyContainerResult(VaultStatus.BAD_REQUEST)

    op = _operation(ctx, "get_key_with_ids")
    if op is None:
        return KeyContainerResult(VaultStatus.SERVER_ERROR)
    return op(kme_hostname, master_sae_id, list(key_ids))
