"""
Backend registry and the QKD context.

A QKDContext carries the stream and vault backends chosen at startup and
is passed explicitly to every API call; there is no process-wide active
backend.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .config import Settings, get_settings
from .etsi004.backend import StreamBackend
from .etsi004.backends import legacy as legacy_stream
from .etsi004.backends import rest as rest_stream
from .etsi004.backends import simulated as simulated_stream
from .etsi014.backend import VaultBackend
from .etsi014.backends import cerberis_xgr as cerberis_vault
from .etsi014.backends import rest as rest_vault
from .etsi014.backends import simulated as simulated_vault
from .exceptions import BackendNotConfiguredError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QKDContext:
    stream_backend: Optional[StreamBackend] = None
    vault_backend: Optional[VaultBackend] = None


STREAM_BACKENDS: Dict[str, Callable[[Settings], StreamBackend]] = {
    "simulated": simulated_stream.create_backend,
    "legacy": legacy_stream.create_backend,
    "rest": rest_stream.create_backend,
}

VAULT_BACKENDS: Dict[str, Callable[[Settings], VaultBackend]] = {
    "simulated": simulated_vault.create_backend,
    "rest": rest_vault.create_backend,
    "cerberis_xgr": cerberis_vault.create_backend,
}


def _create(kind: str, name: str, factories: Dict[str, Callable], settings: Settings):
    if name == "none":
        logger.info("No %s backend configured", kind)
        return None
    factory = factories.get(name)
    if factory is None:
        raise BackendNotConfiguredError(
            f"Unknown {kind} backend '{name}'; choose one of {sorted(factories)} or 'none'"
        )
    backend = factory(settings)
    logger.info("Registered %s backend: %s", kind, backend.name)
    return backend


def build_context(
    settings: Optional[Settings] = None,
    stream_backend: Optional[str] = None,
    vault_backend: Optional[str] = None,
) -> QKDContext:
    """
    Construct the backends named in settings.

    Args:
        settings: Configuration; the cached environment settings if omitted
        stream_backend: Overrides ``settings.stream_backend``
        vault_backend: Overrides ``settings.vault_backend``

    Raises:
        BackendNotConfiguredError: If a name matches no known backend
    """
    settings = settings or get_settings()
    return QKDContext(
        stream_backend=_create("stream", stream_backend or settings.stream_backend, STREAM_BACKENDS, settings),
        vault_backend=_create("vault", vault_backend or settings.vault_backend, VAULT_BACKENDS, settings),
    )
