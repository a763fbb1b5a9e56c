"""
QKD ETSI Client Package

Access to QKD key material through the ETSI GS QKD 004 Stream API and the
ETSI GS QKD 014 Vault API, each backed by a simulated, REST or legacy
wire-protocol implementation selected through a QKDContext.
"""

from .config import Settings, get_settings
from .exceptions import BackendNotConfiguredError, QKDError
from .log import configure_logging
from .registry import QKDContext, build_context

__version__ = "0.1.0"

__all__ = [
    "Settings",
    "get_settings",
    "QKDError",
    "BackendNotConfiguredError",
    "configure_logging",
    "QKDContext",
    "build_context",
]
