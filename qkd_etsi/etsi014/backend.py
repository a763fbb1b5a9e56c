"""
Vault API backend contract.

Operations take the KME hostname and SAE identity as their first two
arguments; any of them may be ``None`` when a backend does not support it.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional

from .models import KeyContainerResult, KeyRequest, StatusResult

GetStatusFn = Callable[[str, str], StatusResult]
GetKeyFn = Callable[[str, str, Optional[KeyRequest]], KeyContainerResult]
GetKeyWithIdsFn = Callable[[str, str, List[str]], KeyContainerResult]


@dataclass(frozen=True)
class VaultBackend:
    name: str
    get_status: Optional[GetStatusFn] = None
    get_key: Optional[GetKeyFn] = None
    get_key_with_ids: Optional[GetKeyWithIdsFn] = None
