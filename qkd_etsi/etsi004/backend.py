"""
Stream API backend contract.

A backend is an immutable operation set. Any operation may be left as
``None``; the dispatcher reports that as a missing backend.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from .models import CloseResult, GetKeyResult, MetadataBuffer, OpenConnectResult, QoS

OpenConnectFn = Callable[[str, str, QoS, bytes], OpenConnectResult]
GetKeyFn = Callable[[bytes, int, Optional[MetadataBuffer]], GetKeyResult]
CloseFn = Callable[[bytes], CloseResult]


@dataclass(frozen=True)
class StreamBackend:
    name: str
    open_connect: Optional[OpenConnectFn] = None
    get_key: Optional[GetKeyFn] = None
    close: Optional[CloseFn] = None
