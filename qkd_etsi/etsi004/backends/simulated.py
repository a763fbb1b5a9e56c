"""
Simulated Stream Backend

Wraps an in-process StreamEngine so the full session, QoS, rate-limit and
TTL behaviour can be exercised without hardware or network access.
"""

import logging
from typing import Callable, Optional

from ..backend import StreamBackend
from ..engine import DEFAULT_CAPACITY, StreamEngine

logger = logging.getLogger(__name__)


def create_backend(
    settings=None,
    clock: Optional[Callable[[], int]] = None,
    engine: Optional[StreamEngine] = None,
) -> StreamBackend:
    if engine is None:
        capacity = settings.stream_table_capacity if settings is not None else DEFAULT_CAPACITY
        engine = StreamEngine(capacity=capacity, clock=clock)

    logger.debug("Simulated stream backend with %d session slots", engine.sessions.capacity)

    return StreamBackend(
        name="simulated",
        open_connect=engine.open_connect,
        get_key=engine.get_key,
        close=engine.close,
    )
