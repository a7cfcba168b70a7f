"""
Cooperative cancellation for chunked batch jobs.

Jobs check should_stop() before starting each chunk; a chunk that has
already started always runs to completion.
"""

import asyncio
import time
from typing import Optional


def should_stop(stop_event: Optional[asyncio.Event], deadline: Optional[float]) -> bool:
    """True when a batch job must not schedule another chunk."""
    if stop_event is not None and stop_event.is_set():
        return True
    if deadline is not None and time.monotonic() >= deadline:
        return True
    return False
