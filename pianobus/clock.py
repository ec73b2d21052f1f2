from __future__ import annotations

import time
from typing import Callable

# Milliseconds on a monotonic clock; only differences are meaningful.
NowFn = Callable[[], float]


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def elapsed_ms(started_at_ms: float, now_ms: float) -> int:
    """Whole milliseconds between two monotonic readings, never negative."""
    return max(0, int(round(now_ms - started_at_ms)))
