from __future__ import annotations

import threading
from collections import defaultdict


_counters: dict[str, int] = defaultdict(int)
_lock = threading.Lock()


def increment_counter(name: str, value: int = 1) -> None:
    # Track operational counters (rate limit hits, batch outcomes) in-process.
    with _lock:
        _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    with _lock:
        return dict(_counters)


def reset_counters() -> None:
    # Clear counters for deterministic tests.
    with _lock:
        _counters.clear()
