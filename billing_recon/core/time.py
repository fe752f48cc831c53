from __future__ import annotations

import time


def now_ms() -> int:
    return int(time.time() * 1000)


class Deadline:
    """Wall-clock budget for one run; zero or negative seconds means unbounded."""

    def __init__(self, seconds: float, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds if seconds and seconds > 0 else None

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at
