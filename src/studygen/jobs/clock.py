"""Clock capability used for backoff delays and poll intervals."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Protocol

from studygen.storage.common import utc_now


class Clock(Protocol):
    def now(self) -> datetime: ...

    def sleep(self, duration: timedelta) -> bool:
        """Wait for `duration`; return False if the wait was interrupted."""

    def request_stop(self) -> None:
        """Interrupt the current and all future sleeps."""


class SystemClock:
    """Wall clock whose sleep can be interrupted by `request_stop`."""

    def __init__(self) -> None:
        self._stop = threading.Event()

    def now(self) -> datetime:
        return utc_now()

    def sleep(self, duration: timedelta) -> bool:
        return not self._stop.wait(timeout=max(0.0, duration.total_seconds()))

    def request_stop(self) -> None:
        self._stop.set()


class FakeClock:
    """Virtual clock: sleeping advances time instantly and is recorded."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or utc_now()
        self._stopped = False
        self.sleeps: list[timedelta] = []

    def now(self) -> datetime:
        return self._now

    def sleep(self, duration: timedelta) -> bool:
        self.sleeps.append(duration)
        if self._stopped:
            return False
        self._now += duration
        return True

    def request_stop(self) -> None:
        self._stopped = True
