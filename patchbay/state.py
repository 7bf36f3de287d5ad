#!/usr/bin/env python3
"""
Shared state - configuration snapshot and tempo epoch.

Two pieces of state are shared between event handler threads:

1. SharedConfig: the Configuration snapshot behind a reader-writer lock.
   Handlers take short read sections; only reload logic (not part of the
   router) would write.

2. TempoEpoch: the current tempo-distribution generation. Every tap tempo
   sequence remembers the epoch it started under and halts as soon as the
   published value differs. Waiting sequences are woken by advance() through
   a Condition, so supersession is immediate rather than poll-delayed.

THREAD SAFETY:
- ReadWriteLock is writer-preferring: a waiting writer blocks new readers
- TempoEpoch.advance() is atomic with respect to current() and waits
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from patchbay.model import Configuration


class ReadWriteLock:
    """Multi-reader / single-writer lock built on a Condition."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class SharedConfig:
    """Configuration snapshot guarded by a ReadWriteLock.

    Example:
        >>> shared = SharedConfig(configuration)
        >>> with shared.read() as config:
        ...     device = config.get_device("synth")
    """

    def __init__(self, configuration: Configuration):
        self._configuration = configuration
        self._lock = ReadWriteLock()

    @contextmanager
    def read(self) -> Iterator[Configuration]:
        with self._lock.read():
            yield self._configuration

    def replace(self, configuration: Configuration) -> None:
        """Swap in a new snapshot (for reload tooling; the router never calls this)."""
        with self._lock.write():
            self._configuration = configuration


class TempoEpoch:
    """Monotonic generation token with wake-on-change.

    Attributes:
        value (int): Currently published epoch (starts at 0, never decreases)
    """

    def __init__(self, initial: int = 0):
        self._value = initial
        self._cond = threading.Condition()

    def current(self) -> int:
        with self._cond:
            return self._value

    def advance(self) -> int:
        """Mint and publish a strictly greater epoch, waking all waiters.

        Returns:
            The newly published epoch
        """
        with self._cond:
            self._value += 1
            self._cond.notify_all()
            return self._value

    def is_current(self, epoch: int) -> bool:
        return self.current() == epoch

    def wait_while_current(self, epoch: int, timeout: Optional[float]) -> bool:
        """Sleep up to timeout seconds unless the epoch moves on.

        Args:
            epoch: Epoch the caller is running under
            timeout: Seconds to wait

        Returns:
            True if epoch is still current after the full wait,
            False as soon as a different epoch is published
        """
        with self._cond:
            changed = self._cond.wait_for(lambda: self._value != epoch, timeout=timeout)
            return not changed
