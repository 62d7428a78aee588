"""
Per-ticket mutual exclusion.

Transitions on the same ticket are serialized; different tickets proceed in
parallel. The lock covers only validate + commit, never notification
delivery. Daily report delivery reuses the same locks keyed by report id.

hold() yields a renew() callable. Holders doing slow work call it between
steps so a distributed lock does not expire underneath them.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Iterator
from uuid import UUID

from redis.exceptions import LockError

from clients.valkey_client import ValkeyClient

logger = logging.getLogger(__name__)


def _no_renew() -> None:
    pass


class TicketLocks(ABC):
    """Single-writer-per-ticket discipline."""

    @abstractmethod
    def hold(self, key: UUID):
        """Context manager that holds the lock for `key` and yields renew()."""


class LocalTicketLocks(TicketLocks):
    """In-process locks, one per key. Entries are dropped when idle."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[UUID, threading.Lock] = {}
        self._holders: dict[UUID, int] = {}

    @contextmanager
    def hold(self, key: UUID) -> Iterator[Callable[[], None]]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1

        try:
            with lock:
                yield _no_renew
        finally:
            with self._guard:
                self._holders[key] -= 1
                if self._holders[key] == 0:
                    del self._holders[key]
                    del self._locks[key]


class ValkeyTicketLocks(TicketLocks):
    """
    Locks shared by every worker process pointed at the same Valkey.

    Keys expire after timeout_seconds so a crashed holder cannot block
    forever. renew() resets that timer and raises TimeoutError if the key
    already expired and another worker may hold it.
    """

    KEY_PREFIX = "servicedesk:lock:"

    def __init__(self, valkey: ValkeyClient, timeout_seconds: float = 30, wait_seconds: float = 10):
        self._valkey = valkey
        self._timeout = timeout_seconds
        self._wait = wait_seconds

    @contextmanager
    def hold(self, key: UUID) -> Iterator[Callable[[], None]]:
        lock = self._valkey.lock(
            f"{self.KEY_PREFIX}{key}",
            timeout=self._timeout,
            blocking_timeout=self._wait,
        )
        if not lock.acquire():
            raise TimeoutError(f"Could not lock {key} within {self._wait}s")

        def renew() -> None:
            try:
                lock.reacquire()
            except LockError as e:
                raise TimeoutError(f"Lock on {key} expired before renewal") from e

        try:
            yield renew
        finally:
            try:
                lock.release()
            except LockError:
                logger.warning(f"Lock on {key} expired before release (held over {self._timeout}s)")
