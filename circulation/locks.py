"""Per-entity critical sections.

Each copy, member and loan gets its own lock, created on first use and
dropped once no operation holds or waits for it. An operation that touches
several entities takes their locks in sorted key order, so two operations
can never wait on each other in a cycle. Waiting
is bounded: on timeout the operation fails with ConcurrentModification and
the caller retries.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from circulation.errors import ConcurrentModification

logger = logging.getLogger(__name__)


def copy_key(copy_id: str) -> str:
    return f"copy:{copy_id}"


def member_key(member_id: str) -> str:
    return f"member:{member_id}"


def loan_key(loan_id: str) -> str:
    return f"loan:{loan_id}"


class KeyedLocks:
    """A registry of exclusive locks keyed by entity identifier."""

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[str, list] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, key: str) -> threading.Lock:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold every lock in ``keys`` for the duration of the block."""
        budget = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        acquired: List[Tuple[str, threading.Lock]] = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    self._checkin(key)
                    logger.warning("Timed out after %.2fs waiting for %s", budget, key)
                    raise ConcurrentModification(f"{key} is busy, retry the operation.")
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)
