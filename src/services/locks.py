from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import Iterable, Iterator

from domain.accounts import AccountRef
from domain.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class AccountLocks:
    """Per-account exclusive locks for the check-then-act critical section.

    Several accounts are always locked in ``AccountRef.sort_key`` order so
    two writers touching the same pair of accounts cannot deadlock.
    """

    def __init__(self, *, timeout: float) -> None:
        self.timeout = timeout
        self._registry_lock = threading.Lock()
        self._locks: dict[tuple[str, str, str], threading.Lock] = {}

    @contextmanager
    def hold(self, refs: Iterable[AccountRef]) -> Iterator[None]:
        keys = sorted({ref.sort_key for ref in refs})
        with ExitStack() as stack:
            for key in keys:
                lock = self._lock_for(key)
                if not lock.acquire(timeout=self.timeout):
                    logger.warning("Timed out after %.2fs waiting for account lock %s", self.timeout, "/".join(key))
                    raise StoreUnavailable(f"Timed out waiting for account lock {'/'.join(key)}")
                stack.callback(lock.release)
            yield

    def _lock_for(self, key: tuple[str, str, str]) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock
