"""
auth/locks.py -- Per-key in-process locks.

KeyedLock hands out one threading.Lock per key (e.g. a user id) so that work
on different keys never contends. Lock objects are created with
dict.setdefault, which is atomic under the GIL, so no global lock is needed
to create them.

Entries are never evicted: the key space is the set of admin users, which is
small and bounded.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class KeyedLock:
    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield
