# src/vaultgate/runtime/scoped_locks.py
from __future__ import annotations

import hashlib
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


def lock_key(scope: str) -> int:
    """Map a scope string to a signed 64-bit lock id.

    First 8 bytes of sha256, big-endian, two's complement. Same scope always
    yields the same id; distinct scopes collide only with hash probability.
    """
    digest = hashlib.sha256(str(scope).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class _Slot:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class ScopedLockTable:
    """Per-key mutual exclusion inside one process.

    Holders of the same key serialize; holders of different keys never wait on
    each other. Slots are reference counted and dropped when the last holder
    leaves, so the table does not grow with the number of keys ever seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._slots: Dict[int, _Slot] = {}

    @contextmanager
    def hold(self, scope: str) -> Iterator[int]:
        key = lock_key(scope)

        with self._guard:
            slot = self._slots.get(key)
            if slot is None:
                slot = _Slot()
                self._slots[key] = slot
            slot.refs += 1

        slot.lock.acquire()
        try:
            yield key
        finally:
            slot.lock.release()
            with self._guard:
                slot.refs -= 1
                if slot.refs <= 0:
                    self._slots.pop(key, None)

    def active_keys(self) -> List[int]:
        with self._guard:
            return sorted(self._slots.keys())
