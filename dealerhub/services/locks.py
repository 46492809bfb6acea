"""
Verrous applicatifs par clé.

Complètent les verrous SQL (FOR UPDATE) : sous PostgreSQL le verrou de ligne
sérialise entre processus, ces verrous sérialisent entre threads d'un même
processus (et suffisent seuls sous SQLite, qui ignore FOR UPDATE).

Une clé n'existe que tant qu'un thread la tient ou l'attend.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, _Entry] = {}

    def _acquire_entry(self, key: Hashable) -> _Entry:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _Entry()
                self._locks[key] = entry
            entry.holders += 1
            return entry

    def _release_entry(self, key: Hashable, entry: _Entry) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        entry = self._acquire_entry(key)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(key, entry)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
