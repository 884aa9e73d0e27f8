"""In-process mutual exclusion per USSD session id."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class SessionLockRegistry:
    """Hands out one lock per session id and forgets it once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(session_id, _LockEntry())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(session_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
