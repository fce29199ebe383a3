from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator


@dataclass(slots=True)
class _LockEntry:
    """Internal lock slot tracking how many holders/waiters reference it.

    Example:
        ```python
        entry = _LockEntry(lock=threading.Lock(), users=0)
        ```
    """

    lock: threading.Lock
    users: int


class KeyedLocks:
    """One mutex per key, created on demand and dropped when unused.

    Example:
        ```python
        locks = KeyedLocks()
        with locks.hold("env-1"):
            ...
        ```
    """

    def __init__(self) -> None:
        """Initialize an empty, thread-safe lock map.

        Example:
            ```python
            locks = KeyedLocks()
            ```
        """
        self._guard = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the mutex for `key` for the duration of the block.

        Example:
            ```python
            with locks.hold(env_id):
                manager.delete(path)
            ```
        """
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry(lock=threading.Lock(), users=0)
                self._entries[key] = entry
            entry.users += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._entries.pop(key, None)

    def is_held(self, key: str) -> bool:
        """Return True while some thread holds or waits for `key`.

        Example:
            ```python
            busy = locks.is_held(env_id)
            ```
        """
        with self._guard:
            return key in self._entries
