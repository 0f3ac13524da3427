from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager


class EntityLockRegistry:
    """Per-entity mutexes for the current process, released when unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, uuid.UUID], threading.RLock] = {}
        self._waiters: dict[tuple[str, uuid.UUID], int] = {}

    @contextmanager
    def hold(self, tenant_id: str, entity_id: uuid.UUID) -> Iterator[None]:
        key = (tenant_id, entity_id)
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                remaining = self._waiters[key] - 1
                if remaining:
                    self._waiters[key] = remaining
                else:
                    del self._waiters[key]
                    del self._locks[key]


entity_locks = EntityLockRegistry()
