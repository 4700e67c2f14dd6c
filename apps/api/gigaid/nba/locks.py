from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager


class EntityLockRegistry:
    """Process-local mutual exclusion keyed by ``(entity_type, entity_id)``.

    Cross-process exclusion is provided by the partial unique indexes on the
    engine tables; this registry only serialises threads inside one worker.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, uuid.UUID], threading.Lock] = {}
        self._holders: dict[tuple[str, uuid.UUID], int] = {}

    @contextmanager
    def hold(self, entity_type: str, entity_id: uuid.UUID) -> Iterator[None]:
        key = (str(entity_type), entity_id)
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                remaining = self._holders[key] - 1
                if remaining:
                    self._holders[key] = remaining
                else:
                    del self._holders[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


entity_locks = EntityLockRegistry()
