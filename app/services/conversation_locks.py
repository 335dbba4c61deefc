from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Iterator


class ConversationLocks:
    """One lock per (tenant, customer phone), released when nobody holds it.

    Serializes the get-or-create-then-mutate sequence for a conversation
    inside this process. Cross-process safety relies on the unique
    constraints of ``conversations`` and ``conversation_messages``.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[tuple[int, str], Lock] = {}
        self._holders: dict[tuple[int, str], int] = {}

    @contextmanager
    def hold(self, tenant_id: int, customer_phone: str) -> Iterator[None]:
        key = (tenant_id, customer_phone)
        with self._guard:
            lock = self._locks.setdefault(key, Lock())
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
                    self._holders.pop(key, None)
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


conversation_locks = ConversationLocks()
