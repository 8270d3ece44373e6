from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


_REGISTRY_LOCK = threading.Lock()
_ASSET_LOCKS: dict[int, threading.Lock] = {}


def _lock_for(asset_id: int) -> threading.Lock:
    with _REGISTRY_LOCK:
        lock = _ASSET_LOCKS.get(asset_id)
        if lock is None:
            lock = threading.Lock()
            _ASSET_LOCKS[asset_id] = lock
        return lock


@contextmanager
def asset_guard(asset_id: int) -> Iterator[None]:
    # Serializes check-then-act sequences for one asset inside this process.
    # Row locks (SELECT ... FOR UPDATE) cover other processes sharing the database.
    lock = _lock_for(int(asset_id))
    with lock:
        yield
