"""Per-project mutual exclusion for read-then-append state updates."""

import threading
from contextlib import contextmanager

_registry_lock = threading.Lock()
_project_locks: dict[str, threading.RLock] = {}


def get_project_lock(project_id: str) -> threading.RLock:
    """Return the lock guarding a project, creating it on first use."""
    with _registry_lock:
        lock = _project_locks.get(project_id)
        if lock is None:
            lock = threading.RLock()
            _project_locks[project_id] = lock
        return lock


@contextmanager
def project_lock(project_id: str):
    """Serialize operations on one project. Re-entrant within a thread."""
    lock = get_project_lock(project_id)
    with lock:
        yield
