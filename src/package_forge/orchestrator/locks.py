"""Per-project mutual exclusion for mutating operations."""

import threading

_registry_lock = threading.Lock()
_project_locks: dict[str, threading.RLock] = {}


def project_lock(project_id: str) -> threading.RLock:
    """Return the lock guarding mutations of one project.

    The same lock object is returned for every call with the same id. It is
    re-entrant so nested session operations in one thread do not deadlock.
    """
    with _registry_lock:
        lock = _project_locks.get(project_id)
        if lock is None:
            lock = threading.RLock()
            _project_locks[project_id] = lock
        return lock


def release_project_lock(project_id: str) -> None:
    """Forget the lock of a deleted project."""
    with _registry_lock:
        _project_locks.pop(project_id, None)
