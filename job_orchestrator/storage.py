"""JSON file storage with atomic writes.

Each document is one JSON file in the data directory. Writes go to a
temporary file first and are moved into place with ``os.replace``, so a
reader never observes a torn file and a crash mid-write leaves the
previous version intact.
"""

import json
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

_LOCKS: dict[str, threading.RLock] = {}
_LOCKS_GUARD = threading.Lock()


def lock_for(path: Path) -> threading.RLock:
    """Return the process-wide lock guarding a file path."""
    key = str(Path(path).resolve())
    with _LOCKS_GUARD:
        lock = _LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _LOCKS[key] = lock
        return lock


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to ``path`` atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def read_json(path: Path, default: Callable[[], Any]) -> Any:
    """Read JSON from ``path``, returning ``default()`` when it is missing."""
    path = Path(path)
    if not path.exists():
        return default()
    with open(path, "r") as f:
        return json.load(f)


class JsonDocument:
    """A single JSON document guarded by a lock.

    ``mutate()`` is the unit of atomicity: the document is loaded, handed
    to the caller, and written back once when the block exits cleanly.
    An exception inside the block discards every change.
    """

    def __init__(self, path: Path, default: Callable[[], Any] = dict):
        self.path = Path(path)
        self._default = default
        self._lock = lock_for(self.path)

    def load(self) -> Any:
        with self._lock:
            return read_json(self.path, self._default)

    def save(self, data: Any) -> None:
        with self._lock:
            atomic_write_json(self.path, data)

    @contextmanager
    def mutate(self) -> Iterator[Any]:
        with self._lock:
            data = read_json(self.path, self._default)
            yield data
            atomic_write_json(self.path, data)
