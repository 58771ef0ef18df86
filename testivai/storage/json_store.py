"""Single-writer JSON document store with lock-then-read-merge-write discipline.

history.json and approvals.json are small documents shared by parallel test
workers. Writers take an exclusive lock file next to the document, re-read the
latest contents, merge, and replace the file atomically (temp file in the same
directory + ``os.replace``). Readers never see a half-written document.

The lock file holds the owner's pid. A lock whose owner has exited is removed
so a killed worker does not block every later writer.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import psutil

from testivai.errors import LedgerCorruptedError, LockTimeoutError, PersistenceError

logger = logging.getLogger(__name__)


class JsonDocumentStore:
    """Persists one JSON object at ``path``."""

    def __init__(self, path: Path, lock_timeout: float = 10.0, poll_interval: float = 0.05):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Optional[dict[str, Any]]:
        """Return the stored object, or None when the file does not exist.

        A file that exists but cannot be parsed raises LedgerCorruptedError;
        it is never treated as empty.
        """
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise LedgerCorruptedError(str(self.path), str(e)) from e
        except OSError as e:
            raise PersistenceError(f"Failed to read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise LedgerCorruptedError(str(self.path), f"expected a JSON object, got {type(data).__name__}")
        return data

    def write(self, data: dict[str, Any]) -> None:
        """Atomically replace the document. Callers that merge should hold the lock."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
        except OSError as e:
            raise PersistenceError(f"Failed to prepare write of {self.path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except (OSError, TypeError, ValueError) as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise PersistenceError(f"Failed to write {self.path}: {e}") from e
        logger.debug("Saved %s", self.path)

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the exclusive lock file for the duration of the block."""
        fd = self._acquire()
        try:
            yield
        finally:
            os.close(fd)
            try:
                os.unlink(self.lock_path)
            except FileNotFoundError:
                logger.warning("Lock file %s vanished before release", self.lock_path)

    def mutate(self, fn: Callable[[Optional[dict[str, Any]]], dict[str, Any]]) -> dict[str, Any]:
        """Read, transform with ``fn`` and write back, all under the lock."""
        with self.lock():
            current = self.read()
            updated = fn(current)
            self.write(updated)
        return updated

    def _acquire(self) -> int:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create directory for {self.lock_path}: {e}") from e

        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._break_stale_lock():
                    continue
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(str(self.lock_path), self.lock_timeout)
                time.sleep(self.poll_interval)
                continue
            except OSError as e:
                raise PersistenceError(f"Cannot create lock {self.lock_path}: {e}") from e
            os.write(fd, str(os.getpid()).encode())
            logger.debug("Acquired lock %s", self.lock_path)
            return fd

    def _break_stale_lock(self) -> bool:
        """Remove the lock file if the process that wrote it has exited.

        A lock with no readable pid yet is left alone; its owner may still be
        writing it.
        """
        try:
            pid = int(self.lock_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return False
        if _process_alive(pid):
            return False
        logger.warning("Removing stale lock %s left by exited process %d", self.lock_path, pid)
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceError(f"Cannot remove stale lock {self.lock_path}: {e}") from e
        return True


def _process_alive(pid: int) -> bool:
    # Not a real pid: leave the lock to time out
    if pid <= 0:
        return True
    return psutil.pid_exists(pid)
