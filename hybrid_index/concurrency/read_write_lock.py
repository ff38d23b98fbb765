# hybrid_index/concurrency/read_write_lock.py
import threading
from contextlib import contextmanager
from typing import Iterator, Optional


class LockTimeout(TimeoutError):
    pass


class ReadWriteLock:
    """
    Readers-writer lock with writer preference.
    - Multiple readers can hold the lock concurrently.
    - Writers have exclusive access and are favored to avoid starvation.
    - The writing thread may re-enter write_lock() and may take read_lock()
      (e.g. a mutation that consults stats) without deadlocking itself.
    """
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer: Optional[int] = None  # ident of the owning thread
        self._write_depth = 0
        self._waiting_writers = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def write_locked(self) -> bool:
        return self._writer is not None

    def _owns_write(self) -> bool:
        return self._writer == threading.get_ident()

    @contextmanager
    def read_lock(self, timeout: Optional[float] = None) -> Iterator[None]:
        if self._owns_write():
            # already exclusive; nothing to wait for
            yield
            return
        with self._cond:
            # Block new readers if a writer holds the lock OR is waiting.
            ok = self._cond.wait_for(
                lambda: self._writer is None and self._waiting_writers == 0,
                timeout=timeout,
            )
            if not ok:
                raise LockTimeout("timed out waiting for read lock")
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_lock(self, timeout: Optional[float] = None) -> Iterator[None]:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._write_depth += 1
            else:
                self._waiting_writers += 1
                try:
                    ok = self._cond.wait_for(
                        lambda: self._writer is None and self._readers == 0,
                        timeout=timeout,
                    )
                finally:
                    self._waiting_writers -= 1
                if not ok:
                    self._cond.notify_all()
                    raise LockTimeout("timed out waiting for write lock")
                self._writer = me
                self._write_depth = 1
        try:
            yield
        finally:
            with self._cond:
                self._write_depth -= 1
                if self._write_depth == 0:
                    self._writer = None
                    self._cond.notify_all()
