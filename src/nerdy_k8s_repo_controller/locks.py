from __future__ import annotations

from contextlib import contextmanager
from enum import Enum
from typing import Iterator
import threading


class LockMode(str, Enum):
    SHARED = "shared"
    EXCLUSIVE = "exclusive"


class ReadWriteLock:
    """Readers/writer lock. A waiting writer blocks new readers so prune is not starved."""

    def __init__(self) -> None:
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer_active = False
        self._writers_waiting = 0

    def acquire_shared(self) -> None:
        with self._condition:
            while self._writer_active or self._writers_waiting:
                self._condition.wait()
            self._readers += 1

    def release_shared(self) -> None:
        with self._condition:
            if self._readers <= 0:
                raise RuntimeError("release_shared called without a shared hold")
            self._readers -= 1
            if self._readers == 0:
                self._condition.notify_all()

    def acquire_exclusive(self) -> None:
        with self._condition:
            self._writers_waiting += 1
            try:
                while self._writer_active or self._readers:
                    self._condition.wait()
            finally:
                self._writers_waiting -= 1
            self._writer_active = True

    def release_exclusive(self) -> None:
        with self._condition:
            if not self._writer_active:
                raise RuntimeError("release_exclusive called without an exclusive hold")
            self._writer_active = False
            self._condition.notify_all()


class RepoLocker:
    """Per-repository lock registry.

    Entries are created on first use and never removed; the set of repository
    names a controller sees is small and stable.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._locks: dict[str, ReadWriteLock] = {}

    def _get(self, name: str) -> ReadWriteLock:
        with self._mutex:
            lock = self._locks.get(name)
            if lock is None:
                lock = ReadWriteLock()
                self._locks[name] = lock
            return lock

    def lock(self, name: str) -> None:
        self._get(name).acquire_shared()

    def unlock(self, name: str) -> None:
        self._get(name).release_shared()

    def lock_exclusive(self, name: str) -> None:
        self._get(name).acquire_exclusive()

    def unlock_exclusive(self, name: str) -> None:
        self._get(name).release_exclusive()

    @contextmanager
    def shared(self, name: str) -> Iterator[None]:
        self.lock(name)
        try:
            yield
        finally:
            self.unlock(name)

    @contextmanager
    def exclusive(self, name: str) -> Iterator[None]:
        self.lock_exclusive(name)
        try:
            yield
        finally:
            self.unlock_exclusive(name)

    @contextmanager
    def hold(self, name: str, mode: LockMode) -> Iterator[None]:
        context = self.exclusive(name) if mode is LockMode.EXCLUSIVE else self.shared(name)
        with context:
            yield

    def known_names(self) -> list[str]:
        with self._mutex:
            return sorted(self._locks)
