from __future__ import annotations

from collections import deque
from typing import Any, Callable, Hashable, Protocol
import heapq
import itertools
import logging
import threading
import time

from kubernetes import watch

from .k8s import REPOSITORY_PLURAL, VELERO_GROUP, VELERO_VERSION
from .models import BackupRepository

logger = logging.getLogger(__name__)

DEFAULT_RESYNC_PERIOD_SECONDS = 300
WATCH_RESTART_DELAY_SECONDS = 5.0
WATCH_TIMEOUT_SECONDS = 600


class RateLimiter:
    """Per-key exponential backoff, reset with ``forget`` after a successful run."""

    def __init__(self, *, base_delay_seconds: float = 0.005, max_delay_seconds: float = 1000.0) -> None:
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, key: Hashable) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self.base_delay_seconds * (2**failures), self.max_delay_seconds)

    def forget(self, key: Hashable) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class WorkQueue:
    """Keyed work queue that never hands the same key to two consumers at once.

    A key added while it is being processed is queued again when ``done`` is
    called for it, so no event is lost and no key runs concurrently.
    """

    def __init__(self, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._condition = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._delayed: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._shutting_down = False
        self._monotonic = monotonic

    def add(self, key: Hashable) -> None:
        with self._condition:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._condition:
            if self._shutting_down:
                return
            heapq.heappush(self._delayed, (self._monotonic() + delay_seconds, next(self._sequence), key))
            self._condition.notify_all()

    def get(self, timeout: float | None = None) -> Hashable | None:
        deadline = None if timeout is None else self._monotonic() + timeout
        with self._condition:
            while True:
                self._promote_delayed_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None

                now = self._monotonic()
                waits = []
                if deadline is not None:
                    if now >= deadline:
                        return None
                    waits.append(deadline - now)
                if self._delayed:
                    waits.append(max(self._delayed[0][0] - now, 0.0))
                self._condition.wait(min(waits) if waits else None)

    def done(self, key: Hashable) -> None:
        with self._condition:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._condition.notify()

    def shut_down(self) -> None:
        with self._condition:
            self._shutting_down = True
            self._condition.notify_all()

    def __len__(self) -> int:
        with self._condition:
            return len(self._queue)

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._condition.notify()

    def _promote_delayed_locked(self) -> None:
        now = self._monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)


class Reconciler(Protocol):
    def reconcile(self, namespace: str, name: str) -> None: ...


class RepositoryLister(Protocol):
    def list(self, namespace: str, *, label_selector: str | None = None) -> list[BackupRepository]: ...


class RepositoryController:
    def __init__(
        self,
        *,
        reconciler: Reconciler,
        repositories: RepositoryLister,
        namespace: str,
        custom_api: Any = None,
        workers: int = 4,
        resync_period_seconds: float = DEFAULT_RESYNC_PERIOD_SECONDS,
        rate_limiter: RateLimiter | None = None,
        queue: WorkQueue | None = None,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.reconciler = reconciler
        self.repositories = repositories
        self.namespace = namespace
        self.custom_api = custom_api
        self.workers = workers
        self.resync_period_seconds = resync_period_seconds
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.queue = queue if queue is not None else WorkQueue()
        self.watch_factory = watch_factory
        self.stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def enqueue(self, namespace: str, name: str) -> None:
        self.queue.add((namespace, name))

    def resync_once(self) -> int:
        try:
            repositories = self.repositories.list(self.namespace)
        except Exception as error:  # pylint: disable=broad-except
            logger.error("Failed to list backup repositories for resync: %s", error)
            return 0
        for repository in repositories:
            self.enqueue(repository.namespace, repository.name)
        logger.debug("Enqueued %d backup repositories for periodic resync", len(repositories))
        return len(repositories)

    def process_next(self, timeout: float | None = None) -> bool:
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        namespace, name = key
        try:
            self.reconciler.reconcile(namespace, name)
        except Exception as error:  # pylint: disable=broad-except
            delay = self.rate_limiter.when(key)
            logger.error(
                "Reconcile of backup repository %s/%s failed, requeue in %.3fs: %s",
                namespace,
                name,
                delay,
                error,
            )
            self.queue.add_after(key, delay)
        else:
            self.rate_limiter.forget(key)
        finally:
            self.queue.done(key)
        return True

    def start(self) -> None:
        loops: list[tuple[str, Callable[[], None]]] = [("repo-resync", self._resync_loop)]
        if self.custom_api is not None:
            loops.append(("repo-watch", self._watch_loop))
        loops.extend((f"repo-worker-{index}", self._worker_loop) for index in range(self.workers))

        for name, target in loops:
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(
            "Backup repository controller started in namespace %s with %d workers", self.namespace, self.workers
        )

    def run(self) -> None:
        self.start()
        self.stop_event.wait()
        self.stop()

    def stop(self, timeout: float = 10.0) -> None:
        self.stop_event.set()
        self.queue.shut_down()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads.clear()
        logger.info("Backup repository controller stopped")

    def _worker_loop(self) -> None:
        while not self.stop_event.is_set():
            self.process_next(timeout=1.0)

    def _resync_loop(self) -> None:
        while not self.stop_event.is_set():
            self.resync_once()
            self.stop_event.wait(self.resync_period_seconds)

    def _watch_loop(self) -> None:
        while not self.stop_event.is_set():
            watcher = self.watch_factory()
            try:
                for event in watcher.stream(
                    self.custom_api.list_namespaced_custom_object,
                    group=VELERO_GROUP,
                    version=VELERO_VERSION,
                    namespace=self.namespace,
                    plural=REPOSITORY_PLURAL,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                ):
                    if self.stop_event.is_set():
                        watcher.stop()
                        return
                    self._enqueue_event(event)
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("Backup repository watch failed, restarting: %s", error)
                self.stop_event.wait(WATCH_RESTART_DELAY_SECONDS)

    def _enqueue_event(self, event: dict[str, Any]) -> None:
        body = event.get("object") or {}
        if not isinstance(body, dict):
            return
        metadata = body.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            return
        logger.debug("Watch event %s for backup repository %s", event.get("type"), name)
        self.enqueue(metadata.get("namespace") or self.namespace, name)
