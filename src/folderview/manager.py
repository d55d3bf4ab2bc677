from __future__ import annotations

import heapq
import itertools
import logging
import time
from collections.abc import Callable, Sequence

from .models import Resource
from .reconciler import (
    ClusterFolderReconciler,
    FolderIndexReconciler,
    NamespacedFolderReconciler,
    Reconciler,
    Request,
)
from .settings import RuntimeSettings
from .store import CancelToken, ObjectStore, R

logger = logging.getLogger(__name__)


class ReconcileQueue:
    """Delayed work queue holding each request at most once.

    Re-adding a queued request keeps whichever due time is earlier.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[float, int, Request]] = []
        self._due: dict[Request, float] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._due)

    def __contains__(self, request: object) -> bool:
        return request in self._due

    def add(self, request: Request, due: float) -> None:
        current = self._due.get(request)
        if current is not None and current <= due:
            return
        self._due[request] = due
        heapq.heappush(self._heap, (due, next(self._counter), request))

    def _discard_stale(self) -> None:
        while self._heap:
            due, _, request = self._heap[0]
            if self._due.get(request) == due:
                return
            heapq.heappop(self._heap)

    def next_due(self) -> float | None:
        self._discard_stale()
        return self._heap[0][0] if self._heap else None

    def pop_ready(self, now: float) -> Request | None:
        self._discard_stale()
        if not self._heap or self._heap[0][0] > now:
            return None
        _, _, request = heapq.heappop(self._heap)
        del self._due[request]
        return request


class WatchedStore:
    """Delegating store that reports every write to a callback, standing in for watches."""

    def __init__(self, store: ObjectStore, on_change: Callable[[Resource, bool], None]) -> None:
        self.store = store
        self.on_change = on_change

    def get(self, resource_type: type[R], name: str, namespace: str | None = None) -> R:
        return self.store.get(resource_type, name, namespace)

    def list(
        self,
        resource_type: type[R],
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[R]:
        return self.store.list(resource_type, namespace, labels)

    def create(self, obj: R) -> R:
        created = self.store.create(obj)
        self.on_change(created, False)
        return created

    def update(self, obj: R) -> R:
        updated = self.store.update(obj)
        self.on_change(updated, False)
        return updated

    def delete(self, obj: Resource) -> None:
        self.store.delete(obj)
        self.on_change(obj, True)


class Manager:
    """Drives the reconcilers from a single work queue.

    Writes made through ``manager.store`` (including the reconcilers' own)
    are mapped to requests via each reconciler's ``requests_for``.  A pass
    that raises is retried with exponential backoff; a pass that returns
    ``requeue_after`` is retried after that delay.
    """

    def __init__(
        self,
        store: ObjectStore,
        settings: RuntimeSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        pass_timeout: float | None = None,
        reconcilers: Sequence[Reconciler] | None = None,
    ) -> None:
        self.settings = settings or RuntimeSettings()
        self.store = WatchedStore(store, self.notify)
        self.clock = clock
        self.sleep = sleep
        self.pass_timeout = pass_timeout
        if reconcilers is None:
            reconcilers = (
                FolderIndexReconciler(self.store, self.settings),
                ClusterFolderReconciler(self.store, self.settings),
                NamespacedFolderReconciler(self.store, self.settings),
            )
        self.reconcilers: dict[str, Reconciler] = {reconciler.kind: reconciler for reconciler in reconcilers}
        self.queue = ReconcileQueue()
        self._failures: dict[Request, int] = {}

    def enqueue(self, request: Request, delay: float = 0.0) -> None:
        if request.kind not in self.reconcilers:
            raise ValueError(f"no reconciler registered for kind {request.kind!r}")
        self.queue.add(request, self.clock() + delay)

    def enqueue_all(self) -> int:
        count = 0
        for reconciler in self.reconcilers.values():
            for request in reconciler.list_requests():
                self.enqueue(request)
                count += 1
        return count

    def notify(self, obj: Resource, deleted: bool = False) -> None:
        for reconciler in self.reconcilers.values():
            for request in reconciler.requests_for(obj, deleted=deleted):
                self.enqueue(request)

    def backoff(self, failures: int) -> float:
        base = self.settings.error_backoff_base_seconds
        return float(min(base * 2 ** (failures - 1), self.settings.error_backoff_max_seconds))

    def process_one(self, request: Request) -> None:
        reconciler = self.reconcilers[request.kind]
        token = CancelToken(timeout=self.pass_timeout) if self.pass_timeout is not None else None
        try:
            result = reconciler.reconcile(request, token)
        except Exception:
            failures = self._failures.get(request, 0) + 1
            self._failures[request] = failures
            delay = self.backoff(failures)
            logger.exception("Reconcile of %s failed (attempt %d), retrying in %ss", request.describe(), failures, delay)
            self.enqueue(request, delay)
            return
        self._failures.pop(request, None)
        if result.requeue_after is not None:
            self.enqueue(request, result.requeue_after)

    def run_until_idle(self, max_passes: int | None = None) -> int:
        """Process requests until the queue drains or the pass budget is spent.

        Delayed requests are waited for with ``sleep``.  Returns the number of
        passes run.
        """
        budget = max_passes if max_passes is not None else self.settings.max_passes
        passes = 0
        while passes < budget:
            now = self.clock()
            request = self.queue.pop_ready(now)
            if request is None:
                due = self.queue.next_due()
                if due is None:
                    break
                self.sleep(max(0.0, due - now))
                continue
            passes += 1
            self.process_one(request)
        if len(self.queue):
            logger.warning("Stopped after %d passes with %d requests still queued", passes, len(self.queue))
        return passes
