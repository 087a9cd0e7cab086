from __future__ import annotations

import heapq
import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from configwave.src.config import ControllerConfig
from configwave.src.errors import ReconcileCancelled, ReconcileError
from configwave.src.events import KubeEventRecorder
from configwave.src.handler import Handler
from configwave.src.metrics import METRICS
from configwave.src.objects import (
    DEPENDENCY_KINDS,
    OWNER_KINDS,
    ObjectKey,
    ResourceKind,
    key_of,
)
from configwave.src.ownership import has_finalizer, ownership_edges
from configwave.src.store import KubeStore

WATCHED_KINDS: tuple[ResourceKind, ...] = (*OWNER_KINDS.values(), *DEPENDENCY_KINDS.values())


class WorkQueue:
    """Thread-safe queue of object keys with per-key serialisation.

    A key is held at most once while waiting.  A key re-added while a
    worker is processing it is parked and released again by :meth:`done`,
    so the same object is never reconciled by two workers at once.  Failed
    keys come back after a bounded exponential backoff (1 s doubling up to
    ``max_backoff_seconds``); an immediate :meth:`add` supersedes any
    pending delayed retry.
    """

    def __init__(
        self,
        max_backoff_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_backoff_seconds = max_backoff_seconds
        self.clock = clock
        self._cond = threading.Condition()
        self._ready: deque[ObjectKey] = deque()
        self._queued: set[ObjectKey] = set()
        self._processing: set[ObjectKey] = set()
        self._dirty: set[ObjectKey] = set()
        self._delayed: dict[ObjectKey, float] = {}
        self._heap: list[tuple[float, ObjectKey]] = []
        self._failures: dict[ObjectKey, int] = {}
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)

    def _publish_depth(self) -> None:
        METRICS.queue_depth.set(len(self._ready) + len(self._delayed))

    def _enqueue(self, key: ObjectKey) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._ready.append(key)
        self._cond.notify()

    def add(self, key: ObjectKey) -> None:
        with self._cond:
            if self._shutdown:
                return
            self._delayed.pop(key, None)
            self._enqueue(key)
            self._publish_depth()

    def add_after(self, key: ObjectKey, delay_seconds: float) -> None:
        """Schedule *key* after *delay_seconds*; an earlier pending schedule wins."""
        with self._cond:
            if self._shutdown:
                return
            due_at = self.clock() + delay_seconds
            existing = self._delayed.get(key)
            if existing is not None and existing <= due_at:
                return
            self._delayed[key] = due_at
            heapq.heappush(self._heap, (due_at, key))
            self._publish_depth()
            self._cond.notify()

    def requeue_with_backoff(self, key: ObjectKey) -> float:
        with self._cond:
            attempt = self._failures.get(key, 0) + 1
            self._failures[key] = attempt
        delay_seconds = min(self.max_backoff_seconds, float(2 ** (attempt - 1)))
        self.add_after(key, delay_seconds)
        return delay_seconds

    def forget(self, key: ObjectKey) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def failures(self, key: ObjectKey) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due(self) -> float | None:
        """Move due delayed keys to the ready queue; return seconds until the next one."""
        now = self.clock()
        while self._heap:
            due_at, key = self._heap[0]
            if self._delayed.get(key) != due_at:
                heapq.heappop(self._heap)
                continue
            if due_at > now:
                return due_at - now
            heapq.heappop(self._heap)
            del self._delayed[key]
            self._enqueue(key)
        return None

    def get(self, timeout: float | None = None) -> ObjectKey | None:
        """Return the next key to process, or ``None`` on timeout or shutdown."""
        deadline = None if timeout is None else self.clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due()
                if self._ready:
                    key = self._ready.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    self._publish_depth()
                    return key
                if self._shutdown:
                    return None

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self.clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: ObjectKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._enqueue(key)
            self._publish_depth()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


class ConfigHashController:
    """Turns watch events into reconciliations.

    One thread per watched kind lists then watches Deployments,
    StatefulSets, DaemonSets, ConfigMaps and Secrets.  Workload events
    enqueue the workload itself.  ConfigMap/Secret events enqueue every
    workload reachable through its ownership edges, plus the object itself
    when it carries the finalizer so edges to deleted workloads get
    released.  A pool of workers drains the queue through :class:`Handler`.

    The initial list of every kind enqueues everything, which also catches
    configuration changes made while the controller was down.  ``ready``
    is set once every kind has been listed.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        handler: Handler,
        namespace: str = "",
        worker_count: int = 2,
        max_backoff_seconds: float = 30.0,
        logger: logging.Logger | None = None,
        request_timeout: float | None = None,
    ) -> None:
        self.core_api = core_api
        self.request_timeout = request_timeout
        self.apps_api = apps_api
        self.handler = handler
        self.namespace = namespace
        self.worker_count = worker_count
        self.logger = logger or logging.getLogger(__name__)
        self.queue = WorkQueue(max_backoff_seconds=max_backoff_seconds)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._synced: set[str] = set()
        self._synced_lock = threading.Lock()
        self._active_watchers: dict[str, watch.Watch] = {}
        self._watcher_lock = threading.Lock()

    def _list_function(self, resource: ResourceKind) -> tuple[Callable[..., Any], dict[str, Any]]:
        api = self.apps_api if resource.group == "apps" else self.core_api
        if self.namespace:
            return getattr(api, resource.list_namespaced), {"namespace": self.namespace}
        return getattr(api, resource.list_all), {}

    def enqueue_for_event(self, kind: str, obj: Any) -> None:
        """Enqueue the work implied by a watch event on *obj*."""
        key = key_of(kind, obj)
        if kind in OWNER_KINDS:
            self.queue.add(key)
            return

        edges = ownership_edges(obj)
        for ref in edges:
            self.queue.add(ObjectKey(kind=ref.kind, namespace=key.namespace, name=ref.name))
        if has_finalizer(obj):
            self.queue.add(key)

    def process_next(self, cancel: threading.Event, timeout: float = 1.0) -> bool:
        """Reconcile one queued key.  Returns False when nothing was processed."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        try:
            if key.kind in OWNER_KINDS:
                self.handler.reconcile(key, cancel=cancel)
            else:
                self.handler.reconcile_dependency(key, cancel=cancel)
            self.queue.forget(key)
        except ReconcileCancelled:
            self.logger.info("Dropped in-flight reconciliation of %s on shutdown", key)
        except ReconcileError as exc:
            if exc.requeue:
                delay = self.queue.requeue_with_backoff(key)
                METRICS.requeues_total.inc()
                self.logger.warning(
                    "Reconciliation of %s failed (%s); requeueing in %.1fs: %s",
                    key,
                    exc.reason,
                    delay,
                    exc,
                )
            else:
                self.queue.forget(key)
                self.logger.error("Reconciliation of %s failed permanently: %s", key, exc)
        except Exception:
            self.logger.exception("Unexpected error reconciling %s", key)
            self.queue.requeue_with_backoff(key)
            METRICS.requeues_total.inc()
        finally:
            self.queue.done(key)
        return True

    def _run_worker(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            self.process_next(cancel=self._external_stop)

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt every open watch stream."""
        self._external_stop.set()
        self.queue.shutdown()
        with self._watcher_lock:
            watchers = list(self._active_watchers.values())
        for active_watcher in watchers:
            active_watcher.stop()

    def _initial_list(self, resource: ResourceKind, stop: threading.Event) -> str | None:
        """List *resource* until it succeeds; enqueue everything and return the resourceVersion.

        Returns ``None`` when stopped or denied by RBAC.
        """
        list_fn, kwargs = self._list_function(resource)
        if self.request_timeout is not None:
            kwargs["_request_timeout"] = self.request_timeout
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                listing = list_fn(**kwargs)
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        resource.kind,
                        exc.status,
                    )
                    self.request_stop()
                    return None
                self.logger.exception("Initial %s list failed", resource.kind)
                METRICS.watch_errors_total.labels(kind=resource.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", resource.kind)
                METRICS.watch_errors_total.labels(kind=resource.kind).inc()
            else:
                for obj in getattr(listing, "items", None) or []:
                    self.enqueue_for_event(resource.kind, obj)
                return getattr(getattr(listing, "metadata", None), "resource_version", None)

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return None

    def _mark_synced(self, kind: str) -> None:
        with self._synced_lock:
            self._synced.add(kind)
            if len(self._synced) == len(WATCHED_KINDS):
                self.ready.set()
                self.logger.info("Initial list of all watched kinds complete")

    def watch_kind(self, resource: ResourceKind, stop: threading.Event) -> None:
        """List-then-watch one kind until shutdown.

        1. Lists with exponential backoff so API startup hiccups do not
           crash-loop the controller, enqueueing every object found.
        2. Streams events from the list's ``resourceVersion``.
        3. On ``410 Gone`` re-lists (re-enqueueing everything) and resumes.
        4. On transient errors backs off with jitter, capped at 30 s.

        ``401`` / ``403`` are configuration errors (RBAC/auth): the whole
        controller is stopped with a clear log message rather than retrying
        forever.
        """
        kind = resource.kind
        resource_version = self._initial_list(resource, stop)
        if self._should_stop(stop):
            return
        self._mark_synced(kind)
        self.logger.info("Starting %s watch from resourceVersion %s", kind, resource_version)

        list_fn, kwargs = self._list_function(resource)
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers[kind] = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=30,
                    **kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.enqueue_for_event(kind, obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", kind)
                    resource_version = self._initial_list(resource, stop)
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=kind).inc()
                    self.request_stop()
                    return

                self.logger.exception("Kubernetes API %s watch error", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watchers.get(kind) is watcher:
                        del self._active_watchers[kind]

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start watchers and workers and block until shutdown.

        Setting *shutdown_event* (or calling :meth:`request_stop`) stops the
        watch streams, cancels in-flight reconciliations before they write
        and joins every thread.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        threads = [
            threading.Thread(
                target=self.watch_kind,
                args=(resource, stop),
                name=f"watch-{resource.kind}",
                daemon=True,
            )
            for resource in WATCHED_KINDS
        ]
        threads.extend(
            threading.Thread(
                target=self._run_worker,
                args=(stop,),
                name=f"worker-{index}",
                daemon=True,
            )
            for index in range(self.worker_count)
        )
        for thread in threads:
            thread.start()

        while not self._should_stop(stop):
            stop.wait(timeout=1)

        self.request_stop()
        for thread in threads:
            thread.join(timeout=35)
        self.ready.clear()
        self.logger.info("Controller loops stopped")


def build_controller(
    config: ControllerConfig, core_api: CoreV1Api, apps_api: AppsV1Api
) -> ConfigHashController:
    """Wire store, event recorder, handler and trigger loops from *config*."""
    store = KubeStore(
        core_api=core_api,
        apps_api=apps_api,
        request_timeout=config.request_timeout_seconds,
    )
    handler = Handler(
        store=store,
        recorder=KubeEventRecorder(core_api, request_timeout=config.request_timeout_seconds),
        require_opt_in=config.require_opt_in,
    )
    return ConfigHashController(
        core_api=core_api,
        apps_api=apps_api,
        handler=handler,
        namespace=config.namespace,
        worker_count=config.worker_count,
        max_backoff_seconds=config.max_backoff_seconds,
        request_timeout=config.request_timeout_seconds,
    )
