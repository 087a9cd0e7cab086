from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes.client import V1OwnerReference

from configwave.src.errors import (
    DependencySyncError,
    NotFound,
    ReconcileCancelled,
    ReconcileError,
    WriteConflict,
)
from configwave.src.events import NORMAL, WARNING
from configwave.src.fingerprint import apply_fingerprint, compute_fingerprint
from configwave.src.metrics import METRICS
from configwave.src.objects import (
    DEPENDENCY_KINDS,
    OWNER_KINDS,
    ObjectKey,
    PodTemplateOwner,
    Reference,
    key_of,
    metadata_of,
    wrap_owner,
)
from configwave.src.ownership import DependencyChange, plan_release, plan_sync
from configwave.src.references import extract_references

ROLLED = "rolled"
UNCHANGED = "unchanged"
DELETED = "deleted"
DISABLED = "disabled"
GONE = "gone"
RELEASED = "released"


class Store(Protocol):
    def get(self, key: ObjectKey) -> Any: ...

    def update(self, kind: str, obj: Any) -> Any: ...

    def list_owned(self, kind: str, namespace: str, owner_uid: str | None) -> list[Any]: ...


class EventRecorder(Protocol):
    def record(self, kind: str, obj: Any, event_type: str, reason: str, message: str) -> None: ...


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one successful reconciliation pass."""

    key: ObjectKey
    outcome: str
    fingerprint: str | None = None
    edges_added: int = 0
    edges_removed: int = 0


def _check_cancelled(cancel: threading.Event | None, key: ObjectKey) -> None:
    if cancel is not None and cancel.is_set():
        raise ReconcileCancelled(f"reconciliation of {key} cancelled", key=key)


class Handler:
    """Keep a workload's pod template hash and its dependencies' ownership in sync.

    One call to :meth:`reconcile` handles one workload identity:

    1. Fetch the workload.  If it is gone there is nothing to do.
    2. Extract every ConfigMap/Secret reference from its pod template.
    3. Fetch each referenced object; a required one that is missing fails
       the pass with :class:`MissingDependency`.
    4. Fingerprint the references and their content.
    5. If the fingerprint differs from the pod template annotation, write
       it.  The changed template makes the workload controller roll pods.
    6. Add or remove ownership edges and the finalizer on ConfigMaps and
       Secrets so they match the references exactly.
    7. Record an event describing the outcome.

    Every read happens before the first write, and the cancel token is
    checked before writing, so a cancelled pass leaves no partial update.
    Conflicts are not retried here; the caller requeues.
    """

    def __init__(
        self,
        store: Store,
        recorder: EventRecorder,
        require_opt_in: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.require_opt_in = require_opt_in
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, key: ObjectKey, cancel: threading.Event | None = None) -> ReconcileResult:
        """Reconcile the workload named by *key*.

        Returns a :class:`ReconcileResult` on success and raises a
        :class:`ReconcileError` subclass on failure; ``error.requeue`` tells
        the caller whether trying again later can help.
        """
        if key.kind not in OWNER_KINDS:
            raise ValueError(f"{key} is not a supported workload")

        started = time.monotonic()
        try:
            result = self._reconcile_owner(key, cancel)
        except ReconcileError as exc:
            METRICS.reconcile_errors_total.labels(kind=key.kind, reason=exc.reason).inc()
            raise
        finally:
            METRICS.reconcile_duration_seconds.labels(kind=key.kind).observe(
                time.monotonic() - started
            )
        METRICS.reconcile_total.labels(kind=key.kind, outcome=result.outcome).inc()
        return result

    def _reconcile_owner(self, key: ObjectKey, cancel: threading.Event | None) -> ReconcileResult:
        _check_cancelled(cancel, key)
        try:
            obj = self.store.get(key)
        except NotFound:
            self.logger.info("%s no longer exists; nothing to reconcile", key)
            return ReconcileResult(key=key, outcome=GONE)

        owner = wrap_owner(key.kind, obj)
        try:
            if owner.being_deleted or (self.require_opt_in and not owner.opted_in()):
                result = self._release_all(owner, cancel)
            else:
                result = self._sync(owner, cancel)
        except ReconcileError as exc:
            if exc.key is None:
                exc.key = key
            self._record_failure(owner, exc)
            raise

        self._record_outcome(owner, result)
        return result

    def _sync(self, owner: PodTemplateOwner, cancel: threading.Event | None) -> ReconcileResult:
        key = owner.key
        references = extract_references(owner.template)
        contents = self._fetch_dependencies(key, references, cancel)
        digest = compute_fingerprint(references, contents)

        desired = {
            ref.key(key.namespace): contents[(ref.kind, ref.name)]
            for ref in references
            if contents.get((ref.kind, ref.name)) is not None
        }
        current = self._owned_dependencies(owner, cancel)
        changes = plan_sync(owner.owner_reference(), desired, current)

        _check_cancelled(cancel, key)
        rolled = apply_fingerprint(owner.template, digest)
        if rolled:
            self.store.update(owner.kind, owner.obj)
            METRICS.hash_updates_total.labels(kind=owner.kind).inc()
            self.logger.info("Updated config hash of %s to %s", key, digest)

        added, removed = self._apply_changes(owner, changes)
        return ReconcileResult(
            key=key,
            outcome=ROLLED if rolled else UNCHANGED,
            fingerprint=digest,
            edges_added=added,
            edges_removed=removed,
        )

    def _release_all(self, owner: PodTemplateOwner, cancel: threading.Event | None) -> ReconcileResult:
        key = owner.key
        current = self._owned_dependencies(owner, cancel)
        changes = plan_sync(owner.owner_reference(), {}, current)
        _check_cancelled(cancel, key)
        _, removed = self._apply_changes(owner, changes)
        return ReconcileResult(
            key=key,
            outcome=DELETED if owner.being_deleted else DISABLED,
            edges_removed=removed,
        )

    def _fetch_dependencies(
        self,
        key: ObjectKey,
        references: Sequence[Reference],
        cancel: threading.Event | None,
    ) -> dict[tuple[str, str], Any]:
        contents: dict[tuple[str, str], Any] = {}
        for ref in references:
            _check_cancelled(cancel, key)
            try:
                contents[(ref.kind, ref.name)] = self.store.get(ref.key(key.namespace))
            except NotFound:
                contents[(ref.kind, ref.name)] = None
        return contents

    def _owned_dependencies(
        self, owner: PodTemplateOwner, cancel: threading.Event | None
    ) -> dict[ObjectKey, Any]:
        owned: dict[ObjectKey, Any] = {}
        for kind in DEPENDENCY_KINDS:
            _check_cancelled(cancel, owner.key)
            for obj in self.store.list_owned(kind, owner.key.namespace, owner.uid):
                owned[key_of(kind, obj)] = obj
        return owned

    def _apply_changes(
        self, owner: PodTemplateOwner, changes: Sequence[DependencyChange]
    ) -> tuple[int, int]:
        """Write every planned change, continuing past individual failures.

        Returns ``(edges_added, edges_removed)`` for the writes that landed
        and raises :class:`DependencySyncError` if any write failed.
        """
        added = removed = 0
        failures: list[ReconcileError] = []
        for change in changes:
            change.apply()
            try:
                self.store.update(change.key.kind, change.obj)
            except NotFound:
                self.logger.info("%s was deleted before its ownership could be updated", change.key)
                continue
            except ReconcileError as exc:
                self.logger.warning(
                    "Failed to %s %s for %s: %s", change.action, change.key, owner.key, exc
                )
                failures.append(exc)
                continue

            METRICS.ownership_updates_total.labels(
                dependency_kind=change.key.kind, action=change.action
            ).inc()
            added += int(change.add_edge is not None)
            removed += int(bool(change.remove_edge_uids))
            self.logger.debug("Applied %s on %s for %s", change.action, change.key, owner.key)

        if failures:
            raise DependencySyncError(failures, key=owner.key)
        return added, removed

    def _record_outcome(self, owner: PodTemplateOwner, result: ReconcileResult) -> None:
        if result.outcome == ROLLED:
            reason = "ConfigChanged"
            message = f"Configuration hash updated to {result.fingerprint}"
        elif result.outcome == UNCHANGED:
            reason = "ConfigUnchanged"
            message = f"Configuration hash unchanged ({result.fingerprint})"
        else:
            reason = "OwnershipReleased"
            message = (
                f"Released {result.edges_removed} configuration object(s) "
                f"because the workload is {'being deleted' if result.outcome == DELETED else 'not opted in'}"
            )
        self.recorder.record(owner.kind, owner.obj, NORMAL, reason, message)

    def _record_failure(self, owner: PodTemplateOwner, exc: ReconcileError) -> None:
        if isinstance(exc, ReconcileCancelled):
            return
        if isinstance(exc, WriteConflict):
            self.logger.info("%s; will retry on the next trigger", exc)
            return
        self.logger.warning("Reconciliation of %s failed: %s", owner.key, exc)
        self.recorder.record(owner.kind, owner.obj, WARNING, exc.reason, str(exc))

    def reconcile_dependency(
        self, key: ObjectKey, cancel: threading.Event | None = None
    ) -> ReconcileResult:
        """Drop ownership edges on a ConfigMap/Secret whose workload no longer exists.

        The API server's garbage collector eventually prunes references to
        deleted owners, but nothing else would release the finalizer, so
        every dependency change runs through here.  An edge is stale when its
        workload is missing or has been recreated under a new uid.
        """
        if key.kind not in DEPENDENCY_KINDS:
            raise ValueError(f"{key} is not a ConfigMap or Secret")

        try:
            obj = self.store.get(key)
        except NotFound:
            return ReconcileResult(key=key, outcome=GONE)

        def owner_exists(ref: V1OwnerReference) -> bool:
            _check_cancelled(cancel, key)
            try:
                owner = self.store.get(ObjectKey(kind=ref.kind, namespace=key.namespace, name=ref.name))
            except NotFound:
                return False
            return metadata_of(owner).uid == ref.uid

        change = plan_release(key, obj, owner_exists)
        if change is None:
            return ReconcileResult(key=key, outcome=UNCHANGED)

        _check_cancelled(cancel, key)
        change.apply()
        self.store.update(key.kind, obj)
        METRICS.ownership_updates_total.labels(dependency_kind=key.kind, action=change.action).inc()
        self.logger.info(
            "Released %d stale ownership edge(s) from %s", len(change.remove_edge_uids), key
        )
        return ReconcileResult(
            key=key, outcome=RELEASED, edges_removed=len(change.remove_edge_uids)
        )
