from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from configwave.src.objects import ObjectKey, Reference


class ReconcileError(RuntimeError):
    """Base class for every failure a reconciliation pass reports to its caller.

    ``key`` identifies the object the failure is about and ``reason`` is the
    short CamelCase string used as the Kubernetes event reason.  ``requeue``
    tells the trigger runner whether trying again later can succeed.
    """

    reason = "ReconcileFailed"
    requeue = True

    def __init__(self, message: str, key: ObjectKey | None = None) -> None:
        super().__init__(message)
        self.key = key


class NotFound(ReconcileError):
    """The store has no object with the requested identity."""

    reason = "NotFound"
    requeue = False


class MissingDependency(ReconcileError):
    """A required ConfigMap or Secret referenced by a pod template does not exist."""

    reason = "MissingDependency"

    def __init__(self, reference: Reference, key: ObjectKey | None = None) -> None:
        super().__init__(
            f"required {reference.kind} {reference.name!r} does not exist",
            key=key,
        )
        self.reference = reference


class WriteConflict(ReconcileError):
    """An update was rejected because the object changed since it was read."""

    reason = "WriteConflict"


class ExtractionAmbiguity(ReconcileError):
    """A pod template reference cannot be resolved to a concrete kind and name."""

    reason = "ExtractionAmbiguity"
    requeue = False


class StoreUnavailable(ReconcileError):
    """The API server could not be reached or answered with an unexpected error."""

    reason = "StoreUnavailable"


class ReconcileCancelled(ReconcileError):
    """The caller cancelled the pass before any write was issued."""

    reason = "Cancelled"


class DependencySyncError(ReconcileError):
    """One or more ConfigMap/Secret ownership updates failed.

    Every update is attempted before this is raised, so ``failures`` lists
    each dependency that still needs work on the next pass.
    """

    reason = "OwnershipSyncFailed"

    def __init__(self, failures: list[ReconcileError], key: ObjectKey | None = None) -> None:
        names = ", ".join(str(failure.key) for failure in failures)
        super().__init__(f"failed to update ownership on {names}", key=key)
        self.failures = failures
