from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import V1OwnerReference

from configwave.src.objects import FINALIZER, ObjectKey, is_ownership_edge, metadata_of


@dataclass
class DependencyChange:
    """Desired-state patch for one ConfigMap or Secret.

    Every operation is add-if-absent or remove-if-present, so applying a
    change built from stale data is harmless and a change is only planned
    when it would actually alter the object.
    """

    key: ObjectKey
    obj: Any
    add_edge: V1OwnerReference | None = None
    remove_edge_uids: frozenset[str] = field(default_factory=frozenset)
    add_finalizer: bool = False
    remove_finalizer: bool = False

    @property
    def action(self) -> str:
        if self.add_edge is not None:
            return "adopt"
        if self.remove_edge_uids:
            return "release"
        return "repair"

    def apply(self) -> None:
        metadata = metadata_of(self.obj)
        refs = list(metadata.owner_references or [])
        if self.remove_edge_uids:
            refs = [ref for ref in refs if ref.uid not in self.remove_edge_uids]
        if self.add_edge is not None and all(ref.uid != self.add_edge.uid for ref in refs):
            refs.append(self.add_edge)
        metadata.owner_references = refs or None

        finalizers = list(metadata.finalizers or [])
        if self.add_finalizer and FINALIZER not in finalizers:
            finalizers.append(FINALIZER)
        if self.remove_finalizer:
            finalizers = [name for name in finalizers if name != FINALIZER]
        metadata.finalizers = finalizers or None


def ownership_edges(obj: Any) -> list[V1OwnerReference]:
    return [ref for ref in metadata_of(obj).owner_references or [] if is_ownership_edge(ref)]


def has_finalizer(obj: Any) -> bool:
    return FINALIZER in (metadata_of(obj).finalizers or [])


def _with_finalizer(change: DependencyChange, keeps_edges: bool) -> DependencyChange:
    # The finalizer is held exactly while at least one ownership edge remains.
    present = has_finalizer(change.obj)
    change.add_finalizer = keeps_edges and not present
    change.remove_finalizer = not keeps_edges and present
    return change


def _changed(change: DependencyChange) -> bool:
    return (
        change.add_edge is not None
        or bool(change.remove_edge_uids)
        or change.add_finalizer
        or change.remove_finalizer
    )


def plan_sync(
    edge: V1OwnerReference,
    desired: Mapping[ObjectKey, Any],
    current: Mapping[ObjectKey, Any],
) -> list[DependencyChange]:
    """Plan the ownership updates that make *desired* the owner's exact dependency set.

    ``edge`` is the owner reference identifying the workload.  ``desired``
    holds the fetched ConfigMaps/Secrets the pod template references right
    now; ``current`` holds the ones that carry an edge to this owner.

    Dependencies in ``current`` but not ``desired`` lose the edge, and the
    finalizer with it when no other owner is left.  Dependencies in
    ``desired`` gain the edge and the finalizer when either is missing.
    Nothing is planned for a dependency that is already correct, so a
    repeated sync issues no writes.
    """
    changes: list[DependencyChange] = []

    for key in sorted(set(current) - set(desired)):
        obj = current[key]
        edges = ownership_edges(obj)
        mine = frozenset(ref.uid for ref in edges if ref.uid == edge.uid)
        if not mine:
            continue
        others = [ref for ref in edges if ref.uid not in mine]
        change = _with_finalizer(
            DependencyChange(key=key, obj=obj, remove_edge_uids=mine),
            keeps_edges=bool(others),
        )
        changes.append(change)

    for key in sorted(desired):
        obj = desired[key]
        linked = any(ref.uid == edge.uid for ref in ownership_edges(obj))
        change = _with_finalizer(
            DependencyChange(key=key, obj=obj, add_edge=None if linked else edge),
            keeps_edges=True,
        )
        if _changed(change):
            changes.append(change)

    return changes


def plan_release(
    key: ObjectKey,
    obj: Any,
    owner_exists: Callable[[V1OwnerReference], bool],
) -> DependencyChange | None:
    """Plan dropping edges whose workload no longer exists.

    Used when a ConfigMap or Secret changes: ``owner_exists`` is asked about
    every ownership edge, edges it rejects are removed, and the finalizer
    follows the remaining edges.  Returns ``None`` when nothing needs to change.
    """
    edges = ownership_edges(obj)
    stale = frozenset(ref.uid for ref in edges if not owner_exists(ref))
    remaining = [ref for ref in edges if ref.uid not in stale]
    change = _with_finalizer(
        DependencyChange(key=key, obj=obj, remove_edge_uids=stale),
        keeps_edges=bool(remaining),
    )
    return change if _changed(change) else None
