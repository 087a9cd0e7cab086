from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from kubernetes.client import V1ObjectMeta, V1OwnerReference, V1PodTemplateSpec

CONFIG_HASH_ANNOTATION = "wave.pusher.com/config-hash"
UPDATE_ON_CONFIG_CHANGE_ANNOTATION = "wave.pusher.com/update-on-config-change"
FINALIZER = "wave.pusher.com/finalizer"
EVENT_COMPONENT = "wave"

CONFIG_MAP = "ConfigMap"
SECRET = "Secret"


@dataclass(frozen=True)
class ResourceKind:
    """How to reach one Kubernetes kind through the generated API clients.

    The method attributes name functions on ``AppsV1Api`` (``group="apps"``)
    or ``CoreV1Api`` (``group="core"``).
    """

    kind: str
    api_version: str
    group: str
    read: str
    replace: str
    list_namespaced: str
    list_all: str


OWNER_KINDS: dict[str, ResourceKind] = {
    "Deployment": ResourceKind(
        kind="Deployment",
        api_version="apps/v1",
        group="apps",
        read="read_namespaced_deployment",
        replace="replace_namespaced_deployment",
        list_namespaced="list_namespaced_deployment",
        list_all="list_deployment_for_all_namespaces",
    ),
    "StatefulSet": ResourceKind(
        kind="StatefulSet",
        api_version="apps/v1",
        group="apps",
        read="read_namespaced_stateful_set",
        replace="replace_namespaced_stateful_set",
        list_namespaced="list_namespaced_stateful_set",
        list_all="list_stateful_set_for_all_namespaces",
    ),
    "DaemonSet": ResourceKind(
        kind="DaemonSet",
        api_version="apps/v1",
        group="apps",
        read="read_namespaced_daemon_set",
        replace="replace_namespaced_daemon_set",
        list_namespaced="list_namespaced_daemon_set",
        list_all="list_daemon_set_for_all_namespaces",
    ),
}

DEPENDENCY_KINDS: dict[str, ResourceKind] = {
    CONFIG_MAP: ResourceKind(
        kind=CONFIG_MAP,
        api_version="v1",
        group="core",
        read="read_namespaced_config_map",
        replace="replace_namespaced_config_map",
        list_namespaced="list_namespaced_config_map",
        list_all="list_config_map_for_all_namespaces",
    ),
    SECRET: ResourceKind(
        kind=SECRET,
        api_version="v1",
        group="core",
        read="read_namespaced_secret",
        replace="replace_namespaced_secret",
        list_namespaced="list_namespaced_secret",
        list_all="list_secret_for_all_namespaces",
    ),
}


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Identity of a namespaced object: what the work queue carries."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


@dataclass(frozen=True, order=True)
class Reference:
    """A ConfigMap or Secret mentioned by a pod template.

    The extractor emits at most one reference per ``(kind, name)``, so the
    dataclass ordering sorts by kind then name.
    """

    kind: str
    name: str
    required: bool = True

    def key(self, namespace: str) -> ObjectKey:
        return ObjectKey(kind=self.kind, namespace=namespace, name=self.name)


def metadata_of(obj: Any) -> V1ObjectMeta:
    """Return ``obj.metadata``, creating an empty one if the object has none."""
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        metadata = V1ObjectMeta()
        obj.metadata = metadata
    return metadata


def key_of(kind: str, obj: Any) -> ObjectKey:
    metadata = metadata_of(obj)
    return ObjectKey(kind=kind, namespace=metadata.namespace or "", name=metadata.name or "")


class PodTemplateOwner:
    """Adapter giving every pod-template-bearing workload one shape.

    Deployments, StatefulSets and DaemonSets all keep their pod template at
    ``spec.template``; subclasses only pin the :class:`ResourceKind` so the
    store knows which API calls to use.
    """

    resource: ResourceKind

    def __init__(self, obj: Any) -> None:
        self.obj = obj

    @property
    def kind(self) -> str:
        return self.resource.kind

    @property
    def metadata(self) -> V1ObjectMeta:
        return metadata_of(self.obj)

    @property
    def key(self) -> ObjectKey:
        return key_of(self.kind, self.obj)

    @property
    def uid(self) -> str | None:
        return self.metadata.uid

    @property
    def being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def template(self) -> V1PodTemplateSpec:
        spec = getattr(self.obj, "spec", None)
        if spec is None:
            raise ValueError(f"{self.key} has no spec")
        if spec.template is None:
            spec.template = V1PodTemplateSpec()
        return spec.template

    def template_annotations(self) -> dict[str, str]:
        """Return the pod template's annotation dict, creating it when absent."""
        template_metadata = metadata_of(self.template)
        if template_metadata.annotations is None:
            template_metadata.annotations = {}
        return template_metadata.annotations

    def opted_in(self) -> bool:
        annotations = self.metadata.annotations or {}
        return str(annotations.get(UPDATE_ON_CONFIG_CHANGE_ANNOTATION, "")).lower() == "true"

    def owner_reference(self) -> V1OwnerReference:
        """Build the non-controlling ownership edge dependencies point back with."""
        return V1OwnerReference(
            api_version=self.resource.api_version,
            kind=self.kind,
            name=self.metadata.name,
            uid=self.uid,
            controller=False,
            block_owner_deletion=True,
        )


class DeploymentOwner(PodTemplateOwner):
    resource = OWNER_KINDS["Deployment"]


class StatefulSetOwner(PodTemplateOwner):
    resource = OWNER_KINDS["StatefulSet"]


class DaemonSetOwner(PodTemplateOwner):
    resource = OWNER_KINDS["DaemonSet"]


OWNER_ADAPTERS: dict[str, type[PodTemplateOwner]] = {
    "Deployment": DeploymentOwner,
    "StatefulSet": StatefulSetOwner,
    "DaemonSet": DaemonSetOwner,
}


def wrap_owner(kind: str, obj: Any) -> PodTemplateOwner:
    try:
        adapter = OWNER_ADAPTERS[kind]
    except KeyError:
        raise ValueError(f"unsupported workload kind: {kind!r}") from None
    return adapter(obj)


def is_ownership_edge(ref: Any) -> bool:
    """Return True for owner references this controller manages.

    Only non-controlling references to a supported workload kind count,
    so controller references placed by other tooling are left alone.
    """
    return getattr(ref, "kind", None) in OWNER_KINDS and not getattr(ref, "controller", False)
