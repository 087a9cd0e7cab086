from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from configwave.src.errors import NotFound, ReconcileError, StoreUnavailable, WriteConflict
from configwave.src.objects import (
    DEPENDENCY_KINDS,
    OWNER_KINDS,
    ObjectKey,
    ResourceKind,
    key_of,
)

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def resource_kind(kind: str) -> ResourceKind:
    resource = OWNER_KINDS.get(kind) or DEPENDENCY_KINDS.get(kind)
    if resource is None:
        raise ValueError(f"unsupported kind: {kind!r}")
    return resource


def translate_api_error(exc: Exception, key: ObjectKey, action: str) -> ReconcileError:
    """Map a client failure onto the reconcile error taxonomy.

    ``404`` becomes :class:`NotFound`, ``409`` becomes :class:`WriteConflict`
    and everything else, including transport errors, :class:`StoreUnavailable`.
    """
    status = getattr(exc, "status", None)
    if status == 404:
        return NotFound(f"{key} not found", key=key)
    if status == 409:
        return WriteConflict(f"{key} was modified concurrently during {action}", key=key)
    detail = getattr(exc, "reason", None) or exc.__class__.__name__
    return StoreUnavailable(f"{action} {key} failed: {detail} (status={status})", key=key)


class KubeStore:
    """Read and write workloads, ConfigMaps and Secrets through the API server.

    Updates send the object exactly as it was read, ``resourceVersion``
    included, so the API server rejects a write racing another writer with
    ``409 Conflict``.  The store never retries; conflicts surface as
    :class:`WriteConflict` for the caller to requeue.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        request_timeout: float | None = None,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.request_timeout = request_timeout

    def _call(self, resource: ResourceKind, method: str) -> Callable[..., Any]:
        api = self.apps_api if resource.group == "apps" else self.core_api
        return getattr(api, getattr(resource, method))

    def _options(self) -> dict[str, Any]:
        if self.request_timeout is None:
            return {}
        return {"_request_timeout": self.request_timeout}

    def get(self, key: ObjectKey) -> Any:
        """Return the object named by *key*; raise :class:`NotFound` if it does not exist."""
        read = self._call(resource_kind(key.kind), "read")
        try:
            return read(name=key.name, namespace=key.namespace, **self._options())
        except (ApiException, HTTPError) as exc:
            raise translate_api_error(exc, key, "get") from exc

    def update(self, kind: str, obj: Any) -> Any:
        """Replace *obj* conditioned on the ``resourceVersion`` it was read at."""
        key = key_of(kind, obj)
        replace = self._call(resource_kind(kind), "replace")
        try:
            return replace(
                name=key.name,
                namespace=key.namespace,
                body=obj,
                **self._options(),
            )
        except (ApiException, HTTPError) as exc:
            raise translate_api_error(exc, key, "update") from exc

    def list_owned(self, kind: str, namespace: str, owner_uid: str | None) -> list[Any]:
        """Return every object of *kind* in *namespace* with an owner reference to *owner_uid*."""
        if not owner_uid:
            return []
        list_objects = self._call(resource_kind(kind), "list_namespaced")
        try:
            listing = list_objects(namespace=namespace, **self._options())
        except (ApiException, HTTPError) as exc:
            raise translate_api_error(
                exc, ObjectKey(kind=kind, namespace=namespace, name="*"), "list"
            ) from exc

        owned = []
        for obj in getattr(listing, "items", None) or []:
            refs = getattr(getattr(obj, "metadata", None), "owner_references", None) or []
            if any(ref.uid == owner_uid for ref in refs):
                owned.append(obj)
        return owned
