from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)
from urllib3.exceptions import HTTPError

from configwave.src.objects import EVENT_COMPONENT, metadata_of

NORMAL = "Normal"
WARNING = "Warning"


def utc_now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


class KubeEventRecorder:
    """Record ``core/v1`` Events against workloads.

    Repeats of the same ``(object, type, reason, message)`` bump ``count``
    and ``lastTimestamp`` on the Event already created instead of creating a
    new one, which keeps periodic "unchanged" outcomes from flooding the
    namespace.  Recording is best effort: API failures are logged and never
    propagate into reconciliation.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str = EVENT_COMPONENT,
        max_tracked: int = 4096,
        now_fn: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
        request_timeout: float | None = None,
    ) -> None:
        self.core_api = core_api
        self.request_timeout = request_timeout
        self.component = component
        self.max_tracked = max_tracked
        self.now_fn = now_fn
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._seen: OrderedDict[tuple[str, ...], tuple[str, int]] = OrderedDict()

    def _timeout_kwargs(self) -> dict[str, Any]:
        if self.request_timeout is None:
            return {}
        return {"_request_timeout": self.request_timeout}

    def _create(
        self,
        kind: str,
        obj: Any,
        namespace: str,
        event_type: str,
        reason: str,
        message: str,
        now: datetime,
    ) -> str:
        metadata = metadata_of(obj)
        event_name = f"{metadata.name}.{time.time_ns():x}"
        self.core_api.create_namespaced_event(
            namespace=namespace,
            body=CoreV1Event(
                metadata=V1ObjectMeta(name=event_name, namespace=namespace),
                involved_object=V1ObjectReference(
                    api_version=getattr(obj, "api_version", None),
                    kind=kind,
                    name=metadata.name,
                    namespace=namespace,
                    uid=metadata.uid,
                    resource_version=metadata.resource_version,
                ),
                type=event_type,
                reason=reason,
                message=message,
                count=1,
                first_timestamp=now,
                last_timestamp=now,
                source=V1EventSource(component=self.component),
            ),
            **self._timeout_kwargs(),
        )
        return event_name

    def record(self, kind: str, obj: Any, event_type: str, reason: str, message: str) -> None:
        metadata = metadata_of(obj)
        namespace = metadata.namespace or "default"
        fingerprint = (namespace, metadata.uid or metadata.name or "", event_type, reason, message)
        now = self.now_fn()

        with self._lock:
            seen = self._seen.pop(fingerprint, None)

        try:
            if seen is None:
                event_name, count = (
                    self._create(kind, obj, namespace, event_type, reason, message, now),
                    1,
                )
            else:
                event_name, count = seen[0], seen[1] + 1
                try:
                    self.core_api.patch_namespaced_event(
                        name=event_name,
                        namespace=namespace,
                        body={"count": count, "lastTimestamp": now.isoformat()},
                        **self._timeout_kwargs(),
                    )
                except ApiException as exc:
                    if exc.status != 404:
                        raise
                    # The earlier Event expired; start a fresh series.
                    event_name, count = (
                        self._create(kind, obj, namespace, event_type, reason, message, now),
                        1,
                    )
        except (ApiException, HTTPError) as exc:
            self.logger.warning(
                "Failed to record %s event %s on %s %s/%s: %s",
                event_type,
                reason,
                kind,
                namespace,
                metadata.name,
                getattr(exc, "reason", None) or exc,
            )
            return

        with self._lock:
            self._seen[fingerprint] = (event_name, count)
            while len(self._seen) > self.max_tracked:
                self._seen.popitem(last=False)
