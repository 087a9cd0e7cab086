from __future__ import annotations

import logging
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import MaxRetryError

from configwave.src.events import NORMAL, WARNING, KubeEventRecorder
from configwave.tests.builders import NAMESPACE, deployment

NOW = datetime(2026, 1, 1, tzinfo=UTC)


def _recorder(
    max_tracked: int = 4096, request_timeout: float | None = None
) -> tuple[KubeEventRecorder, MagicMock]:
    core_api = MagicMock()
    recorder = KubeEventRecorder(
        core_api, max_tracked=max_tracked, now_fn=lambda: NOW, request_timeout=request_timeout
    )
    return recorder, core_api


def test_first_event_is_created_against_the_workload() -> None:
    recorder, core_api = _recorder()
    web = deployment("web")

    recorder.record("Deployment", web, NORMAL, "ConfigChanged", "Configuration hash updated to abc")

    call = core_api.create_namespaced_event.call_args
    assert call.kwargs["namespace"] == NAMESPACE
    event = call.kwargs["body"]
    assert event.type == "Normal"
    assert event.reason == "ConfigChanged"
    assert event.message == "Configuration hash updated to abc"
    assert event.count == 1
    assert event.source.component == "wave"
    assert event.involved_object.kind == "Deployment"
    assert event.involved_object.name == "web"
    assert event.involved_object.uid == "uid-web"
    assert event.metadata.name.startswith("web.")


def test_repeated_event_bumps_count() -> None:
    recorder, core_api = _recorder()
    web = deployment("web")

    recorder.record("Deployment", web, NORMAL, "ConfigUnchanged", "unchanged")
    recorder.record("Deployment", web, NORMAL, "ConfigUnchanged", "unchanged")

    assert core_api.create_namespaced_event.call_count == 1
    patch_call = core_api.patch_namespaced_event.call_args
    created = core_api.create_namespaced_event.call_args.kwargs["body"]
    assert patch_call.kwargs["name"] == created.metadata.name
    assert patch_call.kwargs["body"]["count"] == 2


def test_different_message_creates_new_event() -> None:
    recorder, core_api = _recorder()
    web = deployment("web")

    recorder.record("Deployment", web, NORMAL, "ConfigChanged", "to a")
    recorder.record("Deployment", web, NORMAL, "ConfigChanged", "to b")

    assert core_api.create_namespaced_event.call_count == 2
    core_api.patch_namespaced_event.assert_not_called()


def test_expired_event_starts_a_new_series() -> None:
    recorder, core_api = _recorder()
    web = deployment("web")
    core_api.patch_namespaced_event.side_effect = ApiException(status=404, reason="Not Found")

    recorder.record("Deployment", web, WARNING, "MissingDependency", "missing")
    recorder.record("Deployment", web, WARNING, "MissingDependency", "missing")

    assert core_api.create_namespaced_event.call_count == 2


def test_api_failures_are_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    recorder, core_api = _recorder()
    core_api.create_namespaced_event.side_effect = ApiException(status=403, reason="Forbidden")

    with caplog.at_level(logging.WARNING):
        recorder.record("Deployment", deployment("web"), NORMAL, "ConfigChanged", "x")

    assert "Failed to record Normal event ConfigChanged" in caplog.text


def test_tracking_is_bounded() -> None:
    recorder, core_api = _recorder(max_tracked=1)
    web = deployment("web")

    recorder.record("Deployment", web, NORMAL, "A", "a")
    recorder.record("Deployment", web, NORMAL, "B", "b")
    recorder.record("Deployment", web, NORMAL, "A", "a")

    assert core_api.create_namespaced_event.call_count == 3


def test_transport_failures_are_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    recorder, core_api = _recorder()
    core_api.create_namespaced_event.side_effect = MaxRetryError(None, "/api/v1/events", "refused")

    with caplog.at_level(logging.WARNING):
        recorder.record("Deployment", deployment("web"), WARNING, "MissingDependency", "missing")

    assert "Failed to record Warning event MissingDependency" in caplog.text


def test_request_timeout_is_sent_on_create_and_patch() -> None:
    recorder, core_api = _recorder(request_timeout=5)
    web = deployment("web")

    recorder.record("Deployment", web, NORMAL, "ConfigUnchanged", "unchanged")
    recorder.record("Deployment", web, NORMAL, "ConfigUnchanged", "unchanged")

    assert core_api.create_namespaced_event.call_args.kwargs["_request_timeout"] == 5
    assert core_api.patch_namespaced_event.call_args.kwargs["_request_timeout"] == 5


def test_no_timeout_kwarg_without_a_configured_timeout() -> None:
    recorder, core_api = _recorder()

    recorder.record("Deployment", deployment("web"), NORMAL, "ConfigChanged", "x")

    assert "_request_timeout" not in core_api.create_namespaced_event.call_args.kwargs
