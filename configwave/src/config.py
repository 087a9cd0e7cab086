from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:        Namespace to watch, or ``""`` for every namespace.
        require_opt_in:   Only manage workloads annotated with
                          ``wave.pusher.com/update-on-config-change: "true"``.
                          Off by default, so the first pass writes the hash
                          annotation to every workload in scope (including
                          ones with no references) and each of them rolls once.
        worker_count:     Number of concurrent reconcile workers.
        max_backoff_seconds: Cap for the per-key requeue backoff.
        request_timeout_seconds: Timeout applied to every API call.
        health_port:      Port for ``/healthz``, ``/readyz`` and ``/metrics``.
        log_level:        Name of the root logging level.
    """

    namespace: str = ""
    require_opt_in: bool = False
    worker_count: int = 2
    max_backoff_seconds: int = 30
    request_timeout_seconds: int = 30
    health_port: int = 8080
    log_level: str = "INFO"


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    ``WATCH_NAMESPACE`` left unset or empty watches all namespaces; every
    numeric setting is range-checked and a bad value raises
    :class:`ConfigError` so the pod crash-loops with a clear message
    instead of running misconfigured.
    """
    values = env if env is not None else os.environ

    log_level = values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"LOG_LEVEL must be a standard logging level, got: {log_level!r}")

    return ControllerConfig(
        namespace=values.get("WATCH_NAMESPACE", "").strip(),
        require_opt_in=parse_bool(values.get("REQUIRE_OPT_IN")),
        worker_count=parse_int(values, "WORKER_COUNT", 2, minimum=1, maximum=64),
        max_backoff_seconds=parse_int(values, "MAX_BACKOFF_SECONDS", 30, minimum=1),
        request_timeout_seconds=parse_int(values, "REQUEST_TIMEOUT_SECONDS", 30, minimum=1),
        health_port=parse_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=log_level,
    )
