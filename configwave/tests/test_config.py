from __future__ import annotations

import pytest

from configwave.src.config import ConfigError, ControllerConfig, load_config, parse_bool


def test_defaults_watch_all_namespaces() -> None:
    assert load_config({}) == ControllerConfig()


def test_reads_every_setting() -> None:
    config = load_config(
        {
            "WATCH_NAMESPACE": " apps ",
            "REQUIRE_OPT_IN": "yes",
            "WORKER_COUNT": "4",
            "MAX_BACKOFF_SECONDS": "60",
            "REQUEST_TIMEOUT_SECONDS": "10",
            "HEALTH_PORT": "9090",
            "LOG_LEVEL": "debug",
        }
    )

    assert config == ControllerConfig(
        namespace="apps",
        require_opt_in=True,
        worker_count=4,
        max_backoff_seconds=60,
        request_timeout_seconds=10,
        health_port=9090,
        log_level="DEBUG",
    )


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"WORKER_COUNT": "many"}, "WORKER_COUNT must be an integer"),
        ({"WORKER_COUNT": "0"}, "WORKER_COUNT must be >= 1"),
        ({"HEALTH_PORT": "70000"}, "HEALTH_PORT must be <= 65535"),
        ({"MAX_BACKOFF_SECONDS": "0"}, "MAX_BACKOFF_SECONDS must be >= 1"),
        ({"LOG_LEVEL": "chatty"}, "LOG_LEVEL"),
    ],
)
def test_invalid_values_raise(env: dict[str, str], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(env)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, False), ("true", True), ("ON", True), ("1", True), ("no", False), ("", False)],
)
def test_parse_bool(raw: str | None, expected: bool) -> None:
    assert parse_bool(raw) is expected
