from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from configwave.src.config import ConfigError, load_config
from configwave.src.controller import build_controller
from configwave.src.health import start_health_server
from configwave.src.metrics import METRICS
from configwave.src.store import build_clients, load_kube_configuration

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger("configwave")


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects, tagging the emitting thread.

    Watch loops and workers each run on a named thread, so ``thread`` tells
    which kind or worker produced a line.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.handlers = [log_handler]
    logging.root.setLevel(getattr(logging, level, logging.INFO))
    # The kubernetes client logs every request body at DEBUG.
    logging.getLogger("kubernetes").setLevel(max(logging.INFO, logging.root.level))


def main() -> None:
    """Controller entrypoint: load config, start probes, and run watchers and workers."""
    try:
        config = load_config()
    except ConfigError as exc:
        configure_logging("INFO")
        LOGGER.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from exc

    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, apps_api = build_clients()
    controller = build_controller(config, core_api=core_api, apps_api=apps_api)

    health_server = start_health_server(
        synced=controller.ready,
        port=config.health_port,
        queue_depth=lambda: len(controller.queue),
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    LOGGER.info(
        "Starting controller (namespace=%s, workers=%d, require_opt_in=%s)",
        config.namespace or "<all>",
        config.worker_count,
        config.require_opt_in,
    )
    if not config.require_opt_in:
        LOGGER.warning(
            "REQUIRE_OPT_IN is off: every workload in scope is managed and rolls once "
            "when its config hash annotation is first written"
        )
    controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
