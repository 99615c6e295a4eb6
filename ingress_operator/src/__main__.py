from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from ingress_operator.src.config import load_config
from ingress_operator.src.controller import build_controller
from ingress_operator.src.health import start_health_server
from ingress_operator.src.kube import build_clients, load_kube_configuration
from ingress_operator.src.metrics import METRICS

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


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

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


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name, logging.INFO))


def main() -> int:
    """Operator entrypoint: configure logging, build the controller and run it until a signal."""
    config = load_config()
    configure_logging(config.log_level)
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, networking_api = build_clients()
    controller = build_controller(config, core_api=core_api, networking_api=networking_api)

    health_server = start_health_server(ready_fn=controller.caches_synced, port=config.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        started = controller.run(shutdown_event)
    finally:
        health_server.shutdown()

    if not started and not shutdown_event.is_set():
        logger.error("Ingress operator failed to start")
        return 1
    logger.info("Ingress operator stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
