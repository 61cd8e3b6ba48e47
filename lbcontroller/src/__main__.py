from __future__ import annotations

import importlib
import json
import logging
import os
import re
import signal
import threading
from typing import Any

from lbcontroller.src.cloud import InMemoryLoadBalancerBackend
from lbcontroller.src.controller import build_controller_from_env, env_int
from lbcontroller.src.health import start_health_server
from lbcontroller.src.kube import build_clients, load_kube_configuration
from lbcontroller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
DEFAULT_BACKEND = "lbcontroller.src.cloud:InMemoryLoadBalancerBackend"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|secret|access[_-]?key(?:[_-]?secret)?)\b\s*[:=]\s*)([^\s,;]+)"
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


def load_backend(reference: str) -> Any:
    """Instantiate the load balancer backend named by ``module:attribute``."""
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"LB_BACKEND must look like 'module:factory', got: {reference!r}")
    factory = getattr(importlib.import_module(module_name), attribute)
    return factory()


def main() -> None:
    """Controller entrypoint: configure logging, build the controller and run it until signalled."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api = build_clients()

    backend = load_backend(os.getenv("LB_BACKEND", DEFAULT_BACKEND))
    if isinstance(backend, InMemoryLoadBalancerBackend):
        logger.warning("Using the in-memory load balancer backend; no cloud resources are managed")

    controller = build_controller_from_env(core_api=core_api, backend=backend)
    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(ready=controller.ready, port=health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run(stop_event=shutdown_event)
    finally:
        health_server.shutdown()
        logger.info("Controller stopped")


if __name__ == "__main__":
    main()
