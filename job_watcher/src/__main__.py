from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from kubernetes.config.config_exception import ConfigException

from job_watcher.src.config import ConfigError, load_config
from job_watcher.src.controller import build_controller
from job_watcher.src.health import start_health_server
from job_watcher.src.informer import WatchError
from job_watcher.src.kube import build_clients, load_kube_configuration
from job_watcher.src.metrics import METRICS

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
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger("job_watcher")


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
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Configure structured JSON logging with a level from ``LOG_LEVEL`` env var."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def _fatal(message: str) -> int:
    LOGGER.error(message)
    print(f"error: {message}", file=sys.stderr)
    return 1


def main() -> int:
    """Controller entrypoint: load config, start probes, and run the watch loop.

    Returns ``0`` after a signal-driven shutdown and ``1`` on any fatal
    startup failure (bad configuration, unreachable API, denied watch).
    """
    configure_logging()

    try:
        config = load_config()
    except ConfigError as exc:
        return _fatal(str(exc))

    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    LOGGER.info(
        "Watching jobs matching %s in %s; target deployment %s; startup cutoff %s",
        config.job_name_pattern.pattern,
        config.monitored_namespace,
        config.target_deployment_name,
        config.startup_cutoff.isoformat(),
    )

    try:
        load_kube_configuration()
    except ConfigException as exc:
        return _fatal(f"Unable to load Kubernetes configuration: {exc}")
    _, apps_api, batch_api = build_clients()

    controller = build_controller(config, batch_api=batch_api, apps_api=apps_api)

    try:
        health_server = start_health_server(ready=controller.ready, port=config.health_port)
    except OSError as exc:
        return _fatal(f"Unable to start health server on :{config.health_port}: {exc}")

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    except WatchError as exc:
        return _fatal(str(exc))
    finally:
        health_server.shutdown()

    LOGGER.info("Controller stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
