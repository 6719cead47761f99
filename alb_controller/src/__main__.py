from __future__ import annotations

import importlib
import json
import logging
import os
import re
import signal
import sys
from typing import Any

from alb_controller.src.config import build_configuration_from_env
from alb_controller.src.controller import ControllerState, build_controller
from alb_controller.src.errors import ConfigError, ProviderSyncError, ShutdownInProgressError
from alb_controller.src.health import start_health_server
from alb_controller.src.kube import build_clients, load_kube_configuration
from alb_controller.src.metrics import METRICS

RUNTIME_VERSION = "1.0.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key"
            r"|aws_secret_access_key|aws_session_token)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password|X-Amz-Signature)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


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


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def load_object(path: str) -> Any:
    """Resolve a ``package.module:attribute`` reference."""
    module_name, separator, attribute = path.partition(":")
    if not separator or not module_name or not attribute:
        raise ConfigError(f"expected 'module:attribute', got: {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"cannot import {module_name!r}: {exc}") from exc
    try:
        return getattr(module, attribute)
    except AttributeError as exc:
        raise ConfigError(f"{module_name!r} has no attribute {attribute!r}") from exc


def main() -> None:
    """Controller entrypoint: configure logging, wire collaborators and run the control loop."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = build_configuration_from_env()
        factory_path = os.getenv("PROVIDER_CLIENT_FACTORY", "").strip()
        if not factory_path:
            raise ConfigError("PROVIDER_CLIENT_FACTORY must name a 'module:callable'")
        tagging_client = load_object(factory_path)(config)
        reconciler_path = os.getenv("INGRESS_RECONCILER", "").strip()
        ingress_reconciler = load_object(reconciler_path) if reconciler_path else None
    except ConfigError:
        LOGGER.exception("Invalid controller configuration")
        sys.exit(2)

    load_kube_configuration()
    clients = build_clients()
    controller = build_controller(
        config=config,
        clients=clients,
        tagging_client=tagging_client,
        ingress_reconciler=ingress_reconciler,
    )

    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        alive=lambda: controller.state is not ControllerState.STOPPED,
    )

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        try:
            controller.stop()
        except ShutdownInProgressError:
            LOGGER.warning("Shutdown already in progress")

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.start()
    except ProviderSyncError:
        LOGGER.critical("Initial provider synchronization failed; exiting", exc_info=True)
        health_server.shutdown()
        sys.exit(1)

    health_server.shutdown()
    LOGGER.info("Controller exited")


if __name__ == "__main__":
    main()
