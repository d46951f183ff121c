from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import threading

from secretsync.src.config import env_int, load_config
from secretsync.src.controller import build_controller
from secretsync.src.health import start_health_server
from secretsync.src.kube import build_client, load_kube_configuration, resolve_kubeconfig
from secretsync.src.metrics import METRICS

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


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replicate tagged secrets from the source namespace into every namespace"
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to a kubeconfig file (defaults to $KUBECONFIG, then in-cluster config)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Controller entrypoint: configure logging, start the cache and run the workers.

    Returns ``0`` after an ordinary shutdown and ``1`` when the controller
    could not start (cache never synced).
    """
    args = _parse_args(argv)

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

    config = load_config()
    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)

    load_kube_configuration(resolve_kubeconfig(args.kubeconfig))
    core_api = build_client()

    controller = build_controller(core_api=core_api, config=config)
    health_server = start_health_server(
        ready=controller.ready,
        port=health_port,
        state_fn=lambda: controller.state.value,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Replicating secrets of type %s from namespace %s (blacklist: %s)",
        config.sync_type,
        config.source_namespace,
        ", ".join(sorted(config.blacklist)),
    )
    try:
        clean_exit = controller.run(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()

    if not clean_exit:
        logger.error("Controller failed to start or stopped unexpectedly")
        return 1
    logger.info("Controller stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
