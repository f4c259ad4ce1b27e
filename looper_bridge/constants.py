from __future__ import annotations

import logging
import os

# Webserver bind (NiceGUI host/port)
SERVER_HOST: str = os.getenv("LOOPER_SERVER_IP", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("LOOPER_SERVER_PORT", "3000"))

# Device protocol
DEVICE_PORT_DEFAULT = 5667
BROADCAST_ADDR_DEFAULT = "255.255.255.255"
SUPPORTED_TRACK_COUNTS = (8,)
DEFAULT_TRACK_COUNT = 8

# Timing defaults (seconds)
LIVENESS_TIMEOUT_S = 5.0
LIVENESS_CHECK_INTERVAL_S = 1.0
DISCOVERY_INTERVAL_S = 1.0
POLL_INTERVAL_S = 0.5

SUBSCRIBER_QUEUE_SIZE = 64


def env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _resolve_log_level() -> int:
    s = os.getenv("LOOPER_LOG_LEVEL")
    if s:
        name = s.strip().upper()
        mapping = {
            "TRACE": 5,
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL,
        }
        return mapping.get(name, logging.WARNING)
    else:
        return logging.WARNING


LOG_LEVEL: int = _resolve_log_level()
