from __future__ import annotations

import os
from dataclasses import dataclass, field

from looper_bridge.constants import (
    BROADCAST_ADDR_DEFAULT,
    DEVICE_PORT_DEFAULT,
    DISCOVERY_INTERVAL_S,
    LIVENESS_CHECK_INTERVAL_S,
    LIVENESS_TIMEOUT_S,
    POLL_INTERVAL_S,
    SUBSCRIBER_QUEUE_SIZE,
)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = float(raw)
    if value <= 0:
        raise ValueError(f"{name} must be > 0, got {raw!r}")
    return value


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = int(raw)
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {raw!r}")
    return value


def _split_hosts(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(h.strip() for h in raw.split(",") if h.strip())


@dataclass(frozen=True)
class BridgeConfig:
    """Runtime configuration for the device link and status hub."""

    BIND_HOST: str = "0.0.0.0"
    LISTEN_PORT: int = 0  # 0 = ephemeral, like an unbound dgram socket
    DEVICE_PORT: int = DEVICE_PORT_DEFAULT
    BROADCAST_ADDR: str = BROADCAST_ADDR_DEFAULT
    DEVICE_HOSTS: tuple[str, ...] = field(default_factory=tuple)
    LIVENESS_TIMEOUT_S: float = LIVENESS_TIMEOUT_S
    LIVENESS_CHECK_INTERVAL_S: float = LIVENESS_CHECK_INTERVAL_S
    DISCOVERY_INTERVAL_S: float = DISCOVERY_INTERVAL_S
    POLL_INTERVAL_S: float = POLL_INTERVAL_S
    SUBSCRIBER_QUEUE_SIZE: int = SUBSCRIBER_QUEUE_SIZE

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        return cls(
            BIND_HOST=os.getenv("LOOPER_BIND_HOST", "0.0.0.0"),
            LISTEN_PORT=_env_int("LOOPER_LISTEN_PORT", 0),
            DEVICE_PORT=_env_int("LOOPER_DEVICE_PORT", DEVICE_PORT_DEFAULT, minimum=1),
            BROADCAST_ADDR=os.getenv("LOOPER_BROADCAST_ADDR", BROADCAST_ADDR_DEFAULT),
            DEVICE_HOSTS=_split_hosts(os.getenv("LOOPER_DEVICE_HOSTS")),
            LIVENESS_TIMEOUT_S=_env_float("LOOPER_LIVENESS_TIMEOUT_S", LIVENESS_TIMEOUT_S),
            LIVENESS_CHECK_INTERVAL_S=_env_float(
                "LOOPER_LIVENESS_CHECK_S", LIVENESS_CHECK_INTERVAL_S
            ),
            DISCOVERY_INTERVAL_S=_env_float(
                "LOOPER_DISCOVERY_INTERVAL_S", DISCOVERY_INTERVAL_S
            ),
            POLL_INTERVAL_S=_env_float("LOOPER_POLL_INTERVAL_S", POLL_INTERVAL_S),
            SUBSCRIBER_QUEUE_SIZE=_env_int(
                "LOOPER_SUBSCRIBER_QUEUE", SUBSCRIBER_QUEUE_SIZE, minimum=1
            ),
        )
