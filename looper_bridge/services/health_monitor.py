"""
Connection health state machine.

``transition`` is a pure function of (connection, event) -> (connection, effects);
``HealthMonitor`` owns the current DeviceConnection and is the only thing that
replaces it. Effects are plain values executed by the device link.

    DISCONNECTED --discovery tick--> DISCOVERING --identity--> CONNECTED
    CONNECTED --frame from device--> CONNECTED (last_seen_at refreshed)
    CONNECTED --liveness tick, silent > timeout--> DISCONNECTED
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Union

from looper_bridge.state import ConnectionState, DeviceConnection, DeviceFound, DeviceLost

# ---- Events ----


@dataclass(frozen=True)
class DiscoveryTick:
    pass


@dataclass(frozen=True)
class LivenessTick:
    now: float


@dataclass(frozen=True)
class PollTick:
    pass


@dataclass(frozen=True)
class IdentityReceived:
    address: str
    device_id: str
    now: float


@dataclass(frozen=True)
class FrameAccepted:
    address: str
    now: float


MonitorEvent = Union[DiscoveryTick, LivenessTick, PollTick, IdentityReceived, FrameAccepted]

# ---- Effects ----


@dataclass(frozen=True)
class SendDiscovery:
    pass


@dataclass(frozen=True)
class SendStatusQuery:
    address: str


@dataclass(frozen=True)
class StartDiscovery:
    pass


@dataclass(frozen=True)
class CancelDiscovery:
    pass


Effect = Union[SendDiscovery, SendStatusQuery, StartDiscovery, CancelDiscovery, DeviceFound, DeviceLost]


def transition(
    conn: DeviceConnection, event: MonitorEvent, timeout_s: float
) -> tuple[DeviceConnection, list[Effect]]:
    state = conn.state

    if isinstance(event, DiscoveryTick):
        if state is ConnectionState.CONNECTED:
            return conn, []
        return dataclasses.replace(conn, state=ConnectionState.DISCOVERING), [SendDiscovery()]

    if isinstance(event, IdentityReceived):
        if state is ConnectionState.CONNECTED:
            if event.address == conn.address:
                return dataclasses.replace(conn, last_seen_at=event.now), []
            return conn, []
        found = DeviceConnection(
            state=ConnectionState.CONNECTED,
            address=event.address,
            last_seen_at=event.now,
            device_id=event.device_id,
        )
        return found, [
            CancelDiscovery(),
            DeviceFound(event.address, event.device_id),
            SendStatusQuery(event.address),
        ]

    if isinstance(event, FrameAccepted):
        if state is ConnectionState.CONNECTED and event.address == conn.address:
            return dataclasses.replace(conn, last_seen_at=event.now), []
        return conn, []

    if isinstance(event, LivenessTick):
        if state is not ConnectionState.CONNECTED:
            return conn, []
        last_seen = conn.last_seen_at if conn.last_seen_at is not None else event.now
        if event.now - last_seen > timeout_s:
            return DeviceConnection(), [DeviceLost(conn.address), StartDiscovery()]
        return conn, []

    if isinstance(event, PollTick):
        if state is ConnectionState.CONNECTED and conn.address:
            return conn, [SendStatusQuery(conn.address)]
        return conn, []

    raise TypeError(f"unknown monitor event: {event!r}")


class HealthMonitor:
    """Holds the single DeviceConnection and applies events to it."""

    def __init__(self, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        self._connection = DeviceConnection()

    @property
    def connection(self) -> DeviceConnection:
        return self._connection

    def handle(self, event: MonitorEvent) -> list[Effect]:
        new, effects = transition(self._connection, event, self.timeout_s)
        old = self._connection
        if new.state is not old.state:
            if new.state is ConnectionState.CONNECTED:
                logging.info("Found looper %s at %s", new.device_id, new.address)
            elif old.state is ConnectionState.CONNECTED:
                logging.warning(
                    "Looper at %s silent for more than %.1fs, reconnecting",
                    old.address,
                    self.timeout_s,
                )
            else:
                logging.debug("Connection %s -> %s", old.state.value, new.state.value)
        self._connection = new
        return effects
