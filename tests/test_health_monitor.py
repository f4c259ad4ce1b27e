from __future__ import annotations

import pytest

from looper_bridge.services.health_monitor import (
    CancelDiscovery,
    DiscoveryTick,
    FrameAccepted,
    HealthMonitor,
    IdentityReceived,
    LivenessTick,
    PollTick,
    SendDiscovery,
    SendStatusQuery,
    StartDiscovery,
    transition,
)
from looper_bridge.state import ConnectionState, DeviceConnection, DeviceFound, DeviceLost

TIMEOUT = 5.0
ADDR = "10.0.0.5"


def _connected(last_seen: float = 100.0) -> DeviceConnection:
    return DeviceConnection(
        state=ConnectionState.CONNECTED, address=ADDR, last_seen_at=last_seen, device_id="LP-42"
    )


@pytest.mark.unit
def test_discovery_tick_from_disconnected_starts_discovering():
    conn, effects = transition(DeviceConnection(), DiscoveryTick(), TIMEOUT)
    assert conn.state is ConnectionState.DISCOVERING
    assert effects == [SendDiscovery()]


@pytest.mark.unit
def test_repeated_discovery_ticks_rebroadcast():
    conn, _ = transition(DeviceConnection(), DiscoveryTick(), TIMEOUT)
    conn, effects = transition(conn, DiscoveryTick(), TIMEOUT)
    assert conn.state is ConnectionState.DISCOVERING
    assert effects == [SendDiscovery()]


@pytest.mark.unit
@pytest.mark.parametrize(
    "start",
    [DeviceConnection(), DeviceConnection(state=ConnectionState.DISCOVERING)],
)
def test_identity_connects_and_queries_once(start: DeviceConnection):
    conn, effects = transition(start, IdentityReceived(ADDR, "LP-42", 12.5), TIMEOUT)

    assert conn.state is ConnectionState.CONNECTED
    assert conn.address == ADDR
    assert conn.last_seen_at == 12.5
    assert conn.device_id == "LP-42"
    assert effects == [CancelDiscovery(), DeviceFound(ADDR, "LP-42"), SendStatusQuery(ADDR)]
    assert sum(isinstance(e, SendStatusQuery) for e in effects) == 1


@pytest.mark.unit
def test_identity_from_tracked_device_only_refreshes():
    conn, effects = transition(_connected(100.0), IdentityReceived(ADDR, "LP-42", 103.0), TIMEOUT)
    assert conn.last_seen_at == 103.0
    assert effects == []


@pytest.mark.unit
def test_identity_from_other_device_is_ignored_while_connected():
    start = _connected()
    conn, effects = transition(start, IdentityReceived("10.0.0.9", "LP-7", 103.0), TIMEOUT)
    assert conn == start
    assert effects == []


@pytest.mark.unit
def test_frame_refreshes_last_seen():
    conn, effects = transition(_connected(100.0), FrameAccepted(ADDR, 104.0), TIMEOUT)
    assert conn.last_seen_at == 104.0
    assert effects == []


@pytest.mark.unit
def test_frame_while_disconnected_changes_nothing():
    conn, effects = transition(DeviceConnection(), FrameAccepted(ADDR, 1.0), TIMEOUT)
    assert conn == DeviceConnection()
    assert effects == []


@pytest.mark.unit
def test_liveness_at_exact_timeout_keeps_connection():
    conn, effects = transition(_connected(100.0), LivenessTick(105.0), TIMEOUT)
    assert conn.connected
    assert effects == []


@pytest.mark.unit
def test_liveness_past_timeout_disconnects_once():
    conn, effects = transition(_connected(100.0), LivenessTick(105.01), TIMEOUT)

    assert conn.state is ConnectionState.DISCONNECTED
    assert conn.address is None
    assert effects == [DeviceLost(ADDR), StartDiscovery()]

    conn, effects = transition(conn, LivenessTick(106.0), TIMEOUT)
    assert effects == []


@pytest.mark.unit
def test_discovery_tick_ignored_while_connected():
    start = _connected()
    conn, effects = transition(start, DiscoveryTick(), TIMEOUT)
    assert conn == start
    assert effects == []


@pytest.mark.unit
def test_poll_tick_queries_only_when_connected():
    _, effects = transition(_connected(), PollTick(), TIMEOUT)
    assert effects == [SendStatusQuery(ADDR)]

    _, effects = transition(DeviceConnection(), PollTick(), TIMEOUT)
    assert effects == []
    _, effects = transition(DeviceConnection(state=ConnectionState.DISCOVERING), PollTick(), TIMEOUT)
    assert effects == []


@pytest.mark.unit
def test_unknown_event_raises():
    with pytest.raises(TypeError):
        transition(DeviceConnection(), object(), TIMEOUT)  # type: ignore[arg-type]


@pytest.mark.unit
def test_monitor_runs_full_cycle():
    monitor = HealthMonitor(timeout_s=TIMEOUT)
    assert monitor.connection.state is ConnectionState.DISCONNECTED

    assert monitor.handle(DiscoveryTick()) == [SendDiscovery()]
    monitor.handle(IdentityReceived(ADDR, "LP-42", 0.0))
    assert monitor.connection.connected

    monitor.handle(FrameAccepted(ADDR, 4.0))
    assert monitor.handle(LivenessTick(8.0)) == []
    effects = monitor.handle(LivenessTick(9.5))
    assert DeviceLost(ADDR) in effects
    assert monitor.connection == DeviceConnection()
