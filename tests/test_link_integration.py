from __future__ import annotations

import asyncio
import socket
import time
from typing import TYPE_CHECKING

import pytest

from looper_bridge.config import BridgeConfig
from looper_bridge.services.device_link import DeviceLink, SocketFatalError
from looper_bridge.services.status_hub import StatusHub
from looper_bridge.state import ConnectionState, DeviceFound, DeviceLost, TrackState
from tests.utils.fake_looper import IDENTITY_QUERY, STATUS_QUERY
from tests.utils.rate import assert_hz_between, measure_rate

if TYPE_CHECKING:
    from collections.abc import Callable

    from tests.utils.fake_looper import FakeLooper


def _fast_config(device_port: int, **overrides) -> BridgeConfig:
    values = dict(
        BIND_HOST="127.0.0.1",
        LISTEN_PORT=0,
        DEVICE_PORT=device_port,
        BROADCAST_ADDR="127.0.0.1",
        LIVENESS_TIMEOUT_S=0.5,
        LIVENESS_CHECK_INTERVAL_S=0.1,
        DISCOVERY_INTERVAL_S=0.1,
        POLL_INTERVAL_S=0.1,
    )
    values.update(overrides)
    return BridgeConfig(**values)


async def _wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()


@pytest.mark.integration
async def test_discovers_device_and_tracks_status(fake_looper: FakeLooper):
    hub = StatusHub()
    link = DeviceLink(hub, _fast_config(fake_looper.port))
    sub = hub.subscribe("session")
    await link.start()
    try:
        assert await _wait_for(lambda: link.connection.connected), "device never found"
        assert link.connection.address == "127.0.0.1"
        assert link.connection.device_id == "LP-42"

        assert await _wait_for(lambda: hub.status.tracks[0].state is TrackState.PLAYING)
        assert hub.status.selected_track == 3
        assert all(t.level_db == -6 for t in hub.status.tracks)
        assert fake_looper.payloads(STATUS_QUERY), "no status polls reached the device"
    finally:
        await link.stop()

    events = sub.drain()
    assert events[0] == DeviceFound("127.0.0.1", "LP-42")


@pytest.mark.integration
async def test_silent_device_is_lost_once_and_rediscovered(fake_looper: FakeLooper):
    hub = StatusHub()
    link = DeviceLink(hub, _fast_config(fake_looper.port))
    await link.start()
    try:
        assert await _wait_for(lambda: link.connection.connected)
        sub = hub.subscribe("session")
        fake_looper.responding = False

        assert await _wait_for(
            lambda: link.connection.state is not ConnectionState.CONNECTED
        ), "device never timed out"
        queries_at_loss = len(fake_looper.payloads(IDENTITY_QUERY))

        # Discovery resumes while the device stays silent
        assert await _wait_for(
            lambda: len(fake_looper.payloads(IDENTITY_QUERY)) >= queries_at_loss + 3
        )
        lost = [e for e in sub.drain() if isinstance(e, DeviceLost)]
        assert lost == [DeviceLost("127.0.0.1")]

        fake_looper.responding = True
        assert await _wait_for(lambda: link.connection.connected), "device not rediscovered"
    finally:
        await link.stop()


@pytest.mark.integration
async def test_discovery_repeats_at_configured_interval(fake_looper: FakeLooper):
    fake_looper.responding = False
    hub = StatusHub()
    link = DeviceLink(hub, _fast_config(fake_looper.port, DISCOVERY_INTERVAL_S=0.1))
    await link.start()
    try:
        await asyncio.sleep(1.05)
    finally:
        await link.stop()

    stamps = [d.t for d in fake_looper.payloads(IDENTITY_QUERY)]
    assert len(stamps) >= 5
    assert_hz_between(measure_rate(stamps), min_hz=5.0, max_hz=15.0)
    assert hub.connection.state is ConnectionState.DISCOVERING


@pytest.mark.integration
async def test_bind_failure_is_fatal():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as taken:
        taken.bind(("127.0.0.1", 0))
        port = taken.getsockname()[1]
        link = DeviceLink(StatusHub(), _fast_config(5667, LISTEN_PORT=port))
        with pytest.raises(SocketFatalError):
            await link.start()
    assert not link.running
