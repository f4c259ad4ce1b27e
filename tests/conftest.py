from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from looper_bridge.config import BridgeConfig
from looper_bridge.services.device_link import DeviceLink
from looper_bridge.services.status_hub import StatusHub

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator

DEVICE_PORT = 5667
DEVICE_ADDR = "10.0.0.5"


class RecordingTransport:
    """Stands in for asyncio.DatagramTransport and records every sendto()."""

    def __init__(self) -> None:
        self.sent: list[tuple[bytes, tuple[str, int]]] = []
        self.fail_with: OSError | None = None
        self.closed = False

    def sendto(self, data: bytes, addr: tuple[str, int]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((data, addr))

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    def get_extra_info(self, name: str, default=None):
        if name == "sockname":
            return ("127.0.0.1", 40000)
        return default

    def payloads_to(self, host: str) -> list[bytes]:
        return [data for data, (h, _) in self.sent if h == host]


@pytest.fixture
def config() -> BridgeConfig:
    return BridgeConfig(
        BIND_HOST="127.0.0.1",
        DEVICE_PORT=DEVICE_PORT,
        BROADCAST_ADDR="255.255.255.255",
        SUBSCRIBER_QUEUE_SIZE=16,
    )


@pytest.fixture
def hub(config: BridgeConfig) -> StatusHub:
    return StatusHub(queue_size=config.SUBSCRIBER_QUEUE_SIZE)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
async def link(
    hub: StatusHub, config: BridgeConfig, transport: RecordingTransport
) -> AsyncIterator[DeviceLink]:
    """
    A DeviceLink wired to a recording transport instead of a socket. Tests drive it
    by calling ``process()`` with events; no timers run except a discovery ticker
    started by a StartDiscovery effect, which teardown cancels.
    """
    lnk = DeviceLink(hub, config)
    lnk.discovery.attach(transport)  # type: ignore[arg-type]
    try:
        yield lnk
    finally:
        await lnk.stop()


@pytest.fixture
def fake_looper() -> Iterator:
    from tests.utils.fake_looper import FakeLooper

    looper = FakeLooper().start()
    try:
        yield looper
    finally:
        looper.stop()
