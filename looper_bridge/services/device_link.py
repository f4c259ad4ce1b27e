from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Callable, Union

from looper_bridge.common.logging_config import trace
from looper_bridge.config import BridgeConfig
from looper_bridge.services.discovery import DiscoveryEngine, SendError
from looper_bridge.services.health_monitor import (
    CancelDiscovery,
    DiscoveryTick,
    Effect,
    FrameAccepted,
    HealthMonitor,
    IdentityReceived,
    LivenessTick,
    MonitorEvent,
    PollTick,
    SendDiscovery,
    SendStatusQuery,
    StartDiscovery,
)
from looper_bridge.services.status_codec import (
    Command,
    DecodeError,
    StatusQuery,
    decode_status,
    extract_device_id,
    is_sysex,
    is_text_status,
    parse_text_status,
)
from looper_bridge.services.status_hub import StatusHub
from looper_bridge.state import DeviceConnection, DeviceError, DeviceFound, DeviceLost


class SocketFatalError(Exception):
    """The UDP endpoint could not be opened."""


@dataclass(frozen=True)
class Datagram:
    data: bytes
    addr: tuple[str, int]
    received_at: float


LinkEvent = Union[Datagram, DeviceError, MonitorEvent]


class _LooperProtocol(asyncio.DatagramProtocol):
    def __init__(self, link: DeviceLink) -> None:
        self._link = link

    def datagram_received(self, data: bytes, addr) -> None:  # type: ignore[override]
        self._link.feed_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        self._link.report_socket_error(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            self._link.report_socket_error(exc)


class DeviceLink:
    """
    Owns the UDP endpoint and the single ordered event stream.

    Datagrams and the three timer sources (discovery, liveness, poll) are merged into
    one queue. One consumer task applies them in arrival order, so every state change
    (a decode-and-publish or a connection transition) happens as a unit.
    """

    def __init__(self, hub: StatusHub, config: BridgeConfig) -> None:
        self.hub = hub
        self.config = config
        self.monitor = HealthMonitor(config.LIVENESS_TIMEOUT_S)
        self.discovery = DiscoveryEngine(
            device_port=config.DEVICE_PORT,
            broadcast_addr=config.BROADCAST_ADDR,
            unicast_hosts=config.DEVICE_HOSTS,
            on_error=self._on_send_error,
        )
        self.events: asyncio.Queue[LinkEvent] = asyncio.Queue()
        self._transport: asyncio.DatagramTransport | None = None
        self._tasks: list[asyncio.Task] = []
        self._discovery_task: asyncio.Task | None = None
        hub.bind_link(self)

    # ---- Views ----

    @property
    def connection(self) -> DeviceConnection:
        return self.monitor.connection

    @property
    def running(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    @property
    def discovery_active(self) -> bool:
        return self._discovery_task is not None and not self._discovery_task.done()

    @property
    def local_address(self) -> tuple[str, int] | None:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")

    # ---- Lifecycle ----

    async def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        host, port = self.config.BIND_HOST, self.config.LISTEN_PORT
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _LooperProtocol(self),
                local_addr=(host, port),
                allow_broadcast=True,
            )
        except OSError as e:
            raise SocketFatalError(f"Cannot open UDP endpoint on {host}:{port}: {e}") from e

        self._transport = transport
        self.discovery.attach(transport)
        await self.discovery.resolve_hosts()

        self._tasks = [
            asyncio.create_task(self._consume(), name="looper-events"),
            asyncio.create_task(
                self._ticker(
                    self.config.LIVENESS_CHECK_INTERVAL_S,
                    lambda: LivenessTick(loop.time()),
                    immediate=False,
                ),
                name="looper-liveness",
            ),
            asyncio.create_task(
                self._ticker(self.config.POLL_INTERVAL_S, PollTick),
                name="looper-poll",
            ),
        ]
        self._start_discovery()
        logging.info(
            "UDP endpoint %s ready, looking for looper on port %d (broadcast %s)",
            self.local_address,
            self.config.DEVICE_PORT,
            self.config.BROADCAST_ADDR,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        if self._discovery_task is not None:
            tasks.append(self._discovery_task)
            self._discovery_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self.discovery.attach(None)
        logging.info("Device link stopped")

    # ---- Event sources ----

    def feed_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        now = asyncio.get_running_loop().time()
        self.events.put_nowait(Datagram(data, (addr[0], addr[1]), now))

    def report_socket_error(self, exc: Exception) -> None:
        logging.warning("UDP socket error: %s", exc)
        self.events.put_nowait(DeviceError(str(exc)))

    async def _ticker(
        self, interval: float, make_event: Callable[[], MonitorEvent], immediate: bool = True
    ) -> None:
        if not immediate:
            await asyncio.sleep(interval)
        while True:
            self.events.put_nowait(make_event())
            await asyncio.sleep(interval)

    def _start_discovery(self) -> None:
        if self.discovery_active:
            return
        self._discovery_task = asyncio.create_task(
            self._ticker(self.config.DISCOVERY_INTERVAL_S, DiscoveryTick),
            name="looper-discovery",
        )

    def _cancel_discovery(self) -> None:
        if self._discovery_task is not None:
            self._discovery_task.cancel()
            self._discovery_task = None

    # ---- Event processing ----

    async def _consume(self) -> None:
        while True:
            event = await self.events.get()
            try:
                self.process(event)
            except Exception:
                logging.exception("Failed to process %s", type(event).__name__)

    def process(self, event: LinkEvent) -> None:
        if isinstance(event, Datagram):
            self._handle_datagram(event)
        elif isinstance(event, DeviceError):
            self.hub.publish_connectivity(event)
        else:
            self._apply(self.monitor.handle(event))

    def _handle_datagram(self, dg: Datagram) -> None:
        host, port = dg.addr
        trace("UDP %d bytes from %s:%d: %r", len(dg.data), host, port, dg.data[:50])
        if port != self.config.DEVICE_PORT:
            logging.debug("Ignoring datagram from unexpected port %s:%d", host, port)
            return
        conn = self.connection
        if conn.connected and host != conn.address:
            logging.debug("Ignoring datagram from %s, tracking %s", host, conn.address)
            return
        if is_sysex(dg.data):
            return

        device_id = extract_device_id(dg.data)
        if device_id is not None:
            self._apply(self.monitor.handle(IdentityReceived(host, device_id, dg.received_at)))
            return

        if not conn.connected:
            logging.debug("Ignoring frame from %s: no device connected", host)
            return

        try:
            if is_text_status(dg.data):
                status = parse_text_status(dg.data, self.hub.status)
            else:
                status = decode_status(dg.data, self.hub.status)
        except DecodeError as e:
            logging.warning("Dropped status frame from %s (%s): %s", host, e.kind.value, e)
            return
        if status is None:
            return

        self._apply(self.monitor.handle(FrameAccepted(host, dg.received_at)))
        self.hub.publish_status(status)

    def _apply(self, effects: list[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, SendDiscovery):
                self.discovery.send_discovery()
            elif isinstance(effect, SendStatusQuery):
                self.discovery.send_command(effect.address, StatusQuery())
            elif isinstance(effect, StartDiscovery):
                self._start_discovery()
            elif isinstance(effect, CancelDiscovery):
                self._cancel_discovery()
            elif isinstance(effect, (DeviceFound, DeviceLost)):
                self.hub.publish_connectivity(effect)

    # ---- Outbound ----

    def send_command(self, command: Command) -> bool:
        address = self.connection.address
        if address is None:
            return False
        return self.discovery.send_command(address, command)

    def _on_send_error(self, err: SendError) -> None:
        self.hub.publish_connectivity(DeviceError(str(err)))
