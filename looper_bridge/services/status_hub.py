from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Hashable, Protocol, Union

from looper_bridge.constants import SUBSCRIBER_QUEUE_SIZE
from looper_bridge.services.status_codec import Command, parse_command
from looper_bridge.state import (
    DeviceConnection,
    DeviceError,
    DeviceFound,
    DeviceLost,
    DeviceStatus,
    StatusUpdate,
)

HubEvent = Union[StatusUpdate, DeviceFound, DeviceLost, DeviceError]
ConnectivityEvent = Union[DeviceFound, DeviceLost, DeviceError]


class NoDeviceError(Exception):
    """A command was submitted while no looper is connected."""


class CommandSink(Protocol):
    @property
    def connection(self) -> DeviceConnection: ...

    def send_command(self, command: Command) -> bool: ...


@dataclass(frozen=True)
class HubSnapshot:
    status: DeviceStatus
    connection: DeviceConnection

    def to_dict(self) -> dict:
        return {
            "status": self.status.to_dict(),
            "connection": self.connection.to_dict(),
        }


@dataclass
class Subscription:
    """One attached session: its initial snapshot and its pending events."""

    handle: Hashable
    snapshot: HubSnapshot
    queue: asyncio.Queue = field(repr=False)
    dropped: bool = False

    def drain(self) -> list[HubEvent]:
        events: list[HubEvent] = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return events


class StatusHub:
    """
    Last-known device status plus fan-out to every attached subscriber.

    Publishing never waits on a subscriber: each one has a bounded queue and a
    subscriber whose queue is full is dropped.
    """

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._status = DeviceStatus()
        self._subscribers: dict[Hashable, Subscription] = {}
        self._link: CommandSink | None = None

    def bind_link(self, link: CommandSink) -> None:
        self._link = link

    @property
    def status(self) -> DeviceStatus:
        return self._status

    @property
    def connection(self) -> DeviceConnection:
        return self._link.connection if self._link is not None else DeviceConnection()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def snapshot(self) -> HubSnapshot:
        return HubSnapshot(status=self._status, connection=self.connection)

    # ---- Subscribers ----

    def subscribe(self, handle: Hashable) -> Subscription:
        previous = self._subscribers.get(handle)
        if previous is not None:
            previous.dropped = True
        sub = Subscription(
            handle=handle,
            snapshot=self.snapshot(),
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        self._subscribers[handle] = sub
        logging.debug("Subscriber %s attached (%d total)", handle, len(self._subscribers))
        return sub

    def unsubscribe(self, handle: Hashable) -> None:
        if self._subscribers.pop(handle, None) is not None:
            logging.debug(
                "Subscriber %s detached (%d total)", handle, len(self._subscribers)
            )

    # ---- Publishing ----

    def publish_status(self, status: DeviceStatus) -> None:
        self._status = status
        self._broadcast(StatusUpdate(status))

    def publish_connectivity(self, event: ConnectivityEvent) -> None:
        self._broadcast(event)

    def _broadcast(self, event: HubEvent) -> None:
        for handle, sub in list(self._subscribers.items()):
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                sub.dropped = True
                self._subscribers.pop(handle, None)
                logging.warning("Dropping slow subscriber %s", handle)

    # ---- Commands ----

    def submit_command(self, command: Command | str) -> None:
        """
        Forward a command to the connected looper.

        Raises NoDeviceError when there is no connected device; the command is not
        kept for later delivery. Text commands are parsed first and may raise
        CommandError.
        """
        if isinstance(command, str):
            command = parse_command(command)
        link = self._link
        if link is None or not link.connection.connected:
            raise NoDeviceError("No device connected")
        link.send_command(command)
