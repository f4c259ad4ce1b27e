from __future__ import annotations

import asyncio
import logging
import socket
from typing import Callable

from looper_bridge.services.status_codec import Command, IdentityQuery, encode_command


class SendError(OSError):
    """A datagram could not be handed to the network."""

    def __init__(self, host: str, port: int, cause: BaseException | None = None) -> None:
        reason = cause if cause is not None else "endpoint not open"
        super().__init__(f"send to {host}:{port} failed: {reason}")
        self.host = host
        self.port = port
        self.cause = cause


class DiscoveryEngine:
    """
    Builds and sends outbound datagrams: the identity query used for discovery and
    unicast commands to a known device.

    Sends are fire-and-forget. Failures are logged and handed to ``on_error``; they are
    never raised to the caller, the health monitor's schedule takes care of retries.
    """

    def __init__(
        self,
        device_port: int,
        broadcast_addr: str,
        unicast_hosts: tuple[str, ...] = (),
        on_error: Callable[[SendError], None] | None = None,
    ) -> None:
        self.device_port = device_port
        self.broadcast_addr = broadcast_addr
        self.unicast_hosts = unicast_hosts
        self.on_error = on_error
        self._unicast_addrs: list[str] = []
        self._transport: asyncio.DatagramTransport | None = None
        self._discovery_payload = encode_command(IdentityQuery())

    def attach(self, transport: asyncio.DatagramTransport | None) -> None:
        self._transport = transport

    async def resolve_hosts(self) -> None:
        """Resolve configured unicast discovery hosts once; bad entries are skipped."""
        loop = asyncio.get_running_loop()
        addrs: list[str] = []
        for host in self.unicast_hosts:
            try:
                infos = await loop.getaddrinfo(
                    host, self.device_port, family=socket.AF_INET, type=socket.SOCK_DGRAM
                )
            except OSError as e:
                logging.warning("Discovery host %s did not resolve: %s", host, e)
                continue
            if infos:
                addr = infos[0][4][0]
                if addr not in addrs:
                    addrs.append(addr)
                logging.debug("Discovery host %s -> %s", host, addr)
        self._unicast_addrs = addrs

    def send_discovery(self) -> int:
        """Broadcast the identity query, then unicast it to each known host."""
        sent = 0
        if self._send(self._discovery_payload, self.broadcast_addr):
            sent += 1
        for addr in self._unicast_addrs:
            if self._send(self._discovery_payload, addr):
                sent += 1
        logging.debug("Discovery query sent to %d target(s)", sent)
        return sent

    def send_command(self, address: str, command: Command) -> bool:
        payload = encode_command(command)
        ok = self._send(payload, address)
        if ok:
            logging.debug("Sent %r to %s:%d", payload, address, self.device_port)
        return ok

    def _send(self, payload: bytes, host: str) -> bool:
        transport = self._transport
        try:
            if transport is None or transport.is_closing():
                raise SendError(host, self.device_port)
            transport.sendto(payload, (host, self.device_port))
        except SendError as e:
            self._report(e)
            return False
        except OSError as e:
            self._report(SendError(host, self.device_port, e))
            return False
        return True

    def _report(self, err: SendError) -> None:
        logging.warning("%s", err)
        if self.on_error is not None:
            try:
                self.on_error(err)
            except Exception as e:
                logging.error("Send error callback failed: %s", e)
