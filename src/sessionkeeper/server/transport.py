"""UDP endpoint built on python-osc's asyncio server."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any

from pythonosc.dispatcher import Dispatcher as OscAddressMap
from pythonosc.osc_server import AsyncIOOSCUDPServer

from sessionkeeper.models import Reply, Request, Sender

_log = logging.getLogger(__name__)

OnRequest = Callable[[Request], None]


class OscTransport:
    """Binds the OSC endpoint, decodes inbound messages, and sends replies."""

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self._transport: asyncio.DatagramTransport | None = None

    @property
    def url(self) -> str:
        """The ``osc.udp://`` URL clients use to reach this endpoint."""
        return f"osc.udp://{self.host}:{self.port}/"

    async def start(self, addresses: Iterable[str], on_request: OnRequest) -> None:
        """Bind the socket and route every address in *addresses* to *on_request*.

        Messages for other addresses are delivered to *on_request* as well so
        the caller can reject them.
        """

        def _handler(client_address: tuple[Any, ...], address: str, *args: Any) -> None:
            sender: Sender = (str(client_address[0]), int(client_address[1]))
            on_request(Request(address=address, arguments=args, sender=sender))

        address_map = OscAddressMap()
        for address in addresses:
            address_map.map(address, _handler, needs_reply_address=True)
        address_map.set_default_handler(_handler, needs_reply_address=True)

        server = AsyncIOOSCUDPServer(
            (self.host, self.port), address_map, asyncio.get_running_loop()
        )
        transport, _protocol = await server.create_serve_endpoint()
        self._transport = transport
        sockname = transport.get_extra_info("sockname")
        if sockname is not None:
            self.port = int(sockname[1])
        _log.info("Listening on %s", self.url)

    def send(self, to: Sender, reply: Reply) -> None:
        """Send *reply* to the peer at *to* from the bound socket."""
        if self._transport is None or self._transport.is_closing():
            _log.warning("Dropping %s reply to %s:%d: transport closed", reply.address, *to)
            return
        self._transport.sendto(reply.to_datagram(), to)

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            _log.info("Stopped listening on %s", self.url)
