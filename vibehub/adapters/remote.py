"""Remote-control adapter: framed OSC commands over a TCP tunnel."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import uuid
from typing import Any, Protocol as TypingProtocol
from urllib.parse import urlsplit

from vibehub.adapters.base import AdapterBase
from vibehub.core import wire
from vibehub.core.config import RemoteSettings
from vibehub.core.errors import (
    AdapterDisabled,
    CapabilityUnavailable,
    ProtocolError,
    TransportConnectError,
    TransportSendError,
)
from vibehub.core.model import Command, CommandReceived, Protocol

LOGGER = logging.getLogger(__name__)

TUNNEL_TIMEOUT_S = 30.0
_AUTH_TIMEOUT_S = 10.0


class Tunnel(TypingProtocol):
    def probe(self) -> None: ...

    async def open(self, local_port: int) -> str: ...

    async def alive(self) -> bool: ...

    async def close(self) -> None: ...


class NgrokTunnel:
    """`Tunnel` exposing a local TCP port through an ngrok TCP endpoint."""

    def __init__(self, authtoken: str) -> None:
        self.authtoken = authtoken
        self._listener: Any = None

    def probe(self) -> None:
        try:
            import ngrok  # type: ignore  # noqa: F401
        except Exception as exc:  # pragma: no cover - import failure path
            raise CapabilityUnavailable("Remote control requires 'ngrok'. Install dependency and retry.") from exc

    async def open(self, local_port: int) -> str:
        import ngrok  # type: ignore

        try:
            self._listener = await ngrok.forward(f"localhost:{local_port}", proto="tcp", authtoken=self.authtoken)
        except Exception as exc:
            raise TransportConnectError(f"ngrok tunnel failed: {exc}") from exc
        return self._listener.url()

    async def alive(self) -> bool:
        """True while ngrok still reports our listener as open."""
        if self._listener is None:
            return False
        import ngrok  # type: ignore

        try:
            listeners = await ngrok.get_listeners()
        except Exception as exc:
            raise TransportConnectError(f"ngrok listener query failed: {exc}") from exc
        url = self._listener.url()
        return any(listener.url() == url for listener in listeners)

    async def close(self) -> None:
        listener, self._listener = self._listener, None
        if listener is None:
            return
        try:
            await listener.close()
        except Exception as exc:
            raise TransportConnectError(f"ngrok tunnel close failed: {exc}") from exc


def pairing_code(url: str, token: str) -> str:
    return base64.b64encode(f"{url}|{token}".encode("utf-8")).decode("ascii")


def parse_pairing_code(code: str) -> tuple[str, str]:
    """Split a pairing code into (tunnel url, token); raises ProtocolError when invalid."""
    try:
        decoded = base64.b64decode(code.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Pairing code is not valid base64 text: {exc}") from exc
    url, sep, token = decoded.partition("|")
    if not sep or not url or not token:
        raise ProtocolError("Pairing code must encode '<url>|<token>'")
    return url, token


class RemoteAdapter(AdapterBase):
    protocol = Protocol.REMOTE

    def __init__(
        self,
        settings: RemoteSettings,
        *,
        tunnel: Tunnel | None = None,
        name: str = "remote",
        cooldown_s: float = 2.0,
        heartbeat_interval_s: float = 10.0,
    ) -> None:
        super().__init__(name, cooldown_s=cooldown_s, heartbeat_interval_s=heartbeat_interval_s)
        self.settings = settings
        self.tunnel = tunnel if tunnel is not None else (NgrokTunnel(settings.authtoken) if settings.authtoken else None)
        self.token = str(uuid.uuid4())
        self.url: str | None = None
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.Task[None]] = set()
        self._clients: set[asyncio.StreamWriter] = set()

    @property
    def pairing_code(self) -> str | None:
        if self.url is None or not self.session.connected:
            return None
        return pairing_code(self.url, self.token)

    @property
    def local_port(self) -> int | None:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    def probe(self) -> None:
        if not self.settings.enabled:
            raise AdapterDisabled("Remote adapter disabled in settings")
        if self.tunnel is None:
            raise AdapterDisabled("No tunnel auth token configured; remote control is off")
        self.tunnel.probe()

    async def _connect(self) -> None:
        if self.tunnel is None:
            raise TransportConnectError("Remote adapter has no tunnel")
        try:
            self._server = await asyncio.start_server(self._serve_client, self.settings.host, self.settings.port)
        except OSError as exc:
            raise TransportConnectError(f"Could not listen on {self.settings.host}:{self.settings.port}: {exc}") from exc
        self.token = str(uuid.uuid4())
        self.url = await self._with_deadline(self.tunnel.open(self.local_port), TUNNEL_TIMEOUT_S, "tunnel setup")
        LOGGER.info("Remote control reachable at %s", self.url)

    async def _after_heartbeat(self) -> None:
        if self._server is not None and not self._server.is_serving():
            self._fail("Remote listener stopped serving")
            return
        if self.tunnel is None:
            return
        try:
            alive = await self.tunnel.alive()
        except TransportConnectError as exc:
            self._fail(str(exc))
            return
        if not alive:
            self._fail(f"Tunnel {self.url} is no longer open")

    def _serve_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.ensure_future(self._handle_client(reader, writer))
        self._connections.add(task)
        task.add_done_callback(self._connections.discard)

    async def _authenticate(self, reader: asyncio.StreamReader) -> bool:
        first = await asyncio.wait_for(wire.read_frame(reader), timeout=_AUTH_TIMEOUT_S)
        if first is None:
            return False
        message = wire.parse_message(first)
        return message.address == wire.AUTH_ADDRESS and list(message.params) == [self.token]

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        try:
            try:
                authenticated = await self._authenticate(reader)
            except (ProtocolError, asyncio.TimeoutError) as exc:
                LOGGER.warning("Remote client %s failed to authenticate: %s", peer, exc)
                return
            if not authenticated:
                LOGGER.warning("Remote client %s sent a bad pairing token, closing", peer)
                return

            LOGGER.info("Remote client %s authenticated", peer)
            self._clients.add(writer)
            while True:
                try:
                    payload = await wire.read_frame(reader)
                except ProtocolError as exc:
                    LOGGER.warning("Closing remote client %s: %s", peer, exc)
                    return
                if payload is None:
                    return
                try:
                    self._handle_frame(payload)
                except ProtocolError as exc:
                    LOGGER.warning("Dropping remote frame from %s: %s", peer, exc)
        except ConnectionError as exc:
            LOGGER.info("Remote client %s went away: %s", peer, exc)
        finally:
            self._clients.discard(writer)
            writer.close()

    def _handle_frame(self, payload: bytes) -> None:
        message = wire.parse_message(payload)
        if message.address != wire.COMMAND_ADDRESS:
            raise ProtocolError(f"Unexpected address {message.address}")
        command = wire.decode_envelope(message.params, source=self.name)
        self.emit(CommandReceived(adapter=self.name, command=command))

    def publish_state(self, device_id: str, channel: int, intensity: float) -> None:
        if not self._clients:
            return
        data = wire.frame(wire.encode_status(device_id, channel, intensity))
        for writer in list(self._clients):
            if writer.is_closing():
                self._clients.discard(writer)
                continue
            writer.write(data)

    async def _release(self) -> None:
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.wait(list(self._connections))
        self._clients.clear()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self.url = None
        if self.tunnel is not None:
            await self.tunnel.close()


class RemoteSender:
    """Client side of remote control: connects with a pairing code and sends commands."""

    def __init__(self, code: str) -> None:
        self.url, self.token = parse_pairing_code(code)
        self._writer: asyncio.StreamWriter | None = None

    def _endpoint(self) -> tuple[str, int]:
        parts = urlsplit(self.url)
        if not parts.hostname or parts.port is None:
            raise ProtocolError(f"Tunnel url '{self.url}' has no host and port")
        return parts.hostname, parts.port

    async def connect(self, timeout_s: float = 10.0) -> None:
        host, port = self._endpoint()
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout_s)
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportConnectError(f"Could not reach {host}:{port}: {exc}") from exc
        self._writer = writer
        await self._send_frame(wire.encode_auth(self.token))

    async def _send_frame(self, dgram: bytes) -> None:
        if self._writer is None:
            raise TransportSendError("Remote sender is not connected")
        try:
            self._writer.write(wire.frame(dgram))
            await self._writer.drain()
        except ConnectionError as exc:
            raise TransportSendError(f"Remote send failed: {exc}") from exc

    async def send(self, command: Command) -> None:
        await self._send_frame(wire.encode_command(command))

    async def close(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError as exc:
            LOGGER.debug("Remote connection closed uncleanly: %s", exc)

    async def __aenter__(self) -> RemoteSender:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
