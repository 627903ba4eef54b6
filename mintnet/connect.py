"""Authenticated, message-based connections between federation members.

A `Connector` opens framed connections to peers and listens for incoming
ones. `TlsTcpConnector` runs mutually authenticated TLS over TCP. Every
peer is identified by its self-signed certificate. `MockNetwork` hands out
in-memory connectors for tests.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import socket
import ssl
import tempfile
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from mintnet.framed import BidiFramed

logger = logging.getLogger(__name__)

Connection = tuple[int, BidiFramed]
_AcceptResult = Union[Connection, BaseException]


class ConnectError(Exception):
    """A connection could not be opened or its peer could not be authenticated."""


class ConnectionListener:
    """Asynchronous iterator over incoming connections.

    Each step gives a `(peer_id, framed)` pair, or raises `ConnectError` for one
    connection that failed. Iteration may go on after such an error.
    """

    def __init__(
        self,
        accept: Callable[[], Awaitable[_AcceptResult]],
        close: Callable[[], Awaitable[None]] | None = None,
        address: str | None = None,
    ) -> None:
        self._accept = accept
        self._close = close
        self._closed = False
        self.address = address

    def __aiter__(self) -> ConnectionListener:
        return self

    async def __anext__(self) -> Connection:
        if self._closed:
            raise StopAsyncIteration
        result = await self._accept()
        if isinstance(result, BaseException):
            raise result
        return result

    async def close(self) -> None:
        """Stop accepting connections."""
        if self._closed:
            return
        self._closed = True
        if self._close is not None:
            await self._close()

    async def __aenter__(self) -> ConnectionListener:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class Connector(abc.ABC):
    """Opens connections to peers and listens for connections from them."""

    @abc.abstractmethod
    async def connect_framed(self, destination: str, peer: int) -> Connection:
        """Connect to `destination`, expected to be `peer`."""

    @abc.abstractmethod
    async def listen(self, bind_addr: str) -> ConnectionListener:
        """Listen for incoming connections on `bind_addr`."""


@dataclass
class TlsConfig:
    """Our TLS identity and the certificates of all peers, all DER-encoded."""

    our_certificate: bytes
    our_private_key: bytes
    peer_certs: dict[int, bytes] = field(default_factory=dict)


class PeerCertStore:
    """Maps peer certificates back to peer ids."""

    def __init__(self, certs: Mapping[int, bytes] | Iterable[tuple[int, bytes]]) -> None:
        items = certs.items() if isinstance(certs, Mapping) else certs
        self.peer_certificates: list[tuple[int, bytes]] = [
            (peer, bytes(cert)) for peer, cert in items
        ]

    def get_peer_by_cert(self, cert: bytes) -> int | None:
        """Return the peer owning `cert`, or None if it is unknown."""
        return next(
            (peer for peer, peer_cert in self.peer_certificates if peer_cert == cert),
            None,
        )

    def authenticate_peer(self, received: list[bytes] | None) -> int:
        """Identify the peer from the certificate chain it presented."""
        if received is None:
            raise ConnectError("Peer did not authenticate itself")
        if len(received) != 1:
            raise ConnectError(
                f"Received certificate chain of len={len(received)}, expected=1"
            )
        peer = self.get_peer_by_cert(received[0])
        if peer is None:
            raise ConnectError("Unknown certificate")
        return peer


def _split_addr(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ConnectError(f"invalid address: {address!r}")
    try:
        return host, int(port)
    except ValueError:
        raise ConnectError(f"invalid address: {address!r}") from None


def _load_identity(context: ssl.SSLContext, cert_der: bytes, key_der: bytes) -> None:
    try:
        key = serialization.load_der_private_key(key_der, None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ConnectError(f"invalid private key: {exc}") from exc
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    cert_pem = ssl.DER_cert_to_PEM_cert(cert_der).encode("ascii")
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "identity.pem"
        path.write_bytes(cert_pem + key_pem)
        try:
            context.load_cert_chain(path)
        except ssl.SSLError as exc:
            raise ConnectError(f"invalid TLS identity: {exc}") from exc


def _peer_chain(writer: asyncio.StreamWriter) -> list[bytes] | None:
    ssl_object = writer.get_extra_info("ssl_object")
    if ssl_object is None:
        return None
    cert = ssl_object.getpeercert(binary_form=True)
    return None if cert is None else [cert]


class TlsTcpConnector(Connector):
    """TCP connector with mutual TLS authentication against known peer certificates."""

    def __init__(self, cfg: TlsConfig) -> None:
        self._our_certificate = bytes(cfg.our_certificate)
        self._our_private_key = bytes(cfg.our_private_key)
        self._peer_certs = PeerCertStore(cfg.peer_certs)
        self._cadata = b"".join(bytes(cert) for cert in cfg.peer_certs.values())
        if self._cadata:
            probe = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            try:
                probe.load_verify_locations(cadata=self._cadata)
            except ssl.SSLError as exc:
                raise ValueError(f"Could not add peer certificate: {exc}") from exc

    def _trust(self, context: ssl.SSLContext) -> None:
        if self._cadata:
            context.load_verify_locations(cadata=self._cadata)

    def _client_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        self._trust(context)
        _load_identity(context, self._our_certificate, self._our_private_key)
        return context

    def _server_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.verify_mode = ssl.CERT_REQUIRED
        self._trust(context)
        _load_identity(context, self._our_certificate, self._our_private_key)
        return context

    async def connect_framed(self, destination: str, peer: int) -> Connection:
        context = self._client_context()
        host, port = _split_addr(destination)
        try:
            reader, writer = await asyncio.open_connection(
                host, port, ssl=context, server_hostname=f"peer-{peer}"
            )
        except (ssl.SSLError, OSError) as exc:
            raise ConnectError(str(exc)) from exc

        try:
            auth_peer = self._peer_certs.authenticate_peer(_peer_chain(writer))
            if auth_peer != peer:
                raise ConnectError("Connected to unexpected peer")
        except ConnectError:
            writer.close()
            raise
        return peer, BidiFramed(reader, writer)

    async def _accept_connection(
        self,
        context: ssl.SSLContext,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> Connection:
        try:
            await writer.start_tls(context)
        except (ssl.SSLError, OSError, EOFError) as exc:
            raise ConnectError(str(exc)) from exc
        auth_peer = self._peer_certs.authenticate_peer(_peer_chain(writer))
        return auth_peer, BidiFramed(reader, writer)

    async def listen(self, bind_addr: str) -> ConnectionListener:
        context = self._server_context()
        host, port = _split_addr(bind_addr)
        results: asyncio.Queue[_AcceptResult] = asyncio.Queue()

        async def on_connection(
            reader: asyncio.StreamReader, writer: asyncio.StreamWriter
        ) -> None:
            try:
                connection = await self._accept_connection(context, reader, writer)
            except ConnectError as exc:
                logger.warning("Error while opening incoming connection: %s", exc)
                writer.close()
                results.put_nowait(exc)
                return
            results.put_nowait(connection)

        try:
            server = await asyncio.start_server(on_connection, host, port)
        except OSError as exc:
            raise ConnectError(f"could not bind {bind_addr}: {exc}") from exc

        bound_host, bound_port = server.sockets[0].getsockname()[:2]

        async def close() -> None:
            server.close()

        return ConnectionListener(results.get, close, address=f"{bound_host}:{bound_port}")


async def _do_handshake(
    our_id: int, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
) -> int:
    writer.write(our_id.to_bytes(2, "little"))
    try:
        await writer.drain()
        peer_id = await reader.readexactly(2)
    except (asyncio.IncompleteReadError, OSError) as exc:
        raise ConnectError(f"handshake failed: {exc}") from exc
    return int.from_bytes(peer_id, "little")


class MockConnector(Connector):
    """In-memory connector belonging to one peer of a `MockNetwork`."""

    def __init__(self, peer_id: int, clients: dict[str, asyncio.Queue[socket.socket]]) -> None:
        if not 0 <= peer_id <= 0xFFFF:
            raise ValueError(f"peer id out of range: {peer_id}")
        self.peer_id = peer_id
        self._clients = clients

    async def connect_framed(self, destination: str, peer: int) -> Connection:
        queue = self._clients.get(destination)
        if queue is None:
            raise ConnectError("can't connect")
        ours, theirs = socket.socketpair()
        await queue.put(theirs)
        reader, writer = await asyncio.open_connection(sock=ours)
        auth_peer = await _do_handshake(self.peer_id, reader, writer)
        return auth_peer, BidiFramed(reader, writer)

    async def listen(self, bind_addr: str) -> ConnectionListener:
        if bind_addr in self._clients:
            raise ConnectError("Address already bound")
        queue: asyncio.Queue[socket.socket] = asyncio.Queue(16)
        self._clients[bind_addr] = queue

        async def accept() -> Connection:
            sock = await queue.get()
            reader, writer = await asyncio.open_connection(sock=sock)
            peer = await _do_handshake(self.peer_id, reader, writer)
            return peer, BidiFramed(reader, writer)

        async def close() -> None:
            if self._clients.get(bind_addr) is queue:
                del self._clients[bind_addr]

        return ConnectionListener(accept, close, address=bind_addr)


class MockNetwork:
    """Fake network stack whose connectors reach each other by address name."""

    def __init__(self) -> None:
        self._clients: dict[str, asyncio.Queue[socket.socket]] = {}

    def connector(self, peer_id: int) -> MockConnector:
        """Return a connector that identifies itself as `peer_id`."""
        return MockConnector(peer_id, self._clients)