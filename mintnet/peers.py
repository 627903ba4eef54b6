"""Connection manager keeping message channels open to all federation peers.

`ReconnectPeerConnections` keeps one connection per peer. It reopens closed
connections with a randomized back-off. Unacknowledged messages are kept and
resent on reconnect, so each message is delivered once and in order.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import enum
import logging
import random
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from mintnet.connect import ConnectError, ConnectionListener, Connector
from mintnet.framed import BidiFramed, FrameError
from mintnet.queue import MessageId, MessageQueue, UniqueMessage

logger = logging.getLogger(__name__)

MAX_FAIL_RECONNECT_COUNTER = 300
"""Maximum connection failures considered by the back-off strategy."""

_QUEUE_SIZE = 1024
_INCOMING_CONNECTIONS_SIZE = 4
_ERRORS = (ConnectError, FrameError, OSError, ValueError)


@dataclass(frozen=True)
class ConnectionConfig:
    """Addresses of one other federation member."""

    hbbft_addr: str
    api_addr: str

    def to_dict(self) -> dict[str, str]:
        """Return a JSON-compatible dict."""
        return {"hbbft_addr": self.hbbft_addr, "api_addr": self.api_addr}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ConnectionConfig:
        """Build from a dict written by `to_dict`."""
        try:
            hbbft_addr, api_addr = data["hbbft_addr"], data["api_addr"]
        except KeyError as exc:
            raise ValueError(f"missing field {exc}") from None
        if not isinstance(hbbft_addr, str) or not isinstance(api_addr, str):
            raise ValueError("addresses must be strings")
        return cls(hbbft_addr=hbbft_addr, api_addr=api_addr)


@dataclass
class NetworkConfig:
    """Network settings for federation-internal communication."""

    identity: int
    bind_addr: str
    peers: dict[int, ConnectionConfig] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-compatible dict; peer ids become string keys."""
        return {
            "identity": self.identity,
            "bind_addr": self.bind_addr,
            "peers": {str(peer): cfg.to_dict() for peer, cfg in self.peers.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NetworkConfig:
        """Build from a dict written by `to_dict`."""
        try:
            identity, bind_addr, peers = data["identity"], data["bind_addr"], data["peers"]
        except KeyError as exc:
            raise ValueError(f"missing field {exc}") from None
        if isinstance(identity, bool) or not isinstance(identity, int):
            raise ValueError("identity must be an integer")
        if not isinstance(bind_addr, str):
            raise ValueError("bind_addr must be a string")
        if not isinstance(peers, Mapping):
            raise ValueError("peers must be an object")
        return cls(
            identity=identity,
            bind_addr=bind_addr,
            peers={int(peer): ConnectionConfig.from_dict(cfg) for peer, cfg in peers.items()},
        )


class TargetKind(enum.Enum):
    ALL_EXCEPT = "all_except"
    NODES = "nodes"


@dataclass(frozen=True)
class Target:
    """Recipients of a message: all peers except some, or exactly some."""

    kind: TargetKind
    peers: frozenset[int]

    @classmethod
    def all_except(cls, peers: Iterable[int]) -> Target:
        """Every connected peer except those in `peers`."""
        return cls(TargetKind.ALL_EXCEPT, frozenset(peers))

    @classmethod
    def nodes(cls, peers: Iterable[int]) -> Target:
        """Exactly the peers in `peers`."""
        return cls(TargetKind.NODES, frozenset(peers))


@dataclass(frozen=True)
class PeerMessage:
    """Wire message: a numbered payload plus the last id received from the peer."""

    msg: UniqueMessage[Any]
    ack: MessageId | None = None

    def to_json(self) -> dict[str, Any]:
        """Return the JSON-compatible object sent over the wire."""
        return {
            "msg": {"id": self.msg.id.value, "msg": self.msg.msg},
            "ack": None if self.ack is None else self.ack.value,
        }

    @classmethod
    def from_json(cls, data: Any) -> PeerMessage:
        """Parse the object written by `to_json`; raises ValueError if malformed."""
        if not isinstance(data, Mapping) or "msg" not in data:
            raise ValueError("peer message must be an object with a `msg` field")
        inner = data["msg"]
        if not isinstance(inner, Mapping) or "id" not in inner or "msg" not in inner:
            raise ValueError("`msg` must be an object with `id` and `msg` fields")
        msg_id = inner["id"]
        if isinstance(msg_id, bool) or not isinstance(msg_id, int) or msg_id < 0:
            raise ValueError("message id must be a non-negative integer")
        ack = data.get("ack")
        if ack is not None and (isinstance(ack, bool) or not isinstance(ack, int) or ack < 0):
            raise ValueError("ack must be a non-negative integer or null")
        return cls(
            msg=UniqueMessage(MessageId(msg_id), inner["msg"]),
            ack=None if ack is None else MessageId(ack),
        )


class PeerConnections(abc.ABC):
    """Message channels to the other federation members."""

    @abc.abstractmethod
    async def send(self, target: Target, msg: Any) -> None:
        """Send `msg` to `target`, caching it for peers currently unreachable."""

    @abc.abstractmethod
    async def receive(self) -> tuple[int, Any]:
        """Wait for a message from any connected peer."""

    @abc.abstractmethod
    async def ban_peer(self, peer: int) -> None:
        """Drop the connection to a misbehaving peer."""


async def _close_quietly(connection: BidiFramed) -> None:
    with contextlib.suppress(Exception):
        await connection.close()


class _PeerConnection:
    """Background task running the connection state machine for one peer."""

    def __init__(
        self,
        peer: int,
        cfg: ConnectionConfig,
        connector: Connector,
        incoming_connections: asyncio.Queue[BidiFramed],
    ) -> None:
        self.peer = peer
        self.cfg = cfg
        self._connector = connector
        self._incoming_connections = incoming_connections
        self.outgoing: asyncio.Queue[Any] = asyncio.Queue(_QUEUE_SIZE)
        self.incoming: asyncio.Queue[Any] = asyncio.Queue(_QUEUE_SIZE)
        self.resend_queue: MessageQueue[Any] = MessageQueue()
        self.last_received: MessageId | None = None
        self._connection: BidiFramed | None = None
        self._receiving = False
        self._reconnect_at = 0.0
        self._failed_reconnect_counter = 0
        self._out_task: asyncio.Task[Any] | None = None
        self._conn_task: asyncio.Task[BidiFramed] | None = None
        self._recv_task: asyncio.Task[Any] | None = None
        self.task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            await self._disconnect(0)
            while True:
                await self._step()
        finally:
            for task in (self._out_task, self._conn_task, self._recv_task):
                if task is not None:
                    task.cancel()
            if self._connection is not None:
                await _close_quietly(self._connection)
                self._connection = None

    async def _step(self) -> None:
        if self._out_task is None:
            self._out_task = asyncio.create_task(self.outgoing.get())
        if self._conn_task is None:
            self._conn_task = asyncio.create_task(self._incoming_connections.get())
        waiters: set[asyncio.Task[Any]] = {self._out_task, self._conn_task}
        timer: asyncio.Task[None] | None = None
        if self._connection is None:
            delay = max(0.0, self._reconnect_at - asyncio.get_running_loop().time())
            timer = asyncio.create_task(asyncio.sleep(delay))
            waiters.add(timer)
        else:
            # Once the peer ended its stream, only a failed send or a new
            # connection changes the state.
            if self._recv_task is None and self._receiving:
                self._recv_task = asyncio.create_task(self._connection.receive())
            if self._recv_task is not None:
                waiters.add(self._recv_task)

        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if timer is not None and not timer.done():
                timer.cancel()

        if self._out_task.done():
            msg = self._out_task.result()
            self._out_task = None
            await self._on_outgoing(msg)
        elif self._conn_task.done():
            new_connection = self._conn_task.result()
            self._conn_task = None
            if self._connection is not None:
                logger.warning("Replacing existing connection to peer %s", self.peer)
                await self._connect(new_connection, 0)
            else:
                await self._connect(new_connection, self._failed_reconnect_counter)
        elif self._recv_task is not None and self._recv_task.done():
            task, self._recv_task = self._recv_task, None
            await self._on_received(task)
        elif timer is not None and timer.done():
            await self._reconnect()

    async def _on_outgoing(self, msg: Any) -> None:
        umsg = self.resend_queue.push(msg)
        if self._connection is None:
            logger.debug("Queueing outgoing message %r for peer %s", umsg.id, self.peer)
            return
        logger.debug("Sending outgoing message %r to peer %s", umsg.id, self.peer)
        try:
            await self._connection.send(PeerMessage(umsg, self.last_received).to_json())
        except _ERRORS as exc:
            await self._disconnect_err(exc, 0)

    async def _on_received(self, task: asyncio.Task[Any]) -> None:
        try:
            item = task.result()
            if item is None:
                self._receiving = False
                return
            await self._accept_message(PeerMessage.from_json(item))
        except _ERRORS as exc:
            self.last_received = None
            await self._disconnect_err(exc, 0)

    async def _accept_message(self, message: PeerMessage) -> None:
        msg = message.msg
        logger.debug("Received incoming message %r from peer %s", msg.id, self.peer)
        expected = msg.id if self.last_received is None else self.last_received.increment()
        if msg.id < expected:
            logger.info("Received old message (expected %r, received %r)", expected, msg.id)
            return
        if msg.id > expected:
            logger.warning(
                "Received message from the future (expected %r, received %r)", expected, msg.id
            )
            raise ConnectError("Received message from the future")
        self.last_received = expected
        if message.ack is not None:
            self.resend_queue.ack(message.ack)
        await self.incoming.put(msg.msg)

    async def _close_connection(self) -> None:
        if self._recv_task is not None:
            self._recv_task.cancel()
            self._recv_task = None
        if self._connection is not None:
            connection, self._connection = self._connection, None
            await _close_quietly(connection)

    async def _connect(self, new_connection: BidiFramed, disconnect_count: int) -> None:
        logger.debug("Received connection for peer %s", self.peer)
        try:
            for umsg in list(self.resend_queue):
                await new_connection.send(PeerMessage(umsg, self.last_received).to_json())
        except _ERRORS as exc:
            await _close_quietly(new_connection)
            await self._disconnect_err(exc, disconnect_count)
            return
        await self._close_connection()
        self._connection = new_connection
        self._receiving = True

    async def _disconnect(self, disconnect_count: int) -> None:
        await self._close_connection()
        disconnect_count += 1
        delay = random.uniform(1.0 * disconnect_count, 4.0 * disconnect_count)
        logger.debug("Scheduling reopening of connection in %.2fs", delay)
        self._reconnect_at = asyncio.get_running_loop().time() + delay
        self._failed_reconnect_counter = min(disconnect_count, MAX_FAIL_RECONNECT_COUNTER)

    async def _disconnect_err(self, err: BaseException, disconnect_count: int) -> None:
        logger.warning(
            "Some error occurred with peer %s, disconnecting (count=%d): %s",
            self.peer,
            disconnect_count,
            err,
        )
        await self._disconnect(disconnect_count)

    async def _reconnect(self) -> None:
        try:
            connection = await self._try_reconnect()
        except _ERRORS as exc:
            await self._disconnect_err(exc, self._failed_reconnect_counter)
            return
        await self._connect(connection, self._failed_reconnect_counter)

    async def _try_reconnect(self) -> BidiFramed:
        logger.debug("Trying to reconnect to peer %s", self.peer)
        connected_peer, connection = await self._connector.connect_framed(
            self.cfg.hbbft_addr, self.peer
        )
        if connected_peer != self.peer:
            await _close_quietly(connection)
            raise ConnectError(f"Peer identified itself incorrectly: {connected_peer!r}")
        return connection


class ReconnectPeerConnections(PeerConnections):
    """Connection manager that automatically reconnects to peers."""

    def __init__(
        self,
        connections: dict[int, _PeerConnection],
        connection_senders: dict[int, asyncio.Queue[BidiFramed]],
        listener: ConnectionListener,
    ) -> None:
        self._connections = connections
        self._connection_senders = connection_senders
        self._listener = listener
        self._banned: set[int] = set()
        self._receives: dict[int, asyncio.Task[Any]] = {}
        self._listen_task = asyncio.create_task(self._run_listen_task())

    @classmethod
    async def create(cls, cfg: NetworkConfig, connector: Connector) -> ReconnectPeerConnections:
        """Listen on `cfg.bind_addr` and start keeping connections to all other peers."""
        logger.info("Starting mint %s", cfg.identity)
        listener = await connector.listen(cfg.bind_addr)
        senders: dict[int, asyncio.Queue[BidiFramed]] = {}
        connections: dict[int, _PeerConnection] = {}
        for peer, peer_cfg in cfg.peers.items():
            if peer == cfg.identity:
                continue
            queue: asyncio.Queue[BidiFramed] = asyncio.Queue(_INCOMING_CONNECTIONS_SIZE)
            senders[peer] = queue
            connections[peer] = _PeerConnection(peer, peer_cfg, connector, queue)
        return cls(connections, senders, listener)

    async def _run_listen_task(self) -> None:
        while True:
            try:
                peer, connection = await anext(self._listener)
            except StopAsyncIteration:
                return
            except ConnectError as exc:
                logger.error("Error while opening incoming connection: %s", exc)
                continue
            queue = self._connection_senders.get(peer)
            if queue is None:
                if peer in self._banned:
                    logger.warning("Dropping incoming connection from banned peer %s", peer)
                else:
                    logger.error("Incoming connection from unknown peer %s", peer)
                await _close_quietly(connection)
                continue
            await queue.put(connection)

    async def send(self, target: Target, msg: Any) -> None:
        logger.debug("Sending message to %r", target)
        if target.kind is TargetKind.ALL_EXCEPT:
            for peer, connection in list(self._connections.items()):
                if peer not in target.peers:
                    await connection.outgoing.put(msg)
            return
        for peer in sorted(target.peers):
            connection = self._connections.get(peer)
            if connection is None:
                logger.debug("Not sending message to unknown peer %s (maybe banned)", peer)
            else:
                await connection.outgoing.put(msg)

    async def receive(self) -> tuple[int, Any]:
        if not self._connections:
            raise RuntimeError("no peer connections to receive from")
        for peer, connection in self._connections.items():
            if peer not in self._receives:
                self._receives[peer] = asyncio.create_task(connection.incoming.get())
        io_tasks = {connection.task: peer for peer, connection in self._connections.items()}
        done, _ = await asyncio.wait(
            [*self._receives.values(), *io_tasks], return_when=asyncio.FIRST_COMPLETED
        )
        ready = [peer for peer, task in self._receives.items() if task in done]
        if not ready:
            dead = min(io_tasks[task] for task in done)
            raise RuntimeError(f"io task for peer {dead} died")
        peer = min(ready)
        return peer, self._receives.pop(peer).result()

    async def ban_peer(self, peer: int) -> None:
        connection = self._connections.pop(peer, None)
        self._connection_senders.pop(peer, None)
        self._banned.add(peer)
        pending = self._receives.pop(peer, None)
        if pending is not None:
            pending.cancel()
        if connection is not None:
            connection.task.cancel()
            await asyncio.gather(connection.task, return_exceptions=True)
        logger.warning("Peer %s banned.", peer)

    async def close(self) -> None:
        """Stop listening and shut down all peer connections."""
        self._listen_task.cancel()
        await self._listener.close()
        for task in self._receives.values():
            task.cancel()
        self._receives.clear()
        tasks = [self._listen_task, *(c.task for c in self._connections.values())]
        for connection in self._connections.values():
            connection.task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> ReconnectPeerConnections:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()