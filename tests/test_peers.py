import asyncio
import json

import pytest

from mintnet.connect import ConnectError, MockNetwork
from mintnet.peers import (
    ConnectionConfig,
    NetworkConfig,
    PeerMessage,
    ReconnectPeerConnections,
    Target,
    TargetKind,
)
from mintnet.queue import MessageId, UniqueMessage


async def _timeout(awaitable, seconds=100):
    return await asyncio.wait_for(awaitable, seconds)


def _two_peer_config():
    return NetworkConfig(
        identity=1,
        bind_addr="a",
        peers={1: ConnectionConfig("a", "a"), 2: ConnectionConfig("b", "b")},
    )


def test_connection_config_round_trip():
    cfg = ConnectionConfig("10.42.0.10:4000", "ws://10.42.0.10:5000")
    assert ConnectionConfig.from_dict(cfg.to_dict()) == cfg
    assert cfg.to_dict() == {"hbbft_addr": "10.42.0.10:4000", "api_addr": "ws://10.42.0.10:5000"}


def test_connection_config_missing_field():
    with pytest.raises(ValueError):
        ConnectionConfig.from_dict({"hbbft_addr": "x"})


def test_network_config_round_trip_through_json():
    cfg = NetworkConfig(
        identity=2,
        bind_addr="127.0.0.1:17242",
        peers={0: ConnectionConfig("127.0.0.1:17240", "ws://127.0.0.1:17340")},
    )
    restored = NetworkConfig.from_dict(json.loads(json.dumps(cfg.to_dict())))
    assert restored == cfg
    assert list(restored.peers) == [0]


def test_target_constructors():
    assert Target.all_except([]) == Target(TargetKind.ALL_EXCEPT, frozenset())
    nodes = Target.nodes([3, 1, 3])
    assert nodes.kind is TargetKind.NODES
    assert nodes.peers == frozenset({1, 3})


def test_peer_message_round_trip():
    message = PeerMessage(UniqueMessage(MessageId(7), {"x": [1, 2]}), MessageId(3))
    wire = json.loads(json.dumps(message.to_json()))
    assert wire == {"msg": {"id": 7, "msg": {"x": [1, 2]}}, "ack": 3}
    assert PeerMessage.from_json(wire) == message


def test_peer_message_without_ack():
    message = PeerMessage(UniqueMessage(MessageId(1), 42))
    assert PeerMessage.from_json(message.to_json()).ack is None


@pytest.mark.parametrize(
    "data",
    [
        42,
        {},
        {"msg": {"id": 1}},
        {"msg": {"id": "1", "msg": 0}},
        {"msg": {"id": 1, "msg": 0}, "ack": -1},
    ],
)
def test_peer_message_rejects_malformed(data):
    with pytest.raises(ValueError):
        PeerMessage.from_json(data)


@pytest.mark.asyncio
async def test_connect():
    net = MockNetwork()
    peers = {
        idx + 1: ConnectionConfig(hbbft_addr=name, api_addr=name)
        for idx, name in enumerate(["a", "b", "c"])
    }

    async def build_peers(bind, peer_id):
        cfg = NetworkConfig(identity=peer_id, bind_addr=bind, peers=dict(peers))
        return await ReconnectPeerConnections.create(cfg, net.connector(peer_id))

    peers_a = await build_peers("a", 1)
    peers_b = await build_peers("b", 2)
    peers_c = None
    try:
        await peers_a.send(Target.nodes([2]), 42)
        assert await _timeout(peers_b.receive()) == (1, 42)

        await peers_a.send(Target.nodes([3]), 21)

        peers_c = await build_peers("c", 3)
        assert await _timeout(peers_c.receive()) == (1, 21)
    finally:
        for manager in (peers_a, peers_b, peers_c):
            if manager is not None:
                await manager.close()


@pytest.mark.asyncio
async def test_deduplicates_and_acknowledges():
    net = MockNetwork()
    async with await ReconnectPeerConnections.create(_two_peer_config(), net.connector(1)) as peers:
        peer, raw = await net.connector(2).connect_framed("a", 1)
        assert peer == 1
        await raw.send(PeerMessage(UniqueMessage(MessageId(1), "first")).to_json())
        await raw.send(PeerMessage(UniqueMessage(MessageId(1), "duplicate")).to_json())
        await raw.send(PeerMessage(UniqueMessage(MessageId(2), "second")).to_json())

        assert await _timeout(peers.receive()) == (2, "first")
        assert await _timeout(peers.receive()) == (2, "second")

        await peers.send(Target.nodes([2]), "reply")
        wire = PeerMessage.from_json(await _timeout(raw.receive()))
        assert wire.msg == UniqueMessage(MessageId(1), "reply")
        assert wire.ack == MessageId(2)
        await raw.close()


@pytest.mark.asyncio
async def test_message_from_the_future_disconnects():
    net = MockNetwork()
    async with await ReconnectPeerConnections.create(_two_peer_config(), net.connector(1)) as peers:
        _, raw = await net.connector(2).connect_framed("a", 1)
        await raw.send(PeerMessage(UniqueMessage(MessageId(1), "first")).to_json())
        await raw.send(PeerMessage(UniqueMessage(MessageId(3), "future")).to_json())

        assert await _timeout(peers.receive()) == (2, "first")
        assert await _timeout(raw.receive(), 10) is None
        await raw.close()


@pytest.mark.asyncio
async def test_send_to_all_except_skips_excluded():
    net = MockNetwork()
    async with await ReconnectPeerConnections.create(_two_peer_config(), net.connector(1)) as peers:
        _, raw = await net.connector(2).connect_framed("a", 1)
        await raw.send(PeerMessage(UniqueMessage(MessageId(1), "hello")).to_json())
        assert await _timeout(peers.receive()) == (2, "hello")

        await peers.send(Target.all_except([2]), "skipped")
        await peers.send(Target.all_except([]), "delivered")
        wire = PeerMessage.from_json(await _timeout(raw.receive()))
        assert wire.msg.msg == "delivered"
        await raw.close()


@pytest.mark.asyncio
async def test_receive_after_banning_only_peer_fails():
    net = MockNetwork()
    async with await ReconnectPeerConnections.create(_two_peer_config(), net.connector(1)) as peers:
        await peers.ban_peer(2)
        await peers.send(Target.nodes([2]), "ignored")
        with pytest.raises(RuntimeError):
            await peers.receive()


@pytest.mark.asyncio
async def test_create_on_bound_address_fails():
    net = MockNetwork()
    listener = await net.connector(9).listen("a")
    try:
        with pytest.raises(ConnectError):
            await ReconnectPeerConnections.create(_two_peer_config(), net.connector(1))
    finally:
        await listener.close()