import asyncio
import contextlib

import pytest

from mintnet.config import gen_cert_and_key
from mintnet.connect import (
    ConnectError,
    MockNetwork,
    PeerCertStore,
    TlsConfig,
    TlsTcpConnector,
)

TIMEOUT = 10


def gen_connector_config(count):
    peer_keys = [gen_cert_and_key(f"peer-{peer}") for peer in range(count)]
    return [
        TlsConfig(
            our_certificate=cert,
            our_private_key=key,
            peer_certs={peer: peer_cert for peer, (peer_cert, _) in enumerate(peer_keys)},
        )
        for cert, key in peer_keys
    ]


async def _close_result(task):
    with contextlib.suppress(Exception, asyncio.CancelledError):
        result = await task
        await result[1].close()


@pytest.mark.asyncio
async def test_mock_network():
    net = MockNetwork()
    conn_a = net.connector(1)
    conn_b = net.connector(2)

    listener = await conn_a.listen("a")
    accept = asyncio.create_task(anext(listener))

    auth_peer_b, framed_b = await conn_b.connect_framed("a", 1)
    auth_peer_a, framed_a = await asyncio.wait_for(accept, TIMEOUT)

    assert auth_peer_a == 2
    assert auth_peer_b == 1

    await framed_a.send(42)
    await framed_b.send(21)

    assert await asyncio.wait_for(framed_a.receive(), TIMEOUT) == 21
    assert await asyncio.wait_for(framed_b.receive(), TIMEOUT) == 42

    await framed_a.close()
    await framed_b.close()
    await listener.close()


@pytest.mark.asyncio
async def test_large_messages():
    net = MockNetwork()
    conn_a = net.connector(1)
    conn_b = net.connector(2)

    listener = await conn_a.listen("a")
    accept = asyncio.create_task(anext(listener))

    auth_peer_b, framed_b = await conn_b.connect_framed("a", 1)
    auth_peer_a, framed_a = await asyncio.wait_for(accept, TIMEOUT)

    assert auth_peer_a == 2
    assert auth_peer_b == 1

    _, received = await asyncio.gather(
        framed_a.send([42] * 16000),
        asyncio.wait_for(framed_b.receive(), TIMEOUT),
    )
    assert received == [42] * 16000

    await framed_a.close()
    await framed_b.close()


@pytest.mark.asyncio
async def test_mock_connect_unbound_address():
    net = MockNetwork()
    with pytest.raises(ConnectError, match="can't connect"):
        await net.connector(1).connect_framed("nowhere", 2)


@pytest.mark.asyncio
async def test_mock_address_already_bound():
    net = MockNetwork()
    await net.connector(1).listen("a")
    with pytest.raises(ConnectError, match="Address already bound"):
        await net.connector(2).listen("a")


@pytest.mark.asyncio
async def test_mock_listener_close_frees_address():
    net = MockNetwork()
    listener = await net.connector(1).listen("a")
    await listener.close()
    with pytest.raises(ConnectError):
        await net.connector(2).connect_framed("a", 1)


def test_peer_cert_store_lookup():
    store = PeerCertStore({0: b"cert-zero", 3: b"cert-three"})
    assert store.get_peer_by_cert(b"cert-three") == 3
    assert store.get_peer_by_cert(b"cert-other") is None


def test_authenticate_peer_known():
    store = PeerCertStore([(0, b"cert-zero"), (1, b"cert-one")])
    assert store.authenticate_peer([b"cert-one"]) == 1


@pytest.mark.parametrize(
    "received, message",
    [
        (None, "did not authenticate"),
        ([b"cert-zero", b"cert-one"], "len=2, expected=1"),
        ([], "len=0, expected=1"),
        ([b"cert-unknown"], "Unknown certificate"),
    ],
)
def test_authenticate_peer_rejects(received, message):
    store = PeerCertStore({0: b"cert-zero", 1: b"cert-one"})
    with pytest.raises(ConnectError, match=message):
        store.authenticate_peer(received)


def test_tls_connector_rejects_invalid_peer_cert():
    cert, key = gen_cert_and_key("peer-0")
    with pytest.raises(ValueError, match="Could not add peer certificate"):
        TlsTcpConnector(TlsConfig(cert, key, {0: cert, 1: b"not a certificate"}))


@pytest.mark.asyncio
async def test_tls_connect_success():
    connectors = [TlsTcpConnector(cfg) for cfg in gen_connector_config(5)]
    listener = await connectors[0].listen("127.0.0.1:0")

    async def server():
        peer, conn = await anext(listener)
        received = await conn.receive()
        await conn.send(21)
        return peer, received, conn

    server_task = asyncio.create_task(server())

    peer_of_a, client_a = await asyncio.wait_for(
        connectors[2].connect_framed(listener.address, 0), TIMEOUT
    )
    assert peer_of_a == 0
    await client_a.send(42)
    assert await asyncio.wait_for(client_a.receive(), TIMEOUT) == 21

    server_peer, server_received, server_conn = await asyncio.wait_for(server_task, TIMEOUT)
    assert server_peer == 2
    assert server_received == 42

    await client_a.close()
    await server_conn.close()
    await listener.close()


@pytest.mark.asyncio
async def test_tls_client_with_wrong_key_rejected():
    cfg = gen_connector_config(5)
    honest = TlsTcpConnector(cfg[0])
    malicious_cfg = TlsConfig(cfg[1].our_certificate, cfg[2].our_private_key, cfg[1].peer_certs)
    malicious = TlsTcpConnector(malicious_cfg)

    listener = await honest.listen("127.0.0.1:0")
    with pytest.raises(ConnectError):
        await asyncio.wait_for(malicious.connect_framed(listener.address, 0), TIMEOUT)
    await listener.close()


@pytest.mark.asyncio
async def test_tls_server_with_wrong_key_rejected():
    cfg = gen_connector_config(5)
    malicious_cfg = TlsConfig(cfg[1].our_certificate, cfg[2].our_private_key, cfg[1].peer_certs)
    malicious = TlsTcpConnector(malicious_cfg)

    with pytest.raises(ConnectError):
        await malicious.listen("127.0.0.1:0")


@pytest.mark.asyncio
async def test_tls_server_with_wrong_certificate_rejected():
    cfg = gen_connector_config(5)
    honest = TlsTcpConnector(cfg[0])
    listener = await TlsTcpConnector(cfg[2]).listen("127.0.0.1:0")
    server_task = asyncio.create_task(anext(listener))

    with pytest.raises(ConnectError):
        await asyncio.wait_for(honest.connect_framed(listener.address, 0), TIMEOUT)

    with pytest.raises(ConnectError):
        await asyncio.wait_for(server_task, TIMEOUT)
    await listener.close()


@pytest.mark.asyncio
async def test_tls_unknown_client_rejected_by_server():
    cfg = gen_connector_config(3)
    outsider_cert, outsider_key = gen_cert_and_key("peer-9")
    outsider = TlsTcpConnector(TlsConfig(outsider_cert, outsider_key, cfg[0].peer_certs))

    listener = await TlsTcpConnector(cfg[0]).listen("127.0.0.1:0")
    client_task = asyncio.create_task(outsider.connect_framed(listener.address, 0))

    with pytest.raises(ConnectError):
        await asyncio.wait_for(anext(listener), TIMEOUT)

    await _close_result(client_task)

    # The listener keeps serving known peers after rejecting an outsider.
    accept = asyncio.create_task(anext(listener))
    peer_seen_by_client, client_conn = await asyncio.wait_for(
        TlsTcpConnector(cfg[1]).connect_framed(listener.address, 0), TIMEOUT
    )
    peer_seen_by_server, server_conn = await asyncio.wait_for(accept, TIMEOUT)
    assert peer_seen_by_client == 0
    assert peer_seen_by_server == 1

    await client_conn.close()
    await server_conn.close()
    await listener.close()


@pytest.mark.asyncio
async def test_tls_connect_refused():
    cfg = gen_connector_config(2)
    listener = await TlsTcpConnector(cfg[1]).listen("127.0.0.1:0")
    address = listener.address
    await listener.close()
    await asyncio.sleep(0)

    with pytest.raises(ConnectError):
        await asyncio.wait_for(TlsTcpConnector(cfg[0]).connect_framed(address, 1), TIMEOUT)


@pytest.mark.asyncio
async def test_tls_invalid_address():
    cfg = gen_connector_config(1)
    with pytest.raises(ConnectError, match="invalid address"):
        await TlsTcpConnector(cfg[0]).connect_framed("no-port-here", 0)