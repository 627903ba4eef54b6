# mintnet

Networking building blocks for a small federation of peers that must
exchange messages reliably and authenticate one another, plus a parser for
a Lightning node's `htlc_accepted` hook payload.

## Modules

### `mintnet.queue`

- `MessageId`: an ordered sequence number; `increment()` returns the next id.
- `UniqueMessage`: a message paired with its `MessageId`.
- `MessageQueue`: a resend buffer. `push(msg)` numbers a message (ids start
  at 1) and keeps it; `ack(msg_id)` drops every kept message with an id up
  to and including `msg_id`. The queue can be iterated and has a length.

### `mintnet.framed`

- `FramedCodec`: each frame is an 8-byte little-endian length followed by the
  payload. Payloads are compact JSON by default; other `serialize` /
  `deserialize` functions can be passed in. `encode(item)` returns the frame
  bytes. `decode(buffer)` takes one complete frame off the front of a
  `bytearray` and returns its item, or returns `None` and leaves the buffer
  untouched while the frame is still incomplete.
- `BidiFramed`: sends and receives frames over an asyncio
  `StreamReader` / `StreamWriter` pair. `send(item)`, `receive()` (returns
  `None` when the stream ends cleanly between frames), `close()`, and
  `async for` iteration over received items.
- `FrameError` is raised for items that cannot be encoded or decoded and for
  streams that end in the middle of a frame.

### `mintnet.config`

- `gen_cert_and_key(name)` creates a self-signed ECDSA P-256 certificate for
  the DNS name `name` and returns `(certificate_der, private_key_der)`, the
  key in PKCS#8 form.
- `encode_hex(data)` / `decode_hex(text)` convert bytes to and from lower-case
  hex; `decode_hex` raises `ValueError` on anything that is not valid hex.

### `mintnet.connect`

- `Connector`: the interface with `connect_framed(destination, peer)`, which
  returns `(peer_id, BidiFramed)`, and `listen(bind_addr)`, which returns a
  `ConnectionListener`: an async iterator of `(peer_id, BidiFramed)` pairs
  that raises `ConnectError` for a single failed incoming connection and can
  go on afterwards. Listeners have `close()` and work as async context
  managers.
- `TlsTcpConnector(TlsConfig(...))`: mutually authenticated TLS over TCP.
  Peers are identified by pinned certificates; `PeerCertStore` maps a
  presented certificate back to its peer id. Outgoing connections to peer
  `n` verify the server name `peer-n`, so each peer's certificate should be
  made with `gen_cert_and_key(f"peer-{n}")`. Addresses are `host:port`.
- `MockNetwork`: an in-memory network for tests. `connector(peer_id)`
  returns a `MockConnector` that reaches other connectors by address name.
- `ConnectError` is raised when a connection cannot be opened or its peer
  cannot be authenticated.

### `mintnet.peers`

- `ConnectionConfig` and `NetworkConfig` describe peers' addresses, with
  `to_dict()` / `from_dict()` for JSON-compatible storage.
- `Target.nodes(peers)` and `Target.all_except(peers)` address messages.
- `PeerMessage`: the wire form of a numbered message plus the last id
  received from that peer (`to_json()` / `from_json()`).
- `ReconnectPeerConnections.create(cfg, connector)` listens on
  `cfg.bind_addr` and keeps a connection to every other peer in `cfg.peers`.
  It reconnects with a randomized back-off, resends unacknowledged messages
  after a reconnect, discards duplicates and delivers messages in order.
  Methods: `send(target, msg)`, `receive()` returning `(peer_id, msg)`,
  `ban_peer(peer)` and `close()`; it also works as an async context manager.
  Messages must be JSON-serializable.

### `mintnet.cln`

- `HtlcAccepted.from_dict(data)` builds `HtlcAccepted`, `Htlc` and `Onion`
  from the decoded hook JSON, raising `ValueError` on missing or malformed
  fields. Amounts are integers in millisatoshis and hashes are 32-byte
  `bytes`.
- `parse_msat_amount("1000msat")` returns `1000`.

## Installing

```
pip install .
```

## Example

```python
import asyncio

from mintnet.connect import MockNetwork
from mintnet.peers import (
    ConnectionConfig,
    NetworkConfig,
    ReconnectPeerConnections,
    Target,
)


async def main():
    net = MockNetwork()
    peers = {
        1: ConnectionConfig(hbbft_addr="a", api_addr="a"),
        2: ConnectionConfig(hbbft_addr="b", api_addr="b"),
    }
    a = await ReconnectPeerConnections.create(
        NetworkConfig(identity=1, bind_addr="a", peers=peers), net.connector(1)
    )
    b = await ReconnectPeerConnections.create(
        NetworkConfig(identity=2, bind_addr="b", peers=peers), net.connector(2)
    )

    await a.send(Target.nodes([2]), 42)
    print(await b.receive())  # (1, 42)

    await a.close()
    await b.close()


asyncio.run(main())
```

## What this package does not do

It is a library of parts only. There is no command-line tool, no consensus
engine, no client API server, no gateway, no storage, and no generator that
writes configuration files for a whole federation. Applications bring these
themselves and use the pieces above for peer transport and parsing.

## Running the tests

```
pip install ".[test]"
pytest
```