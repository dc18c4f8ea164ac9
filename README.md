# kaddht

Building blocks of a Kademlia distributed hash table, written in plain
Python with no runtime dependencies.

## What is inside

- `kaddht.qpeerset`: `QueryPeerset` tracks the state of every peer seen
  during one lookup (`PeerState.HEARD`, `WAITING`, `QUERIED`,
  `UNREACHABLE`) and returns the peers closest to the target in XOR
  distance. `xor_key` maps an identifier into the 256-bit key space
  (SHA-256) and `closer(a, b, key)` compares two peers.
- `kaddht.netsize`: `Estimator` turns the closest-peer lists of finished
  lookups (`track`) into an estimate of the network size
  (`network_size`), raising `NotEnoughDataError` while it has too few
  measurements and `WrongNumberOfPeersError` for a list that does not
  match the bucket size. `normed_distance` gives the XOR distance between
  a peer and a key, scaled to the range 0 to 1; `convert_key` and
  `common_prefix_len` are exposed as well.
- `kaddht.message`: the DHT wire message (`Message`, `Peer`, `Record`)
  with protobuf encoding (`Message.encode`, `Message.decode`),
  binary multiaddresses (`Multiaddr.from_bytes`), and conversions between
  `AddrInfo` and the peers carried in a message
  (`pb_peers_to_peer_infos`, `raw_peer_infos_to_pb_peers`,
  `peer_infos_to_pb_peers`, `peer_routing_infos_to_pb_peers`).
  `PROTOCOL_DHT` is `/ipfs/kad/1.0.0`.
- `kaddht.protocol_messenger`: `ProtocolMessenger` sends the DHT requests
  (`put_value`, `get_value`, `get_closest_peers`, `put_provider`,
  `get_providers`, `ping`) through any object implementing the
  `MessageSender` protocol. A record returned for another key raises
  `IncorrectRecordError`.
- `kaddht.message_sender`: `MessageSenderImpl`, a `MessageSender` that
  opens streams through a host object you supply, reuses one stream per
  peer, retries once on a broken stream and raises `ReadTimeoutError`
  when no response arrives in time. Messages are framed with a varint
  length prefix (`write_msg`, `read_msg`). An optional
  `kaddht.metrics.Recorder` receives sent-message statistics.
- `kaddht.rtrefresh`: `RtRefreshManager` keeps a routing table fresh by
  running refresh queries for ourselves and for common-prefix lengths,
  pinging and evicting stale peers. It runs in a background thread
  (`start`, `close`, or use it as a context manager); `refresh(force)`
  returns a `concurrent.futures.Future`, `refresh_no_wait()` only asks
  when the loop is idle, and `do_refresh(force)` runs one pass directly,
  raising `RefreshError` with every failure. The routing table, host,
  query and ping functions are supplied by the caller.
- `kaddht.diversity`: `RTPeerIPGroupFilter` limits how many peers from
  one IP group may enter the routing table, per common-prefix length and
  table-wide.
- `kaddht.options`: `RoutingOptions`, the `quorum(n)` option for value
  lookups and `get_quorum`, which defaults to 0.
- `kaddht.metrics`: `Measure`, `Distribution`, `View` and a `Recorder`
  for DHT statistics, with `default_views()` giving the standard set.
- `kaddht.loggable`: readable forms of record and provider keys for logs
  (`loggable_record_key`, `loggable_provider_key`).

## What it does not do

This package holds parts, not a running DHT node. It has no network
transport of its own, no routing table implementation, no complete lookup
driver, and no storage for provider records: the host, streams, routing
table and query functions are objects you pass in.

## Installing

```
pip install .
```

The tests run with:

```
pip install ".[test]"
pytest
```

## A short example

```python
from kaddht.qpeerset import PeerState, QueryPeerset

peers = QueryPeerset("some key")
peers.try_add(b"peer-a", b"seed")
peers.try_add(b"peer-b", b"seed")
peers.set_state(b"peer-a", PeerState.WAITING)

print(peers.get_closest_in_states(PeerState.HEARD))  # [b'peer-b']
print(peers.num_waiting())                           # 1
```