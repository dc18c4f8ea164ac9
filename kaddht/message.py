"""DHT wire messages, peer records and their protobuf encoding."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, Iterator, Protocol

log = logging.getLogger("dht.pb")

PROTOCOL_DHT = "/ipfs/kad/1.0.0"
DEFAULT_PROTOCOLS = [PROTOCOL_DHT]


class MessageType(IntEnum):
    PUT_VALUE = 0
    GET_VALUE = 1
    ADD_PROVIDER = 2
    GET_PROVIDERS = 3
    FIND_NODE = 4
    PING = 5


class ConnectionType(IntEnum):
    NOT_CONNECTED = 0
    CONNECTED = 1
    CAN_CONNECT = 2
    CANNOT_CONNECT = 3


class Connectedness(IntEnum):
    NOT_CONNECTED = 0
    CONNECTED = 1
    CAN_CONNECT = 2
    CANNOT_CONNECT = 3


# ---- varint / protobuf helpers -------------------------------------------

def _uvarint(value: int) -> bytes:
    value &= (1 << 64) - 1
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _read_uvarint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint overflow")


def _key(num: int, wire_type: int) -> bytes:
    return _uvarint((num << 3) | wire_type)


def _len_field(num: int, payload: bytes) -> bytes:
    return _key(num, 2) + _uvarint(len(payload)) + payload


def _varint_field(num: int, value: int) -> bytes:
    return _key(num, 0) + _uvarint(value)


def _fields(data: bytes) -> Iterator[tuple[int, int, object]]:
    pos = 0
    while pos < len(data):
        tag, pos = _read_uvarint(data, pos)
        num, wt = tag >> 3, tag & 7
        if wt == 0:
            value, pos = _read_uvarint(data, pos)
        elif wt == 1:
            value, pos = data[pos:pos + 8], pos + 8
        elif wt == 2:
            length, pos = _read_uvarint(data, pos)
            value, pos = data[pos:pos + length], pos + length
        elif wt == 5:
            value, pos = data[pos:pos + 4], pos + 4
        else:
            raise ValueError(f"unsupported wire type {wt}")
        if pos > len(data):
            raise ValueError("truncated field")
        yield num, wt, value


def _int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


# ---- multiaddr -------------------------------------------------------------

# code -> (name, size in bytes; -1 means length-prefixed)
_PROTOCOLS = {
    4: ("ip4", 4), 6: ("tcp", 2), 33: ("dccp", 2), 41: ("ip6", 16),
    42: ("ip6zone", -1), 53: ("dns", -1), 54: ("dns4", -1), 55: ("dns6", -1),
    56: ("dnsaddr", -1), 132: ("sctp", 2), 273: ("udp", 2), 275: ("p2p-webrtc-star", 0),
    276: ("p2p-webrtc-direct", 0), 277: ("p2p-stardust", 0), 280: ("webrtc-direct", 0),
    281: ("webrtc", 0), 290: ("p2p-circuit", 0), 301: ("udt", 0), 302: ("utp", 0),
    400: ("unix", -1), 421: ("p2p", -1), 443: ("https", 0), 444: ("onion", 12),
    445: ("onion3", 37), 446: ("garlic64", -1), 447: ("garlic32", -1), 448: ("tls", 0),
    449: ("sni", -1), 454: ("noise", 0), 460: ("quic", 0), 461: ("quic-v1", 0),
    465: ("webtransport", 0), 466: ("certhash", -1), 477: ("ws", 0), 478: ("wss", 0),
    479: ("p2p-websocket-star", 0), 480: ("http", 0),
}

_B58 = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def _b58encode(data: bytes) -> str:
    num = int.from_bytes(data, "big")
    out = ""
    while num:
        num, rem = divmod(num, 58)
        out = _B58[rem] + out
    return "1" * (len(data) - len(data.lstrip(b"\x00"))) + out


def _render(name: str, value: bytes) -> str:
    if name == "ip4":
        return str(ipaddress.IPv4Address(value))
    if name == "ip6":
        return str(ipaddress.IPv6Address(value))
    if name in ("tcp", "udp", "dccp", "sctp"):
        return str(int.from_bytes(value, "big"))
    if name == "p2p":
        return _b58encode(value)
    if name in ("dns", "dns4", "dns6", "dnsaddr", "unix", "sni", "ip6zone"):
        return value.decode("utf-8", "replace")
    return value.hex()


@dataclass(frozen=True)
class Multiaddr:
    """A binary multiaddress, validated on construction from bytes."""

    raw: bytes
    components: tuple[tuple[str, bytes], ...] = field(compare=False, repr=False)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Multiaddr":
        data = bytes(data)
        if not data:
            raise ValueError("empty multiaddr")
        parts = []
        pos = 0
        while pos < len(data):
            code, pos = _read_uvarint(data, pos)
            if code not in _PROTOCOLS:
                raise ValueError(f"no protocol with code {code}")
            name, size = _PROTOCOLS[code]
            if size < 0:
                size, pos = _read_uvarint(data, pos)
            if pos + size > len(data):
                raise ValueError("truncated multiaddr component")
            parts.append((name, data[pos:pos + size]))
            pos += size
        return cls(data, tuple(parts))

    def __bytes__(self) -> bytes:
        return self.raw

    def __str__(self) -> str:
        out = []
        for name, value in self.components:
            out.append("/" + name)
            if value:
                out.append("/" + _render(name, value))
        return "".join(out)


# ---- peers and messages ----------------------------------------------------

@dataclass
class AddrInfo:
    id: bytes
    addrs: list[Multiaddr] = field(default_factory=list)


@dataclass
class PeerRoutingInfo:
    info: AddrInfo
    connectedness: Connectedness = Connectedness.NOT_CONNECTED


@dataclass
class Record:
    key: bytes = b""
    value: bytes | None = None
    time_received: str = ""

    def encode(self) -> bytes:
        out = b""
        if self.key:
            out += _len_field(1, self.key)
        if self.value:
            out += _len_field(2, self.value)
        if self.time_received:
            out += _len_field(5, self.time_received.encode())
        return out

    @classmethod
    def decode(cls, data: bytes) -> "Record":
        rec = cls()
        for num, wt, value in _fields(data):
            if wt != 2:
                continue
            if num == 1:
                rec.key = bytes(value)
            elif num == 2:
                rec.value = bytes(value)
            elif num == 5:
                rec.time_received = bytes(value).decode()
        return rec


@dataclass
class Peer:
    id: bytes = b""
    addrs: list[bytes] = field(default_factory=list)
    connection: ConnectionType = ConnectionType.NOT_CONNECTED

    def addresses(self) -> list[Multiaddr]:
        """Decoded addresses; invalid ones are skipped."""
        result = []
        for addr in self.addrs:
            try:
                result.append(Multiaddr.from_bytes(addr))
            except ValueError as exc:
                log.debug("error decoding multiaddr for peer %r: %s", self.id, exc)
        return result

    def _encode(self) -> bytes:
        out = b""
        if self.id:
            out += _len_field(1, self.id)
        for addr in self.addrs:
            out += _len_field(2, addr)
        if self.connection:
            out += _varint_field(3, int(self.connection))
        return out

    @classmethod
    def _decode(cls, data: bytes) -> "Peer":
        peer = cls()
        for num, wt, value in _fields(data):
            if num == 1 and wt == 2:
                peer.id = bytes(value)
            elif num == 2 and wt == 2:
                peer.addrs.append(bytes(value))
            elif num == 3 and wt == 0:
                try:
                    peer.connection = ConnectionType(value)
                except ValueError:
                    peer.connection = ConnectionType.NOT_CONNECTED
        return peer


@dataclass
class Message:
    type: MessageType = MessageType.PUT_VALUE
    key: bytes | None = None
    record: Record | None = None
    closer_peers: list[Peer] = field(default_factory=list)
    provider_peers: list[Peer] = field(default_factory=list)
    cluster_level_raw: int = 0

    @property
    def cluster_level(self) -> int:
        """Cluster level, stored on the wire shifted by one."""
        return max(self.cluster_level_raw - 1, 0)

    @cluster_level.setter
    def cluster_level(self, level: int) -> None:
        self.cluster_level_raw = _int32(level + 1)

    def encode(self) -> bytes:
        out = b""
        if self.type:
            out += _varint_field(1, int(self.type))
        if self.key:
            out += _len_field(2, self.key)
        if self.record is not None:
            out += _len_field(3, self.record.encode())
        for p in self.closer_peers:
            out += _len_field(8, p._encode())
        for p in self.provider_peers:
            out += _len_field(9, p._encode())
        if self.cluster_level_raw:
            out += _varint_field(10, self.cluster_level_raw)
        return out

    @classmethod
    def decode(cls, data: bytes) -> "Message":
        msg = cls()
        for num, wt, value in _fields(bytes(data)):
            if num == 1 and wt == 0:
                msg.type = MessageType(value)
            elif num == 2 and wt == 2:
                msg.key = bytes(value)
            elif num == 3 and wt == 2:
                msg.record = Record.decode(value)
            elif num == 8 and wt == 2:
                msg.closer_peers.append(Peer._decode(value))
            elif num == 9 and wt == 2:
                msg.provider_peers.append(Peer._decode(value))
            elif num == 10 and wt == 0:
                msg.cluster_level_raw = _int32(value)
        return msg


def new_message(msg_type: MessageType, key: bytes | None, level: int) -> Message:
    msg = Message(type=msg_type, key=key)
    msg.cluster_level = level
    return msg


def connection_type(connectedness: int) -> ConnectionType:
    try:
        return ConnectionType(int(Connectedness(connectedness)))
    except ValueError:
        return ConnectionType.NOT_CONNECTED


def connectedness(conn_type: int) -> Connectedness:
    try:
        return Connectedness(int(ConnectionType(conn_type)))
    except ValueError:
        return Connectedness.NOT_CONNECTED


class Network(Protocol):
    def connectedness(self, peer_id: bytes) -> Connectedness: ...


def _peer_info_to_pb_peer(info: AddrInfo) -> Peer:
    return Peer(id=bytes(info.id), addrs=[bytes(a) for a in info.addrs])


def pb_peer_to_peer_info(pbp: Peer) -> AddrInfo:
    return AddrInfo(id=pbp.id, addrs=pbp.addresses())


def raw_peer_infos_to_pb_peers(peers: Iterable[AddrInfo]) -> list[Peer]:
    return [_peer_info_to_pb_peer(p) for p in peers]


def peer_infos_to_pb_peers(network: Network, peers: Iterable[AddrInfo]) -> list[Peer]:
    """Convert peers, filling in each one's connection state from network."""
    result = []
    for info in peers:
        pbp = _peer_info_to_pb_peer(info)
        pbp.connection = connection_type(network.connectedness(info.id))
        result.append(pbp)
    return result


def peer_routing_infos_to_pb_peers(peers: Iterable[PeerRoutingInfo]) -> list[Peer]:
    result = []
    for p in peers:
        pbp = _peer_info_to_pb_peer(p.info)
        pbp.connection = connection_type(p.connectedness)
        result.append(pbp)
    return result


def pb_peers_to_peer_infos(pbps: Iterable[Peer]) -> list[AddrInfo]:
    return [pb_peer_to_peer_info(p) for p in pbps]