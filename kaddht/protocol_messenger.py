"""Sends DHT requests to peers and interprets their responses."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Protocol, runtime_checkable

from .loggable import loggable_record_key
from .message import (
    AddrInfo,
    Message,
    MessageType,
    Multiaddr,
    Record,
    new_message,
    pb_peers_to_peer_infos,
    raw_peer_infos_to_pb_peers,
)

logger = logging.getLogger("dht")


class IncorrectRecordError(Exception):
    """A peer answered with a record for a different key."""

    def __init__(self, message: str = "received incorrect record") -> None:
        super().__init__(message)


@runtime_checkable
class MessageSender(Protocol):
    """Delivers wire messages to peers."""

    def send_request(self, peer: bytes, message: Message) -> Message:
        """Send message to peer and return its response."""
        ...

    def send_message(self, peer: bytes, message: Message) -> None:
        """Send message to peer without waiting for a response."""
        ...


class _Host(Protocol):
    def id(self) -> bytes: ...

    def addrs(self) -> Iterable[Multiaddr]: ...


def _as_bytes(key: str | bytes) -> bytes:
    if isinstance(key, str):
        return key.encode("utf-8", "surrogateescape")
    return bytes(key)


class ProtocolMessenger:
    """DHT operations expressed as request/response exchanges over a MessageSender."""

    def __init__(
        self,
        sender: MessageSender,
        *options: Callable[["ProtocolMessenger"], None],
    ) -> None:
        self.sender = sender
        for option in options:
            option(self)

    def put_value(self, peer: bytes, record: Record) -> None:
        """Ask peer to store record; ValueError if it echoes a different value."""
        message = new_message(MessageType.PUT_VALUE, record.key, 0)
        message.record = record
        try:
            response = self.sender.send_request(peer, message)
        except Exception as exc:
            logger.debug(
                "failed to put value to peer %r key %s: %s",
                peer, loggable_record_key(record.key), exc,
            )
            raise
        stored = response.record.value if response.record is not None else None
        if (stored or b"") != (record.value or b""):
            logger.info("value not put correctly: sent %r, got %r", message, response)
            raise ValueError("value not put correctly")

    def get_value(
        self, peer: bytes, key: str | bytes
    ) -> tuple[Record | None, list[AddrInfo]]:
        """Ask peer for the record under key; also return the closer peers it knows."""
        raw_key = _as_bytes(key)
        response = self.sender.send_request(
            peer, new_message(MessageType.GET_VALUE, raw_key, 0)
        )
        peers = pb_peers_to_peer_infos(response.closer_peers)
        record = response.record
        if record is None:
            return None, peers
        logger.debug("got value")
        if record.key != raw_key:
            logger.debug("received incorrect record")
            raise IncorrectRecordError()
        return record, peers

    def get_closest_peers(self, peer: bytes, target: bytes) -> list[AddrInfo]:
        """Ask peer for the DHT server peers closest to target."""
        response = self.sender.send_request(
            peer, new_message(MessageType.FIND_NODE, bytes(target), 0)
        )
        return pb_peers_to_peer_infos(response.closer_peers)

    def put_provider(self, peer: bytes, key: bytes, host: _Host) -> None:
        """Tell peer that host provides key; ValueError if host has no addresses."""
        info = AddrInfo(id=host.id(), addrs=list(host.addrs()))
        if not info.addrs:
            raise ValueError("no known addresses for self, cannot put provider")
        message = new_message(MessageType.ADD_PROVIDER, bytes(key), 0)
        message.provider_peers = raw_peer_infos_to_pb_peers([info])
        self.sender.send_message(peer, message)

    def get_providers(
        self, peer: bytes, key: bytes
    ) -> tuple[list[AddrInfo], list[AddrInfo]]:
        """Ask peer for the providers of key and the closer peers it knows."""
        response = self.sender.send_request(
            peer, new_message(MessageType.GET_PROVIDERS, bytes(key), 0)
        )
        return (
            pb_peers_to_peer_infos(response.provider_peers),
            pb_peers_to_peer_infos(response.closer_peers),
        )

    def ping(self, peer: bytes) -> None:
        """Ping peer; ValueError if it answers with another message type."""
        response = self.sender.send_request(peer, new_message(MessageType.PING, None, 0))
        if response.type != MessageType.PING:
            raise ValueError(f"got unexpected response type: {response.type!r}")