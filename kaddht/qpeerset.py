"""State of the peers taking part in a single Kademlia lookup."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import IntEnum
from itertools import islice


class PeerState(IntEnum):
    """Lifecycle state of a peer during one lookup."""

    HEARD = 0
    """Known but not queried yet."""
    WAITING = 1
    """A query to it is in flight."""
    QUERIED = 2
    """Queried and answered successfully."""
    UNREACHABLE = 3
    """Queried without a successful answer."""


def _as_bytes(data: str | bytes) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8", "surrogateescape")
    return bytes(data)


def xor_key(data: str | bytes) -> bytes:
    """Map an identifier into the 256-bit XOR key space (SHA-256)."""
    return hashlib.sha256(_as_bytes(data)).digest()


def _distance(a: bytes, b: bytes) -> int:
    return int.from_bytes(a, "big") ^ int.from_bytes(b, "big")


def closer(a: str | bytes, b: str | bytes, key: str | bytes) -> bool:
    """True if peer a is strictly closer to key than peer b in XOR space."""
    target = xor_key(key)
    return _distance(xor_key(a), target) < _distance(xor_key(b), target)


@dataclass
class _Entry:
    id: bytes
    distance: int
    state: PeerState
    referred_by: bytes


class QueryPeerset:
    """The set of peers known to a lookup, each labelled with a state."""

    def __init__(self, key: str | bytes) -> None:
        self._key = xor_key(key)
        self._all: list[_Entry] = []
        self._index: dict[bytes, _Entry] = {}
        self._sorted = False

    def __len__(self) -> int:
        return len(self._all)

    def __contains__(self, peer: object) -> bool:
        return isinstance(peer, (bytes, bytearray)) and bytes(peer) in self._index

    def _entry(self, peer: bytes) -> _Entry:
        try:
            return self._index[bytes(peer)]
        except KeyError:
            raise KeyError(f"peer {peer!r} is not in the peer set") from None

    def try_add(self, peer: bytes, referred_by: bytes) -> bool:
        """Add peer in the HEARD state; return False if it was already present."""
        peer = bytes(peer)
        if peer in self._index:
            return False
        entry = _Entry(
            id=peer,
            distance=_distance(xor_key(peer), self._key),
            state=PeerState.HEARD,
            referred_by=bytes(referred_by),
        )
        self._all.append(entry)
        self._index[peer] = entry
        self._sorted = False
        return True

    def _sort(self) -> None:
        if not self._sorted:
            self._all.sort(key=lambda e: e.distance)
            self._sorted = True

    def set_state(self, peer: bytes, state: PeerState) -> None:
        """Set the state of a known peer; KeyError if it is unknown."""
        self._entry(peer).state = PeerState(state)

    def get_state(self, peer: bytes) -> PeerState:
        """State of a known peer; KeyError if it is unknown."""
        return self._entry(peer).state

    def get_referrer(self, peer: bytes) -> bytes:
        """The peer that told us about peer; KeyError if it is unknown."""
        return self._entry(peer).referred_by

    def get_closest_n_in_states(self, n: int, *states: PeerState) -> list[bytes]:
        """Up to n peers in any of states, closest to the key first."""
        self._sort()
        wanted = set(states)
        matching = (e.id for e in self._all if e.state in wanted)
        return list(islice(matching, max(n, 0)))

    def get_closest_in_states(self, *states: PeerState) -> list[bytes]:
        """All peers in any of states, closest to the key first."""
        return self.get_closest_n_in_states(len(self._all), *states)

    def num_heard(self) -> int:
        return len(self.get_closest_in_states(PeerState.HEARD))

    def num_waiting(self) -> int:
        return len(self.get_closest_in_states(PeerState.WAITING))