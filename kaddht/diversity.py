"""IP-group diversity limits for routing-table admission."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Iterable, Protocol


@dataclass(frozen=True)
class PeerGroupInfo:
    """A peer, its common prefix length with us and its IP group key."""

    id: bytes
    cpl: int
    ip_group_key: str


class _Conn(Protocol):
    def remote_multiaddr(self) -> Any: ...


class _Network(Protocol):
    def conns_to_peer(self, peer: bytes) -> Iterable[_Conn]: ...


class _Host(Protocol):
    def network(self) -> _Network: ...


class RTPeerIPGroupFilter:
    """Caps peers per IP group, both per common prefix length and table-wide."""

    def __init__(self, host: _Host, max_per_cpl: int, max_for_table: int) -> None:
        self._host = host
        self.max_per_cpl = max_per_cpl
        self.max_for_table = max_for_table
        self._lock = threading.Lock()
        self._cpl_counts: dict[int, dict[str, int]] = {}
        self._table_counts: dict[str, int] = {}

    def allow(self, group: PeerGroupInfo) -> bool:
        """Whether one more peer of this group may join the table."""
        with self._lock:
            key = group.ip_group_key
            if self._table_counts.get(key, 0) >= self.max_for_table:
                return False
            per_cpl = self._cpl_counts.get(group.cpl)
            return per_cpl is None or per_cpl.get(key, 0) < self.max_per_cpl

    def increment(self, group: PeerGroupInfo) -> None:
        """Count a peer of this group as added."""
        with self._lock:
            key = group.ip_group_key
            self._table_counts[key] = self._table_counts.get(key, 0) + 1
            per_cpl = self._cpl_counts.setdefault(group.cpl, {})
            per_cpl[key] = per_cpl.get(key, 0) + 1

    def decrement(self, group: PeerGroupInfo) -> None:
        """Count a peer of this group as removed; ValueError if none is counted."""
        with self._lock:
            key = group.ip_group_key
            per_cpl = self._cpl_counts.get(group.cpl)
            if key not in self._table_counts or per_cpl is None or key not in per_cpl:
                raise ValueError(
                    f"no peers counted for group {key!r} at cpl {group.cpl}"
                )

            self._table_counts[key] -= 1
            if self._table_counts[key] == 0:
                del self._table_counts[key]

            per_cpl[key] -= 1
            if per_cpl[key] == 0:
                del per_cpl[key]
            if not per_cpl:
                del self._cpl_counts[group.cpl]

    def peer_addresses(self, peer: bytes) -> list[Any]:
        """Remote addresses of our open connections to peer."""
        return [conn.remote_multiaddr() for conn in self._host.network().conns_to_peer(peer)]