"""Routing options and the quorum option for value lookups."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

DEFAULT_QUORUM = 0


class _QuorumOptionKey:
    __slots__ = ()

    def __repr__(self) -> str:
        return "QuorumOptionKey"


QUORUM_OPTION_KEY = _QuorumOptionKey()


@dataclass
class RoutingOptions:
    """Options for a routing call; extensions live in ``other``."""

    offline: bool = False
    other: dict[Any, Any] = field(default_factory=dict)

    def apply(self, *opts: Callable[["RoutingOptions"], None]) -> "RoutingOptions":
        for opt in opts:
            opt(self)
        return self


def quorum(n: int) -> Callable[[RoutingOptions], None]:
    """Option: number of values to collect before returning the best one (0 = complete)."""

    def _apply(opts: RoutingOptions) -> None:
        opts.other[QUORUM_OPTION_KEY] = n

    return _apply


def get_quorum(opts: RoutingOptions) -> int:
    value = opts.other.get(QUORUM_OPTION_KEY)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return DEFAULT_QUORUM