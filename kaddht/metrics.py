"""In-process measures, views and aggregations for DHT traffic statistics."""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Mapping

UNIT_DIMENSIONLESS = "1"
UNIT_BYTES = "By"
UNIT_MILLISECONDS = "ms"

KEY_MESSAGE_TYPE = "message_type"
KEY_PEER_ID = "peer_id"
KEY_INSTANCE_ID = "instance_id"


@dataclass(frozen=True)
class Measure:
    """A named quantity that can be recorded."""

    name: str
    description: str
    unit: str = UNIT_DIMENSIONLESS


@dataclass(frozen=True)
class Distribution:
    """Histogram aggregation with the given bucket upper bounds."""

    bounds: tuple[float, ...]

    def __init__(self, *bounds: float) -> None:
        object.__setattr__(self, "bounds", tuple(bounds))

    def bucket_index(self, value: float) -> int:
        """Index of the first bucket whose bound exceeds value."""
        return bisect_right(self.bounds, value)


@dataclass
class AggregationData:
    count: int = 0
    total: float = 0.0
    bucket_counts: list[int] | None = None


@dataclass
class View:
    """Aggregates a measure per combination of tag values.

    With no distribution the aggregation is a plain count.
    """

    measure: Measure
    tag_keys: tuple[str, ...]
    aggregation: Distribution | None = None
    _rows: dict = field(default_factory=dict, repr=False)

    def record(self, value: float, tags: Mapping[str, str]) -> None:
        key = tuple(tags.get(k, "") for k in self.tag_keys)
        row = self._rows.get(key)
        if row is None:
            buckets = None
            if self.aggregation is not None:
                buckets = [0] * (len(self.aggregation.bounds) + 1)
            row = AggregationData(bucket_counts=buckets)
            self._rows[key] = row
        row.count += 1
        row.total += value
        if self.aggregation is not None:
            row.bucket_counts[self.aggregation.bucket_index(value)] += 1

    def rows(self) -> dict[tuple[str, ...], AggregationData]:
        return dict(self._rows)


class Recorder:
    """Routes recorded values to the registered views of each measure."""

    def __init__(self) -> None:
        self._views: list[View] = []

    def register(self, *views: View) -> None:
        for view in views:
            if view not in self._views:
                self._views.append(view)

    def record(self, measure: Measure, value: float, tags: Mapping[str, str]) -> None:
        for view in self._views:
            if view.measure == measure:
                view.record(value, tags)


def upsert_message_type(tags: Mapping[str, str], message) -> dict[str, str]:
    """Return a copy of tags with the message type of message set."""
    result = dict(tags)
    result[KEY_MESSAGE_TYPE] = message.type.name
    return result


DEFAULT_BYTES_DISTRIBUTION = Distribution(
    1024, 2048, 4096, 16384, 65536, 262144, 1048576, 4194304, 16777216,
    67108864, 268435456, 1073741824, 4294967296,
)
DEFAULT_MILLISECONDS_DISTRIBUTION = Distribution(
    0.01, 0.05, 0.1, 0.3, 0.6, 0.8, 1, 2, 3, 4, 5, 6, 8, 10, 13, 16, 20, 25, 30,
    40, 50, 65, 80, 100, 130, 160, 200, 250, 300, 400, 500, 650, 800, 1000,
    2000, 5000, 10000, 20000, 50000, 100000,
)

_P = "libp2p.io/dht/kad/"
RECEIVED_MESSAGES = Measure(_P + "received_messages", "Total number of messages received per RPC")
RECEIVED_MESSAGE_ERRORS = Measure(_P + "received_message_errors", "Total number of errors for messages received per RPC")
RECEIVED_BYTES = Measure(_P + "received_bytes", "Total received bytes per RPC", UNIT_BYTES)
INBOUND_REQUEST_LATENCY = Measure(_P + "inbound_request_latency", "Latency per RPC", UNIT_MILLISECONDS)
OUTBOUND_REQUEST_LATENCY = Measure(_P + "outbound_request_latency", "Latency per RPC", UNIT_MILLISECONDS)
SENT_MESSAGES = Measure(_P + "sent_messages", "Total number of messages sent per RPC")
SENT_MESSAGE_ERRORS = Measure(_P + "sent_message_errors", "Total number of errors for messages sent per RPC")
SENT_REQUESTS = Measure(_P + "sent_requests", "Total number of requests sent per RPC")
SENT_REQUEST_ERRORS = Measure(_P + "sent_request_errors", "Total number of errors for requests sent per RPC")
SENT_BYTES = Measure(_P + "sent_bytes", "Total sent bytes per RPC", UNIT_BYTES)
NETWORK_SIZE = Measure(_P + "network_size", "Network size estimation")

_ALL_KEYS = (KEY_MESSAGE_TYPE, KEY_PEER_ID, KEY_INSTANCE_ID)


def default_views() -> list[View]:
    """Fresh instances of the standard set of views."""
    return [
        View(RECEIVED_MESSAGES, _ALL_KEYS),
        View(RECEIVED_MESSAGE_ERRORS, _ALL_KEYS),
        View(RECEIVED_BYTES, _ALL_KEYS, DEFAULT_BYTES_DISTRIBUTION),
        View(INBOUND_REQUEST_LATENCY, _ALL_KEYS, DEFAULT_MILLISECONDS_DISTRIBUTION),
        View(OUTBOUND_REQUEST_LATENCY, _ALL_KEYS, DEFAULT_MILLISECONDS_DISTRIBUTION),
        View(SENT_MESSAGES, _ALL_KEYS),
        View(SENT_MESSAGE_ERRORS, _ALL_KEYS),
        View(SENT_REQUESTS, _ALL_KEYS),
        View(SENT_REQUEST_ERRORS, _ALL_KEYS),
        View(SENT_BYTES, _ALL_KEYS, DEFAULT_BYTES_DISTRIBUTION),
        View(NETWORK_SIZE, (KEY_PEER_ID, KEY_INSTANCE_ID)),
    ]