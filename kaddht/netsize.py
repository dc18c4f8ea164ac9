"""Network size estimation from the distances of lookup results."""

from __future__ import annotations

import logging
import math
import threading
import time
from bisect import bisect_right
from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Protocol, Sequence

from .qpeerset import xor_key

logger = logging.getLogger("dht.netsize")

MAX_MEASUREMENT_AGE = 2 * 60 * 60.0
MIN_MEASUREMENTS_THRESHOLD = 5
MAX_MEASUREMENTS_THRESHOLD = 150

_KEYSPACE_MAX = (1 << 256) - 1
_INVALID_ESTIMATE = -1


class NotEnoughDataError(Exception):
    """Raised when there are too few measurements for an estimate."""

    def __init__(self, message: str = "not enough data") -> None:
        super().__init__(message)


class WrongNumberOfPeersError(ValueError):
    """Raised when a tracked peer list does not match the bucket size."""

    def __init__(self, message: str = "expected bucket size number of peers") -> None:
        super().__init__(message)


class RoutingTable(Protocol):
    def n_peers_for_cpl(self, cpl: int) -> int: ...


def convert_key(key: str | bytes) -> bytes:
    """Map a key or peer ID into the Kademlia key space."""
    return xor_key(key)


def common_prefix_len(a: bytes, b: bytes) -> int:
    """Number of leading bits a and b have in common."""
    bits = min(len(a), len(b)) * 8
    diff = int.from_bytes(a[: bits // 8], "big") ^ int.from_bytes(b[: bits // 8], "big")
    return bits - diff.bit_length()


def normed_distance(peer: bytes, key: bytes) -> float:
    """XOR distance between peer and a key-space key, scaled to [0, 1]."""
    distance = int.from_bytes(xor_key(peer), "big") ^ int.from_bytes(key, "big")
    return float(Fraction(distance, _KEYSPACE_MAX))


@dataclass(frozen=True)
class _Measurement:
    distance: float
    weight: float
    timestamp: float


def _first_fresh(measurements: Sequence[_Measurement], max_age_ts: float) -> int:
    return bisect_right(measurements, max_age_ts, key=lambda m: m.timestamp)


class Estimator:
    """Estimates the network size from the k closest peers of past lookups."""

    def __init__(
        self,
        local_id: bytes,
        rt: RoutingTable,
        bucket_size: int,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.local_id = convert_key(local_id)
        self.rt = rt
        self.bucket_size = bucket_size
        self.measurements: dict[int, list[_Measurement]] = {
            i: [] for i in range(bucket_size)
        }
        self._cache = _INVALID_ESTIMATE
        self._lock = threading.Lock()
        self._clock = clock

    def track(self, key: str | bytes, peers: Sequence[bytes]) -> None:
        """Record the closest peers (closest first) found for key."""
        with self._lock:
            if len(peers) != self.bucket_size:
                raise WrongNumberOfPeersError()
            logger.debug("tracking peers for key %r", key)

            now = self._clock()
            self._cache = _INVALID_ESTIMATE
            weight = self._calc_weight(key, peers)
            ks_key = xor_key(key)
            max_age_ts = now - MAX_MEASUREMENT_AGE

            for i, peer in enumerate(peers):
                entry = _Measurement(normed_distance(peer, ks_key), weight, now)
                measurements = self.measurements[i] + [entry]
                measurements = measurements[_first_fresh(measurements, max_age_ts):]
                if len(measurements) > MAX_MEASUREMENTS_THRESHOLD:
                    measurements = measurements[-MAX_MEASUREMENTS_THRESHOLD:]
                self.measurements[i] = measurements

    def network_size(self) -> int:
        """Current estimate of the number of peers; cached until the next track."""
        estimate = self._cache
        if estimate != _INVALID_ESTIMATE:
            return estimate

        with self._lock:
            if self._cache != _INVALID_ESTIMATE:
                return self._cache

            self._garbage_collect()

            x2_sum = 0.0
            xy_sum = 0.0
            for i in range(self.bucket_size):
                measurements = self.measurements[i]
                count = len(measurements)
                if count < MIN_MEASUREMENTS_THRESHOLD:
                    raise NotEnoughDataError()

                sum_weights = sum(m.weight for m in measurements)
                avg = sum(m.weight * m.distance for m in measurements) / sum_weights
                weighted_diffs = sum(m.weight * (m.distance - avg) ** 2 for m in measurements)
                variance = weighted_diffs / ((count - 1) / count * sum_weights)
                std = math.sqrt(variance)

                x = float(i + 1)
                xy_sum += std * x * avg
                x2_sum += std * x * x

            if x2_sum == 0 or xy_sum == 0:
                raise NotEnoughDataError("measurements carry no spread")
            slope = xy_sum / x2_sum
            net_size = int(1 / slope - 1)

            self._cache = net_size
            logger.debug("new network size estimation: %d", net_size)
            return net_size

    def _calc_weight(self, key: str | bytes, peers: Sequence[bytes]) -> float:
        """Weigh data points exponentially less when their bucket is not full."""
        cpl = common_prefix_len(convert_key(key), self.local_id)
        bucket_level = self.rt.n_peers_for_cpl(cpl)

        if bucket_level < self.bucket_size:
            peer_level = sum(
                1 for p in peers if common_prefix_len(convert_key(p), self.local_id) == cpl
            )
            if peer_level > bucket_level:
                return 2.0 ** (peer_level - self.bucket_size)

        return 2.0 ** (bucket_level - self.bucket_size)

    def _garbage_collect(self) -> None:
        max_age_ts = self._clock() - MAX_MEASUREMENT_AGE
        for i in range(self.bucket_size):
            measurements = self.measurements[i]
            idx = _first_fresh(measurements, max_age_ts)
            if idx:
                self.measurements[i] = measurements[idx:]