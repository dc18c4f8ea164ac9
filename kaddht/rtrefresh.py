"""Periodic and on-demand refreshing of the Kademlia routing table."""

from __future__ import annotations

import base64
import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol, Sequence

from .message import AddrInfo

logger = logging.getLogger("dht.rtrefresh")

PEER_PING_TIMEOUT = 10.0
"""Seconds allowed for checking that one routing table peer is alive."""

_CLOSED_MESSAGE = "refresh manager closed"


class RefreshError(RuntimeError):
    """One or more steps of a routing table refresh failed."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        text = "; ".join(str(e) for e in self.errors)
        super().__init__(f"{len(self.errors)} error(s) occurred: {text}")


class _PeerInfo(Protocol):
    id: bytes
    last_successful_outbound_query_at: float


class _RoutingTable(Protocol):
    def get_peer_infos(self) -> Iterable[_PeerInfo]: ...

    def remove_peer(self, peer: bytes) -> None: ...

    def get_tracked_cpls_for_refresh(self) -> Sequence[float]: ...

    def n_peers_for_cpl(self, cpl: int) -> int: ...

    def size(self) -> int: ...


class _Host(Protocol):
    def id(self) -> bytes: ...

    def connect(self, info: AddrInfo) -> None: ...


@dataclass
class _Request:
    future: Future | None
    force: bool


_STOP = object()


def loggable_raw_key(key: str | bytes) -> str:
    """Unpadded upper-case base32 of key, or the empty string for an empty key."""
    raw = key.encode("utf-8", "surrogateescape") if isinstance(key, str) else bytes(key)
    if not raw:
        return ""
    return base64.b32encode(raw).decode("ascii").rstrip("=")


class RtRefreshManager:
    """Keeps the routing table populated by running lookups for its buckets.

    ``refresh_query(key, timeout)`` runs a lookup for key; a ``TimeoutError``
    raised once the timeout has fully elapsed counts as success.
    ``refresh_key_gen(cpl)`` returns a key whose common prefix length with us
    is cpl, and ``refresh_ping(peer)`` checks that a peer is alive.
    """

    def __init__(
        self,
        host: _Host,
        rt: _RoutingTable,
        auto_refresh: bool,
        refresh_key_gen: Callable[[int], str | bytes],
        refresh_query: Callable[[str | bytes, float], None],
        refresh_ping: Callable[[bytes], None],
        refresh_query_timeout: float,
        refresh_interval: float,
        successful_outbound_query_grace_period: float,
        refresh_done: Callable[[], None] | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.host = host
        self.rt = rt
        self.dht_peer_id = bytes(host.id())
        self.auto_refresh = auto_refresh
        self.refresh_key_gen = refresh_key_gen
        self.refresh_query = refresh_query
        self.refresh_ping = refresh_ping
        self.refresh_query_timeout = refresh_query_timeout
        self.refresh_interval = refresh_interval
        self.successful_outbound_query_grace_period = successful_outbound_query_grace_period
        self.refresh_done = refresh_done
        self._clock = clock

        self._requests: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._idle = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> "RtRefreshManager":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self) -> None:
        """Start the refresh loop in a background thread."""
        with self._lock:
            if self._closed.is_set():
                raise RuntimeError(_CLOSED_MESSAGE)
            if self._thread is not None:
                return
            self._thread = threading.Thread(
                target=self._loop, name="rt-refresh", daemon=True
            )
            self._thread.start()

    def close(self) -> None:
        """Stop the loop; pending refresh requests fail with RuntimeError."""
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._requests.put(_STOP)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        while True:
            try:
                item = self._requests.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, _Request) and item.future is not None:
                item.future.set_exception(RuntimeError(_CLOSED_MESSAGE))

    def refresh(self, force: bool) -> Future:
        """Request a refresh; the future resolves once it has finished.

        With force, every bucket is refreshed whenever it was last refreshed.
        """
        future: Future = Future()
        with self._lock:
            if self._closed.is_set():
                future.set_exception(RuntimeError(_CLOSED_MESSAGE))
            else:
                self._requests.put(_Request(future, force))
        return future

    def refresh_no_wait(self) -> None:
        """Request a refresh only if the loop is idle; otherwise do nothing."""
        with self._lock:
            if self._closed.is_set() or not self._idle.is_set():
                return
            self._idle.clear()
            self._requests.put(_Request(None, False))

    def _loop(self) -> None:
        next_tick: float | None = None
        if self.auto_refresh:
            try:
                self.do_refresh(True)
            except Exception as exc:
                logger.warning("failed when refreshing routing table: %s", exc)
            next_tick = time.monotonic() + self.refresh_interval

        while True:
            timeout = None if next_tick is None else max(0.0, next_tick - time.monotonic())
            self._idle.set()
            try:
                first = self._requests.get(timeout=timeout)
            except queue.Empty:
                first = None
                next_tick = time.monotonic() + self.refresh_interval
            finally:
                self._idle.clear()

            waiting: list[Future] = []
            forced = False
            stop = first is _STOP
            pending = [] if first is None or stop else [first]
            while not stop:
                try:
                    item = self._requests.get_nowait()
                except queue.Empty:
                    break
                if item is _STOP:
                    stop = True
                else:
                    pending.append(item)
            for req in pending:
                if req.future is not None:
                    waiting.append(req.future)
                forced = forced or req.force

            if stop or self._closed.is_set():
                for fut in waiting:
                    fut.set_exception(RuntimeError(_CLOSED_MESSAGE))
                return

            self._ping_and_evict_peers()

            error: Exception | None = None
            try:
                self.do_refresh(forced)
            except Exception as exc:
                error = exc
                logger.warning("failed when refreshing routing table: %s", exc)
            for fut in waiting:
                if error is None:
                    fut.set_result(None)
                else:
                    fut.set_exception(error)

    def _ping_and_evict_peers(self) -> int:
        """Check stale peers, evicting those that fail; return how many are alive."""
        now = self._clock()
        stale = [
            p for p in self.rt.get_peer_infos()
            if now - p.last_successful_outbound_query_at > self.successful_outbound_query_grace_period
        ]
        if not stale:
            return 0

        def check(info: _PeerInfo) -> bool:
            try:
                self.host.connect(AddrInfo(id=info.id))
            except Exception as exc:
                logger.debug("evicting peer %r after failed connection: %s", info.id, exc)
                self.rt.remove_peer(info.id)
                return False
            try:
                self.refresh_ping(info.id)
            except Exception as exc:
                logger.debug("evicting peer %r after failed ping: %s", info.id, exc)
                self.rt.remove_peer(info.id)
                return False
            return True

        with ThreadPoolExecutor(max_workers=min(32, len(stale))) as pool:
            alive = sum(pool.map(check, stale))
        logger.debug(
            "checked %d peers, skipped others, %d alive", len(stale), alive
        )
        return alive

    def do_refresh(self, force: bool) -> None:
        """Look ourselves up and refresh the buckets that need it.

        Raises RefreshError holding every failure.
        """
        errors: list[Exception] = []
        try:
            self._query_for_self()
        except Exception as exc:
            errors.append(exc)

        refresh_cpls = list(self.rt.get_tracked_cpls_for_refresh())

        def refresh_one(cpl: int) -> None:
            if force:
                self._refresh_cpl(cpl)
            else:
                self._refresh_cpl_if_eligible(cpl, refresh_cpls[cpl])

        for cpl in range(len(refresh_cpls)):
            try:
                refresh_one(cpl)
            except Exception as exc:
                errors.append(exc)
                continue
            # On a gap, refresh only up to 2 * (cpl + 1) or the highest tracked cpl.
            if self.rt.n_peers_for_cpl(cpl) == 0:
                last_cpl = min(2 * (cpl + 1), len(refresh_cpls) - 1)
                for i in range(cpl + 1, last_cpl + 1):
                    try:
                        refresh_one(i)
                    except Exception as exc:
                        errors.append(exc)
                if errors:
                    raise RefreshError(errors)
                return

        if self.refresh_done is not None:
            self.refresh_done()
        if errors:
            raise RefreshError(errors)

    def _refresh_cpl_if_eligible(self, cpl: int, last_refreshed_at: float) -> None:
        if self._clock() - last_refreshed_at <= self.refresh_interval:
            logger.debug(
                "not running refresh for cpl %d as time since last refresh not above interval",
                cpl,
            )
            return
        self._refresh_cpl(cpl)

    def _refresh_cpl(self, cpl: int) -> None:
        try:
            key = self.refresh_key_gen(cpl)
        except Exception as exc:
            raise RuntimeError(
                f"failed to generated query key for cpl={cpl}, err={exc}"
            ) from exc

        logger.info(
            "starting refreshing cpl %d with key %s (routing table size was %d)",
            cpl, loggable_raw_key(key), self.rt.size(),
        )
        try:
            self._run_refresh_query(key)
        except Exception as exc:
            raise RuntimeError(f"failed to refresh cpl={cpl}, err={exc}") from exc
        logger.info(
            "finished refreshing cpl %d, routing table size is now %d", cpl, self.rt.size()
        )

    def _query_for_self(self) -> None:
        try:
            self._run_refresh_query(self.dht_peer_id)
        except Exception as exc:
            raise RuntimeError(f"failed to query for self, err={exc}") from exc

    def _run_refresh_query(self, key: str | bytes) -> None:
        timeout = self.refresh_query_timeout
        started = time.monotonic()
        try:
            self.refresh_query(key, timeout)
        except TimeoutError:
            if time.monotonic() - started >= timeout:
                return
            raise