import threading
from collections import Counter
from dataclasses import dataclass

import pytest

from kaddht.rtrefresh import RefreshError, RtRefreshManager, loggable_raw_key

LOCAL = b"local-peer"
NOW = 100_000.0


@dataclass
class PeerInfo:
    id: bytes
    last_successful_outbound_query_at: float


class FakeRoutingTable:
    def __init__(self, refreshed_at=0.0):
        self.counts = Counter()
        self.refreshed_at = refreshed_at
        self.peers = {}
        self.removed = []
        self._lock = threading.Lock()

    def add_at_cpl(self, cpl):
        self.counts[cpl] += 1

    def n_peers_for_cpl(self, cpl):
        return self.counts[cpl]

    def get_tracked_cpls_for_refresh(self):
        live = [c for c, n in self.counts.items() if n]
        top = max(live, default=0)
        return [self.refreshed_at] * (top + 1)

    def size(self):
        return sum(self.counts.values())

    def get_peer_infos(self):
        return list(self.peers.values())

    def remove_peer(self, peer):
        with self._lock:
            self.peers.pop(peer, None)
            self.removed.append(peer)


class FakeHost:
    def __init__(self, unreachable=()):
        self.unreachable = set(unreachable)

    def id(self):
        return LOCAL

    def connect(self, info):
        if info.id in self.unreachable:
            raise ConnectionError("dial failed")


def key_gen(cpl):
    return str(cpl)


def noop_query(key, timeout):
    return None


def noop_ping(peer):
    return None


def make_manager(rt, query=noop_query, *, host=None, ping=noop_ping, auto=False,
                 key_gen_fn=key_gen, timeout=60.0, interval=600.0, grace=60.0, done=None):
    return RtRefreshManager(
        host or FakeHost(), rt, auto, key_gen_fn, query, ping,
        timeout, interval, grace, done, clock=lambda: NOW,
    )


def query_with_ignore(rt, ignore_cpl):
    def query(key, timeout):
        if key == LOCAL:
            return
        cpl = int(key)
        if cpl == ignore_cpl:
            return
        rt.add_at_cpl(cpl)

    return query


def test_skip_refresh_on_gap_below_max_cpl():
    rt = FakeRoutingTable()
    rt.add_at_cpl(10)
    icpl = 2
    last_cpl = 2 * (icpl + 1)
    manager = make_manager(rt, query_with_ignore(rt, icpl))
    assert manager.do_refresh(True) is None

    for i in range(last_cpl + 1):
        expected = 0 if i == icpl else 1
        assert rt.n_peers_for_cpl(i) == expected
    for i in range(last_cpl + 1, 10):
        assert rt.n_peers_for_cpl(i) == 0


def test_skip_refresh_on_gap_near_max_cpl():
    rt = FakeRoutingTable()
    rt.add_at_cpl(10)
    icpl = 6
    manager = make_manager(rt, query_with_ignore(rt, icpl))
    assert manager.do_refresh(True) is None

    for i in range(10):
        expected = 0 if i == icpl else 1
        assert rt.n_peers_for_cpl(i) == expected
    assert rt.n_peers_for_cpl(10) == 2


def test_unforced_refresh_skips_recently_refreshed_cpls():
    queried = []
    rt = FakeRoutingTable(refreshed_at=NOW - 10)
    rt.counts.update({0: 1, 1: 1, 2: 1})
    manager = make_manager(rt, lambda key, t: queried.append(key))
    manager.do_refresh(False)
    assert queried == [LOCAL]


def test_unforced_refresh_runs_stale_cpls():
    queried = []
    rt = FakeRoutingTable(refreshed_at=NOW - 10_000)
    rt.counts.update({0: 1, 1: 1, 2: 1})
    manager = make_manager(rt, lambda key, t: queried.append(key))
    manager.do_refresh(False)
    assert queried == [LOCAL, "0", "1", "2"]


def test_refresh_done_called_only_after_full_pass():
    calls = []
    rt = FakeRoutingTable()
    rt.counts.update({0: 1, 1: 1})
    make_manager(rt, done=lambda: calls.append(1)).do_refresh(True)
    assert calls == [1]

    gap_calls = []
    gap_rt = FakeRoutingTable()
    gap_rt.counts.update({1: 1})
    make_manager(gap_rt, done=lambda: gap_calls.append(1)).do_refresh(True)
    assert gap_calls == []


def test_query_errors_are_aggregated():
    def query(key, timeout):
        if key == "1":
            raise OSError("boom")

    rt = FakeRoutingTable()
    rt.counts.update({0: 1, 1: 1, 2: 1})
    with pytest.raises(RefreshError) as info:
        make_manager(rt, query).do_refresh(True)
    assert len(info.value.errors) == 1
    assert "failed to refresh cpl=1, err=boom" in str(info.value.errors[0])


def test_key_generation_failure_is_reported():
    def bad_key_gen(cpl):
        raise ValueError("no key")

    rt = FakeRoutingTable()
    rt.counts.update({0: 1})
    with pytest.raises(RefreshError) as info:
        make_manager(rt, key_gen_fn=bad_key_gen).do_refresh(True)
    assert str(info.value.errors[0]) == "failed to generated query key for cpl=0, err=no key"


def test_self_query_failure_is_reported():
    def query(key, timeout):
        if key == LOCAL:
            raise OSError("unreachable")

    rt = FakeRoutingTable()
    rt.counts.update({0: 1})
    with pytest.raises(RefreshError) as info:
        make_manager(rt, query).do_refresh(True)
    assert [str(e) for e in info.value.errors] == ["failed to query for self, err=unreachable"]


def test_expired_query_timeout_counts_as_success():
    def query(key, timeout):
        raise TimeoutError()

    rt = FakeRoutingTable()
    rt.counts.update({0: 1})
    done = []
    assert make_manager(rt, query, timeout=0.0, done=lambda: done.append(1)).do_refresh(True) is None
    assert done == [1]


def test_early_timeout_is_an_error():
    def query(key, timeout):
        raise TimeoutError("too soon")

    rt = FakeRoutingTable()
    rt.counts.update({0: 1})
    with pytest.raises(RefreshError) as info:
        make_manager(rt, query, timeout=60.0).do_refresh(True)
    assert len(info.value.errors) == 2


def test_refresh_evicts_dead_peers():
    rt = FakeRoutingTable()
    rt.counts.update({0: 1})
    rt.peers = {
        b"fresh": PeerInfo(b"fresh", NOW - 5),
        b"dial-fail": PeerInfo(b"dial-fail", 0.0),
        b"ping-fail": PeerInfo(b"ping-fail", 0.0),
        b"alive": PeerInfo(b"alive", 0.0),
    }

    def ping(peer):
        if peer == b"ping-fail":
            raise OSError("no pong")

    manager = make_manager(rt, host=FakeHost(unreachable={b"dial-fail"}), ping=ping)
    with manager:
        assert manager.refresh(False).result(timeout=5) is None
    assert set(rt.removed) == {b"dial-fail", b"ping-fail"}
    assert set(rt.peers) == {b"fresh", b"alive"}


def test_refresh_future_carries_error():
    def query(key, timeout):
        raise OSError("down")

    rt = FakeRoutingTable()
    rt.counts.update({0: 1})
    with make_manager(rt, query) as manager:
        with pytest.raises(RefreshError):
            manager.refresh(True).result(timeout=5)


def test_auto_refresh_runs_on_start():
    queried = []

    def query(key, timeout):
        queried.append(key)

    rt = FakeRoutingTable()
    with make_manager(rt, query, auto=True) as manager:
        assert manager.refresh(False).result(timeout=5) is None
    # one self query from the start-up refresh, one from the requested refresh
    assert queried.count(LOCAL) == 2


def test_refresh_after_close_fails():
    manager = make_manager(FakeRoutingTable())
    manager.start()
    manager.close()
    with pytest.raises(RuntimeError, match="closed"):
        manager.refresh(True).result(timeout=5)


def test_pending_refresh_fails_on_close_without_start():
    manager = make_manager(FakeRoutingTable())
    future = manager.refresh(False)
    manager.close()
    with pytest.raises(RuntimeError, match="closed"):
        future.result(timeout=5)


def test_start_after_close_raises():
    manager = make_manager(FakeRoutingTable())
    manager.close()
    with pytest.raises(RuntimeError):
        manager.start()


def test_refresh_no_wait_triggers_when_idle():
    queried = threading.Event()
    keys = []

    def query(key, timeout):
        keys.append(key)
        if key == LOCAL:
            queried.set()

    rt = FakeRoutingTable()
    manager = make_manager(rt, query)
    with manager:
        for _ in range(500):
            manager.refresh_no_wait()
            if queried.wait(timeout=0.01):
                break
        assert manager.refresh(False).result(timeout=5) is None
    # the no-wait refresh and the waited one each queried for self
    assert keys.count(LOCAL) >= 2


@pytest.mark.parametrize(
    ("key", "expected"),
    [("", ""), (b"", ""), ("foo", "MZXW6"), (b"hello", "NBSWY3DP")],
)
def test_loggable_raw_key(key, expected):
    assert loggable_raw_key(key) == expected