import io
import threading

import pytest

from kaddht.message import Message, MessageType, Record, new_message
from kaddht.message_sender import (
    MESSAGE_SIZE_MAX,
    CtxMutex,
    MessageSenderImpl,
    ReadTimeoutError,
    read_msg,
    write_msg,
)
from kaddht.metrics import KEY_MESSAGE_TYPE, SENT_MESSAGES, SENT_REQUESTS, Recorder, View


def _frame(message: Message) -> bytes:
    buf = io.BytesIO()
    write_msg(buf, message)
    return buf.getvalue()


class FakeStream:
    def __init__(self, incoming=b"", *, fail_write=False, block_read=False):
        self._incoming = io.BytesIO(incoming)
        self.written = bytearray()
        self.fail_write = fail_write
        self.block_read = block_read
        self.was_reset = threading.Event()
        self.closed = False

    def write(self, data):
        if self.fail_write:
            raise OSError("write failed")
        self.written += data

    def read(self, n):
        if self.block_read:
            self.was_reset.wait(5)
            return b""
        return self._incoming.read(n)

    def reset(self):
        self.was_reset.set()

    def close(self):
        self.closed = True


class FakePeerstore:
    def __init__(self):
        self.latencies = []

    def record_latency(self, peer, seconds):
        self.latencies.append((peer, seconds))


class FakeHost:
    def __init__(self, streams=(), error=None):
        self.streams = list(streams)
        self.error = error
        self.opened = []
        self.store = FakePeerstore()

    def new_stream(self, peer, protocols):
        if self.error is not None:
            raise self.error
        stream = self.streams.pop(0)
        self.opened.append((peer, list(protocols), stream))
        return stream

    def peerstore(self):
        return self.store


PING = new_message(MessageType.PING, None, 0)


def test_ctx_mutex_unlock_when_not_locked():
    mutex = CtxMutex()
    with pytest.raises(RuntimeError, match="not locked"):
        mutex.unlock()


def test_ctx_mutex_excludes_other_threads():
    mutex = CtxMutex()
    mutex.lock()
    acquired = threading.Event()

    def take():
        with mutex:
            acquired.set()

    worker = threading.Thread(target=take)
    worker.start()
    assert not acquired.wait(0.05)
    mutex.unlock()
    worker.join(2)
    assert acquired.is_set()
    assert not mutex.locked()


def test_write_and_read_roundtrip():
    msg = new_message(MessageType.GET_VALUE, b"/v/key", 0)
    msg.record = Record(key=b"/v/key", value=b"value")
    decoded = read_msg(io.BytesIO(_frame(msg)))
    assert decoded.type == MessageType.GET_VALUE
    assert decoded.key == b"/v/key"
    assert decoded.record.value == b"value"


def test_read_truncated_raises_eof():
    data = _frame(new_message(MessageType.FIND_NODE, b"target", 0))
    with pytest.raises(EOFError):
        read_msg(io.BytesIO(data[:-2]))


def test_read_oversized_raises():
    length = MESSAGE_SIZE_MAX + 1
    prefix = bytearray()
    while length >= 0x80:
        prefix.append((length & 0x7F) | 0x80)
        length >>= 7
    prefix.append(length)
    with pytest.raises(ValueError, match="too large"):
        read_msg(io.BytesIO(bytes(prefix)))


def test_invalid_message_sender_tracking():
    host = FakeHost(error=OSError("no route to peer"))
    sender = MessageSenderImpl(host, ["/test/kad/1.0.0"])
    with pytest.raises(OSError):
        sender.send_request(b"asdasd", PING)
    assert len(sender) == 0


def test_send_request_reuses_stream_and_records_latency():
    reply = _frame(PING) + _frame(PING)
    stream = FakeStream(reply)
    host = FakeHost([stream])
    sender = MessageSenderImpl(host, ["/ipfs/kad/1.0.0"])
    first = sender.send_request(b"peer", PING)
    second = sender.send_request(b"peer", PING)
    assert first.type == MessageType.PING
    assert second.type == MessageType.PING
    assert len(host.opened) == 1
    assert host.opened[0][1] == ["/ipfs/kad/1.0.0"]
    assert bytes(stream.written) == _frame(PING) * 2
    assert [p for p, _ in host.store.latencies] == [b"peer", b"peer"]


def test_send_request_retries_after_write_failure():
    broken = FakeStream(fail_write=True)
    good = FakeStream(_frame(PING))
    host = FakeHost([broken, good])
    sender = MessageSenderImpl(host, ["/ipfs/kad/1.0.0"])
    assert sender.send_request(b"peer", PING).type == MessageType.PING
    assert broken.was_reset.is_set()
    assert len(host.opened) == 2


def test_send_request_fails_after_second_error():
    host = FakeHost([FakeStream(fail_write=True), FakeStream(fail_write=True)])
    sender = MessageSenderImpl(host, ["/ipfs/kad/1.0.0"])
    with pytest.raises(OSError, match="write failed"):
        sender.send_request(b"peer", PING)


def test_send_request_read_timeout():
    streams = [FakeStream(block_read=True), FakeStream(block_read=True)]
    host = FakeHost(streams)
    sender = MessageSenderImpl(host, ["/ipfs/kad/1.0.0"], read_timeout=0.05)
    with pytest.raises(ReadTimeoutError):
        sender.send_request(b"peer", PING)
    assert all(s.was_reset.is_set() for s in streams)


def test_on_disconnect_invalidates_and_forgets():
    first = FakeStream(_frame(PING))
    second = FakeStream(_frame(PING))
    host = FakeHost([first, second])
    sender = MessageSenderImpl(host, ["/ipfs/kad/1.0.0"])
    sender.send_request(b"peer", PING)
    assert len(sender) == 1
    thread = sender.on_disconnect(b"peer")
    thread.join(2)
    assert first.was_reset.is_set()
    assert len(sender) == 0
    assert sender.on_disconnect(b"peer") is None
    assert sender.send_request(b"peer", PING).type == MessageType.PING
    assert len(host.opened) == 2


def test_send_message_writes_without_reading_and_records_metrics():
    stream = FakeStream()
    host = FakeHost([stream])
    recorder = Recorder()
    messages_view = View(SENT_MESSAGES, (KEY_MESSAGE_TYPE,))
    requests_view = View(SENT_REQUESTS, (KEY_MESSAGE_TYPE,))
    recorder.register(messages_view, requests_view)
    sender = MessageSenderImpl(host, ["/ipfs/kad/1.0.0"], recorder=recorder)
    msg = new_message(MessageType.ADD_PROVIDER, b"key", 0)
    sender.send_message(b"peer", msg)
    assert bytes(stream.written) == _frame(msg)
    assert messages_view.rows()[("ADD_PROVIDER",)].count == 1
    assert requests_view.rows() == {}


def test_failed_request_records_error_metric():
    from kaddht.metrics import SENT_REQUEST_ERRORS

    recorder = Recorder()
    errors_view = View(SENT_REQUEST_ERRORS, (KEY_MESSAGE_TYPE,))
    recorder.register(errors_view)
    sender = MessageSenderImpl(
        FakeHost(error=OSError("refused")), ["/ipfs/kad/1.0.0"], recorder=recorder
    )
    with pytest.raises(OSError):
        sender.send_request(b"peer", PING)
    assert errors_view.rows()[("PING",)].count == 1