"""Per-peer stream reuse for sending DHT requests and messages."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Protocol, Sequence

from .message import Message
from .metrics import (
    OUTBOUND_REQUEST_LATENCY,
    SENT_BYTES,
    SENT_MESSAGE_ERRORS,
    SENT_MESSAGES,
    SENT_REQUEST_ERRORS,
    SENT_REQUESTS,
    Recorder,
    upsert_message_type,
)

logger = logging.getLogger("dht")

DHT_READ_MESSAGE_TIMEOUT = 10.0
"""Seconds to wait for a response before giving up on a stream."""

MESSAGE_SIZE_MAX = 4 << 20
"""Largest message accepted from the wire, in bytes."""

STREAM_REUSE_TRIES = 3
"""Failed reuses after which a fresh stream is opened for every message."""


class ReadTimeoutError(TimeoutError):
    """No response was read within the timeout period."""

    def __init__(self, message: str = "timed out reading response") -> None:
        super().__init__(message)


class _Stream(Protocol):
    def write(self, data: bytes) -> Any: ...

    def read(self, n: int) -> bytes: ...

    def reset(self) -> None: ...

    def close(self) -> None: ...


class _Peerstore(Protocol):
    def record_latency(self, peer: bytes, seconds: float) -> None: ...


class _Host(Protocol):
    def new_stream(self, peer: bytes, protocols: Sequence[str]) -> _Stream: ...

    def peerstore(self) -> _Peerstore: ...


class CtxMutex:
    """A mutex whose unlock fails loudly when it is not held."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def lock(self) -> None:
        """Block until the mutex is acquired."""
        self._lock.acquire()

    def unlock(self) -> None:
        """Release the mutex; RuntimeError if it is not locked."""
        try:
            self._lock.release()
        except RuntimeError:
            raise RuntimeError("not locked") from None

    def locked(self) -> bool:
        return self._lock.locked()

    def __enter__(self) -> "CtxMutex":
        self.lock()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unlock()


def _uvarint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _read_exact(stream: _Stream, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = stream.read(n - len(buf))
        if not chunk:
            raise EOFError("unexpected end of stream")
        buf += chunk
    return bytes(buf)


def write_msg(stream: _Stream, message: Message) -> None:
    """Write message to stream as a varint length-prefixed protobuf, in one write."""
    payload = message.encode()
    stream.write(_uvarint(len(payload)) + payload)


def read_msg(stream: _Stream) -> Message:
    """Read one varint length-prefixed message from stream.

    Raises EOFError on a truncated stream and ValueError on an oversized or
    malformed message.
    """
    length = 0
    shift = 0
    while True:
        byte = _read_exact(stream, 1)[0]
        length |= (byte & 0x7F) << shift
        if not byte & 0x80:
            break
        shift += 7
        if shift > 63:
            raise ValueError("varint overflow")
    if length > MESSAGE_SIZE_MAX:
        raise ValueError(f"message too large: {length} bytes")
    return Message.decode(_read_exact(stream, length))


class _PeerMessageSender:
    """Sends messages to one peer over a reused stream."""

    def __init__(self, peer: bytes, parent: "MessageSenderImpl") -> None:
        self.peer = peer
        self.parent = parent
        self.lock = CtxMutex()
        self.stream: _Stream | None = None
        self.invalid = False
        self.single_mes = 0

    def invalidate(self) -> None:
        """Prevent reuse after removal from the sender map, closing the stream."""
        self.invalid = True
        self._drop_stream()

    def _drop_stream(self) -> None:
        if self.stream is not None:
            try:
                self.stream.reset()
            except Exception as exc:
                logger.debug("error resetting stream: %s", exc)
            self.stream = None

    def prep_or_invalidate(self) -> None:
        with self.lock:
            try:
                self._prep()
            except Exception:
                self.invalidate()
                raise

    def _prep(self) -> _Stream:
        if self.invalid:
            raise RuntimeError("message sender has been invalidated")
        if self.stream is None:
            self.stream = self.parent.host.new_stream(self.peer, self.parent.protocols)
        return self.stream

    def _finish(self, retried: bool) -> None:
        if self.single_mes > STREAM_REUSE_TRIES:
            stream, self.stream = self.stream, None
            if stream is not None:
                stream.close()
        elif retried:
            self.single_mes += 1

    def send_message(self, message: Message) -> None:
        with self.lock:
            retry = False
            while True:
                stream = self._prep()
                try:
                    write_msg(stream, message)
                except Exception as exc:
                    self._drop_stream()
                    logger.debug("error writing message: %s (retrying: %s)", exc, not retry)
                    if retry:
                        raise
                    retry = True
                    continue
                self._finish(retry)
                return

    def send_request(self, message: Message) -> Message:
        with self.lock:
            retry = False
            while True:
                stream = self._prep()
                try:
                    write_msg(stream, message)
                except Exception as exc:
                    self._drop_stream()
                    logger.debug("error writing message: %s (retrying: %s)", exc, not retry)
                    if retry:
                        raise
                    retry = True
                    continue
                try:
                    response = self._read_with_timeout(stream)
                except Exception as exc:
                    self._drop_stream()
                    logger.debug("error reading message: %s (retrying: %s)", exc, not retry)
                    if retry:
                        raise
                    retry = True
                    continue
                self._finish(retry)
                return response

    def _read_with_timeout(self, stream: _Stream) -> Message:
        done = threading.Event()
        outcome: dict[str, Any] = {}

        def run() -> None:
            try:
                outcome["message"] = read_msg(stream)
            except BaseException as exc:
                outcome["error"] = exc
            finally:
                done.set()

        threading.Thread(target=run, name="dht-read", daemon=True).start()
        if not done.wait(self.parent.read_timeout):
            raise ReadTimeoutError()
        if "error" in outcome:
            raise outcome["error"]
        return outcome["message"]


class MessageSenderImpl:
    """Sends requests and messages to peers, reusing one stream per peer."""

    def __init__(
        self,
        host: _Host,
        protocols: Sequence[str],
        *,
        read_timeout: float = DHT_READ_MESSAGE_TIMEOUT,
        recorder: Recorder | None = None,
    ) -> None:
        self.host = host
        self.protocols = list(protocols)
        self.read_timeout = read_timeout
        self.recorder = recorder
        self._lock = threading.Lock()
        self._senders: dict[bytes, _PeerMessageSender] = {}

    def __len__(self) -> int:
        """Number of peers with a tracked message sender."""
        with self._lock:
            return len(self._senders)

    def _record(self, message: Message, *values: tuple[Any, float]) -> None:
        if self.recorder is None:
            return
        tags = upsert_message_type({}, message)
        for measure, value in values:
            self.recorder.record(measure, value, tags)

    def on_disconnect(self, peer: bytes) -> threading.Thread | None:
        """Forget peer and invalidate its sender in the background.

        Returns the background thread, or None if the peer was not tracked.
        """
        with self._lock:
            sender = self._senders.pop(bytes(peer), None)
        if sender is None:
            return None

        def invalidate() -> None:
            with sender.lock:
                sender.invalidate()

        thread = threading.Thread(target=invalidate, name="dht-invalidate", daemon=True)
        thread.start()
        return thread

    def send_request(self, peer: bytes, message: Message) -> Message:
        """Send message to peer and return its response, measuring the round trip."""
        peer = bytes(peer)
        try:
            sender = self._sender_for_peer(peer)
        except Exception as exc:
            self._record(message, (SENT_REQUESTS, 1), (SENT_REQUEST_ERRORS, 1))
            logger.debug("request to %r failed to open message sender: %s", peer, exc)
            raise

        start = time.monotonic()
        try:
            response = sender.send_request(message)
        except Exception as exc:
            self._record(message, (SENT_REQUESTS, 1), (SENT_REQUEST_ERRORS, 1))
            logger.debug("request to %r failed: %s", peer, exc)
            raise

        elapsed = time.monotonic() - start
        self._record(
            message,
            (SENT_REQUESTS, 1),
            (SENT_BYTES, len(message.encode())),
            (OUTBOUND_REQUEST_LATENCY, elapsed * 1000.0),
        )
        self.host.peerstore().record_latency(peer, elapsed)
        return response

    def send_message(self, peer: bytes, message: Message) -> None:
        """Send message to peer without waiting for a response."""
        peer = bytes(peer)
        try:
            sender = self._sender_for_peer(peer)
        except Exception as exc:
            self._record(message, (SENT_MESSAGES, 1), (SENT_MESSAGE_ERRORS, 1))
            logger.debug("message to %r failed to open message sender: %s", peer, exc)
            raise

        try:
            sender.send_message(message)
        except Exception as exc:
            self._record(message, (SENT_MESSAGES, 1), (SENT_MESSAGE_ERRORS, 1))
            logger.debug("message to %r failed: %s", peer, exc)
            raise

        self._record(message, (SENT_MESSAGES, 1), (SENT_BYTES, len(message.encode())))

    def _sender_for_peer(self, peer: bytes) -> _PeerMessageSender:
        with self._lock:
            sender = self._senders.get(peer)
            if sender is not None:
                return sender
            sender = _PeerMessageSender(peer, self)
            self._senders[peer] = sender

        try:
            sender.prep_or_invalidate()
        except Exception:
            with self._lock:
                current = self._senders.get(peer)
                if current is not None:
                    if current is not sender:
                        return current
                    del self._senders[peer]
            raise
        return sender