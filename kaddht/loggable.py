"""Human-readable renderings of record and provider keys for log output."""

from __future__ import annotations

import base64

_RECORD_PREFIX = "LoggableRecordKey"
_PROVIDER_PREFIX = "LoggableProviderKey"


def _to_bytes(key: str | bytes) -> bytes:
    if isinstance(key, str):
        return key.encode("utf-8", "surrogateescape")
    return bytes(key)


def multibase_b32_encode(data: bytes) -> str:
    """Encode bytes as multibase base32 (lower case, unpadded, 'b' prefix)."""
    return "b" + base64.b32encode(bytes(data)).decode("ascii").lower().rstrip("=")


def _read_uvarint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint overflow")


def _is_multihash(data: bytes) -> bool:
    try:
        _code, pos = _read_uvarint(data, 0)
        length, pos = _read_uvarint(data, pos)
    except ValueError:
        return False
    return len(data) - pos == length


def _is_cid(data: bytes) -> bool:
    if len(data) == 34 and data[0] == 0x12 and data[1] == 0x20:
        return True
    try:
        version, pos = _read_uvarint(data, 0)
        if version != 1:
            return False
        _codec, pos = _read_uvarint(data, pos)
    except ValueError:
        return False
    return _is_multihash(data[pos:])


def format_loggable_record_key(key: str | bytes) -> str:
    """Render a '/namespace/key' record key; raise ValueError if it is not a path."""
    raw = _to_bytes(key)
    if not raw:
        raise ValueError(f"{_RECORD_PREFIX} is empty")
    if raw[:1] == b"/":
        end = raw.find(b"/", 1)
        if end < 0:
            raise ValueError(
                f"{_RECORD_PREFIX} starts with '/' but is not a path: {multibase_b32_encode(raw)}"
            )
        proto = raw[1:end].decode("utf-8", "surrogateescape")
        return f"/{proto}/{multibase_b32_encode(raw[end + 1:])}"
    raise ValueError(f"{_RECORD_PREFIX} is not a path: {multibase_b32_encode(b'')}")


def format_loggable_provider_key(key: bytes) -> str:
    """Render a provider key (CID or multihash) in base32; raise ValueError otherwise."""
    raw = _to_bytes(key)
    if not raw:
        raise ValueError(f"{_PROVIDER_PREFIX} is empty")
    encoded = multibase_b32_encode(raw)
    if _is_cid(raw) or _is_multihash(raw):
        return encoded
    raise ValueError(f"{_PROVIDER_PREFIX} is not a Multihash or CID: {encoded}")


def loggable_record_key(key: str | bytes) -> str:
    """Return the formatted record key, or the error text if it cannot be formatted."""
    try:
        return format_loggable_record_key(key)
    except ValueError as exc:
        return str(exc)


def loggable_provider_key(key: bytes) -> str:
    """Return the formatted provider key, or the error text if it cannot be formatted."""
    try:
        return format_loggable_provider_key(key)
    except ValueError as exc:
        return str(exc)