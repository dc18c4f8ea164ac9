import pytest

from kaddht.loggable import (
    format_loggable_provider_key,
    format_loggable_record_key,
    loggable_provider_key,
    loggable_record_key,
    multibase_b32_encode,
)

_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def _b58decode(text):
    num = 0
    for ch in text:
        num = num * 58 + _ALPHABET.index(ch)
    body = num.to_bytes((num.bit_length() + 7) // 8, "big")
    pad = len(text) - len(text.lstrip("1"))
    return b"\x00" * pad + body


CID_V0 = _b58decode("QmfUvYQhL2GinafMbPDYz7VFoZv4iiuLuR33aRsPurXGag")


def test_loggable_record_key_path():
    k = format_loggable_record_key(b"/proto/" + CID_V0)
    assert k == "/proto/" + multibase_b32_encode(CID_V0)


@pytest.mark.parametrize("key", ["/bla", "", "bla bla"])
def test_record_key_rejects(key):
    with pytest.raises(ValueError):
        format_loggable_record_key(key)


@pytest.mark.parametrize("key", ["/bla/asdf", "/a/b/c"])
def test_record_key_accepts(key):
    assert format_loggable_record_key(key).startswith("/")


def test_record_key_nested_path():
    assert format_loggable_record_key("/a/b/c") == "/a/" + multibase_b32_encode(b"b/c")


def test_provider_key_cid_v0():
    assert format_loggable_provider_key(CID_V0) == multibase_b32_encode(CID_V0)


def test_provider_key_multihash_from_v1():
    # the multihash of a CIDv1 built from the v0 hash is the v0 bytes themselves
    assert format_loggable_provider_key(CID_V0) == multibase_b32_encode(CID_V0)


def test_provider_key_full_cid_v1():
    cid_v1 = b"\x01\x70" + CID_V0
    assert format_loggable_provider_key(cid_v1) == multibase_b32_encode(cid_v1)


@pytest.mark.parametrize("key", ["/bla", "", "bla bla", "/bla/asdf", "/a/b/c"])
def test_provider_key_rejects(key):
    with pytest.raises(ValueError):
        format_loggable_provider_key(key.encode())


def test_loggable_wrappers_return_error_text():
    assert loggable_record_key("") == "LoggableRecordKey is empty"
    assert loggable_provider_key(b"") == "LoggableProviderKey is empty"
    assert loggable_provider_key(CID_V0) == multibase_b32_encode(CID_V0)


def test_b32_prefix():
    assert multibase_b32_encode(b"") == "b"