"""Tests for key normalization, key pairs and the key cache."""

import pytest

from wxlive.core.errors import ConfigError
from wxlive.core.keys import KeyCache, KeyPair, normalize_hex_key, parse_key_pair

from conftest import DATA_KEY_HEX, IMAGE_KEY_HEX


# ─── Normalization ───

def test_prefixed_and_plain_hex_normalize_the_same():
    plain = normalize_hex_key(DATA_KEY_HEX, 64, "data_key")
    prefixed = normalize_hex_key("0x" + DATA_KEY_HEX, 64, "data_key")
    upper = normalize_hex_key("0X" + DATA_KEY_HEX.upper(), 64, "data_key")

    assert plain == prefixed == upper
    assert len(plain) == 32


def test_surrounding_whitespace_is_ignored():
    assert normalize_hex_key(f"  {IMAGE_KEY_HEX}\n", 32, "image_key") == bytes.fromhex(IMAGE_KEY_HEX)


def test_63_chars_rejected():
    with pytest.raises(ConfigError, match="64 个十六进制字符"):
        normalize_hex_key(DATA_KEY_HEX[:63], 64, "data_key")


def test_non_hex_rejected():
    with pytest.raises(ConfigError, match="非十六进制"):
        normalize_hex_key("zz" + DATA_KEY_HEX[2:], 64, "data_key")


def test_non_string_rejected():
    with pytest.raises(ConfigError):
        normalize_hex_key(12345, 64, "data_key")


# ─── Key pairs ───

def test_key_pair_from_hex():
    pair = KeyPair.from_hex(DATA_KEY_HEX, IMAGE_KEY_HEX)
    assert len(pair.data_key) == 32
    assert len(pair.image_key) == 16


def test_key_pair_repr_hides_key_material():
    pair = KeyPair.from_hex(DATA_KEY_HEX, IMAGE_KEY_HEX)
    assert DATA_KEY_HEX[:16] not in repr(pair)
    assert pair.data_key.hex() not in repr(pair)


def test_key_pair_rejects_wrong_byte_lengths():
    with pytest.raises(ConfigError):
        KeyPair(bytes(31), bytes(16))
    with pytest.raises(ConfigError):
        KeyPair(bytes(32), bytes(15))


def test_parse_key_pair_both_absent():
    assert parse_key_pair(None, None) is None


@pytest.mark.parametrize("data_key, image_key", [
    (DATA_KEY_HEX, None),
    (None, IMAGE_KEY_HEX),
])
def test_parse_key_pair_rejects_one_sided(data_key, image_key):
    with pytest.raises(ConfigError, match="同时提供"):
        parse_key_pair(data_key, image_key)


def test_parse_key_pair_rejects_bad_image_key():
    with pytest.raises(ConfigError, match="image_key"):
        parse_key_pair(DATA_KEY_HEX, IMAGE_KEY_HEX[:-2])


# ─── Cache ───

def test_cache_overwrites_instead_of_merging():
    cache = KeyCache()
    first = KeyPair(bytes(32), bytes(16))
    second = KeyPair(b"\x01" * 32, b"\x02" * 16)

    cache.set(7, first)
    cache.set(7, second)

    assert cache.get(7) is second
    assert len(cache) == 1


def test_cache_remove_and_contains():
    cache = KeyCache()
    cache.set(0, KeyPair(bytes(32), bytes(16)))
    cache.set(5, KeyPair(bytes(32), bytes(16)))

    assert 5 in cache
    assert cache.remove(5) is not None
    assert 5 not in cache
    assert cache.remove(5) is None
    assert cache.ids() == [0]


def test_cache_rejects_partial_material():
    cache = KeyCache()
    with pytest.raises(ConfigError):
        cache.set(1, (bytes(32), None))
    assert len(cache) == 0
