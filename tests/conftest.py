import hashlib
import hmac
import os
import struct

import pytest
from Crypto.Cipher import AES
from Crypto.Util.Padding import pad

from wxlive.core.crypto import (
    V4_PAGE_SIZE,
    RESERVE,
    SALT_SIZE,
    derive_keys,
    encrypt_aes_cbc,
)
from wxlive.core.keys import KeyPair

DATA_KEY_HEX = "9b646e026b1042ab" * 4
IMAGE_KEY_HEX = "3f2a5c7d9e1b4a6c" * 2
WRONG_DATA_KEY_HEX = "0123456789abcdef" * 4
SALT = bytes.fromhex("a1b2c3d4e5f60718293a4b5c6d7e8f90")


@pytest.fixture(scope="session")
def key_pair():
    return KeyPair.from_hex(DATA_KEY_HEX, IMAGE_KEY_HEX)


@pytest.fixture(scope="session")
def wrong_key_pair():
    return KeyPair.from_hex(WRONG_DATA_KEY_HEX, IMAGE_KEY_HEX)


@pytest.fixture(scope="session")
def derived_keys(key_pair):
    """(enc_key, mac_key) for SALT, derived once per session."""
    return derive_keys(key_pair.data_key, SALT)


def build_first_page(enc_key, mac_key, salt, body):
    """Encrypt page 1 the way the V4 format lays it out.

    The first ciphertext block doubles as the salt, so it is fixed and the
    first plaintext block follows from the IV (which is the head of the
    stored HMAC tag). Returns (page, tag, plaintext).
    """
    data_len = V4_PAGE_SIZE - RESERVE
    assert len(body) == data_len - 2 * SALT_SIZE

    rest = encrypt_aes_cbc(pad(body, 16), enc_key, salt)
    ciphertext = salt + rest
    assert len(ciphertext) == data_len

    mac = hmac.new(mac_key, digestmod=hashlib.sha512)
    mac.update(ciphertext[SALT_SIZE:data_len - RESERVE + SALT_SIZE])
    mac.update(struct.pack(">I", 1))
    tag = mac.digest()[:32]

    iv = tag[:16]
    head = bytes(a ^ b for a, b in zip(AES.new(enc_key, AES.MODE_ECB).decrypt(salt), iv))

    page = ciphertext + tag + os.urandom(RESERVE - 32)
    assert len(page) == V4_PAGE_SIZE
    return page, tag, head + body


def build_page(enc_key, body):
    """Encrypt a page after the first one. Returns (page, plaintext)."""
    data_len = V4_PAGE_SIZE - RESERVE
    assert len(body) == data_len - 16

    iv = os.urandom(16)
    ciphertext = encrypt_aes_cbc(pad(body, 16), enc_key, iv)
    page = ciphertext + iv + os.urandom(RESERVE - 16)
    assert len(page) == V4_PAGE_SIZE
    return page, body


@pytest.fixture
def make_v4_db(derived_keys):
    """Write a synthetic V4 database and return (tag, [plaintext per page])."""
    enc_key, mac_key = derived_keys

    def _make(path, pages=1):
        first, tag, plain = build_first_page(
            enc_key, mac_key, SALT, os.urandom(V4_PAGE_SIZE - RESERVE - 2 * SALT_SIZE)
        )
        chunks = [first]
        plaintexts = [plain]
        for _ in range(pages - 1):
            page, body = build_page(enc_key, os.urandom(V4_PAGE_SIZE - RESERVE - 16))
            chunks.append(page)
            plaintexts.append(body)

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"".join(chunks))
        return tag, plaintexts

    return _make
