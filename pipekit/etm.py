"""Encrypt-then-MAC authenticated encryption: AEAD_AES_256_CBC_HMAC_SHA_512.

AES-256 in CBC mode with PKCS#7 padding is combined with HMAC-SHA-512
truncated to 256 bits. The 64-byte key holds the encryption key in its
first half and the MAC key in its second half.
"""

from __future__ import annotations

import hashlib
import hmac
import struct
from typing import Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

BLOCK_SIZE = 16
_DATA_LEN_SIZE = 8


class AuthenticationError(ValueError):
    """Raised when a sealed message fails authentication."""


def _pkcs7_pad(data: bytes, block_size: int) -> bytes:
    pad_len = block_size - len(data) % block_size
    return data + bytes([pad_len]) * pad_len


def _pkcs7_unpad(data: bytes) -> bytes:
    if not data:
        raise ValueError("etm: no data to unpad")
    return data[: len(data) - data[-1]]


class EtmAead:
    """An Encrypt-then-MAC AEAD using AES-256-CBC and HMAC-SHA-512-256."""

    enc_key_size = 32
    mac_key_size = 32
    tag_size = 32
    nonce_size = BLOCK_SIZE
    pad_size = BLOCK_SIZE

    def __init__(self, key: bytes) -> None:
        key = bytes(key or b"")
        expected = self.enc_key_size + self.mac_key_size
        if len(key) != expected:
            raise ValueError(f"etm: key must be {expected} bytes long")
        self._enc_key = key[: self.enc_key_size]
        self._mac_key = key[len(key) - self.mac_key_size :]

    @property
    def overhead(self) -> int:
        """The most bytes a sealed message can add to its plaintext."""
        return self.pad_size + self.tag_size + _DATA_LEN_SIZE + self.nonce_size

    def _tag(self, data: bytes, sealed: bytes) -> bytes:
        mac = hmac.new(self._mac_key, digestmod=hashlib.sha512)
        mac.update(data)
        mac.update(sealed)
        mac.update(struct.pack(">Q", len(data) * 8))
        return mac.digest()[: self.tag_size]

    def _cipher(self, nonce: bytes) -> Cipher:
        return Cipher(algorithms.AES(self._enc_key), modes.CBC(nonce))

    def seal(self, nonce: bytes, plaintext: bytes, data: Optional[bytes] = None) -> bytes:
        """Encrypt and authenticate ``plaintext`` with associated ``data``.

        The result is the nonce, the ciphertext and the tag, concatenated.
        """
        data = bytes(data or b"")
        nonce = bytes(nonce)
        encryptor = self._cipher(nonce).encryptor()
        body = encryptor.update(_pkcs7_pad(bytes(plaintext), BLOCK_SIZE)) + encryptor.finalize()
        sealed = nonce + body
        return sealed + self._tag(data, sealed)

    def open(
        self, nonce: Optional[bytes], ciphertext: bytes, data: Optional[bytes] = None
    ) -> bytes:
        """Authenticate and decrypt a sealed message.

        When ``nonce`` is None it is taken from the start of the message.
        """
        data = bytes(data or b"")
        ciphertext = bytes(ciphertext)
        if len(ciphertext) < self.tag_size:
            raise AuthenticationError("message authentication failed")
        sealed = ciphertext[: -self.tag_size]
        tag = ciphertext[-self.tag_size :]
        expected = self._tag(data, sealed)
        if nonce is None:
            nonce = sealed[: self.nonce_size]
        nonce = bytes(nonce)

        if not hmac.compare_digest(tag, expected):
            raise AuthenticationError("message authentication failed")

        decryptor = self._cipher(nonce).decryptor()
        padded = decryptor.update(sealed[len(nonce) :]) + decryptor.finalize()
        return _pkcs7_unpad(padded)


def new_aes256_sha512(key: bytes) -> EtmAead:
    """Return an AEAD_AES_256_CBC_HMAC_SHA_512 instance for a 64-byte key."""
    return EtmAead(key)