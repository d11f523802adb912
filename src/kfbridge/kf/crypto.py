"""Envelope codec for callback and API payloads.

Layout (before encryption):
    random(16) | msg_len (4 bytes, big-endian) | msg | receive_id

Encryption is AES-256-CBC with IV = key[:16] and PKCS#7 padding on a
32-byte block. The key is the 43-char base64 EncodingAESKey plus "=".

Security:
- Any padding, length or receiver mismatch is a hard failure.
- Plaintext is never logged here.
"""

from __future__ import annotations

import base64
import binascii
import os
import struct

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import DecryptError

# Padding block is 32 bytes, not the AES block size
PAD_BLOCK_BITS = 256
RANDOM_PREFIX_LEN = 16
LENGTH_FIELD_LEN = 4
AES_KEY_LEN = 32


def decode_aes_key(encoding_aes_key: str) -> bytes:
    """Decode the tenant EncodingAESKey into 32 bytes of key material.

    Raises:
        DecryptError: If the key is missing or does not decode to 32 bytes.
    """
    if not encoding_aes_key:
        raise DecryptError("encoding_aes_key not configured")
    try:
        key = base64.b64decode(encoding_aes_key.strip() + "=", validate=True)
    except (ValueError, binascii.Error) as e:
        raise DecryptError("encoding_aes_key is not valid base64") from e
    if len(key) != AES_KEY_LEN:
        raise DecryptError(
            f"encoding_aes_key must decode to {AES_KEY_LEN} bytes, got {len(key)}"
        )
    return key


def _cipher(key: bytes) -> Cipher:
    return Cipher(algorithms.AES(key), modes.CBC(key[:16]))


def decrypt_envelope(*, encoding_aes_key: str, receive_id: str | None, encrypt: str) -> str:
    """Decrypt a base64 envelope and return the embedded message.

    Args:
        encoding_aes_key: Tenant EncodingAESKey (43 chars).
        receive_id: Expected receiver identity (corp id). Skipped if empty.
        encrypt: Base64 ciphertext from echostr or the Encrypt field.

    Returns:
        The message as UTF-8 text.

    Raises:
        DecryptError: On bad base64, bad padding, length overrun or
            receiver mismatch.
    """
    key = decode_aes_key(encoding_aes_key)

    try:
        ciphertext = base64.b64decode(encrypt, validate=True)
    except (ValueError, binascii.Error) as e:
        raise DecryptError("ciphertext is not valid base64") from e
    if not ciphertext or len(ciphertext) % 16 != 0:
        raise DecryptError("ciphertext length is not a multiple of the block size")

    decryptor = _cipher(key).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(PAD_BLOCK_BITS).unpadder()
    try:
        raw = unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptError("invalid padding") from e

    header_len = RANDOM_PREFIX_LEN + LENGTH_FIELD_LEN
    if len(raw) < header_len:
        raise DecryptError("plaintext shorter than header")

    (msg_len,) = struct.unpack(">I", raw[RANDOM_PREFIX_LEN:header_len])
    msg_end = header_len + msg_len
    if msg_end > len(raw):
        raise DecryptError("length field overruns plaintext")

    msg = raw[header_len:msg_end]
    trailing_id = raw[msg_end:]

    if receive_id and trailing_id != receive_id.encode("utf-8"):
        raise DecryptError("receive_id mismatch")

    try:
        return msg.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptError("message is not valid utf-8") from e


def encrypt_envelope(
    *,
    encoding_aes_key: str,
    receive_id: str,
    plaintext: str,
    random_prefix: bytes | None = None,
) -> str:
    """Encrypt a message into a base64 envelope. Inverse of decrypt_envelope."""
    key = decode_aes_key(encoding_aes_key)
    prefix = random_prefix if random_prefix is not None else os.urandom(RANDOM_PREFIX_LEN)
    if len(prefix) != RANDOM_PREFIX_LEN:
        raise ValueError(f"random_prefix must be {RANDOM_PREFIX_LEN} bytes")

    msg = plaintext.encode("utf-8")
    raw = prefix + struct.pack(">I", len(msg)) + msg + receive_id.encode("utf-8")

    padder = padding.PKCS7(PAD_BLOCK_BITS).padder()
    padded = padder.update(raw) + padder.finalize()

    encryptor = _cipher(key).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(ciphertext).decode("ascii")
