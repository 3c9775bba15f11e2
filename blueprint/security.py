"""Encryption at rest for pasted deal context and connector secrets.

AES-256-GCM with a random 96-bit IV per call. Payload format::

    v1.<iv>.<tag>.<ciphertext>

each part URL-safe base64 without padding. The key is read from
``BLUEPRINT_ENCRYPTION_KEY`` (standard base64 of exactly 32 bytes).
"""
from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from blueprint.config import get_settings
from blueprint.errors import EncryptionKeyMissingError

PAYLOAD_VERSION = "v1"
_IV_BYTES = 12
_TAG_BYTES = 16


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _get_encryption_key(raw_key: str | None = None) -> bytes:
    raw_key = raw_key if raw_key is not None else get_settings().encryption_key
    if not raw_key:
        raise EncryptionKeyMissingError("BLUEPRINT_ENCRYPTION_KEY is not set")
    try:
        key = base64.b64decode(raw_key, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EncryptionKeyMissingError("BLUEPRINT_ENCRYPTION_KEY is not valid base64") from exc
    if len(key) != 32:
        raise EncryptionKeyMissingError("BLUEPRINT_ENCRYPTION_KEY must decode to 32 bytes")
    return key


def encrypt_secret(plaintext: str, raw_key: str | None = None) -> str:
    key = _get_encryption_key(raw_key)
    iv = os.urandom(_IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
    return ".".join([PAYLOAD_VERSION, _b64encode(iv), _b64encode(tag), _b64encode(ciphertext)])


def decrypt_secret(payload: str, raw_key: str | None = None) -> str:
    """Reverse :func:`encrypt_secret`. Raises ``ValueError`` on a malformed or tampered payload."""
    key = _get_encryption_key(raw_key)
    parts = payload.split(".")
    if len(parts) != 4 or parts[0] != PAYLOAD_VERSION:
        raise ValueError("Unsupported encrypted payload format")
    try:
        iv, tag, ciphertext = (_b64decode(p) for p in parts[1:])
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Encrypted payload is not valid base64") from exc
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise ValueError("Encrypted payload failed authentication") from exc
    return plaintext.decode("utf-8")
