"""AES-256-GCM sealing for stored alt credentials.

Blobs are ``v1:<iv>:<ciphertext>:<tag>`` with base64 parts, so values
written by earlier deployments stay readable.
"""

from __future__ import annotations

import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shared.config import get_alt_crypt_key

__all__ = ["CredentialKeyError", "SecretBox", "load_secret_box"]

ENC_VERSION = "v1"
_IV_BYTES = 12
_TAG_BYTES = 16


class CredentialKeyError(ValueError):
    """Credentials cannot be sealed or opened with the configured key."""


class SecretBox:
    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise CredentialKeyError("ALT_CRYPT_KEY must decode to 32 bytes.")
        self._aes = AESGCM(key)

    def seal(self, plain: str) -> str:
        iv = os.urandom(_IV_BYTES)
        sealed = self._aes.encrypt(iv, plain.encode("utf-8"), None)
        body, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        parts = [base64.b64encode(part).decode("ascii") for part in (iv, body, tag)]
        return ":".join([ENC_VERSION, *parts])

    def open(self, blob: str) -> str:
        try:
            version, iv, body, tag = blob.split(":")
        except ValueError as exc:
            raise CredentialKeyError("Malformed credential blob.") from exc
        if version != ENC_VERSION:
            raise CredentialKeyError(f"Unsupported credential version: {version}")
        try:
            plain = self._aes.decrypt(
                base64.b64decode(iv), base64.b64decode(body) + base64.b64decode(tag), None
            )
        except (InvalidTag, ValueError) as exc:
            raise CredentialKeyError("Credential could not be decrypted with ALT_CRYPT_KEY.") from exc
        return plain.decode("utf-8")


def load_secret_box() -> Optional[SecretBox]:
    key = get_alt_crypt_key()
    return SecretBox(key) if key is not None else None
