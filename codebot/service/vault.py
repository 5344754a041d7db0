"""AES-256-GCM encryption for provider credentials at rest.

Blobs are self-describing: ``nonce_hex:tag_hex:ciphertext_hex`` with a
fresh 12-byte nonce per encryption. The key is read-only process state,
so one vault instance can be shared across tasks without locking.
Rotating the key makes every previously stored blob undecryptable.
"""

from __future__ import annotations

import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from codebot.service.errors import CorruptCredentialError

NONCE_BYTES = 12
TAG_BYTES = 16


def derive_key(key_material: str) -> bytes:
    """Turn configured key material into a 32-byte AES key.

    A 64-character hex string is used as the raw key; anything else is
    hashed with SHA-256.
    """
    candidate = key_material.strip()
    if len(candidate) == 64:
        try:
            return bytes.fromhex(candidate)
        except ValueError:
            pass
    return hashlib.sha256(candidate.encode("utf-8")).digest()


class CredentialVault:
    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("credential encryption key is required")
        self._aesgcm = AESGCM(derive_key(key_material))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt_or_raise(self, blob: str) -> str:
        """Decrypt ``blob``; raise :class:`CorruptCredentialError` on any failure."""
        try:
            nonce_hex, tag_hex, ct_hex = blob.split(":")
            nonce = bytes.fromhex(nonce_hex)
            tag = bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ct_hex)
        except (AttributeError, ValueError) as exc:
            raise CorruptCredentialError("malformed credential blob") from exc
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise CorruptCredentialError("malformed credential blob")
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CorruptCredentialError("credential authentication failed") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptCredentialError("credential is not valid text") from exc

    def decrypt(self, blob: Optional[str]) -> Optional[str]:
        """Decrypt ``blob`` or return ``None`` when it is absent, malformed or tampered."""
        if not blob:
            return None
        try:
            return self.decrypt_or_raise(blob)
        except CorruptCredentialError:
            return None
