# -*- coding: utf-8 -*-
"""Crypto helpers for encrypting journal text at rest.

This module encapsulates *stateless* cryptographic helpers and the
field cipher used by the SQL adapter. It does **not** perform any
database I/O; the wrapped master key lives in :mod:`abcjournal.vault`.
"""
from __future__ import annotations

import base64
import secrets
from typing import Optional, Tuple

from argon2 import PasswordHasher
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

# ---------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------

PH = PasswordHasher(
    time_cost=2,
    memory_cost=102_400,
    parallelism=8,
    hash_len=32,
    salt_len=16,
)

SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

KEK_LEN = 32
MASTER_KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12

HKDF_INFO_FIELDS = b"abcjournal/field-key"
HKDF_INFO_WRAP = b"abcjournal/wrap-key"

CIPHER_PREFIX = "v1"


class DecryptionError(ValueError):
    """Ciphertext was malformed or failed authentication."""


# ---------------------------------------------------------------------
# KDF / HKDF / AEAD helpers
# ---------------------------------------------------------------------

def scrypt_kdf(passphrase: str, salt: bytes, length: int = KEK_LEN) -> bytes:
    """Derive a key from a passphrase using scrypt."""
    kdf = Scrypt(salt=salt, length=length, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(passphrase.encode("utf-8"))

def hkdf_derive(key_material: bytes, info: bytes, length: int = 32) -> bytes:
    """Derive a subkey from key material using HKDF-SHA256."""
    hk = HKDF(algorithm=hashes.SHA256(), length=length, salt=None, info=info)
    return hk.derive(key_material)

def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """Encrypt *plaintext* with AES-GCM; return (nonce, ciphertext)."""
    nonce = secrets.token_bytes(NONCE_LEN)
    ct = AESGCM(key).encrypt(nonce, plaintext, aad)
    return nonce, ct

def aesgcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    """Decrypt AES-GCM *ciphertext* with *nonce*; return plaintext."""
    return AESGCM(key).decrypt(nonce, ciphertext, aad)

def generate_master_key() -> bytes:
    return secrets.token_bytes(MASTER_KEY_LEN)


# ---------------------------------------------------------------------
# Field cipher
# ---------------------------------------------------------------------

class EntryCipher:
    """Encrypts individual text columns, bound to the row id and column name.

    Ciphertext is stored as ``v1:<nonce b64>:<ciphertext b64>`` so it fits
    the same TEXT columns as plaintext.
    """

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != MASTER_KEY_LEN:
            raise ValueError("master key must be 32 bytes")
        self._key = hkdf_derive(master_key, HKDF_INFO_FIELDS, 32)

    @staticmethod
    def _aad(entry_id: str, column: str) -> bytes:
        return f"{entry_id}/{column}".encode("utf-8")

    def encrypt(self, entry_id: str, column: str, text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        nonce, ct = aesgcm_encrypt(self._key, text.encode("utf-8"), aad=self._aad(entry_id, column))
        return ":".join(
            (CIPHER_PREFIX, base64.b64encode(nonce).decode("ascii"), base64.b64encode(ct).decode("ascii"))
        )

    def decrypt(self, entry_id: str, column: str, payload: Optional[str]) -> Optional[str]:
        if payload is None:
            return None
        parts = payload.split(":")
        if len(parts) != 3 or parts[0] != CIPHER_PREFIX:
            raise DecryptionError("not an encrypted payload")
        try:
            nonce = base64.b64decode(parts[1], validate=True)
            ct = base64.b64decode(parts[2], validate=True)
            plaintext = aesgcm_decrypt(self._key, nonce, ct, aad=self._aad(entry_id, column))
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError(str(exc) or "authentication failed") from exc
        return plaintext.decode("utf-8")
