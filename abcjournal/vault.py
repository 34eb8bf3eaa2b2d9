# -*- coding: utf-8 -*-
"""Passphrase-protected master key for encrypting entries at rest.

The master key is random and never leaves memory unwrapped. It is stored
wrapped (AES-GCM) under a key derived from the passphrase with scrypt;
an argon2 hash of the passphrase gives a clear "wrong passphrase" error
before any unwrapping is attempted.
"""
from __future__ import annotations

import logging
import secrets
from typing import Optional

import aiosqlite
from argon2.exceptions import InvalidHashError, VerificationError
from cryptography.exceptions import InvalidTag

from .clock import Clock, SystemClock
from .crypto import (
    HKDF_INFO_WRAP,
    PH,
    SALT_LEN,
    EntryCipher,
    aesgcm_decrypt,
    aesgcm_encrypt,
    generate_master_key,
    hkdf_derive,
    scrypt_kdf,
)
from .db import transaction
from .errors import ValidationError, VaultLockedError

logger = logging.getLogger(__name__)

WRAP_AAD = b"abcjournal/vault"


def _wrap_key(passphrase: str, salt: bytes) -> bytes:
    kek = scrypt_kdf(passphrase, salt, 32)
    return hkdf_derive(kek, HKDF_INFO_WRAP, 32)


class Vault:
    """Single-row ``vault`` table holding the wrapped master key."""

    def __init__(self, conn: aiosqlite.Connection, clock: Optional[Clock] = None) -> None:
        self._conn = conn
        self._clock = clock or SystemClock()

    async def _row(self):
        cur = await self._conn.execute(
            "SELECT passphrase_hash, kek_salt, key_wrapped, key_wrap_nonce FROM vault WHERE id = 1"
        )
        row = await cur.fetchone()
        await cur.close()
        return row

    async def is_initialized(self) -> bool:
        return await self._row() is not None

    async def initialize(self, passphrase: str) -> EntryCipher:
        """Create the master key, store it wrapped under *passphrase*, return its cipher."""
        if not passphrase:
            raise ValidationError("Passphrase required", field="passphrase")
        if await self.is_initialized():
            raise ValidationError("Vault already initialized")

        master_key = generate_master_key()
        salt = secrets.token_bytes(SALT_LEN)
        nonce, wrapped = aesgcm_encrypt(_wrap_key(passphrase, salt), master_key, aad=WRAP_AAD)
        now = self._clock.now_iso()
        async with transaction(self._conn):
            await self._conn.execute(
                """
                INSERT INTO vault (
                    id, passphrase_hash, kek_salt, key_wrapped, key_wrap_nonce, created_at, updated_at
                ) VALUES (1, ?, ?, ?, ?, ?, ?)
                """,
                (PH.hash(passphrase), salt, wrapped, nonce, now, now),
            )
        logger.info("vault initialized")
        return EntryCipher(master_key)

    async def _unwrap(self, passphrase: str) -> bytes:
        row = await self._row()
        if row is None:
            raise VaultLockedError("Vault not initialized")
        try:
            PH.verify(row["passphrase_hash"], passphrase)
        except (VerificationError, InvalidHashError) as exc:
            raise VaultLockedError("Invalid passphrase") from exc
        try:
            return aesgcm_decrypt(
                _wrap_key(passphrase, row["kek_salt"]),
                row["key_wrap_nonce"],
                row["key_wrapped"],
                aad=WRAP_AAD,
            )
        except InvalidTag as exc:
            raise VaultLockedError("Wrapped key failed authentication") from exc

    async def unlock(self, passphrase: str) -> EntryCipher:
        """Return the entry cipher for the stored master key."""
        return EntryCipher(await self._unwrap(passphrase))

    async def change_passphrase(self, current_passphrase: str, new_passphrase: str) -> EntryCipher:
        """Rewrap the same master key under *new_passphrase*; entries stay readable."""
        if not new_passphrase:
            raise ValidationError("New passphrase required", field="new_passphrase")
        master_key = await self._unwrap(current_passphrase)
        salt = secrets.token_bytes(SALT_LEN)
        nonce, wrapped = aesgcm_encrypt(_wrap_key(new_passphrase, salt), master_key, aad=WRAP_AAD)
        async with transaction(self._conn):
            await self._conn.execute(
                """
                UPDATE vault
                   SET passphrase_hash = ?,
                       kek_salt = ?,
                       key_wrapped = ?,
                       key_wrap_nonce = ?,
                       updated_at = ?
                 WHERE id = 1
                """,
                (PH.hash(new_passphrase), salt, wrapped, nonce, self._clock.now_iso()),
            )
        logger.info("vault passphrase changed")
        return EntryCipher(master_key)
