from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
from typing import Final, Protocol

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from accessvault.core.config import Settings


class KmsProvider(Protocol):
    provider: str

    def build_key_ref(self, *, organization_id: str, key_alias: str) -> str:
        ...

    def wrap_key(self, *, organization_id: str, dek: bytes, key_ref: str) -> str:
        ...

    def unwrap_key(self, *, organization_id: str, wrapped_dek: str, key_ref: str) -> bytes:
        ...


def decode_key_material(value: str) -> bytes:
    """Decode base64 or hex key material into raw bytes."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc


class LocalKmsProvider:
    provider: Final[str] = "local_kms"

    def __init__(self, settings: Settings) -> None:
        self._master_key = _load_master_key(settings)

    def build_key_ref(self, *, organization_id: str, key_alias: str) -> str:
        return f"local://{organization_id}/{key_alias}"

    def wrap_key(self, *, organization_id: str, dek: bytes, key_ref: str) -> str:
        kek = _derive_kek(self._master_key, organization_id=organization_id, key_ref=key_ref)
        nonce = os.urandom(12)
        aad = f"{organization_id}:{key_ref}".encode("utf-8")
        ciphertext = AESGCM(kek).encrypt(nonce, dek, aad)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def unwrap_key(self, *, organization_id: str, wrapped_dek: str, key_ref: str) -> bytes:
        payload = base64.b64decode(wrapped_dek.encode("ascii"))
        nonce, ciphertext = payload[:12], payload[12:]
        kek = _derive_kek(self._master_key, organization_id=organization_id, key_ref=key_ref)
        aad = f"{organization_id}:{key_ref}".encode("utf-8")
        return AESGCM(kek).decrypt(nonce, ciphertext, aad)


def _load_master_key(settings: Settings) -> bytes:
    if settings.crypto_local_master_key:
        return _ensure_32_bytes(decode_key_material(settings.crypto_local_master_key))
    # Deterministic fallback for dev/test to avoid breaking local workflows.
    seed = f"{settings.app_name}-local-kms".encode("utf-8")
    return hashlib.sha256(seed).digest()


def _derive_kek(master_key: bytes, *, organization_id: str, key_ref: str) -> bytes:
    # HMAC derivation keeps per-organization KEKs deterministic without persisting them.
    message = f"{organization_id}:{key_ref}".encode("utf-8")
    return hmac.new(master_key, message, hashlib.sha256).digest()


def _ensure_32_bytes(value: bytes) -> bytes:
    if len(value) == 32:
        return value
    return hashlib.sha256(value).digest()
