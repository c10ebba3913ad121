from __future__ import annotations

import json
import os
from dataclasses import dataclass

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from accessvault.services.secrets.kms import KmsProvider


@dataclass(frozen=True)
class SealedSecret:
    ciphertext: bytes
    nonce: bytes
    wrapped_dek: str
    key_ref: str


def _aad(organization_id: str, key_name: str, secret_type: str) -> bytes:
    # Bind ciphertext to its owning row so it cannot be replayed under another org or name.
    payload = {"organization_id": organization_id, "key_name": key_name, "secret_type": secret_type}
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


def seal(
    kms: KmsProvider,
    *,
    organization_id: str,
    key_name: str,
    secret_type: str,
    plaintext: str,
    key_alias: str,
) -> SealedSecret:
    # Encrypt with a per-secret DEK and wrap the DEK with the organization KEK.
    dek = AESGCM.generate_key(bit_length=256)
    nonce = os.urandom(12)
    ciphertext = AESGCM(dek).encrypt(
        nonce,
        plaintext.encode("utf-8"),
        _aad(organization_id, key_name, secret_type),
    )
    key_ref = kms.build_key_ref(organization_id=organization_id, key_alias=key_alias)
    wrapped = kms.wrap_key(organization_id=organization_id, dek=dek, key_ref=key_ref)
    return SealedSecret(ciphertext=ciphertext, nonce=nonce, wrapped_dek=wrapped, key_ref=key_ref)


def open_sealed(
    kms: KmsProvider,
    sealed: SealedSecret,
    *,
    organization_id: str,
    key_name: str,
    secret_type: str,
) -> str:
    dek = kms.unwrap_key(organization_id=organization_id, wrapped_dek=sealed.wrapped_dek, key_ref=sealed.key_ref)
    plaintext = AESGCM(dek).decrypt(
        sealed.nonce,
        sealed.ciphertext,
        _aad(organization_id, key_name, secret_type),
    )
    return plaintext.decode("utf-8")
