from __future__ import annotations

import hashlib
import secrets
from typing import NamedTuple
from uuid import uuid4


API_KEY_SCHEME = "avk"
_DISPLAY_PREFIX_LEN = 12


class ApiKeyMaterial(NamedTuple):
    key_id: str
    raw_key: str
    key_prefix: str
    key_hash: str


def hash_api_key(raw_key: str) -> str:
    # Only the digest is persisted; lookups hash the presented bearer token.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> ApiKeyMaterial:
    # Embed the key id so audit rows can point at a key without its secret.
    resolved_id = key_id or uuid4().hex
    raw_key = f"{API_KEY_SCHEME}_{resolved_id}_{secrets.token_urlsafe(32)}"
    return ApiKeyMaterial(resolved_id, raw_key, raw_key[:_DISPLAY_PREFIX_LEN], hash_api_key(raw_key))


def is_portal_api_key(token: str) -> bool:
    scheme, _, rest = token.partition("_")
    key_id, _, secret = rest.partition("_")
    return scheme == API_KEY_SCHEME and bool(key_id) and bool(secret)
