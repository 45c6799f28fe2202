"""Capability token generation and hashing.

Raw tokens are 32 random bytes encoded as unpadded base64url. Only the SHA-256
hex digest is ever persisted; the raw value travels to the guest by email and
comes back as a path segment of the manage URL.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field

TOKEN_BYTES = 32


@dataclass(frozen=True)
class TokenPair:
    raw: str = field(repr=False)
    hash: str


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_token() -> TokenPair:
    raw = secrets.token_urlsafe(TOKEN_BYTES)
    return TokenPair(raw=raw, hash=hash_token(raw))


def build_manage_url(base_url: str, raw: str) -> str:
    return f"{base_url.rstrip('/')}/manage/{raw}"
