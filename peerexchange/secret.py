"""Connect key handling: symmetric key and channel id derivation."""

from __future__ import annotations

import enum
import hashlib
import secrets
import string
from dataclasses import dataclass
from typing import Optional


KEY_BYTES = 32
KEY_HEX_LENGTH = KEY_BYTES * 2
ROOM_BYTES = 16


class Role(enum.Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class InvalidConnectKey(ValueError):
    """Raised for a connect key that is not 64 hex characters."""


@dataclass(frozen=True)
class DerivedSecret:
    connect_key: str
    key: bytes
    channel_id: str
    role: Role


def generate_connect_key() -> str:
    return secrets.token_bytes(KEY_BYTES).hex()


def generate_room_id() -> str:
    return secrets.token_bytes(ROOM_BYTES).hex()


def channel_id_for(text: str) -> str:
    """Hex SHA-256 of ``text``; only this hash is ever shown to the relay."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_connect_key(connect_key: str) -> str:
    if not isinstance(connect_key, str):
        raise InvalidConnectKey(
            f"connect key must be a string, got {type(connect_key).__name__}"
        )
    value = connect_key.strip().lower()
    if len(value) != KEY_HEX_LENGTH:
        raise InvalidConnectKey(
            f"connect key must be {KEY_HEX_LENGTH} hex characters, got {len(value)}"
        )
    if any(ch not in string.hexdigits for ch in value):
        raise InvalidConnectKey("connect key contains non-hex characters")
    return value


def derive_secret(connect_key: Optional[str] = None) -> DerivedSecret:
    """Derive everything an exchange needs from a connect key.

    Without a key a fresh one is generated and this side becomes the
    initiator. A supplied key makes this side the responder.
    """
    if connect_key is None:
        connect_key = generate_connect_key()
        role = Role.INITIATOR
    else:
        connect_key = normalize_connect_key(connect_key)
        role = Role.RESPONDER
    return DerivedSecret(
        connect_key=connect_key,
        key=bytes.fromhex(connect_key),
        channel_id=channel_id_for(connect_key),
        role=role,
    )
