"""Encrypted, addressed wire records carrying one signal fragment each."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from typing import Any, List

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from pydantic import BaseModel, ConfigDict, Field, ValidationError


logger = logging.getLogger(__name__)

NONCE_BYTES = 12


class SignalAuthenticationError(ValueError):
    """An envelope could not be authenticated with the shared key."""


class SignalEnvelope(BaseModel):
    """Wire format: ``{fromPeerId, toPeerId, nonce, encryptedSignal}``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_peer_id: str = Field(..., alias="fromPeerId", min_length=1)
    to_peer_id: str = Field(..., alias="toPeerId", min_length=1)
    nonce: str
    encrypted_signal: str = Field(..., alias="encryptedSignal")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


def b64url_decode(text: str) -> bytes:
    # urlsafe_b64decode silently drops stray characters, so validate strictly
    return base64.b64decode(text.encode("ascii"), altchars=b"-_", validate=True)


def seal_signal(signal: Any, key: bytes, from_peer_id: str, to_peer_id: str) -> SignalEnvelope:
    plaintext = json.dumps(signal, separators=(",", ":")).encode("utf-8")
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = ChaCha20Poly1305(key).encrypt(nonce, plaintext, None)
    return SignalEnvelope(
        fromPeerId=from_peer_id,
        toPeerId=to_peer_id,
        nonce=b64url_encode(nonce),
        encryptedSignal=b64url_encode(ciphertext),
    )


def open_signal(envelope: SignalEnvelope, key: bytes) -> Any:
    try:
        nonce = b64url_decode(envelope.nonce)
        ciphertext = b64url_decode(envelope.encrypted_signal)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise SignalAuthenticationError(f"undecodable envelope: {exc}") from exc
    if len(nonce) != NONCE_BYTES:
        raise SignalAuthenticationError(f"bad nonce length {len(nonce)}")
    try:
        plaintext = ChaCha20Poly1305(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise SignalAuthenticationError("authentication failed") from exc
    # Authenticated bytes were produced by seal_signal, so this is JSON
    return json.loads(plaintext.decode("utf-8"))


def parse_batch(payload: Any) -> List[SignalEnvelope]:
    """Validate a broadcast payload, keeping array order."""
    if not isinstance(payload, list):
        logger.debug("Ignoring non-list signal payload: %r", type(payload).__name__)
        return []
    envelopes: List[SignalEnvelope] = []
    for item in payload:
        try:
            envelopes.append(SignalEnvelope.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping malformed envelope: %s", exc.errors()[0]["msg"])
    return envelopes
