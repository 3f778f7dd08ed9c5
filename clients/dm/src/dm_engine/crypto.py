"""Identity-bound signing and encryption capabilities.

The engine only depends on :class:`Signer`. :class:`NaclSigner` is the
reference implementation used by the CLI and the tests: identities are
ed25519 keys (hex encoded verify keys act as public identities) and both DM
protocols use a Curve25519 ``Box`` derived from them, with distinct payload
framings so ciphertext from one protocol never decrypts as the other.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import secrets
from typing import Iterable

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.public import Box
from nacl.signing import SigningKey, VerifyKey
from nacl.utils import random as nacl_random

from .events import RawEvent, unsigned_event
from .protocol import Protocol

SEALED_PAYLOAD_VERSION = 2


class DecryptError(Exception):
    """Raised by a signer when a payload cannot be decrypted."""


class Signer:
    """Capability bound to the local identity.

    Implementations must be safe to call concurrently for distinct payloads.
    """

    pubkey: str

    async def sign_event(
        self, *, kind: int, tags: Iterable[Iterable[str]], content: str, created_at: int
    ) -> RawEvent:
        raise NotImplementedError

    async def encrypt(self, protocol: Protocol, peer_key: str, plaintext: str) -> str:
        raise NotImplementedError

    async def decrypt(self, protocol: Protocol, peer_key: str, ciphertext: str) -> str:
        raise NotImplementedError


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptError("payload is not valid base64") from exc


class NaclSigner(Signer):
    def __init__(self, seed: bytes) -> None:
        if len(seed) != 32:
            raise ValueError("seed must be 32 bytes")
        self._signing_key = SigningKey(seed)
        self._box_secret = self._signing_key.to_curve25519_private_key()
        self.pubkey = self._signing_key.verify_key.encode().hex()

    @classmethod
    def generate(cls) -> "NaclSigner":
        return cls(secrets.token_bytes(32))

    @classmethod
    def from_seed_hex(cls, seed_hex: str) -> "NaclSigner":
        return cls(bytes.fromhex(seed_hex))

    @property
    def seed_hex(self) -> str:
        return self._signing_key.encode().hex()

    def _box(self, peer_key: str) -> Box:
        try:
            peer = VerifyKey(bytes.fromhex(peer_key)).to_curve25519_public_key()
        except (CryptoError, ValueError) as exc:
            raise DecryptError("peer key is not a valid public key") from exc
        return Box(self._box_secret, peer)

    def sign_event_sync(
        self, *, kind: int, tags: Iterable[Iterable[str]], content: str, created_at: int
    ) -> RawEvent:
        rumor = unsigned_event(author_key=self.pubkey, created_at=created_at, kind=kind, tags=tags, content=content)
        signature = self._signing_key.sign(bytes.fromhex(rumor.id)).signature.hex()
        return RawEvent(
            id=rumor.id,
            author_key=rumor.author_key,
            created_at=rumor.created_at,
            kind=rumor.kind,
            tags=rumor.tags,
            content=rumor.content,
            signature=signature,
        )

    async def sign_event(
        self, *, kind: int, tags: Iterable[Iterable[str]], content: str, created_at: int
    ) -> RawEvent:
        return self.sign_event_sync(kind=kind, tags=tags, content=content, created_at=created_at)

    def encrypt_sync(self, protocol: Protocol, peer_key: str, plaintext: str) -> str:
        box = self._box(peer_key)
        nonce = nacl_random(Box.NONCE_SIZE)
        sealed = box.encrypt(plaintext.encode("utf-8"), nonce)
        if protocol is Protocol.LEGACY:
            return f"{_b64(sealed.ciphertext)}?iv={_b64(nonce)}"
        return _b64(bytes([SEALED_PAYLOAD_VERSION]) + nonce + sealed.ciphertext)

    def decrypt_sync(self, protocol: Protocol, peer_key: str, ciphertext: str) -> str:
        if protocol is Protocol.LEGACY:
            body, sep, iv = ciphertext.partition("?iv=")
            if not sep:
                raise DecryptError("legacy payload is missing its iv")
            raw, nonce = _unb64(body), _unb64(iv)
        else:
            payload = _unb64(ciphertext)
            if not payload or payload[0] != SEALED_PAYLOAD_VERSION:
                raise DecryptError("unsupported sealed payload version")
            nonce, raw = payload[1 : 1 + Box.NONCE_SIZE], payload[1 + Box.NONCE_SIZE :]
        if len(nonce) != Box.NONCE_SIZE:
            raise DecryptError("nonce has the wrong length")
        try:
            return self._box(peer_key).decrypt(raw, nonce).decode("utf-8")
        except (CryptoError, UnicodeDecodeError) as exc:
            raise DecryptError("payload failed authentication") from exc

    async def encrypt(self, protocol: Protocol, peer_key: str, plaintext: str) -> str:
        return await asyncio.to_thread(self.encrypt_sync, protocol, peer_key, plaintext)

    async def decrypt(self, protocol: Protocol, peer_key: str, ciphertext: str) -> str:
        return await asyncio.to_thread(self.decrypt_sync, protocol, peer_key, ciphertext)


def verify_event_signature(event: RawEvent) -> bool:
    """Check an ed25519 signature over the event id."""

    try:
        VerifyKey(bytes.fromhex(event.author_key)).verify(bytes.fromhex(event.id), bytes.fromhex(event.signature))
    except (BadSignatureError, CryptoError, ValueError):
        return False
    return True
