"""Decode and encode direct messages for both protocols.

Decoding never raises for cryptographic or inner parse problems: those become
:class:`DecryptionFailure` placeholders so the timeline keeps its ordering and
activity signals. Only schema problems on the observed event itself raise
:class:`MalformedEvent`.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from .crypto import NaclSigner, Signer
from .events import (
    KIND_GIFT_WRAP,
    KIND_LEGACY_DM,
    KIND_PRIVATE_DM,
    KIND_SEAL,
    MalformedEvent,
    RawEvent,
    is_hex_key,
    parse_event_json,
    unsigned_event,
)
from .models import Attachment, DecryptionFailure, NormalizedMessage
from .protocol import LegacyEnvelope, Protocol, SealedEnvelope, classify_event

logger = logging.getLogger(__name__)

WRAP_JITTER_SECONDS = 2 * 24 * 60 * 60

EphemeralFactory = Callable[[], Signer]


def _failure(
    event: RawEvent,
    protocol: Protocol,
    reason: str,
    *,
    conversation_key: Optional[str],
    sender_key: Optional[str],
    timestamp: int,
) -> NormalizedMessage:
    logger.warning("undecryptable %s message %s: %s", protocol.label, event.id, reason)
    return NormalizedMessage(
        id=event.id,
        event_id=event.id,
        conversation_key=conversation_key,
        sender_key=sender_key,
        timestamp=timestamp,
        plaintext=DecryptionFailure(reason),
        source_protocol=protocol,
        raw_event=event,
    )


async def decode_event(event: RawEvent, signer: Signer) -> NormalizedMessage:
    envelope = classify_event(event)
    if isinstance(envelope, LegacyEnvelope):
        return await _decode_legacy(envelope, signer)
    if isinstance(envelope, SealedEnvelope):
        return await _decode_sealed(envelope, signer)
    raise MalformedEvent(f"unsupported envelope {type(envelope).__name__}")


async def _decode_legacy(envelope: LegacyEnvelope, signer: Signer) -> NormalizedMessage:
    event = envelope.event
    local_key = signer.pubkey
    if event.author_key == local_key:
        counterparty = envelope.recipient_key
    elif envelope.recipient_key == local_key:
        counterparty = event.author_key
    else:
        raise MalformedEvent("legacy message is not addressed to the local identity")

    try:
        plaintext = await signer.decrypt(Protocol.LEGACY, counterparty, event.content)
    except Exception as exc:  # any signer error is a per-message failure
        return _failure(
            event,
            Protocol.LEGACY,
            f"decryption failed: {exc}",
            conversation_key=counterparty,
            sender_key=event.author_key,
            timestamp=event.created_at,
        )

    return NormalizedMessage(
        id=event.id,
        event_id=event.id,
        conversation_key=counterparty,
        sender_key=event.author_key,
        timestamp=event.created_at,
        plaintext=plaintext,
        source_protocol=Protocol.LEGACY,
        raw_event=event,
        tags=event.tags,
    )


async def _decode_sealed(envelope: SealedEnvelope, signer: Signer) -> NormalizedMessage:
    wrapper = envelope.event
    local_key = signer.pubkey
    if envelope.recipient_key != local_key:
        raise MalformedEvent("wrapper is not addressed to the local identity")

    # The wrapper author and timestamp are throwaway values; only the sealed
    # layers carry the real sender and time.
    try:
        seal_json = await signer.decrypt(Protocol.SEALED, wrapper.author_key, wrapper.content)
        seal = parse_event_json(seal_json)
    except Exception as exc:  # any signer or parse error is a per-message failure
        return _failure(
            wrapper,
            Protocol.SEALED,
            f"wrapper could not be opened: {exc}",
            conversation_key=None,
            sender_key=None,
            timestamp=wrapper.created_at,
        )
    if seal.kind != KIND_SEAL:
        return _failure(
            wrapper,
            Protocol.SEALED,
            f"invalid seal format - expected kind {KIND_SEAL}, got {seal.kind}",
            conversation_key=None,
            sender_key=None,
            timestamp=wrapper.created_at,
        )

    sender = seal.author_key
    hinted_key = sender if sender != local_key else None
    try:
        rumor_json = await signer.decrypt(Protocol.SEALED, sender, seal.content)
        rumor = parse_event_json(rumor_json, require_signature=False)
    except Exception as exc:  # any signer or parse error is a per-message failure
        return _failure(
            wrapper,
            Protocol.SEALED,
            f"seal could not be opened: {exc}",
            conversation_key=hinted_key,
            sender_key=sender,
            timestamp=seal.created_at,
        )

    def fail(reason: str) -> NormalizedMessage:
        return _failure(
            wrapper,
            Protocol.SEALED,
            reason,
            conversation_key=hinted_key,
            sender_key=sender,
            timestamp=rumor.created_at,
        )

    if rumor.kind != KIND_PRIVATE_DM:
        return fail(f"invalid message format - expected kind {KIND_PRIVATE_DM}, got {rumor.kind}")
    if rumor.author_key != sender:
        return fail("seal author mismatch")
    recipient = rumor.first_tag("p")
    if not is_hex_key(recipient):
        return fail("invalid recipient - malformed p tag")

    counterparty = recipient if sender == local_key else sender
    return NormalizedMessage(
        id=rumor.id,
        event_id=wrapper.id,
        conversation_key=counterparty,
        sender_key=sender,
        timestamp=rumor.created_at,
        plaintext=rumor.content,
        source_protocol=Protocol.SEALED,
        raw_event=wrapper,
        tags=rumor.tags,
    )


def prepare_content(content: str, attachments: Sequence[Attachment] = ()) -> str:
    if not attachments:
        return content
    urls = "\n".join(attachment.url for attachment in attachments)
    return f"{content}\n\n{urls}" if content else urls


def _message_tags(recipient: str, attachments: Sequence[Attachment]) -> List[List[str]]:
    return [["p", recipient], *(attachment.imeta_tag() for attachment in attachments)]


async def build_legacy_dm(
    signer: Signer,
    recipient: str,
    content: str,
    *,
    created_at: int,
    attachments: Sequence[Attachment] = (),
) -> RawEvent:
    ciphertext = await signer.encrypt(Protocol.LEGACY, recipient, content)
    return await signer.sign_event(
        kind=KIND_LEGACY_DM,
        tags=_message_tags(recipient, attachments),
        content=ciphertext,
        created_at=created_at,
    )


@dataclass(frozen=True)
class SealedBundle:
    rumor: RawEvent
    wraps: tuple[RawEvent, ...]

    def wrap_for(self, recipient: str) -> RawEvent | None:
        for wrap in self.wraps:
            if wrap.first_tag("p") == recipient:
                return wrap
        return None


def _jittered(created_at: int, jitter_seconds: int) -> int:
    if jitter_seconds <= 0:
        return created_at
    return max(0, created_at - secrets.randbelow(jitter_seconds + 1))


async def seal_and_wrap(
    signer: Signer,
    rumor: RawEvent,
    target: str,
    *,
    ephemeral_factory: EphemeralFactory = NaclSigner.generate,
    jitter_seconds: int = WRAP_JITTER_SECONDS,
) -> RawEvent:
    """Seal ``rumor`` for ``target`` and wrap it under a fresh throwaway key."""

    seal = await signer.sign_event(
        kind=KIND_SEAL,
        tags=[],
        content=await signer.encrypt(Protocol.SEALED, target, rumor.to_json()),
        created_at=_jittered(rumor.created_at, jitter_seconds),
    )
    ephemeral = ephemeral_factory()
    return await ephemeral.sign_event(
        kind=KIND_GIFT_WRAP,
        tags=[["p", target]],
        content=await ephemeral.encrypt(Protocol.SEALED, target, seal.to_json()),
        created_at=_jittered(rumor.created_at, jitter_seconds),
    )


async def build_sealed_dm(
    signer: Signer,
    recipient: str,
    content: str,
    *,
    created_at: int,
    attachments: Sequence[Attachment] = (),
    ephemeral_factory: EphemeralFactory = NaclSigner.generate,
    jitter_seconds: int = WRAP_JITTER_SECONDS,
) -> SealedBundle:
    """Build the rumor plus one wrapper for the recipient and one for ourselves."""

    rumor = unsigned_event(
        author_key=signer.pubkey,
        created_at=created_at,
        kind=KIND_PRIVATE_DM,
        tags=_message_tags(recipient, attachments),
        content=content,
    )
    targets: Iterable[str] = (recipient,) if recipient == signer.pubkey else (recipient, signer.pubkey)
    wraps = []
    for target in targets:
        wraps.append(
            await seal_and_wrap(
                signer, rumor, target, ephemeral_factory=ephemeral_factory, jitter_seconds=jitter_seconds
            )
        )
    return SealedBundle(rumor=rumor, wraps=tuple(wraps))
