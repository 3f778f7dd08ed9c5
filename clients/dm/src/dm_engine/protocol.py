"""The two direct message protocols and kind classification."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from .events import KIND_GIFT_WRAP, KIND_LEGACY_DM, MalformedEvent, RawEvent, is_hex_key


class Protocol(str, Enum):
    LEGACY = "nip04"
    SEALED = "nip17"

    @property
    def label(self) -> str:
        return "NIP-04" if self is Protocol.LEGACY else "NIP-17"


PROTOCOL_KINDS = {
    Protocol.LEGACY: KIND_LEGACY_DM,
    Protocol.SEALED: KIND_GIFT_WRAP,
}

_ALIASES = {
    "nip04": Protocol.LEGACY,
    "nip-04": Protocol.LEGACY,
    "legacy": Protocol.LEGACY,
    "a": Protocol.LEGACY,
    "nip17": Protocol.SEALED,
    "nip-17": Protocol.SEALED,
    "sealed": Protocol.SEALED,
    "b": Protocol.SEALED,
}


def parse_protocol(value: Union[str, Protocol]) -> Protocol:
    if isinstance(value, Protocol):
        return value
    try:
        return _ALIASES[str(value).strip().lower()]
    except KeyError:
        raise ValueError(f"unknown protocol: {value!r}") from None


def protocol_for_kind(kind: int) -> Protocol | None:
    for protocol, protocol_kind in PROTOCOL_KINDS.items():
        if protocol_kind == kind:
            return protocol
    return None


@dataclass(frozen=True)
class LegacyEnvelope:
    """Kind 4 event: the recipient is visible in the ``p`` tag."""

    event: RawEvent
    recipient_key: str

    protocol = Protocol.LEGACY


@dataclass(frozen=True)
class SealedEnvelope:
    """Kind 1059 wrapper addressed to ``recipient_key`` by a throwaway author."""

    event: RawEvent
    recipient_key: str

    protocol = Protocol.SEALED


Envelope = Union[LegacyEnvelope, SealedEnvelope]


def classify_event(event: RawEvent) -> Envelope:
    """Resolve an event to its protocol variant once, validating the ``p`` tag."""

    protocol = protocol_for_kind(event.kind)
    if protocol is None:
        raise MalformedEvent(f"kind {event.kind} is not a direct message")
    recipient = event.first_tag("p")
    if not is_hex_key(recipient):
        raise MalformedEvent("invalid recipient - malformed p tag")
    if protocol is Protocol.LEGACY:
        return LegacyEnvelope(event=event, recipient_key=recipient)
    return SealedEnvelope(event=event, recipient_key=recipient)
