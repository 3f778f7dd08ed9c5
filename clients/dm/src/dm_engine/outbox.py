"""Optimistic sending with a pending overlay and confirmation reconciliation."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .aggregator import ConversationAggregator
from .codec import EphemeralFactory, build_legacy_dm, build_sealed_dm, prepare_content
from .config import EngineConfig
from .crypto import NaclSigner, Signer
from .events import RawEvent, is_hex_key
from .models import Attachment, NormalizedMessage
from .protocol import Protocol
from .relay import RelayTransport, TransportFailure

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class SendState(str, Enum):
    COMPOSING = "composing"
    SENDING = "sending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class PendingSend:
    local_id: str
    counterparty_key: str
    content: str
    protocol: Protocol
    created_at: int
    attachments: Tuple[Attachment, ...] = ()
    state: SendState = SendState.COMPOSING
    message_id: Optional[str] = None
    error: Optional[str] = None
    published: List[str] = field(default_factory=list)

    def placeholder(self, local_key: str) -> NormalizedMessage:
        tags = (("p", self.counterparty_key),) + tuple(tuple(a.imeta_tag()) for a in self.attachments)
        return NormalizedMessage(
            id=self.local_id,
            event_id=self.message_id or self.local_id,
            conversation_key=self.counterparty_key,
            sender_key=local_key,
            timestamp=self.created_at,
            plaintext=self.content,
            source_protocol=self.protocol,
            tags=tags,
            is_optimistic=True,
            is_sending=self.state is SendState.SENDING,
        )


class SendCoordinator:
    """Tracks outbound messages from submission until a confirmed copy is ingested.

    Placeholders never enter the aggregator; they live in an overlay that the
    engine merges into its views. A placeholder is removed either when a
    confirmed outbound message for the same conversation and content arrives
    within ``optimistic_match_window_s`` of it, or when publishing fails.
    """

    def __init__(
        self,
        signer: Signer,
        transport: RelayTransport,
        aggregator: ConversationAggregator,
        config: EngineConfig,
        *,
        clock: Clock = time.time,
        ephemeral_factory: EphemeralFactory = NaclSigner.generate,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self._signer = signer
        self._transport = transport
        self._aggregator = aggregator
        self._config = config
        self._clock = clock
        self._ephemeral_factory = ephemeral_factory
        self._on_change = on_change
        self._pending: Dict[str, PendingSend] = {}
        self._remove_listener: Optional[Callable[[], None]] = None
        self.open()

    @property
    def local_key(self) -> str:
        return self._signer.pubkey

    def preferred_protocol(self, key: str) -> Protocol:
        """Protocol a reply should use: stay sealed once the peer has used it."""

        conversation = self._aggregator.conversation(key)
        if conversation is not None:
            if conversation.has_protocol_b and self._config.sealed_enabled:
                return Protocol.SEALED
            if conversation.has_protocol_a:
                return Protocol.LEGACY
        return self._config.default_protocol

    def pending(self, key: Optional[str] = None) -> List[PendingSend]:
        return [item for item in self._pending.values() if key is None or item.counterparty_key == key]

    def pending_keys(self) -> List[str]:
        return list(dict.fromkeys(item.counterparty_key for item in self._pending.values()))

    def placeholders(self, key: str) -> List[NormalizedMessage]:
        return [item.placeholder(self.local_key) for item in self.pending(key)]

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _reconcile(self, inserted: List[NormalizedMessage]) -> None:
        window = self._config.optimistic_match_window_s
        confirmed = False
        for message in inserted:
            if message.failed or not message.is_outbound(self.local_key):
                continue
            match = self._match(message, window)
            if match is None:
                continue
            match.state = SendState.CONFIRMED
            match.message_id = message.id
            self._pending.pop(match.local_id, None)
            confirmed = True
            logger.debug("send %s confirmed by %s", match.local_id, message.id)
        if confirmed:
            self._changed()

    def _match(self, message: NormalizedMessage, window: int) -> Optional[PendingSend]:
        candidates = self.pending(message.conversation_key)
        for item in candidates:
            if item.message_id is not None and item.message_id == message.id:
                return item
        for item in candidates:
            if item.content == message.text and abs(item.created_at - message.timestamp) <= window:
                return item
        return None

    async def send(
        self,
        key: str,
        plaintext: str,
        protocol: Optional[Protocol] = None,
        attachments: Sequence[Attachment] = (),
    ) -> NormalizedMessage:
        """Publish a message, showing a placeholder until it is confirmed.

        Raises ``ValueError`` for an invalid recipient or empty message and
        ``TransportFailure`` when the relay rejects the publish; in both cases
        no trace of the attempt is left in the overlay.
        """

        if not is_hex_key(key):
            raise ValueError(f"invalid recipient key: {key!r}")
        if not plaintext.strip() and not attachments:
            raise ValueError("message is empty")
        protocol = protocol or self.preferred_protocol(key)
        if protocol is Protocol.SEALED and not self._config.sealed_enabled:
            raise ValueError("sealed messages are disabled")

        pending = PendingSend(
            local_id=f"local-{secrets.token_hex(8)}",
            counterparty_key=key,
            content=prepare_content(plaintext, attachments),
            protocol=protocol,
            created_at=int(self._clock()),
            attachments=tuple(attachments),
        )
        self._pending[pending.local_id] = pending
        self._changed()

        pending.state = SendState.SENDING
        self._changed()
        try:
            own_copy = await self._publish(pending)
        except BaseException as exc:
            pending.state = SendState.FAILED
            pending.error = str(exc) or type(exc).__name__
            self._pending.pop(pending.local_id, None)
            self._changed()
            logger.warning("send %s to %s failed: %s", pending.local_id, key, pending.error)
            raise

        await self._aggregator.ingest([own_copy])
        if pending.local_id in self._pending:
            # The own copy was already known, so no insert happened to reconcile.
            pending.state = SendState.CONFIRMED
            self._pending.pop(pending.local_id, None)
            self._changed()
        for message in self._aggregator.messages(key):
            if message.id == pending.message_id:
                return message
        raise TransportFailure(f"published message {pending.message_id} could not be decoded locally")

    async def _publish(self, pending: PendingSend) -> RawEvent:
        if pending.protocol is Protocol.LEGACY:
            event = await build_legacy_dm(
                self._signer,
                pending.counterparty_key,
                pending.content,
                created_at=pending.created_at,
                attachments=pending.attachments,
            )
            pending.message_id = event.id
            await self._transport.publish(event)
            pending.published.append(event.id)
            return event

        bundle = await build_sealed_dm(
            self._signer,
            pending.counterparty_key,
            pending.content,
            created_at=pending.created_at,
            attachments=pending.attachments,
            ephemeral_factory=self._ephemeral_factory,
            jitter_seconds=self._config.wrap_jitter_s,
        )
        pending.message_id = bundle.rumor.id
        recipient_wrap = bundle.wrap_for(pending.counterparty_key)
        own_wrap = bundle.wrap_for(self.local_key)
        assert recipient_wrap is not None and own_wrap is not None
        await self._transport.publish(recipient_wrap)
        pending.published.append(recipient_wrap.id)
        if own_wrap is not recipient_wrap:
            try:
                await self._transport.publish(own_wrap)
                pending.published.append(own_wrap.id)
            except TransportFailure as exc:
                logger.warning("self copy of %s was not published: %s", pending.local_id, exc)
        return own_wrap

    def clear(self) -> None:
        self._pending.clear()
        self._changed()

    def open(self) -> None:
        """Start reconciling placeholders against ingested messages; idempotent."""

        if self._remove_listener is None:
            self._remove_listener = self._aggregator.add_listener(self._reconcile)

    def close(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
