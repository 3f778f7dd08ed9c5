"""The direct message engine: one object wiring every component together."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .aggregator import ConversationAggregator, IngestResult
from .classifier import (
    CATEGORY_KNOWN,
    ConversationClassifier,
    TrustGraph,
    parse_category,
)
from .codec import EphemeralFactory
from .config import EngineConfig
from .crypto import NaclSigner, Signer, verify_event_signature
from .decrypt_cache import DecryptionCache
from .discovery import BackfillController, DiscoveryScanner, ScanProgress
from .events import KIND_GIFT_WRAP, KIND_LEGACY_DM, MalformedEvent, RawEvent, coerce_event
from .models import Attachment, Conversation, ConversationCategories, NormalizedMessage
from .outbox import SendCoordinator
from .protocol import Protocol, parse_protocol
from .relay import Filter, RelaySubscription, RelayTransport, TransportFailure

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

ChangeListener = Callable[[], None]


class DirectMessageEngine:
    """Unified conversations across legacy and sealed direct messages.

    Views returned by :meth:`get_conversations` and :meth:`get_messages` are
    immutable snapshots: confirmed messages from the aggregator with pending
    sends from the outbox merged in.
    """

    def __init__(
        self,
        signer: Signer,
        transport: RelayTransport,
        *,
        trust_graph: Optional[TrustGraph] = None,
        is_followed: Optional[Callable[[str], bool]] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
        ephemeral_factory: EphemeralFactory = NaclSigner.generate,
    ) -> None:
        self.config = config or EngineConfig()
        self.signer = signer
        self.local_key = signer.pubkey
        self.transport = transport
        self.trust_graph = trust_graph or TrustGraph()
        self._clock = clock
        self._listeners: List[ChangeListener] = []

        self.cache = DecryptionCache(signer)
        self.aggregator = ConversationAggregator(self.local_key, self.cache)
        self.classifier = ConversationClassifier(self.local_key, is_followed or self.trust_graph.is_followed)
        self.backfill = BackfillController(self.local_key, transport, self.aggregator, self.config)
        self.scanner = DiscoveryScanner(self.local_key, transport, self.aggregator, self.trust_graph, self.config)
        self.outbox = SendCoordinator(
            signer,
            transport,
            self.aggregator,
            self.config,
            clock=clock,
            ephemeral_factory=ephemeral_factory,
            on_change=self._notify,
        )
        self._remove_aggregator_listener = self.aggregator.add_listener(lambda _inserted: self._notify())

        self._subscription: Optional[RelaySubscription] = None
        self._live_task: Optional[asyncio.Task] = None
        self.rejected_signatures = 0
        self.last_error: Optional[str] = None

    # -- listeners ---------------------------------------------------------

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("engine listener failed")

    # -- lifecycle ---------------------------------------------------------

    async def start(self, *, discover: bool = True) -> None:
        """Load recent history, open the live subscription and start discovery."""

        self.outbox.open()
        await self._initial_load()
        await self._open_live_subscription()
        if discover:
            self.scanner.start()

    def _recent_filters(self) -> List[Dict[str, Any]]:
        limit = self.config.initial_page_size
        filters: List[Dict[str, Any]] = [
            {"kinds": [KIND_LEGACY_DM], "#p": [self.local_key], "limit": limit},
            {"kinds": [KIND_LEGACY_DM], "authors": [self.local_key], "limit": limit},
        ]
        if self.config.sealed_enabled:
            filters.append({"kinds": [KIND_GIFT_WRAP], "#p": [self.local_key], "limit": limit})
        return filters

    async def _initial_load(self) -> None:
        results = await asyncio.gather(
            *(self._query_with_timeout(flt) for flt in self._recent_filters()),
            return_exceptions=True,
        )
        events: List[RawEvent] = []
        failures = []
        for result in results:
            if isinstance(result, BaseException):
                if not isinstance(result, (TransportFailure, asyncio.TimeoutError)):
                    raise result
                failures.append(result)
            else:
                events.extend(result)
        if failures and len(failures) == len(results):
            self.last_error = str(failures[0]) or type(failures[0]).__name__
            raise TransportFailure(f"initial load failed: {self.last_error}")
        for failure in failures:
            logger.warning("partial initial load: %s", str(failure) or type(failure).__name__)
        result = await self.ingest(events)
        logger.info("initial load: %d messages in %d conversations", len(result.inserted), len(self.aggregator.keys()))

    async def _query_with_timeout(self, flt: Filter) -> List[RawEvent]:
        sealed = KIND_GIFT_WRAP in flt.get("kinds", ())
        timeout = self.config.sealed_query_timeout_s if sealed else self.config.query_timeout_s
        return await asyncio.wait_for(self.transport.query([flt]), timeout=timeout)

    def live_filters(self) -> List[Dict[str, Any]]:
        """Filters for new traffic, reaching back a little past what is already loaded."""

        now = int(self._clock())
        overlap = self.config.subscription_overlap_s
        latest_legacy = self.aggregator.latest_timestamp(Protocol.LEGACY)
        since_legacy = max(0, (latest_legacy if latest_legacy is not None else now) - overlap)
        filters: List[Dict[str, Any]] = [
            {"kinds": [KIND_LEGACY_DM], "#p": [self.local_key], "since": since_legacy},
            {"kinds": [KIND_LEGACY_DM], "authors": [self.local_key], "since": since_legacy},
        ]
        if self.config.sealed_enabled:
            latest_sealed = self.aggregator.latest_timestamp(Protocol.SEALED)
            base = latest_sealed if latest_sealed is not None else now
            # wrapper timestamps are randomized into the past
            since_sealed = max(0, base - overlap - self.config.wrap_jitter_s)
            filters.append({"kinds": [KIND_GIFT_WRAP], "#p": [self.local_key], "since": since_sealed})
        return filters

    async def _open_live_subscription(self) -> None:
        self._subscription = await self.transport.subscribe(self.live_filters())
        self._live_task = asyncio.create_task(self._run_live(self._subscription))

    async def _run_live(self, subscription: RelaySubscription) -> None:
        try:
            async for event in subscription:
                await self.ingest([event])
        except TransportFailure as exc:
            self.last_error = str(exc)
            logger.warning("live subscription ended: %s", exc)

    @property
    def live(self) -> bool:
        return self._live_task is not None and not self._live_task.done()

    async def close(self) -> None:
        await self.scanner.cancel()
        self.outbox.close()
        self.backfill.reset()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._live_task is not None:
            self._live_task.cancel()
            try:
                await self._live_task
            except asyncio.CancelledError:
                pass
            self._live_task = None

    async def logout(self) -> None:
        """Stop all work and forget everything learned for this identity."""

        await self.close()
        self.outbox.clear()
        self.cache.clear()
        self.aggregator.clear()
        self.classifier.reset()
        logger.info("engine state cleared for %s", self.local_key)

    # -- ingestion ---------------------------------------------------------

    async def ingest(self, events: Iterable[RawEvent | Mapping[str, Any]]) -> IngestResult:
        accepted: List[RawEvent] = []
        malformed = 0
        for item in events:
            try:
                event = coerce_event(item)
            except MalformedEvent as exc:
                malformed += 1
                logger.debug("dropping malformed event: %s", exc)
                continue
            if self.config.verify_signatures and not verify_event_signature(event):
                self.rejected_signatures += 1
                logger.warning("dropping event %s with an invalid signature", event.id)
                continue
            accepted.append(event)
        result = await self.aggregator.ingest(accepted)
        result.malformed += malformed
        return result

    # -- views -------------------------------------------------------------

    def _merge(self, key: str, confirmed: Optional[Conversation]) -> Optional[Conversation]:
        placeholders = self.outbox.placeholders(key)
        if not placeholders:
            return confirmed
        messages = list(confirmed.messages) if confirmed is not None else []
        messages.extend(placeholders)
        messages.sort(key=lambda message: message.sort_key)
        protocols = {message.source_protocol for message in messages}
        return Conversation(
            counterparty_key=key,
            messages=tuple(messages),
            last_activity=max(message.timestamp for message in messages),
            unread_count=confirmed.unread_count if confirmed is not None else 0,
            has_protocol_a=Protocol.LEGACY in protocols,
            has_protocol_b=Protocol.SEALED in protocols,
            last_message_from_user=messages[-1].is_outbound(self.local_key),
        )

    def conversation(self, key: str) -> Optional[Conversation]:
        return self._merge(key, self.aggregator.conversation(key))

    def conversations(self) -> List[Conversation]:
        keys = list(dict.fromkeys(self.aggregator.keys() + self.outbox.pending_keys()))
        views = [view for view in (self.conversation(key) for key in keys) if view is not None]
        views.sort(key=lambda view: view.last_activity, reverse=True)
        return views

    def categories(self) -> ConversationCategories:
        return self.classifier.classify(self.conversations())

    def get_conversations(self, category: str = CATEGORY_KNOWN) -> List[Conversation]:
        categories = self.categories()
        if parse_category(category) == CATEGORY_KNOWN:
            return categories.known
        return categories.new_requests

    def get_messages(self, key: str) -> List[NormalizedMessage]:
        view = self.conversation(key)
        return list(view.messages) if view is not None else []

    # -- actions -----------------------------------------------------------

    async def send_message(
        self,
        key: str,
        plaintext: str,
        protocol: Protocol | str | None = None,
        attachments: Sequence[Attachment] = (),
    ) -> NormalizedMessage:
        if isinstance(protocol, str):
            protocol = parse_protocol(protocol)
        message = await self.outbox.send(key, plaintext, protocol, attachments)
        self.mark_as_responded(key)
        return message

    def mark_as_responded(self, key: str) -> None:
        self.classifier.mark_as_responded(key)
        self._notify()

    def mark_read(self, key: str) -> None:
        self.aggregator.mark_read(key)
        self._notify()

    def load_older_messages(self, key: str) -> Optional[asyncio.Task]:
        return self.backfill.load_older_messages(key)

    def has_more_messages(self, key: str) -> bool:
        return self.backfill.has_more_messages(key)

    def loading_older_messages(self, key: str) -> bool:
        return self.backfill.loading_older_messages(key)

    @property
    def progress(self) -> ScanProgress:
        return self.scanner.progress

    def search(self, query: str, *, limit: int = 50) -> List[NormalizedMessage]:
        """Case-insensitive substring search over readable messages, newest first."""

        needle = query.strip().lower()
        if not needle:
            return []
        hits = [
            message
            for conversation in self.conversations()
            for message in conversation.messages
            if not message.failed and needle in message.text.lower()
        ]
        hits.sort(key=lambda message: message.sort_key, reverse=True)
        return hits[:limit]

    def debug_info(self) -> Dict[str, Any]:
        stats = self.aggregator.stats()
        categories = self.categories()
        progress = self.scanner.progress
        return {
            "local_key": self.local_key,
            **stats,
            "known": len(categories.known),
            "new_requests": len(categories.new_requests),
            "pending_sends": len(self.outbox.pending()),
            "cache_size": len(self.cache),
            "cache_hits": self.cache.hits,
            "cache_misses": self.cache.misses,
            "rejected_signatures": self.rejected_signatures,
            "manually_marked_known": len(self.classifier.manually_marked_known),
            "live": self.live,
            "scan_phase": progress.phase,
            "scan_processed": progress.processed_count,
            "last_error": self.last_error,
        }

    # -- snapshots ---------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Serializable state: still-encrypted events plus local bookkeeping."""

        events = sorted(self.aggregator.raw_events(), key=lambda event: (event.created_at, event.id))
        return {
            "version": SNAPSHOT_VERSION,
            "local_key": self.local_key,
            "events": [event.to_dict() for event in events],
            "read_markers": self.aggregator.read_markers(),
            "marked_known": sorted(self.classifier.manually_marked_known),
        }

    async def restore(self, snapshot: Mapping[str, Any]) -> IngestResult:
        if snapshot.get("version") != SNAPSHOT_VERSION:
            raise ValueError(f"unsupported snapshot version: {snapshot.get('version')!r}")
        if snapshot.get("local_key") != self.local_key:
            raise ValueError("snapshot belongs to a different identity")
        for key in snapshot.get("marked_known", []):
            self.classifier.mark_as_responded(key)
        result = await self.ingest(snapshot.get("events", []))
        markers = snapshot.get("read_markers", {})
        if isinstance(markers, Mapping):
            self.aggregator.restore_read_markers(markers)
        self._notify()
        return result
