"""Per-counterparty conversation timelines built from decoded events."""

from __future__ import annotations

import asyncio
import bisect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from .decrypt_cache import DecryptionCache
from .events import MalformedEvent, RawEvent, coerce_event
from .models import Conversation, NormalizedMessage
from .protocol import Protocol

logger = logging.getLogger(__name__)

Listener = Callable[[List[NormalizedMessage]], None]


@dataclass
class IngestResult:
    inserted: List[NormalizedMessage] = field(default_factory=list)
    duplicates: int = 0
    malformed: int = 0
    failed: int = 0
    changed_keys: Set[str] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.inserted)


class _Timeline:
    def __init__(self, counterparty_key: str) -> None:
        self.counterparty_key = counterparty_key
        self.messages: List[NormalizedMessage] = []
        self.ids: Set[str] = set()
        self.last_activity = 0
        self.read_marker = 0
        self.protocols: Set[Protocol] = set()

    def insert(self, message: NormalizedMessage, local_key: str) -> bool:
        if message.id in self.ids:
            return False
        bisect.insort(self.messages, message, key=lambda item: item.sort_key)
        self.ids.add(message.id)
        self.protocols.add(message.source_protocol)
        self.last_activity = max(self.last_activity, message.timestamp)
        if message.is_outbound(local_key):
            self.read_marker = max(self.read_marker, message.timestamp)
        return True

    def unread_count(self, local_key: str) -> int:
        return sum(
            1
            for message in self.messages
            if not message.is_outbound(local_key) and message.timestamp > self.read_marker
        )

    def view(self, local_key: str) -> Conversation:
        last = self.messages[-1]
        return Conversation(
            counterparty_key=self.counterparty_key,
            messages=tuple(self.messages),
            last_activity=self.last_activity,
            unread_count=self.unread_count(local_key),
            has_protocol_a=Protocol.LEGACY in self.protocols,
            has_protocol_b=Protocol.SEALED in self.protocols,
            last_message_from_user=last.is_outbound(local_key),
        )


class ConversationAggregator:
    """Groups decoded messages by counterparty into ordered, deduplicated timelines.

    ``ingest`` decodes a batch concurrently and then applies every insertion
    in one synchronous step, so a cancelled batch never leaves part of its
    messages behind and re-ingesting a batch is a no-op.

    Not thread-safe: every call must come from the event loop that owns the
    aggregator. Mutation never awaits, which is what serialises updates to a
    conversation.
    """

    def __init__(self, local_key: str, cache: DecryptionCache) -> None:
        self.local_key = local_key
        self._cache = cache
        self._timelines: Dict[str, _Timeline] = {}
        self._orphans: Dict[str, NormalizedMessage] = {}
        self._listeners: List[Listener] = []
        self.version = 0

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return

        return remove

    async def ingest(self, events: Iterable[RawEvent | Mapping[str, Any]]) -> IngestResult:
        result = IngestResult()
        batch: Dict[str, RawEvent] = {}
        for item in events:
            try:
                event = coerce_event(item)
            except MalformedEvent as exc:
                result.malformed += 1
                logger.debug("dropping malformed event: %s", exc)
                continue
            batch.setdefault(event.id, event)

        decoded = await asyncio.gather(*(self._decode(event) for event in batch.values()))
        messages = []
        for message in decoded:
            if message is None:
                result.malformed += 1
            else:
                messages.append(message)

        self._apply(messages, result)
        if result.inserted:
            self.version += 1
            self._notify(result.inserted)
        return result

    async def ingest_one(self, event: RawEvent | Mapping[str, Any]) -> IngestResult:
        return await self.ingest([event])

    async def _decode(self, event: RawEvent) -> Optional[NormalizedMessage]:
        try:
            return await self._cache.get_or_decrypt(event)
        except MalformedEvent as exc:
            logger.debug("dropping malformed event %s: %s", event.id, exc)
            return None
        except Exception:
            logger.exception("unexpected error decoding event %s", event.id)
            return None

    def _apply(self, messages: List[NormalizedMessage], result: IngestResult) -> None:
        for message in messages:
            if message.failed:
                result.failed += 1
            key = message.conversation_key
            if key is None:
                if message.id in self._orphans:
                    result.duplicates += 1
                else:
                    self._orphans[message.id] = message
                continue
            timeline = self._timelines.get(key)
            if timeline is None:
                timeline = _Timeline(key)
            if timeline.insert(message, self.local_key):
                self._timelines[key] = timeline
                result.inserted.append(message)
                result.changed_keys.add(key)
            else:
                result.duplicates += 1

    def _notify(self, inserted: List[NormalizedMessage]) -> None:
        for listener in list(self._listeners):
            try:
                listener(inserted)
            except Exception:
                logger.exception("conversation listener failed")

    def keys(self) -> List[str]:
        return list(self._timelines.keys())

    def conversation(self, key: str) -> Optional[Conversation]:
        timeline = self._timelines.get(key)
        if timeline is None:
            return None
        return timeline.view(self.local_key)

    def conversations(self) -> List[Conversation]:
        views = [view for view in (self.conversation(key) for key in self.keys()) if view is not None]
        views.sort(key=lambda view: view.last_activity, reverse=True)
        return views

    def messages(self, key: str) -> List[NormalizedMessage]:
        view = self.conversation(key)
        return list(view.messages) if view is not None else []

    def has_message(self, key: str, message_id: str) -> bool:
        timeline = self._timelines.get(key)
        return timeline is not None and message_id in timeline.ids

    def oldest_timestamp(self, key: str, protocol: Protocol | None = None) -> Optional[int]:
        for message in self.messages(key):
            if protocol is None or message.source_protocol is protocol:
                return message.timestamp
        return None

    def latest_timestamp(self, protocol: Protocol | None = None) -> Optional[int]:
        latest: Optional[int] = None
        for key in self.keys():
            for message in reversed(self.messages(key)):
                if protocol is None or message.source_protocol is protocol:
                    if latest is None or message.timestamp > latest:
                        latest = message.timestamp
                    break
        return latest

    def mark_read(self, key: str, until: int | None = None) -> None:
        timeline = self._timelines.get(key)
        if timeline is None:
            return
        marker = timeline.last_activity if until is None else until
        if marker > timeline.read_marker:
            timeline.read_marker = marker
            self.version += 1

    def read_markers(self) -> Dict[str, int]:
        return {key: timeline.read_marker for key, timeline in self._timelines.items() if timeline.read_marker}

    def restore_read_markers(self, markers: Mapping[str, int]) -> None:
        for key, marker in markers.items():
            if isinstance(marker, int):
                self.mark_read(key, marker)

    def orphans(self) -> List[NormalizedMessage]:
        return sorted(self._orphans.values(), key=lambda message: message.sort_key)

    def raw_events(self) -> List[RawEvent]:
        seen: Dict[str, RawEvent] = {}
        for key in self.keys():
            for message in self.messages(key):
                if message.raw_event is not None:
                    seen.setdefault(message.raw_event.id, message.raw_event)
        for message in self._orphans.values():
            if message.raw_event is not None:
                seen.setdefault(message.raw_event.id, message.raw_event)
        return list(seen.values())

    def stats(self) -> Dict[str, int]:
        counts = {"conversations": len(self._timelines), "messages": 0, "nip4": 0, "nip17": 0, "failed": 0}
        for key in self.keys():
            for message in self.messages(key):
                counts["messages"] += 1
                counts["nip4" if message.source_protocol is Protocol.LEGACY else "nip17"] += 1
                if message.failed:
                    counts["failed"] += 1
        counts["orphans"] = len(self._orphans)
        return counts

    def clear(self) -> None:
        self._timelines.clear()
        self._orphans.clear()
        self.version += 1
