"""Relay transport interface, filter matching and an in-memory relay."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .events import RawEvent

Filter = Mapping[str, Any]


class TransportFailure(Exception):
    """A query, subscription or publish could not be completed. Retryable."""


def matches_filter(event: RawEvent, flt: Filter) -> bool:
    ids = flt.get("ids")
    if ids is not None and event.id not in ids:
        return False
    authors = flt.get("authors")
    if authors is not None and event.author_key not in authors:
        return False
    kinds = flt.get("kinds")
    if kinds is not None and event.kind not in kinds:
        return False
    since = flt.get("since")
    if since is not None and event.created_at < since:
        return False
    until = flt.get("until")
    if until is not None and event.created_at > until:
        return False
    for key, wanted in flt.items():
        if len(key) == 2 and key.startswith("#"):
            values = set(event.tag_values(key[1]))
            if not values.intersection(wanted):
                return False
    return True


def apply_filters(events: Iterable[RawEvent], filters: Sequence[Filter]) -> List[RawEvent]:
    """Return the union of per-filter matches, newest first, honouring each ``limit``."""

    pool = sorted(events, key=lambda event: (-event.created_at, event.id))
    selected: Dict[str, RawEvent] = {}
    for flt in filters:
        limit = flt.get("limit")
        taken = 0
        for event in pool:
            if limit is not None and taken >= limit:
                break
            if matches_filter(event, flt):
                selected.setdefault(event.id, event)
                taken += 1
    return sorted(selected.values(), key=lambda event: (-event.created_at, event.id))


_CLOSED = object()


class RelaySubscription:
    """Async iterator of events delivered by a live subscription."""

    def __init__(self, on_close: Optional[Callable[["RelaySubscription"], None]] = None) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    def push(self, event: RawEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def fail(self, exc: BaseException) -> None:
        if not self.closed:
            self._queue.put_nowait(exc)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            self._on_close(self)

    def __aiter__(self) -> "RelaySubscription":
        return self

    async def __anext__(self) -> RawEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class RelayTransport:
    """Capability consumed by the engine to talk to relays."""

    async def query(self, filters: Sequence[Filter]) -> List[RawEvent]:
        raise NotImplementedError

    async def subscribe(self, filters: Sequence[Filter]) -> RelaySubscription:
        raise NotImplementedError

    async def publish(self, event: RawEvent) -> None:
        raise NotImplementedError


class InMemoryRelay(RelayTransport):
    """Stores events and fans them out to matching subscriptions."""

    def __init__(self, events: Iterable[RawEvent] = ()) -> None:
        self._events: Dict[str, RawEvent] = {}
        self._subscriptions: List[tuple[List[Dict[str, Any]], RelaySubscription]] = []
        self.queries: List[List[Dict[str, Any]]] = []
        self.published: List[RawEvent] = []
        for event in events:
            self._events.setdefault(event.id, event)

    def __len__(self) -> int:
        return len(self._events)

    def add(self, *events: RawEvent) -> None:
        for event in events:
            if event.id in self._events:
                continue
            self._events[event.id] = event
            self._broadcast(event)

    def _broadcast(self, event: RawEvent) -> None:
        for filters, subscription in list(self._subscriptions):
            if any(matches_filter(event, flt) for flt in filters):
                subscription.push(event)

    async def query(self, filters: Sequence[Filter]) -> List[RawEvent]:
        copied = [dict(flt) for flt in filters]
        self.queries.append(copied)
        return apply_filters(self._events.values(), copied)

    async def subscribe(self, filters: Sequence[Filter]) -> RelaySubscription:
        copied = [dict(flt) for flt in filters]
        subscription = RelaySubscription(on_close=self._unsubscribe)
        self._subscriptions.append((copied, subscription))
        return subscription

    def _unsubscribe(self, subscription: RelaySubscription) -> None:
        self._subscriptions = [entry for entry in self._subscriptions if entry[1] is not subscription]

    async def publish(self, event: RawEvent) -> None:
        self.published.append(event)
        self.add(event)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)
