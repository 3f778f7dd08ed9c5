"""Historical backfill and conversation discovery.

Two cooperating strategies feed the aggregator:

* :class:`BackfillController` pages an open conversation backwards in time.
* :class:`DiscoveryScanner` probes the trust graph for conversations that
  have not been surfaced yet, then runs a broader, lower-priority scan.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .aggregator import ConversationAggregator
from .classifier import TrustGraph
from .config import EngineConfig
from .events import KIND_GIFT_WRAP, KIND_LEGACY_DM, RawEvent
from .protocol import Protocol
from .relay import Filter, RelayTransport, TransportFailure

logger = logging.getLogger(__name__)

OUTBOUND = "outbound"
INBOUND = "inbound"

PHASE_IDLE = "idle"
PHASE_TRUST_GRAPH = "trust_graph"
PHASE_BROAD_SCAN = "broad_scan"
PHASE_DONE = "done"
PHASE_CANCELLED = "cancelled"


def direction_filter(local_key: str, counterparty_key: str, direction: str, **extra: int) -> Dict[str, object]:
    if direction == OUTBOUND:
        flt: Dict[str, object] = {"kinds": [KIND_LEGACY_DM], "authors": [local_key], "#p": [counterparty_key]}
    else:
        flt = {"kinds": [KIND_LEGACY_DM], "authors": [counterparty_key], "#p": [local_key]}
    flt.update(extra)
    return flt


@dataclass
class _PageState:
    cursor: Optional[int] = None
    exhausted: Dict[str, bool] = field(default_factory=dict)
    has_more: bool = True
    task: Optional[asyncio.Task] = None
    last_error: Optional[str] = None
    pages_loaded: int = 0


class BackfillController:
    """Loads older Protocol A history for one conversation at a time.

    Each direction is queried separately with a one-row lookahead so that a
    final page of exactly ``messages_per_page`` rows ends the history without
    another round trip. Rows newer than the cursor are never ingested, and
    when a direction still has more rows, anything older than its oldest kept
    row is held back so the merged timeline has no hidden gap.
    """

    def __init__(
        self,
        local_key: str,
        transport: RelayTransport,
        aggregator: ConversationAggregator,
        config: EngineConfig,
    ) -> None:
        self.local_key = local_key
        self._transport = transport
        self._aggregator = aggregator
        self._config = config
        self._states: Dict[str, _PageState] = {}

    def _state(self, key: str) -> _PageState:
        state = self._states.get(key)
        if state is None:
            state = _PageState()
            self._states[key] = state
        return state

    def has_more_messages(self, key: str) -> bool:
        state = self._states.get(key)
        return True if state is None else state.has_more

    def loading_older_messages(self, key: str) -> bool:
        state = self._states.get(key)
        return state is not None and state.task is not None and not state.task.done()

    def last_error(self, key: str) -> Optional[str]:
        state = self._states.get(key)
        return None if state is None else state.last_error

    def load_older_messages(self, key: str) -> Optional[asyncio.Task]:
        """Start loading the next page; no-op while one is in flight or history is exhausted."""

        state = self._state(key)
        if state.task is not None and not state.task.done():
            return None
        if not state.has_more:
            return None
        state.task = asyncio.create_task(self._load_page(key, state))
        return state.task

    async def _load_page(self, key: str, state: _PageState) -> None:
        cursor = state.cursor
        if cursor is None:
            # sealed rows say nothing about how far legacy history is loaded
            cursor = self._aggregator.oldest_timestamp(key, Protocol.LEGACY)
        page_size = max(1, self._config.messages_per_page)
        directions = [d for d in (OUTBOUND, INBOUND) if not state.exhausted.get(d)]
        extra = {"limit": page_size + 1}
        if cursor is not None:
            extra["until"] = cursor
            # rows already held at the cursor second come back too; leave room for them
            extra["limit"] += sum(
                1
                for message in self._aggregator.messages(key)
                if message.timestamp == cursor and message.source_protocol is Protocol.LEGACY
            )

        try:
            results = await asyncio.wait_for(
                asyncio.gather(
                    *(
                        self._transport.query([direction_filter(self.local_key, key, d, **extra)])
                        for d in directions
                    )
                ),
                timeout=self._config.query_timeout_s,
            )
        except (TransportFailure, asyncio.TimeoutError) as exc:
            state.last_error = str(exc) or type(exc).__name__
            logger.warning("backfill for %s failed: %s", key, state.last_error)
            return

        pages: Dict[str, Tuple[List[RawEvent], bool]] = {}
        for direction, events in zip(directions, results):
            fresh = [
                event
                for event in events
                if (cursor is None or event.created_at <= cursor)
                and not self._aggregator.has_message(key, event.id)
            ]
            fresh.sort(key=lambda event: (-event.created_at, event.id))
            more = len(fresh) > page_size
            pages[direction] = (fresh[:page_size], more)

        boundaries = [fresh[-1].created_at for fresh, more in pages.values() if more]
        next_cursor: Optional[int] = max(boundaries) if boundaries else None
        kept: List[RawEvent] = []
        for direction, (fresh, more) in pages.items():
            held_back = False
            if next_cursor is not None:
                held_back = any(event.created_at < next_cursor for event in fresh)
                fresh = [event for event in fresh if event.created_at >= next_cursor]
            if not more and not held_back:
                state.exhausted[direction] = True
            kept.extend(fresh)

        if next_cursor is not None:
            if cursor is not None and next_cursor >= cursor:
                logger.warning("backfill for %s stalled at %s; stepping back one second", key, cursor)
                next_cursor = cursor - 1

        await self._aggregator.ingest(kept)
        state.pages_loaded += 1
        state.last_error = None
        if all(state.exhausted.get(d) for d in (OUTBOUND, INBOUND)):
            state.has_more = False
            timestamps = [event.created_at for event in kept]
            if cursor is not None:
                timestamps.append(cursor)
            state.cursor = min(timestamps, default=None)
            logger.debug("backfill for %s reached the start of history", key)
        else:
            state.cursor = next_cursor

    def reset(self, key: Optional[str] = None) -> None:
        targets = [key] if key is not None else list(self._states)
        for target in targets:
            state = self._states.pop(target, None)
            if state is not None and state.task is not None:
                state.task.cancel()


@dataclass(frozen=True)
class ScanProgress:
    processed_count: int = 0
    total_to_process: int = 0
    is_scanning: bool = False
    phase: str = PHASE_IDLE
    found_count: int = 0


ProgressListener = Callable[[ScanProgress], None]
Sleep = Callable[[float], Awaitable[None]]


class DiscoveryScanner:
    """Best-effort, cancellable discovery of conversations not yet surfaced."""

    def __init__(
        self,
        local_key: str,
        transport: RelayTransport,
        aggregator: ConversationAggregator,
        trust_graph: TrustGraph,
        config: EngineConfig,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.local_key = local_key
        self._transport = transport
        self._aggregator = aggregator
        self._trust_graph = trust_graph
        self._config = config
        self._sleep = sleep
        self._progress = ScanProgress()
        self._listeners: List[ProgressListener] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def progress(self) -> ScanProgress:
        return self._progress

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def _update(self, **changes: object) -> None:
        changes.setdefault("found_count", len(self._aggregator.keys()))
        self._progress = replace(self._progress, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._progress)
            except Exception:
                logger.exception("scan progress listener failed")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run(self) -> ScanProgress:
        try:
            await self._scan_trust_graph()
            if self._config.broad_scan_enabled:
                await self._broad_scan()
        except asyncio.CancelledError:
            self._update(is_scanning=False, phase=PHASE_CANCELLED)
            logger.info("conversation discovery cancelled")
            raise
        self._update(
            is_scanning=False,
            phase=PHASE_DONE,
            processed_count=self._progress.total_to_process,
        )
        logger.info("conversation discovery finished: %d conversations", self._progress.found_count)
        return self._progress

    async def _probe(self, person: str) -> List[RawEvent]:
        filters: Sequence[Filter] = [
            direction_filter(self.local_key, person, INBOUND, limit=1),
            direction_filter(self.local_key, person, OUTBOUND, limit=1),
        ]
        try:
            return await asyncio.wait_for(
                self._transport.query(filters), timeout=self._config.discovery_probe_timeout_s
            )
        except (TransportFailure, asyncio.TimeoutError) as exc:
            logger.warning("discovery probe for %s failed: %s", person, str(exc) or type(exc).__name__)
            return []

    async def _scan_trust_graph(self) -> None:
        people = [person for person in self._trust_graph.discovery_order() if person != self.local_key]
        batch_size = max(1, self._config.discovery_batch_size)
        self._update(processed_count=0, total_to_process=len(people), is_scanning=True, phase=PHASE_TRUST_GRAPH)
        logger.info("checking %d followed identities for conversations", len(people))
        for start in range(0, len(people), batch_size):
            batch = people[start : start + batch_size]
            results = await asyncio.gather(*(self._probe(person) for person in batch))
            await self._aggregator.ingest([event for events in results for event in events])
            self._update(processed_count=self._progress.processed_count + len(batch))
            if start + batch_size < len(people):
                await self._sleep(self._config.discovery_batch_delay_s)

    def _broad_streams(self) -> List[Dict[str, object]]:
        streams: List[Dict[str, object]] = [
            {"kinds": [KIND_LEGACY_DM], "#p": [self.local_key]},
            {"kinds": [KIND_LEGACY_DM], "authors": [self.local_key]},
        ]
        if self._config.sealed_enabled:
            streams.append({"kinds": [KIND_GIFT_WRAP], "#p": [self.local_key]})
        return streams

    async def _broad_scan(self) -> None:
        total_limit = self._config.scan_total_limit
        batch_size = max(1, self._config.scan_batch_size)
        self._update(processed_count=0, total_to_process=total_limit, is_scanning=True, phase=PHASE_BROAD_SCAN)
        processed = 0
        for base in self._broad_streams():
            sealed = KIND_GIFT_WRAP in base["kinds"]  # type: ignore[operator]
            timeout = self._config.sealed_query_timeout_s if sealed else self._config.query_timeout_s
            until: Optional[int] = None
            # ids already fetched at the ``until`` second; the next page repeats them
            seen_at_until: Set[str] = set()
            batch_number = 0
            while processed < total_limit:
                limit = min(batch_size, total_limit - processed) + len(seen_at_until)
                flt = dict(base, limit=limit)
                if until is not None:
                    flt["until"] = until
                try:
                    events = await asyncio.wait_for(self._transport.query([flt]), timeout=timeout)
                except (TransportFailure, asyncio.TimeoutError) as exc:
                    logger.warning("broad scan query failed: %s", str(exc) or type(exc).__name__)
                    break
                fresh = [event for event in events if event.id not in seen_at_until]
                if not fresh:
                    break
                await self._aggregator.ingest(fresh)
                batch_number += 1
                processed += len(fresh)
                self._update(processed_count=processed)
                logger.debug("batch %d complete: %d messages", batch_number, len(fresh))
                oldest = min(event.created_at for event in fresh)
                if oldest != until:
                    seen_at_until = set()
                seen_at_until.update(event.id for event in fresh if event.created_at == oldest)
                until = oldest
                if len(events) < limit:
                    break
        self._update(total_to_process=processed)
