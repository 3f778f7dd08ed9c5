from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict

from .codec import decode_event
from .crypto import Signer
from .events import MalformedEvent, RawEvent
from .models import NormalizedMessage

logger = logging.getLogger(__name__)

Decoder = Callable[[RawEvent, Signer], Awaitable[NormalizedMessage]]


class DecryptionCache:
    """Memoizes decoded messages by event id with single-flight decoding.

    Event content is immutable, so a result (including a failure placeholder)
    stays valid for the whole session. Concurrent callers for the same id
    share one decode task; cancelling a caller never cancels the shared work.
    """

    def __init__(self, signer: Signer, *, decoder: Decoder = decode_event) -> None:
        self._signer = signer
        self._decoder = decoder
        self._results: Dict[str, NormalizedMessage] = {}
        self._malformed: Dict[str, MalformedEvent] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._results)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._results

    def peek(self, event_id: str) -> NormalizedMessage | None:
        return self._results.get(event_id)

    async def get_or_decrypt(self, event: RawEvent) -> NormalizedMessage:
        cached = self._results.get(event.id)
        if cached is not None:
            self.hits += 1
            return cached
        malformed = self._malformed.get(event.id)
        if malformed is not None:
            self.hits += 1
            raise malformed

        task = self._inflight.get(event.id)
        if task is None:
            self.misses += 1
            task = asyncio.ensure_future(self._decode(event))
            self._inflight[event.id] = task
        else:
            self.hits += 1
        return await asyncio.shield(task)

    async def _decode(self, event: RawEvent) -> NormalizedMessage:
        try:
            message = await self._decoder(event, self._signer)
        except MalformedEvent as exc:
            self._malformed[event.id] = exc
            raise
        else:
            self._results[event.id] = message
            return message
        finally:
            if self._inflight.get(event.id) is asyncio.current_task():
                del self._inflight[event.id]

    def clear(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        self._results.clear()
        self._malformed.clear()
        self.hits = 0
        self.misses = 0
        logger.debug("decryption cache cleared")
