"""aiohttp websocket binding for the relay wire format (REQ / EVENT / EOSE / CLOSE / OK)."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import aiohttp

from .events import MalformedEvent, RawEvent
from .relay import Filter, RelaySubscription, RelayTransport, TransportFailure

logger = logging.getLogger(__name__)


class WebSocketRelay(RelayTransport):
    """Single-connection relay client.

    Queries are REQs that resolve on EOSE and are closed right after;
    subscriptions stay open until closed. Publishing waits for the relay's
    ``OK`` frame and raises :class:`TransportFailure` when it is negative.
    """

    def __init__(
        self,
        url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        publish_timeout_s: float = 10.0,
        heartbeat: float = 20.0,
    ) -> None:
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._publish_timeout_s = publish_timeout_s
        self._heartbeat = heartbeat
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._queries: Dict[str, Tuple[List[RawEvent], asyncio.Future]] = {}
        self._subscriptions: Dict[str, RelaySubscription] = {}
        self._publishes: Dict[str, asyncio.Future] = {}
        self._background: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.connected:
                return
            if self._session is None:
                self._session = aiohttp.ClientSession()
            try:
                self._ws = await self._session.ws_connect(self.url, heartbeat=self._heartbeat)
            except (aiohttp.ClientError, OSError) as exc:
                raise TransportFailure(f"could not connect to {self.url}: {exc}") from exc
            self._reader = asyncio.create_task(self._read_loop(self._ws))
            logger.info("connected to relay %s", self.url)

    async def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            subscription.close()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _send(self, frame: List[Any]) -> None:
        await self.connect()
        assert self._ws is not None
        try:
            await self._ws.send_str(json.dumps(frame, separators=(",", ":")))
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransportFailure(f"send to {self.url} failed: {exc}") from exc

    async def query(self, filters: Sequence[Filter]) -> List[RawEvent]:
        sub_id = f"q-{secrets.token_hex(6)}"
        done = asyncio.get_running_loop().create_future()
        collected: List[RawEvent] = []
        self._queries[sub_id] = (collected, done)
        try:
            await self._send(["REQ", sub_id, *[dict(flt) for flt in filters]])
            await done
        finally:
            self._queries.pop(sub_id, None)
            if self.connected:
                await self._send_close(sub_id)
        return sorted(collected, key=lambda event: (-event.created_at, event.id))

    async def subscribe(self, filters: Sequence[Filter]) -> RelaySubscription:
        sub_id = f"s-{secrets.token_hex(6)}"

        def on_close(_subscription: RelaySubscription) -> None:
            self._subscriptions.pop(sub_id, None)
            if self.connected:
                task = asyncio.get_running_loop().create_task(self._send_close(sub_id))
                self._background.add(task)
                task.add_done_callback(self._background.discard)

        subscription = RelaySubscription(on_close=on_close)
        self._subscriptions[sub_id] = subscription
        try:
            await self._send(["REQ", sub_id, *[dict(flt) for flt in filters]])
        except TransportFailure:
            self._subscriptions.pop(sub_id, None)
            raise
        return subscription

    async def _send_close(self, sub_id: str) -> None:
        if not self.connected:
            return
        try:
            await self._send(["CLOSE", sub_id])
        except TransportFailure as exc:
            logger.debug("CLOSE for %s not delivered: %s", sub_id, exc)

    async def publish(self, event: RawEvent) -> None:
        accepted = asyncio.get_running_loop().create_future()
        self._publishes[event.id] = accepted
        try:
            await self._send(["EVENT", event.to_dict()])
            ok, message = await asyncio.wait_for(accepted, timeout=self._publish_timeout_s)
        except asyncio.TimeoutError as exc:
            raise TransportFailure(f"relay did not acknowledge {event.id}") from exc
        finally:
            self._publishes.pop(event.id, None)
        if not ok:
            raise TransportFailure(f"relay rejected {event.id}: {message}")

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.debug("ignoring non-JSON frame from %s", self.url)
                        continue
                    if isinstance(frame, list) and frame:
                        self._handle(frame)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        finally:
            self._fail_all(TransportFailure(f"connection to {self.url} closed"))

    def _handle(self, frame: List[Any]) -> None:
        verb = frame[0]
        if verb == "EVENT" and len(frame) >= 3:
            self._handle_event(str(frame[1]), frame[2])
        elif verb == "EOSE" and len(frame) >= 2:
            pending = self._queries.get(str(frame[1]))
            if pending is not None and not pending[1].done():
                pending[1].set_result(None)
        elif verb == "OK" and len(frame) >= 3:
            future = self._publishes.get(str(frame[1]))
            if future is not None and not future.done():
                message = str(frame[3]) if len(frame) > 3 else ""
                future.set_result((bool(frame[2]), message))
        elif verb == "CLOSED" and len(frame) >= 2:
            sub_id = str(frame[1])
            reason = str(frame[2]) if len(frame) > 2 else "closed by relay"
            failure = TransportFailure(f"relay closed {sub_id}: {reason}")
            pending = self._queries.get(sub_id)
            if pending is not None and not pending[1].done():
                pending[1].set_exception(failure)
            subscription = self._subscriptions.pop(sub_id, None)
            if subscription is not None:
                subscription.fail(failure)
        elif verb == "NOTICE":
            logger.info("relay notice from %s: %s", self.url, frame[1] if len(frame) > 1 else "")
        else:
            logger.debug("ignoring relay frame %r", verb)

    def _handle_event(self, sub_id: str, data: Any) -> None:
        try:
            event = RawEvent.from_dict(data)
        except MalformedEvent as exc:
            logger.debug("dropping malformed relay event on %s: %s", sub_id, exc)
            return
        pending = self._queries.get(sub_id)
        if pending is not None:
            pending[0].append(event)
            return
        subscription = self._subscriptions.get(sub_id)
        if subscription is not None:
            subscription.push(event)

    def _fail_all(self, failure: TransportFailure) -> None:
        for _, done in self._queries.values():
            if not done.done():
                done.set_exception(failure)
        for future in self._publishes.values():
            if not future.done():
                future.set_exception(failure)
        for subscription in list(self._subscriptions.values()):
            subscription.fail(failure)
        self._subscriptions.clear()
