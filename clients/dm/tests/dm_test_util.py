import asyncio
from typing import Iterable, List, Optional

from dm_engine.crypto import NaclSigner
from dm_engine.events import KIND_GIFT_WRAP, KIND_LEGACY_DM, KIND_PRIVATE_DM, KIND_SEAL, RawEvent, unsigned_event
from dm_engine.protocol import Protocol
from dm_engine.relay import InMemoryRelay, TransportFailure

BASE_TS = 1_700_000_000


def make_signer(n: int) -> NaclSigner:
    return NaclSigner(bytes([n]) * 32)


ALICE = make_signer(1)
BOB = make_signer(2)
CAROL = make_signer(3)
DAVE = make_signer(4)


def legacy_dm(sender: NaclSigner, recipient_key: str, text: str, created_at: int) -> RawEvent:
    return sender.sign_event_sync(
        kind=KIND_LEGACY_DM,
        tags=[["p", recipient_key]],
        content=sender.encrypt_sync(Protocol.LEGACY, recipient_key, text),
        created_at=created_at,
    )


def sealed_dm(
    sender: NaclSigner,
    recipient_key: str,
    text: str,
    created_at: int,
    *,
    target: Optional[str] = None,
    wrap_created_at: Optional[int] = None,
    rumor_author: Optional[str] = None,
    rumor_kind: int = KIND_PRIVATE_DM,
    ephemeral: Optional[NaclSigner] = None,
) -> RawEvent:
    """Build a wrapper by hand so tests control every timestamp and key."""

    target = target or recipient_key
    rumor = unsigned_event(
        author_key=rumor_author or sender.pubkey,
        created_at=created_at,
        kind=rumor_kind,
        tags=[["p", recipient_key]],
        content=text,
    )
    seal = sender.sign_event_sync(
        kind=KIND_SEAL,
        tags=[],
        content=sender.encrypt_sync(Protocol.SEALED, target, rumor.to_json()),
        created_at=created_at,
    )
    ephemeral = ephemeral or NaclSigner.generate()
    return ephemeral.sign_event_sync(
        kind=KIND_GIFT_WRAP,
        tags=[["p", target]],
        content=ephemeral.encrypt_sync(Protocol.SEALED, target, seal.to_json()),
        created_at=created_at if wrap_created_at is None else wrap_created_at,
    )


def conversation_history(
    sender: NaclSigner, recipient_key: str, count: int, *, start: int = BASE_TS, step: int = 10
) -> List[RawEvent]:
    return [legacy_dm(sender, recipient_key, f"message {i}", start + i * step) for i in range(count)]


class ControlledRelay(InMemoryRelay):
    """In-memory relay whose publishes and queries can be held or failed."""

    def __init__(self, events: Iterable[RawEvent] = ()) -> None:
        super().__init__(events)
        self.fail_publish = False
        self.fail_queries = False
        self.publish_gate: Optional[asyncio.Event] = None
        self.query_gate: Optional[asyncio.Event] = None

    async def publish(self, event: RawEvent) -> None:
        if self.publish_gate is not None:
            await self.publish_gate.wait()
        if self.fail_publish:
            raise TransportFailure("relay rejected the event")
        await super().publish(event)

    async def query(self, filters):
        if self.query_gate is not None:
            await self.query_gate.wait()
        if self.fail_queries:
            self.queries.append([dict(flt) for flt in filters])
            raise TransportFailure("relay unavailable")
        return await super().query(filters)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, *, timeout_s: float = 5.0, interval_s: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval_s)
