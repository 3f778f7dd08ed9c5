"""Signed relay events and their canonical form."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Tuple

KIND_LEGACY_DM = 4
KIND_SEAL = 13
KIND_PRIVATE_DM = 14
KIND_GIFT_WRAP = 1059

_HEX64 = re.compile(r"^[0-9a-f]{64}$")

Tags = Tuple[Tuple[str, ...], ...]


class MalformedEvent(ValueError):
    """Raised when an event fails schema or tag validation."""


def is_hex_key(value: Any) -> bool:
    return isinstance(value, str) and bool(_HEX64.match(value))


def canonical_event_bytes(
    *, author_key: str, created_at: int, kind: int, tags: Iterable[Iterable[str]], content: str
) -> bytes:
    body = [0, author_key, int(created_at), int(kind), [list(tag) for tag in tags], content]
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_event_id(canonical: bytes) -> str:
    return hashlib.sha256(canonical).hexdigest()


def _freeze_tags(raw_tags: Any) -> Tags:
    if not isinstance(raw_tags, (list, tuple)):
        raise MalformedEvent("tags must be a list")
    frozen = []
    for tag in raw_tags:
        if not isinstance(tag, (list, tuple)) or not tag:
            raise MalformedEvent("each tag must be a non-empty list")
        if not all(isinstance(item, str) for item in tag):
            raise MalformedEvent("tag entries must be strings")
        frozen.append(tuple(tag))
    return tuple(frozen)


@dataclass(frozen=True)
class RawEvent:
    """An immutable signed network record as observed on a relay."""

    id: str
    author_key: str
    created_at: int
    kind: int
    tags: Tags
    content: str
    signature: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, require_signature: bool = True) -> "RawEvent":
        """Build an event from its relay JSON object.

        The ``id`` is recomputed from the canonical serialisation and must
        match when present. Unsigned records (rumors) may omit ``id`` and
        ``sig`` when ``require_signature`` is false.
        """

        if not isinstance(data, Mapping):
            raise MalformedEvent("event must be a JSON object")
        author_key = data.get("pubkey")
        if not is_hex_key(author_key):
            raise MalformedEvent("pubkey must be 32 bytes of lowercase hex")
        created_at = data.get("created_at")
        if isinstance(created_at, bool) or not isinstance(created_at, int) or created_at < 0:
            raise MalformedEvent("created_at must be a non-negative integer")
        kind = data.get("kind")
        if isinstance(kind, bool) or not isinstance(kind, int) or not (0 <= kind <= 65535):
            raise MalformedEvent("kind must be an integer between 0 and 65535")
        content = data.get("content")
        if not isinstance(content, str):
            raise MalformedEvent("content must be a string")
        tags = _freeze_tags(data.get("tags", []))

        computed = compute_event_id(
            canonical_event_bytes(author_key=author_key, created_at=created_at, kind=kind, tags=tags, content=content)
        )
        event_id = data.get("id")
        if event_id is None and not require_signature:
            event_id = computed
        if not is_hex_key(event_id):
            raise MalformedEvent("id must be 32 bytes of lowercase hex")
        if event_id != computed:
            raise MalformedEvent("id does not match event contents")

        signature = data.get("sig", "")
        if not isinstance(signature, str):
            raise MalformedEvent("sig must be a string")
        if require_signature and not signature:
            raise MalformedEvent("sig is required")

        return cls(
            id=event_id,
            author_key=author_key,
            created_at=created_at,
            kind=kind,
            tags=tags,
            content=content,
            signature=signature,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "pubkey": self.author_key,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
        }
        if self.signature:
            payload["sig"] = self.signature
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    def first_tag(self, name: str) -> Optional[str]:
        for tag in self.tags:
            if tag[0] == name and len(tag) > 1:
                return tag[1]
        return None

    def tag_values(self, name: str) -> List[str]:
        return [tag[1] for tag in self.tags if tag[0] == name and len(tag) > 1]


def unsigned_event(*, author_key: str, created_at: int, kind: int, tags: Iterable[Iterable[str]], content: str) -> RawEvent:
    """Return an unsigned record (a rumor) with its canonical id filled in."""

    frozen = _freeze_tags([list(tag) for tag in tags])
    event_id = compute_event_id(
        canonical_event_bytes(author_key=author_key, created_at=created_at, kind=kind, tags=frozen, content=content)
    )
    return RawEvent(
        id=event_id,
        author_key=author_key,
        created_at=int(created_at),
        kind=int(kind),
        tags=frozen,
        content=content,
    )


def coerce_event(value: RawEvent | Mapping[str, Any]) -> RawEvent:
    if isinstance(value, RawEvent):
        return value
    return RawEvent.from_dict(value)


def parse_event_json(text: str, *, require_signature: bool = True) -> RawEvent:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedEvent("event payload is not valid JSON") from exc
    return RawEvent.from_dict(data, require_signature=require_signature)
