from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from .events import RawEvent, Tags
from .protocol import Protocol


@dataclass(frozen=True)
class DecryptionFailure:
    """Sentinel plaintext for a message that could not be read."""

    reason: str


@dataclass(frozen=True)
class Attachment:
    url: str
    mime_type: str = ""
    size: int = 0
    name: str = ""
    sha256: str = ""
    original_sha256: str = ""

    def imeta_tag(self) -> List[str]:
        tag = ["imeta", f"url {self.url}"]
        if self.mime_type:
            tag.append(f"m {self.mime_type}")
        if self.size:
            tag.append(f"size {self.size}")
        if self.name:
            tag.append(f"alt {self.name}")
        if self.sha256:
            tag.append(f"x {self.sha256}")
        if self.original_sha256:
            tag.append(f"ox {self.original_sha256}")
        return tag

    @classmethod
    def from_imeta(cls, tag: Tuple[str, ...]) -> Optional["Attachment"]:
        fields = {}
        for entry in tag[1:]:
            key, _, value = entry.partition(" ")
            fields.setdefault(key, value)
        url = fields.get("url")
        if not url:
            return None
        try:
            size = int(fields.get("size", "0") or 0)
        except ValueError:
            size = 0
        return cls(
            url=url,
            mime_type=fields.get("m", ""),
            size=size,
            name=fields.get("alt", ""),
            sha256=fields.get("x", ""),
            original_sha256=fields.get("ox", ""),
        )


Plaintext = Union[str, DecryptionFailure]


@dataclass(frozen=True)
class NormalizedMessage:
    """Protocol-agnostic message record.

    ``id`` identifies the message within its conversation (the rumor id for
    sealed messages); ``event_id`` is always the id of the observed
    :class:`RawEvent`. ``conversation_key`` is ``None`` only for sealed
    failures whose sender could not be recovered.
    """

    id: str
    event_id: str
    conversation_key: Optional[str]
    sender_key: Optional[str]
    timestamp: int
    plaintext: Plaintext
    source_protocol: Protocol
    raw_event: Optional[RawEvent] = None
    tags: Tags = ()
    is_optimistic: bool = False
    is_sending: bool = False

    @property
    def failed(self) -> bool:
        return isinstance(self.plaintext, DecryptionFailure)

    @property
    def text(self) -> str:
        return "" if isinstance(self.plaintext, DecryptionFailure) else self.plaintext

    @property
    def sort_key(self) -> Tuple[int, int, str]:
        return (self.timestamp, 1 if self.is_optimistic else 0, self.id)

    @property
    def attachments(self) -> List[Attachment]:
        found = []
        for tag in self.tags:
            if tag and tag[0] == "imeta":
                attachment = Attachment.from_imeta(tag)
                if attachment is not None:
                    found.append(attachment)
        return found

    def is_outbound(self, local_key: str) -> bool:
        return self.sender_key == local_key


@dataclass(frozen=True)
class Conversation:
    """Read-only view of one counterparty's timeline."""

    counterparty_key: str
    messages: Tuple[NormalizedMessage, ...]
    last_activity: int
    unread_count: int
    has_protocol_a: bool
    has_protocol_b: bool
    last_message_from_user: bool = False

    @property
    def last_message(self) -> Optional[NormalizedMessage]:
        return self.messages[-1] if self.messages else None

    @property
    def oldest_timestamp(self) -> Optional[int]:
        return self.messages[0].timestamp if self.messages else None

    def recent_messages(self, count: int = 5) -> List[NormalizedMessage]:
        return list(self.messages[-count:])


@dataclass
class ConversationCategories:
    known: List[Conversation] = field(default_factory=list)
    new_requests: List[Conversation] = field(default_factory=list)
