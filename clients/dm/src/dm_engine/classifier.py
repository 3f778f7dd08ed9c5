"""Known / new request partition of conversations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Iterable, List, Set

from .models import Conversation, ConversationCategories

logger = logging.getLogger(__name__)

CATEGORY_KNOWN = "known"
CATEGORY_NEW_REQUESTS = "newRequests"
_CATEGORY_ALIASES = {
    "known": CATEGORY_KNOWN,
    "newrequests": CATEGORY_NEW_REQUESTS,
    "new_requests": CATEGORY_NEW_REQUESTS,
    "requests": CATEGORY_NEW_REQUESTS,
}


class ClassificationAmbiguity(Exception):
    """Trust-graph lookup could not answer; the conversation stays a request."""


def parse_category(value: str) -> str:
    try:
        return _CATEGORY_ALIASES[value.strip().lower()]
    except (KeyError, AttributeError):
        raise ValueError(f"unknown conversation category: {value!r}") from None


@dataclass(frozen=True)
class TrustGraph:
    """The local identity's follow list, with mutual follows called out."""

    follows: FrozenSet[str] = field(default_factory=frozenset)
    mutuals: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, follows: Iterable[str] = (), mutuals: Iterable[str] = ()) -> "TrustGraph":
        mutual_set = frozenset(mutuals)
        return cls(follows=frozenset(follows) | mutual_set, mutuals=mutual_set)

    def is_followed(self, pubkey: str) -> bool:
        return pubkey in self.follows

    def discovery_order(self) -> List[str]:
        """Mutual follows first (most likely to have DMs), then everyone else followed."""

        first = sorted(self.mutuals)
        rest = sorted(self.follows - self.mutuals)
        return first + rest


class ConversationClassifier:
    def __init__(self, local_key: str, is_followed: Callable[[str], bool]) -> None:
        self.local_key = local_key
        self._is_followed = is_followed
        self._manually_marked_known: Set[str] = set()

    @property
    def manually_marked_known(self) -> FrozenSet[str]:
        return frozenset(self._manually_marked_known)

    def mark_as_responded(self, counterparty_key: str) -> None:
        if counterparty_key not in self._manually_marked_known:
            self._manually_marked_known.add(counterparty_key)
            logger.debug("conversation %s marked as known", counterparty_key)

    def _followed(self, counterparty_key: str) -> bool:
        try:
            return bool(self._is_followed(counterparty_key))
        except Exception as exc:
            ambiguity = ClassificationAmbiguity(f"trust lookup failed for {counterparty_key}: {exc}")
            logger.warning("%s; treating as a request", ambiguity)
            return False

    def is_known(self, conversation: Conversation) -> bool:
        key = conversation.counterparty_key
        if key in self._manually_marked_known:
            return True
        if any(message.is_outbound(self.local_key) and not message.is_optimistic for message in conversation.messages):
            return True
        return self._followed(key)

    def classify(self, conversations: Iterable[Conversation]) -> ConversationCategories:
        categories = ConversationCategories()
        for conversation in conversations:
            if self.is_known(conversation):
                categories.known.append(conversation)
            else:
                categories.new_requests.append(conversation)
        categories.known.sort(key=lambda item: item.last_activity, reverse=True)
        categories.new_requests.sort(key=lambda item: item.last_activity, reverse=True)
        return categories

    def reset(self) -> None:
        self._manually_marked_known.clear()
