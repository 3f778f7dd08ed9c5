"""Unified direct message conversations over legacy and sealed relay protocols."""

from .aggregator import ConversationAggregator, IngestResult
from .classifier import ConversationClassifier, TrustGraph
from .config import EngineConfig
from .crypto import NaclSigner, Signer
from .discovery import BackfillController, DiscoveryScanner, ScanProgress
from .engine import DirectMessageEngine
from .events import MalformedEvent, RawEvent
from .models import Attachment, Conversation, DecryptionFailure, NormalizedMessage
from .outbox import PendingSend, SendState
from .protocol import Protocol
from .relay import InMemoryRelay, RelayTransport, TransportFailure

__all__ = [
    "Attachment",
    "BackfillController",
    "Conversation",
    "ConversationAggregator",
    "ConversationClassifier",
    "DecryptionFailure",
    "DirectMessageEngine",
    "DiscoveryScanner",
    "EngineConfig",
    "IngestResult",
    "InMemoryRelay",
    "MalformedEvent",
    "NaclSigner",
    "NormalizedMessage",
    "PendingSend",
    "Protocol",
    "RawEvent",
    "RelayTransport",
    "ScanProgress",
    "SendState",
    "Signer",
    "TransportFailure",
    "TrustGraph",
]
