# criptocracia/transport/__init__.py

from criptocracia.transport.base import RelayEvent, SubscriptionFilter, Transport
from criptocracia.transport.events import (
    EcMessage,
    ElectionAnnouncement,
    EventKind,
    MessageKind,
    TallyUpdate,
    TokenResponse,
    VoteReceipt,
    decode_event,
    parse_tally,
)
from criptocracia.transport.memory import InMemoryRelay, RelayHub

__all__ = [
    "EcMessage",
    "ElectionAnnouncement",
    "EventKind",
    "InMemoryRelay",
    "MessageKind",
    "RelayEvent",
    "RelayHub",
    "SubscriptionFilter",
    "TallyUpdate",
    "TokenResponse",
    "Transport",
    "VoteReceipt",
    "decode_event",
    "parse_tally",
]
