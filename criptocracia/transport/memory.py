# criptocracia/transport/memory.py

# In-process relay. A RelayHub plays the relay network (event store plus live
# fan-out); each InMemoryRelay is one client's connection to it with its own
# public key. Used by the tests and by local EC tooling.

import asyncio
import hashlib
import json
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from criptocracia.exceptions import TransportError
from criptocracia.models import RelayStatus
from criptocracia.transport.base import RelayEvent, SubscriptionFilter, Transport
from criptocracia.transport.events import EventKind

logger = logging.getLogger(__name__)


def compute_event_id(pubkey, created_at, kind, tags, content) -> str:
    serialized = json.dumps([0, pubkey, created_at, kind, [list(t) for t in tags], content],
                            separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(serialized.encode()).hexdigest()


class RelayHub:
    def __init__(self, clock=time.time):
        self.clock = clock
        self.events: List[RelayEvent] = []
        self._ids = set()
        self._subscribers = []

    def store(self, event: RelayEvent, deliver_live=True):
        if event.id in self._ids:
            return
        self._ids.add(event.id)
        self.events.append(event)
        if not deliver_live:
            return
        for subscription, queue in list(self._subscribers):
            if subscription.matches(event):
                queue.put_nowait(event)

    def query(self, subscription: SubscriptionFilter) -> List[RelayEvent]:
        matches = sorted((e for e in self.events if subscription.matches(e)), key=lambda e: e.created_at)
        if subscription.limit is not None:
            matches = matches[-subscription.limit:] if subscription.limit else []
        return matches

    def add_subscriber(self, subscription, queue):
        self._subscribers.append((subscription, queue))

    def remove_subscriber(self, queue):
        self._subscribers = [(s, q) for s, q in self._subscribers if q is not queue]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class InMemoryRelay(Transport):
    def __init__(self, hub: Optional[RelayHub] = None, public_key: str = "00" * 32):
        self.hub = hub if hub is not None else RelayHub()
        self._public_key = public_key
        self.endpoints: List[str] = []
        self.connected = False
        self.last_error: Optional[str] = None
        self.last_seen: Optional[datetime] = None

        # Failure simulation
        self.fail_connect = False
        self.fail_publish = 0

    @property
    def public_key(self):
        return self._public_key

    async def connect(self, endpoints: Sequence[str]):
        if self.fail_connect:
            self.last_error = "connection refused"
            raise TransportError(f"Could not connect to {', '.join(endpoints)}")
        self.endpoints = list(endpoints)
        self.connected = True
        self.last_error = None
        self.last_seen = datetime.now(timezone.utc)
        logger.info("Connected to %d relay(s)", len(self.endpoints))

    async def disconnect(self):
        self.connected = False
        logger.info("Disconnected from relays")

    def _require_connection(self):
        if not self.connected:
            raise TransportError("Not connected to any relay")

    async def subscribe(self, subscription: SubscriptionFilter):
        self._require_connection()
        queue = asyncio.Queue()
        # Register before replaying so nothing published in between is lost
        self.hub.add_subscriber(subscription, queue)
        delivered = set()
        try:
            for event in self.hub.query(subscription):
                delivered.add(event.id)
                yield event
            while True:
                event = await queue.get()
                if event.id in delivered:
                    continue
                delivered.add(event.id)
                self.last_seen = datetime.now(timezone.utc)
                yield event
        finally:
            self.hub.remove_subscriber(queue)

    async def fetch(self, subscription: SubscriptionFilter, timeout: float) -> List[RelayEvent]:
        # Stored events are available immediately, no need to wait out the window
        self._require_connection()
        return self.hub.query(subscription)

    def build_event(self, kind, content, tags=(), created_at=None) -> RelayEvent:
        created_at = int(self.hub.clock()) if created_at is None else int(created_at)
        tags = tuple(tuple(t) for t in tags)
        return RelayEvent(
            id=compute_event_id(self._public_key, created_at, int(kind), tags, content),
            kind=int(kind),
            content=content,
            tags=tags,
            created_at=created_at,
            pubkey=self._public_key,
        )

    async def publish(self, recipient_public_key: str, payload: str) -> str:
        self._require_connection()
        if self.fail_publish > 0:
            self.fail_publish -= 1
            self.last_error = "publish rejected"
            raise TransportError("No relay accepted the message")
        event = self.build_event(EventKind.GIFT_WRAP, payload, tags=(("p", recipient_public_key),))
        self.hub.store(event)
        logger.debug("Published direct message %s", event.id[:12])
        return event.id

    async def publish_event(self, kind, content, tags=(), created_at=None, deliver_live=True) -> RelayEvent:
        """Publish a public event. With deliver_live=False it is only stored, as if
        the push notification had been missed."""
        self._require_connection()
        event = self.build_event(kind, content, tags, created_at)
        self.hub.store(event, deliver_live=deliver_live)
        return event

    def relay_status(self) -> List[RelayStatus]:
        return [
            RelayStatus(
                url=url,
                is_connected=self.connected,
                last_seen=self.last_seen,
                error=self.last_error,
                latency_ms=0 if self.connected else None,
            )
            for url in self.endpoints
        ]
