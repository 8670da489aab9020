# criptocracia/transport/base.py

# Relay transport contract. The voter core only talks to the relay network
# through this interface; confidentiality of direct messages is the
# implementation's job.

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from criptocracia.models import RelayStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayEvent:
    id: str
    kind: int
    content: str
    tags: Tuple[Tuple[str, ...], ...] = ()
    created_at: int = 0
    pubkey: str = ""

    def tag_value(self, name: str) -> Optional[str]:
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name:
                return tag[1]
        return None

    def has_tag(self, name: str, value: str) -> bool:
        return any(len(tag) >= 2 and tag[0] == name and tag[1] == value for tag in self.tags)


@dataclass(frozen=True)
class SubscriptionFilter:
    kinds: Tuple[int, ...] = ()
    since: Optional[int] = None
    until: Optional[int] = None
    # (tag name, value) pairs that must all be present on the event
    tags: Tuple[Tuple[str, str], ...] = ()
    authors: Tuple[str, ...] = ()
    limit: Optional[int] = None

    def matches(self, event: RelayEvent) -> bool:
        if self.kinds and event.kind not in self.kinds:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        if self.authors and event.pubkey not in self.authors:
            return False
        return all(event.has_tag(name, value) for name, value in self.tags)


class Transport:
    """Relay client used by the session machine and the sync engines."""

    @property
    def public_key(self) -> str:
        raise NotImplementedError

    async def connect(self, endpoints: Sequence[str]):
        raise NotImplementedError

    async def disconnect(self):
        raise NotImplementedError

    def subscribe(self, subscription: SubscriptionFilter) -> AsyncIterator[RelayEvent]:
        """Stored matches first, then live events, until the iterator is closed."""
        raise NotImplementedError

    async def publish(self, recipient_public_key: str, payload: str) -> str:
        """Send a direct message; returns the event id once a relay acknowledged it.

        Raises TransportError when no relay accepted the message.
        """
        raise NotImplementedError

    def relay_status(self) -> List[RelayStatus]:
        raise NotImplementedError

    async def fetch(self, subscription: SubscriptionFilter, timeout: float) -> List[RelayEvent]:
        """Collect whatever a subscription yields within `timeout` seconds."""
        events = []
        stream = self.subscribe(subscription)

        async def collect():
            async for event in stream:
                events.append(event)

        try:
            await asyncio.wait_for(collect(), timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            await stream.aclose()
        logger.debug("Fetched %d events for kinds %s", len(events), subscription.kinds)
        return events
