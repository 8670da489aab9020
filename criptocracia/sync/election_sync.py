# criptocracia/sync/election_sync.py

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from criptocracia.config import AppConfig
from criptocracia.exceptions import CriptocraciaError, ParseError, TransportError
from criptocracia.models import Election
from criptocracia.transport.base import RelayEvent, SubscriptionFilter, Transport
from criptocracia.transport.events import ElectionAnnouncement, EventKind, decode_event

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


class ChangeType(Enum):
    ADDED = "added"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    REMOVED = "removed"


@dataclass(frozen=True)
class ElectionChange:
    change: ChangeType
    election: Election
    previous: Optional[Election] = None

    @property
    def status_changed(self) -> bool:
        return self.change is ChangeType.STATUS_CHANGED


class ElectionSyncEngine:
    """Keeps the list of visible elections in step with the relays.

    Two producers feed the same merge: the live subscription and a periodic
    reconciliation fetch that recovers events the push path missed. Merging
    is by election id and replaces the stored record, so applying an event
    twice changes nothing. Elections that ended more than the retention window
    ago are never kept.
    """

    def __init__(self, transport: Transport, config: AppConfig, clock: Callable[[], datetime] = _utcnow):
        self.transport = transport
        self.config = config
        self.clock = clock

        self._elections: Dict[str, Election] = {}
        self._ordered: Tuple[Election, ...] = ()
        self._listeners: List[Callable[[ElectionChange], None]] = []
        self._tasks: List[asyncio.Task] = []
        self._loaded = asyncio.Event()

        self.is_loading = False
        self.error: Optional[str] = None
        self.last_reconciliation: Optional[datetime] = None

    @property
    def elections(self) -> Tuple[Election, ...]:
        """Visible elections, most recent start first."""
        return self._ordered

    def get(self, election_id: str) -> Optional[Election]:
        return self._elections.get(election_id)

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def add_listener(self, callback: Callable[[ElectionChange], None]):
        self._listeners.append(callback)

    def remove_listener(self, callback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self, change: ElectionChange):
        for callback in list(self._listeners):
            try:
                callback(change)
            except Exception as e:
                logger.error("Election listener failed on %s: %s", change.election.id, e)

    # Merge

    def apply_event(self, event: RelayEvent) -> Optional[ElectionChange]:
        try:
            decoded = decode_event(event)
        except ParseError as e:
            logger.warning("Dropping malformed election event %s: %s", event.id[:12], e)
            return None
        if not isinstance(decoded, ElectionAnnouncement):
            logger.debug("Ignoring non-election event kind=%s", event.kind)
            return None
        return self.apply_election(decoded.election)

    def apply_election(self, election: Election) -> Optional[ElectionChange]:
        now = self.clock()
        self.prune(now)
        self._mark_loaded()

        if election.is_stale(now, self.config.retention_window):
            logger.debug("Skipping election %s, ended %s", election.id, election.end_time.isoformat())
            return None

        previous = self._elections.get(election.id)
        if previous == election:
            return None

        self._elections[election.id] = election
        self._resort()

        if previous is None:
            change = ElectionChange(ChangeType.ADDED, election)
            logger.info("Election added: %s (%s) - %s", election.name, election.id, election.status.value)
        elif previous.status != election.status:
            change = ElectionChange(ChangeType.STATUS_CHANGED, election, previous)
            logger.info("Election %s status changed: %s -> %s",
                        election.id, previous.status.value, election.status.value)
        else:
            change = ElectionChange(ChangeType.UPDATED, election, previous)
            logger.info("Election updated: %s (%s)", election.name, election.id)

        self._notify(change)
        return change

    def prune(self, now: Optional[datetime] = None) -> List[ElectionChange]:
        """Drop stored elections that have fallen out of the retention window."""
        now = now or self.clock()
        stale = [e for e in self._elections.values() if e.is_stale(now, self.config.retention_window)]
        if not stale:
            return []
        changes = []
        for election in stale:
            del self._elections[election.id]
            changes.append(ElectionChange(ChangeType.REMOVED, election, election))
        self._resort()
        logger.info("Pruned %d stale election(s)", len(stale))
        for change in changes:
            self._notify(change)
        return changes

    def _resort(self):
        self._ordered = tuple(sorted(
            self._elections.values(),
            key=lambda e: (-e.start_time.timestamp(), e.id),
        ))

    def _mark_loaded(self):
        if self.is_loading:
            self.is_loading = False
        self._loaded.set()

    # Lifecycle

    def _filter(self) -> SubscriptionFilter:
        since = self.clock() - self.config.election_lookback
        return SubscriptionFilter(
            kinds=(EventKind.ELECTION,),
            since=int(since.timestamp()),
            authors=(self.config.ec_public_key,),
        )

    async def start(self):
        """Connect, subscribe and start the grace and reconciliation timers.

        Raises ConfigurationError for an unusable config and TransportError when
        the relays cannot be reached; in the latter case the transport is
        disconnected so the caller can simply call start() again.
        """
        if self.is_running:
            return
        self.config.validate()
        self.is_loading = True
        self.error = None
        self._loaded.clear()

        try:
            await self.transport.connect(self.config.relays)
        except TransportError as e:
            self.error = f"Failed to load elections: {e}"
            self.is_loading = False
            self._loaded.set()
            logger.error(self.error)
            await self.transport.disconnect()
            raise

        self._tasks = [
            asyncio.ensure_future(self._push_loop()),
            asyncio.ensure_future(self._grace_timer()),
            asyncio.ensure_future(self._reconcile_loop()),
        ]
        logger.info("Election sync started on %d relay(s)", len(self.config.relays))

    async def stop(self):
        """Cancel all tasks. Elections already applied stay visible."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self.is_loading:
            self.is_loading = False
            self._loaded.set()
        logger.info("Election sync stopped")

    async def refresh(self):
        """Drop everything and load from scratch."""
        await self.stop()
        self._elections.clear()
        self._ordered = ()
        await self.start()

    async def wait_loaded(self, timeout: Optional[float] = None):
        await asyncio.wait_for(self._loaded.wait(), timeout)

    async def _push_loop(self):
        stream = self.transport.subscribe(self._filter())
        try:
            async for event in stream:
                try:
                    self.apply_event(event)
                except CriptocraciaError as e:
                    logger.warning("Dropping election event %s: %s", event.id[:12], e)
        except TransportError as e:
            self.error = f"Election subscription failed: {e}"
            logger.error(self.error)
            self._mark_loaded()
        finally:
            await stream.aclose()
        if self.is_loading:
            self._mark_loaded()

    async def _grace_timer(self):
        await asyncio.sleep(self.config.initial_load_grace.total_seconds())
        if self.is_loading and not self._elections:
            logger.info("No election events after %ss, showing empty list",
                        self.config.initial_load_grace.total_seconds())
        self._mark_loaded()

    async def _reconcile_loop(self):
        interval = self.config.reconciliation_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            await self.reconcile_once()

    async def reconcile_once(self) -> List[ElectionChange]:
        """Re-fetch recent election events and merge them. Never touches is_loading."""
        changes = list(self.prune())
        try:
            events = await self.transport.fetch(self._filter(), self.config.reconciliation_window.total_seconds())
        except TransportError as e:
            logger.warning("Election reconciliation failed: %s", e)
            return changes

        for event in events:
            try:
                decoded = decode_event(event)
            except ParseError as e:
                logger.warning("Dropping malformed election event %s: %s", event.id[:12], e)
                continue
            if isinstance(decoded, ElectionAnnouncement):
                try:
                    change = self._merge_silently(decoded.election)
                except CriptocraciaError as e:
                    logger.warning("Dropping election event %s: %s", event.id[:12], e)
                    continue
                if change is not None:
                    changes.append(change)

        self.last_reconciliation = self.clock()
        if changes:
            logger.info("Reconciliation recovered %d change(s)", len(changes))
        return changes

    def _merge_silently(self, election: Election) -> Optional[ElectionChange]:
        loading, loaded = self.is_loading, self._loaded.is_set()
        change = self.apply_election(election)
        self.is_loading = loading
        if not loaded:
            self._loaded.clear()
        return change
