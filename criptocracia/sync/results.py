# criptocracia/sync/results.py

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional

from criptocracia.config import AppConfig
from criptocracia.exceptions import IntegrityError, ParseError, TransportError
from criptocracia.models import ElectionResult
from criptocracia.storage.secure_storage import SecureStorage
from criptocracia.transport.base import RelayEvent, SubscriptionFilter, Transport
from criptocracia.transport.events import EventKind, TallyUpdate, decode_event

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "results:"


def _utcnow():
    return datetime.now(timezone.utc)


class ResultsAggregator:
    """Latest vote counts per election.

    The EC publishes full snapshots, so every accepted tally event replaces
    the stored counts for its election instead of being added to them. A
    snapshot older than the one already held (by relay timestamp) is ignored.
    The last snapshot per election is persisted and can be restored without a
    live subscription.
    """

    def __init__(self, transport: Transport, storage: SecureStorage, config: AppConfig,
                 elections=None, clock: Callable[[], datetime] = _utcnow):
        self.transport = transport
        self.storage = storage
        self.config = config
        # Optional ElectionSyncEngine, used to attach status and candidate names
        self.elections = elections
        self.clock = clock

        self._results: Dict[str, ElectionResult] = {}
        self._watchers: Dict[str, asyncio.Task] = {}
        self._subscribers: List[asyncio.Queue] = []
        self.errors: Dict[str, str] = {}

    @property
    def results(self) -> Dict[str, ElectionResult]:
        return dict(self._results)

    def get(self, election_id: str) -> Optional[ElectionResult]:
        return self._results.get(election_id)

    def elections_with_results(self) -> List[str]:
        return sorted(eid for eid, result in self._results.items() if result.votes)

    # Merge

    def apply_event(self, event: RelayEvent) -> Optional[ElectionResult]:
        try:
            decoded = decode_event(event)
        except ParseError as e:
            logger.warning("Dropping malformed tally event %s: %s", event.id[:12], e)
            return None
        if not isinstance(decoded, TallyUpdate):
            logger.debug("Ignoring non-tally event kind=%s", event.kind)
            return None
        return self.apply_tally(decoded)

    def apply_tally(self, update: TallyUpdate) -> Optional[ElectionResult]:
        election_id = update.election_id
        created_at = update.event.created_at
        current = self._results.get(election_id)

        if current is not None:
            if created_at < current.event_created_at:
                logger.debug("Ignoring older tally for %s (%d < %d)",
                             election_id, created_at, current.event_created_at)
                return None
            if current.votes == update.votes and current.event_created_at == created_at:
                return None

        result = ElectionResult(
            election_id=election_id,
            votes=update.votes,
            last_update=self.clock(),
            event_created_at=created_at,
        )
        election = self.elections.get(election_id) if self.elections is not None else None
        if election is not None:
            result = result.with_metadata(election)

        self._results[election_id] = result
        self._persist(result)
        logger.info("Results for %s: %d votes across %d candidates",
                    election_id, result.total_votes, len(result.votes))
        self._publish(election_id)
        return result

    # Persistence

    def _persist(self, result: ElectionResult):
        try:
            self.storage.write(STORAGE_PREFIX + result.election_id, json.dumps(result.to_dict()))
        except OSError as e:
            logger.error("Could not persist results for %s: %s", result.election_id, e)

    def restore(self, election_id: str) -> Optional[ElectionResult]:
        """Load the last persisted snapshot for an election into memory."""
        try:
            raw = self.storage.read(STORAGE_PREFIX + election_id)
        except IntegrityError as e:
            logger.error("Stored results for %s are corrupted: %s", election_id, e)
            return None
        if raw is None:
            return None
        try:
            result = ElectionResult.from_dict(json.loads(raw))
        except (ValueError, ParseError) as e:
            logger.error("Discarding unreadable stored results for %s: %s", election_id, e)
            return None

        current = self._results.get(election_id)
        if current is not None and current.event_created_at >= result.event_created_at:
            return current
        self._results[election_id] = result
        self._publish(election_id)
        return result

    def clear(self, election_id: Optional[str] = None):
        ids = [election_id] if election_id else list(self._results)
        for eid in ids:
            self._results.pop(eid, None)
            self.storage.delete(STORAGE_PREFIX + eid)

    # Subscriptions

    def watch(self, election_id: str):
        """Restore the stored snapshot and follow live tally events for one election."""
        if election_id in self._watchers and not self._watchers[election_id].done():
            return
        self.restore(election_id)
        self._watchers[election_id] = asyncio.ensure_future(self._watch_loop(election_id))

    async def unwatch(self, election_id: str):
        task = self._watchers.pop(election_id, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def stop(self):
        for election_id in list(self._watchers):
            await self.unwatch(election_id)
        logger.info("Results aggregator stopped")

    @property
    def watched(self) -> List[str]:
        return sorted(eid for eid, task in self._watchers.items() if not task.done())

    async def _watch_loop(self, election_id: str):
        subscription = SubscriptionFilter(
            kinds=(EventKind.RESULTS,),
            tags=(("d", election_id),),
            authors=(self.config.ec_public_key,),
        )
        stream = self.transport.subscribe(subscription)
        try:
            async for event in stream:
                self.apply_event(event)
        except TransportError as e:
            self.errors[election_id] = str(e)
            logger.error("Results subscription for %s failed: %s", election_id, e)
        finally:
            await stream.aclose()

    # Notifications

    def _publish(self, election_id: str):
        for queue in list(self._subscribers):
            queue.put_nowait(election_id)

    async def updates(self) -> AsyncIterator[str]:
        """Ids of updated elections: every id already known first, then live updates."""
        queue = asyncio.Queue()
        for election_id in sorted(self._results):
            queue.put_nowait(election_id)
        self._subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)
