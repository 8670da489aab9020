import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from criptocracia.exceptions import TransportError
from criptocracia.models import ElectionStatus
from criptocracia.sync.election_sync import ChangeType, ElectionSyncEngine
from criptocracia.transport.events import EventKind
from criptocracia.transport.memory import InMemoryRelay, RelayHub

from conftest import EC_PUBKEY

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def ec_relay():
    return InMemoryRelay(RelayHub(), public_key=EC_PUBKEY)


def _election_event(relay, data, created_at=None):
    return relay.build_event(EventKind.ELECTION, json.dumps(data), tags=(("d", data["id"]),),
                             created_at=created_at)


def test_same_event_twice_is_idempotent(config, make_election, ec_relay):
    engine = ElectionSyncEngine(ec_relay, config, clock=FakeClock())
    event = _election_event(ec_relay, make_election(start=NOW))

    first = engine.apply_event(event)
    second = engine.apply_event(event)

    assert first.change is ChangeType.ADDED
    assert second is None
    assert [e.id for e in engine.elections] == ["E1"]


def test_newer_event_replaces_fields(config, make_election, ec_relay):
    engine = ElectionSyncEngine(ec_relay, config, clock=FakeClock())
    engine.apply_event(_election_event(ec_relay, make_election(start=NOW)))
    change = engine.apply_event(_election_event(ec_relay, make_election(start=NOW, name="Renamed")))

    assert change.change is ChangeType.UPDATED
    assert len(engine.elections) == 1
    assert engine.get("E1").name == "Renamed"


def test_status_change_detected(config, make_election, ec_relay):
    engine = ElectionSyncEngine(ec_relay, config, clock=FakeClock())
    seen = []
    engine.add_listener(seen.append)

    engine.apply_event(_election_event(ec_relay, make_election(start=NOW, status="open")))
    engine.apply_event(_election_event(ec_relay, make_election(start=NOW, status="in-progress")))

    assert [c.change for c in seen] == [ChangeType.ADDED, ChangeType.STATUS_CHANGED]
    assert seen[1].previous.status is ElectionStatus.OPEN
    assert seen[1].election.status is ElectionStatus.IN_PROGRESS
    assert seen[1].status_changed


def test_stale_election_never_stored(config, make_election, ec_relay):
    engine = ElectionSyncEngine(ec_relay, config, clock=FakeClock())
    stale = make_election("OLD", start=NOW - timedelta(hours=14), end=NOW - timedelta(hours=13))
    recent = make_election("RECENT", start=NOW - timedelta(hours=12), end=NOW - timedelta(hours=11))

    assert engine.apply_event(_election_event(ec_relay, stale)) is None
    engine.apply_event(_election_event(ec_relay, recent))
    assert [e.id for e in engine.elections] == ["RECENT"]


def test_stored_election_pruned_when_it_ages_out(config, make_election, ec_relay):
    clock = FakeClock()
    engine = ElectionSyncEngine(ec_relay, config, clock=clock)
    removed = []
    engine.add_listener(lambda c: removed.append(c.election.id) if c.change is ChangeType.REMOVED else None)

    engine.apply_event(_election_event(ec_relay, make_election("E1", start=NOW, end=NOW + timedelta(hours=1))))
    clock.now = NOW + timedelta(hours=13, minutes=1)
    engine.apply_event(_election_event(ec_relay, make_election("E2", start=clock.now)))

    assert [e.id for e in engine.elections] == ["E2"]
    assert removed == ["E1"]

    # A replayed copy of the aged out election stays out
    engine.apply_event(_election_event(ec_relay, make_election("E1", start=NOW, end=NOW + timedelta(hours=1))))
    assert engine.get("E1") is None


def test_sorted_by_start_time_descending(config, make_election, ec_relay):
    engine = ElectionSyncEngine(ec_relay, config, clock=FakeClock())
    for election_id, offset in (("A", 2), ("B", 5), ("C", 1), ("D", 5)):
        start = NOW - timedelta(hours=offset)
        engine.apply_event(_election_event(ec_relay, make_election(election_id, start=start, end=NOW + timedelta(hours=1))))

    assert [e.id for e in engine.elections] == ["C", "A", "B", "D"]


def test_out_of_order_ids_merge_independently(config, make_election, ec_relay):
    events = [
        _election_event(ec_relay, make_election("E1", start=NOW)),
        _election_event(ec_relay, make_election("E2", start=NOW - timedelta(minutes=5))),
    ]
    forward = ElectionSyncEngine(ec_relay, config, clock=FakeClock())
    backward = ElectionSyncEngine(ec_relay, config, clock=FakeClock())
    for event in events:
        forward.apply_event(event)
    for event in reversed(events):
        backward.apply_event(event)
    assert forward.elections == backward.elections


def test_malformed_event_dropped(config, make_election, ec_relay):
    engine = ElectionSyncEngine(ec_relay, config, clock=FakeClock())
    bad = ec_relay.build_event(EventKind.ELECTION, "{not json")
    missing = ec_relay.build_event(EventKind.ELECTION, json.dumps({"id": "X"}))

    assert engine.apply_event(bad) is None
    assert engine.apply_event(missing) is None
    assert engine.elections == ()


def test_out_of_range_timestamp_dropped(config, make_election, ec_relay):
    engine = ElectionSyncEngine(ec_relay, config, clock=FakeClock())
    bad = make_election("BAD", start_time="0001-01-01T00:00:00+01:00")

    assert engine.apply_event(_election_event(ec_relay, bad)) is None
    assert engine.elections == ()


def test_listener_errors_are_contained(config, make_election, ec_relay):
    engine = ElectionSyncEngine(ec_relay, config, clock=FakeClock())

    def broken(change):
        raise RuntimeError("boom")

    engine.add_listener(broken)
    assert engine.apply_event(_election_event(ec_relay, make_election(start=NOW))) is not None


def test_grace_timer_clears_loading_without_elections(config):
    async def scenario():
        relay = InMemoryRelay(RelayHub(), public_key="aa" * 32)
        engine = ElectionSyncEngine(relay, config)
        await engine.start()
        assert engine.is_loading is True
        await engine.wait_loaded(timeout=1)
        loading = engine.is_loading
        await engine.stop()
        return engine, loading

    engine, loading = asyncio.run(scenario())
    assert loading is False
    assert engine.elections == ()
    assert engine.error is None


def test_push_subscription_delivers_live_events(config, make_election):
    async def scenario():
        hub = RelayHub()
        voter = InMemoryRelay(hub, public_key="aa" * 32)
        ec = InMemoryRelay(hub, public_key=EC_PUBKEY)
        await ec.connect(config.relays)

        engine = ElectionSyncEngine(voter, config)
        await engine.start()
        await ec.publish_event(EventKind.ELECTION, json.dumps(make_election("E1")), tags=(("d", "E1"),))
        for _ in range(50):
            if engine.get("E1"):
                break
            await asyncio.sleep(0.01)
        await engine.stop()
        return engine

    engine = asyncio.run(scenario())
    assert [e.id for e in engine.elections] == ["E1"]
    assert engine.is_loading is False


def test_reconciliation_recovers_missed_event(config, make_election):
    async def scenario():
        hub = RelayHub()
        voter = InMemoryRelay(hub, public_key="aa" * 32)
        ec = InMemoryRelay(hub, public_key=EC_PUBKEY)
        await ec.connect(config.relays)

        engine = ElectionSyncEngine(voter, config)
        await engine.start()
        await engine.wait_loaded(timeout=1)

        # Stored on the relay but the push notification never arrives
        await ec.publish_event(EventKind.ELECTION, json.dumps(make_election("MISSED")),
                               tags=(("d", "MISSED"),), deliver_live=False)
        assert engine.get("MISSED") is None

        for _ in range(100):
            if engine.get("MISSED"):
                break
            await asyncio.sleep(0.01)
        await engine.stop()
        return engine

    engine = asyncio.run(scenario())
    assert engine.get("MISSED") is not None
    assert engine.last_reconciliation is not None


def test_reconciliation_is_silent(config, make_election):
    async def scenario():
        hub = RelayHub()
        voter = InMemoryRelay(hub, public_key="aa" * 32)
        ec = InMemoryRelay(hub, public_key=EC_PUBKEY)
        await voter.connect(config.relays)
        await ec.connect(config.relays)
        await ec.publish_event(EventKind.ELECTION, json.dumps(make_election("E1")), tags=(("d", "E1"),))

        engine = ElectionSyncEngine(voter, config)
        engine.is_loading = True
        changes = await engine.reconcile_once()
        return engine, changes

    engine, changes = asyncio.run(scenario())
    assert [c.election.id for c in changes] == ["E1"]
    assert engine.is_loading is True


def test_reconciliation_ignores_other_authors(config, make_election):
    async def scenario():
        hub = RelayHub()
        voter = InMemoryRelay(hub, public_key="aa" * 32)
        forger = InMemoryRelay(hub, public_key="bb" * 32)
        await voter.connect(config.relays)
        await forger.connect(config.relays)
        await forger.publish_event(EventKind.ELECTION, json.dumps(make_election("FAKE")), tags=(("d", "FAKE"),))

        engine = ElectionSyncEngine(voter, config)
        await engine.reconcile_once()
        return engine

    assert asyncio.run(scenario()).elections == ()


def test_connect_failure_sets_error_and_disconnects(config):
    async def scenario():
        relay = InMemoryRelay(RelayHub(), public_key="aa" * 32)
        relay.fail_connect = True
        engine = ElectionSyncEngine(relay, config)
        with pytest.raises(TransportError):
            await engine.start()
        return engine, relay

    engine, relay = asyncio.run(scenario())
    assert engine.error is not None
    assert engine.is_loading is False
    assert relay.connected is False
    assert engine.is_running is False


def test_stop_keeps_applied_state(config, make_election):
    async def scenario():
        hub = RelayHub()
        voter = InMemoryRelay(hub, public_key="aa" * 32)
        ec = InMemoryRelay(hub, public_key=EC_PUBKEY)
        await ec.connect(config.relays)
        await ec.publish_event(EventKind.ELECTION, json.dumps(make_election("E1")), tags=(("d", "E1"),))

        engine = ElectionSyncEngine(voter, config)
        await engine.start()
        await engine.wait_loaded(timeout=1)
        await engine.stop()
        running = engine.is_running
        subscribers = hub.subscriber_count
        return engine, running, subscribers

    engine, running, subscribers = asyncio.run(scenario())
    assert running is False
    assert subscribers == 0
    assert engine.get("E1") is not None


def test_push_subscription_survives_bad_event(config, make_election):
    async def scenario():
        hub = RelayHub()
        voter = InMemoryRelay(hub, public_key="aa" * 32)
        ec = InMemoryRelay(hub, public_key=EC_PUBKEY)
        await ec.connect(config.relays)

        engine = ElectionSyncEngine(voter, config)
        await engine.start()
        bad = make_election("BAD", start_time="0001-01-01T00:00:00+01:00")
        await ec.publish_event(EventKind.ELECTION, json.dumps(bad), tags=(("d", "BAD"),))
        await ec.publish_event(EventKind.ELECTION, json.dumps(make_election("GOOD")), tags=(("d", "GOOD"),))
        for _ in range(50):
            if engine.get("GOOD"):
                break
            await asyncio.sleep(0.01)
        push_task = engine._tasks[0]
        alive = not push_task.done()
        await engine.stop()
        return engine, alive

    engine, alive = asyncio.run(scenario())
    assert alive is True
    assert [e.id for e in engine.elections] == ["GOOD"]


def test_reconciliation_survives_bad_event(config, make_election):
    async def scenario():
        hub = RelayHub()
        voter = InMemoryRelay(hub, public_key="aa" * 32)
        ec = InMemoryRelay(hub, public_key=EC_PUBKEY)
        await voter.connect(config.relays)
        await ec.connect(config.relays)
        bad = make_election("BAD", start_time="0001-01-01T00:00:00+01:00")
        await ec.publish_event(EventKind.ELECTION, json.dumps(bad), tags=(("d", "BAD"),), deliver_live=False)
        await ec.publish_event(EventKind.ELECTION, json.dumps(make_election("GOOD")),
                               tags=(("d", "GOOD"),), deliver_live=False)

        engine = ElectionSyncEngine(voter, config)
        changes = await engine.reconcile_once()
        return engine, changes

    engine, changes = asyncio.run(scenario())
    assert [c.election.id for c in changes] == ["GOOD"]
    assert engine.last_reconciliation is not None
