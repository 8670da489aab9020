import json
from datetime import datetime, timezone

import pytest

from criptocracia.exceptions import ParseError
from criptocracia.models import Election, ElectionResult, ElectionStatus
from criptocracia.transport.base import RelayEvent, SubscriptionFilter
from criptocracia.transport.events import (
    EcMessage,
    ElectionAnnouncement,
    MessageKind,
    TallyUpdate,
    TokenResponse,
    VoteReceipt,
    decode_event,
    parse_tally,
)


def _event(kind, content, tags=(), created_at=1000, pubkey="ec"):
    return RelayEvent(id=f"ev-{kind}-{created_at}", kind=kind, content=content,
                      tags=tags, created_at=created_at, pubkey=pubkey)


def test_election_accepts_unix_and_iso_times(make_election):
    unix = Election.from_dict(make_election(start_time=1718000000, end_time=1718003600))
    iso = Election.from_dict(make_election(start_time="2024-06-10T06:13:20Z", end_time="2024-06-10T07:13:20+00:00"))
    assert unix.start_time == iso.start_time
    assert unix.end_time == iso.end_time
    assert unix.start_time.tzinfo is not None


def test_election_unknown_status_falls_back_to_open(make_election):
    assert Election.from_dict(make_election(status="paused")).status is ElectionStatus.OPEN
    assert Election.from_dict(make_election(status="in-progress")).status is ElectionStatus.IN_PROGRESS


def test_election_missing_field(make_election):
    data = make_election()
    del data["candidates"]
    with pytest.raises(ParseError):
        Election.from_dict(data)


def test_election_bad_candidate(make_election):
    with pytest.raises(ParseError):
        Election.from_dict(make_election(candidates=[{"id": "one", "name": "A"}]))


def test_election_bad_timestamp(make_election):
    with pytest.raises(ParseError):
        Election.from_dict(make_election(start_time="yesterday"))


def test_parse_tally_current_format():
    assert parse_tally("[[1, 10], [2, 5]]") == {1: 10, 2: 5}


def test_parse_tally_legacy_shapes():
    assert parse_tally('[{"candidate_id": 1, "vote_count": 3}]') == {1: 3}
    assert parse_tally('{"candidate_id": 2, "vote_count": 7}') == {2: 7}
    assert parse_tally('{"results": {"1": 4, "2": 9}}') == {1: 4, 2: 9}


def test_parse_tally_skips_malformed_entries():
    assert parse_tally('[[1, 10], ["x", 3], [2], [3, -1], {"candidate_id": 4}]') == {1: 10}


def test_parse_tally_all_malformed_is_error():
    with pytest.raises(ParseError):
        parse_tally('[["a", "b"], [null]]')
    with pytest.raises(ParseError):
        parse_tally("not json")
    with pytest.raises(ParseError):
        parse_tally("42")


def test_parse_tally_empty_list():
    assert parse_tally("[]") == {}


def test_decode_election_event(make_election):
    decoded = decode_event(_event(35000, json.dumps(make_election())))
    assert isinstance(decoded, ElectionAnnouncement)
    assert decoded.election.id == "E1"


def test_decode_tally_event_needs_election_tag():
    decoded = decode_event(_event(35001, "[[1, 2]]", tags=(("d", "E1"),)))
    assert isinstance(decoded, TallyUpdate)
    assert decoded.election_id == "E1"
    assert decoded.counts == {1: 2}

    with pytest.raises(ParseError):
        decode_event(_event(35001, "[[1, 2]]"))


def test_decode_direct_messages():
    token = EcMessage("E1", MessageKind.TOKEN, "AQID").to_json()
    decoded = decode_event(_event(1059, token))
    assert isinstance(decoded, TokenResponse)
    assert decoded.blind_signature == b"\x01\x02\x03"
    assert decoded.sender == "ec"

    vote = EcMessage("E1", MessageKind.VOTE, "a:b:c:1").to_json()
    assert isinstance(decode_event(_event(1059, vote)), VoteReceipt)


def test_decode_rejects_bad_messages():
    with pytest.raises(ParseError):
        decode_event(_event(1059, '{"id": "E1", "kind": 9, "payload": ""}'))
    with pytest.raises(ParseError):
        decode_event(_event(1059, '{"id": "E1", "kind": 1}'))
    with pytest.raises(ParseError):
        decode_event(_event(1059, '{"id": "E1", "kind": 1, "payload": "%%%"}'))
    with pytest.raises(ParseError):
        decode_event(_event(1, "hello"))


def test_ec_message_wire_format():
    assert json.loads(EcMessage("E1", MessageKind.TOKEN, "xyz").to_json()) == {"id": "E1", "kind": 1, "payload": "xyz"}


def test_subscription_filter_matching():
    event = _event(35001, "[]", tags=(("d", "E1"),), created_at=500, pubkey="ec")
    assert SubscriptionFilter(kinds=(35001,), tags=(("d", "E1"),)).matches(event)
    assert not SubscriptionFilter(kinds=(35000,)).matches(event)
    assert not SubscriptionFilter(tags=(("d", "E2"),)).matches(event)
    assert not SubscriptionFilter(since=501).matches(event)
    assert not SubscriptionFilter(until=499).matches(event)
    assert not SubscriptionFilter(authors=("someone",)).matches(event)


def test_result_derived_values():
    result = ElectionResult.from_counts("E1", {1: 12, 2: 5, 3: 12})
    assert result.total_votes == 29
    assert result.ranking() == [(1, 12), (3, 12), (2, 5)]
    assert result.winner() == 1
    assert result.percentage(2) == pytest.approx(5 / 29 * 100)
    assert result.percentage(42) == 0.0


def test_result_without_votes_has_no_winner():
    assert ElectionResult.from_counts("E1", {}).winner() is None
    zero = ElectionResult.from_counts("E1", {1: 0, 2: 0})
    assert zero.winner() is None
    assert zero.percentage(1) == 0.0


def test_result_counts_are_copies():
    result = ElectionResult.from_counts("E1", {1: 3})
    result.counts[1] = 99
    assert result.votes_for(1) == 3


def test_result_candidates_with_votes(election):
    result = ElectionResult.from_counts("E1", {2: 8, 1: 3}).with_metadata(election)
    names = [(c.name, c.votes) for c in result.candidates_with_votes()]
    assert names == [("Bob", 8), ("Alice", 3)]
    assert result.status is ElectionStatus.OPEN


def test_result_storage_form():
    result = ElectionResult.from_counts("E1", {1: 3}, last_update=datetime(2025, 1, 1, tzinfo=timezone.utc),
                                        event_created_at=77)
    assert ElectionResult.from_dict(result.to_dict()) == result
    with pytest.raises(ParseError):
        ElectionResult.from_dict({"election_id": "E1"})
