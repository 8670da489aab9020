# criptocracia/transport/events.py
"""Inbound event decoding.

Raw relay events are turned into one of four variants right at the transport
boundary so the engines dispatch on type instead of integer kinds:

- ElectionAnnouncement: kind 35000, an election definition.
- TallyUpdate: kind 35001, a full vote count snapshot for the election named
  by the `d` tag.
- TokenResponse: a direct message carrying an EC message of kind 1, the blind
  signature for a token request.
- VoteReceipt: a direct message carrying an EC message of kind 2.

Everything malformed raises ParseError.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Tuple, Union

from criptocracia.exceptions import ParseError
from criptocracia.models import Election
from criptocracia.transport.base import RelayEvent

logger = logging.getLogger(__name__)


class EventKind(IntEnum):
    GIFT_WRAP = 1059
    ELECTION = 35000
    RESULTS = 35001


class MessageKind(IntEnum):
    TOKEN = 1
    VOTE = 2


@dataclass(frozen=True)
class EcMessage:
    """The JSON body exchanged with the EC inside direct messages."""
    election_id: str
    kind: MessageKind
    payload: str

    def to_json(self) -> str:
        return json.dumps({"id": self.election_id, "kind": int(self.kind), "payload": self.payload})

    @classmethod
    def from_json(cls, text: str) -> "EcMessage":
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            raise ParseError(f"Invalid JSON format for EC message: {e}")
        if not isinstance(data, dict):
            raise ParseError("EC message must be a JSON object")
        for key in ("id", "kind", "payload"):
            if key not in data:
                raise ParseError(f"Missing required field: {key}")
        if not isinstance(data["id"], str):
            raise ParseError('Field "id" must be a string')
        if isinstance(data["kind"], bool) or not isinstance(data["kind"], int):
            raise ParseError('Field "kind" must be an integer')
        if not isinstance(data["payload"], str):
            raise ParseError('Field "payload" must be a string')
        try:
            kind = MessageKind(data["kind"])
        except ValueError:
            raise ParseError(f"Unknown EC message kind: {data['kind']}")
        return cls(election_id=data["id"], kind=kind, payload=data["payload"])


@dataclass(frozen=True)
class ElectionAnnouncement:
    event: RelayEvent
    election: Election


@dataclass(frozen=True)
class TallyUpdate:
    event: RelayEvent
    election_id: str
    # (candidate_id, votes) pairs
    votes: Tuple[Tuple[int, int], ...]

    @property
    def counts(self) -> Dict[int, int]:
        return dict(self.votes)


@dataclass(frozen=True)
class TokenResponse:
    event: RelayEvent
    election_id: str
    blind_signature: bytes
    sender: str


@dataclass(frozen=True)
class VoteReceipt:
    event: RelayEvent
    election_id: str
    payload: str
    sender: str


InboundEvent = Union[ElectionAnnouncement, TallyUpdate, TokenResponse, VoteReceipt]


def _as_int(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _tally_entry(entry):
    """Return (candidate_id, votes) or None for a malformed entry."""
    if isinstance(entry, (list, tuple)) and len(entry) >= 2:
        cid, votes = _as_int(entry[0]), _as_int(entry[1])
    elif isinstance(entry, dict) and "candidate_id" in entry and "vote_count" in entry:
        cid, votes = _as_int(entry["candidate_id"]), _as_int(entry["vote_count"])
    else:
        return None
    if cid is None or votes is None or votes < 0:
        return None
    return cid, votes


def parse_tally(content: str) -> Dict[int, int]:
    """Parse a tally payload into a candidate -> votes map.

    Accepted shapes:
        [[1, 10], [2, 5]]                                   current format
        [{"candidate_id": 1, "vote_count": 10}, ...]        legacy list
        {"candidate_id": 1, "vote_count": 10}               legacy single entry
        {"results": {"1": 10, "2": 5}}                      legacy map

    Malformed entries are skipped one by one. A payload with entries where
    none is usable raises ParseError; an empty list is a valid empty tally.
    """
    try:
        data = json.loads(content)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Tally content is not JSON: {e}")

    if isinstance(data, dict):
        if isinstance(data.get("results"), dict):
            entries = list(data["results"].items())
        else:
            entries = [data]
    elif isinstance(data, list):
        entries = data
    else:
        raise ParseError(f"Unsupported tally shape: {type(data).__name__}")

    counts = {}
    skipped = 0
    for entry in entries:
        parsed = _tally_entry(entry)
        if parsed is None:
            skipped += 1
            continue
        counts[parsed[0]] = parsed[1]

    if entries and not counts:
        raise ParseError("No valid tally entries")
    if skipped:
        logger.warning("Skipped %d malformed tally entries", skipped)
    return counts


def b64decode_field(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ParseError(f"Field {name} is not valid base64: {e}")


def decode_event(event: RelayEvent) -> InboundEvent:
    if event.kind == EventKind.ELECTION:
        try:
            data = json.loads(event.content)
        except (TypeError, ValueError) as e:
            raise ParseError(f"Election event {event.id} is not JSON: {e}")
        return ElectionAnnouncement(event=event, election=Election.from_dict(data))

    if event.kind == EventKind.RESULTS:
        election_id = event.tag_value("d")
        if not election_id:
            raise ParseError(f"Tally event {event.id} has no election tag")
        counts = parse_tally(event.content)
        return TallyUpdate(event=event, election_id=election_id, votes=tuple(sorted(counts.items())))

    if event.kind == EventKind.GIFT_WRAP:
        message = EcMessage.from_json(event.content)
        if message.kind == MessageKind.TOKEN:
            return TokenResponse(
                event=event,
                election_id=message.election_id,
                blind_signature=b64decode_field(message.payload, "payload"),
                sender=event.pubkey,
            )
        return VoteReceipt(
            event=event,
            election_id=message.election_id,
            payload=message.payload,
            sender=event.pubkey,
        )

    raise ParseError(f"Unsupported event kind {event.kind}")
