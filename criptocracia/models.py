# criptocracia/models.py

# Domain records shared by the voting session, the election sync engine and the
# results aggregator. All records are immutable; updates replace them.

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from criptocracia.exceptions import ParseError


class ElectionStatus(Enum):
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    FINISHED = "finished"
    CANCELED = "canceled"

    @classmethod
    def parse(cls, raw) -> "ElectionStatus":
        # Unknown or missing status values are treated as open, like the EC client does
        if isinstance(raw, str):
            try:
                return cls(raw.strip().lower())
            except ValueError:
                pass
        return cls.OPEN


def parse_timestamp(raw, field_name="timestamp") -> datetime:
    """Accept Unix seconds (int/float) or ISO-8601 strings, return an aware UTC datetime."""
    if isinstance(raw, bool):
        raise ParseError(f"{field_name} must be a timestamp, got bool")
    if isinstance(raw, (int, float)):
        try:
            return datetime.fromtimestamp(raw, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ParseError(f"{field_name} out of range: {e}")
    if isinstance(raw, str):
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ParseError(f"Invalid ISO-8601 {field_name}: {raw!r}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        try:
            return parsed.astimezone(timezone.utc)
        except (OverflowError, ValueError) as e:
            raise ParseError(f"{field_name} out of range: {raw!r}") from e
    raise ParseError(f"{field_name} must be int seconds or ISO-8601 string, got {type(raw).__name__}")


def _require(data: dict, key: str):
    if key not in data:
        raise ParseError(f"Missing required field: {key}")
    return data[key]


@dataclass(frozen=True)
class Candidate:
    id: int
    name: str
    votes: Optional[int] = None

    @classmethod
    def from_dict(cls, data) -> "Candidate":
        if not isinstance(data, dict):
            raise ParseError("Candidate must be a JSON object")
        cid = _require(data, "id")
        name = _require(data, "name")
        if isinstance(cid, bool) or not isinstance(cid, int):
            raise ParseError(f"Candidate id must be an integer, got {cid!r}")
        if not isinstance(name, str):
            raise ParseError("Candidate name must be a string")
        votes = data.get("votes")
        if votes is not None and (isinstance(votes, bool) or not isinstance(votes, int)):
            raise ParseError("Candidate votes must be an integer")
        return cls(id=cid, name=name, votes=votes)

    def to_dict(self) -> dict:
        out = {"id": self.id, "name": self.name}
        if self.votes is not None:
            out["votes"] = self.votes
        return out


@dataclass(frozen=True)
class Election:
    id: str
    name: str
    start_time: datetime
    end_time: datetime
    candidates: Tuple[Candidate, ...]
    status: ElectionStatus
    # Base64 DER encoding of the EC's RSA public key for this election
    rsa_pub_key: str

    @classmethod
    def from_dict(cls, data) -> "Election":
        if not isinstance(data, dict):
            raise ParseError("Election payload must be a JSON object")
        election_id = _require(data, "id")
        name = _require(data, "name")
        if not isinstance(election_id, str) or not election_id:
            raise ParseError("Election id must be a non-empty string")
        if not isinstance(name, str):
            raise ParseError("Election name must be a string")
        raw_candidates = _require(data, "candidates")
        if not isinstance(raw_candidates, list):
            raise ParseError("Election candidates must be a list")
        rsa_pub_key = _require(data, "rsa_pub_key")
        if not isinstance(rsa_pub_key, str):
            raise ParseError("rsa_pub_key must be a base64 string")

        return cls(
            id=election_id,
            name=name,
            start_time=parse_timestamp(_require(data, "start_time"), "start_time"),
            end_time=parse_timestamp(_require(data, "end_time"), "end_time"),
            candidates=tuple(Candidate.from_dict(c) for c in raw_candidates),
            status=ElectionStatus.parse(data.get("status")),
            rsa_pub_key=rsa_pub_key,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "start_time": int(self.start_time.timestamp()),
            "end_time": int(self.end_time.timestamp()),
            "candidates": [c.to_dict() for c in self.candidates],
            "status": self.status.value,
            "rsa_pub_key": self.rsa_pub_key,
        }

    def candidate(self, candidate_id: int) -> Optional[Candidate]:
        for c in self.candidates:
            if c.id == candidate_id:
                return c
        return None

    @property
    def accepts_votes(self) -> bool:
        return self.status in (ElectionStatus.OPEN, ElectionStatus.IN_PROGRESS)

    def is_stale(self, now: datetime, retention: timedelta) -> bool:
        return self.end_time < now - retention


@dataclass(frozen=True)
class ElectionResult:
    """Latest tally snapshot for one election.

    `votes` holds (candidate_id, count) pairs ordered by candidate id; use
    `counts` for a mapping copy. A new tally event replaces the whole record.
    """
    election_id: str
    votes: Tuple[Tuple[int, int], ...]
    last_update: datetime
    status: Optional[ElectionStatus] = None
    candidates: Tuple[Candidate, ...] = ()
    # created_at of the relay event this snapshot came from
    event_created_at: int = 0

    @classmethod
    def from_counts(cls, election_id, counts: Dict[int, int], last_update=None, **kwargs) -> "ElectionResult":
        return cls(
            election_id=election_id,
            votes=tuple(sorted(counts.items())),
            last_update=last_update or datetime.now(timezone.utc),
            **kwargs
        )

    @property
    def counts(self) -> Dict[int, int]:
        return dict(self.votes)

    @property
    def total_votes(self) -> int:
        return sum(count for _, count in self.votes)

    @property
    def has_votes(self) -> bool:
        return self.total_votes > 0

    def votes_for(self, candidate_id: int) -> int:
        return self.counts.get(candidate_id, 0)

    def ranking(self) -> List[Tuple[int, int]]:
        """Candidates by votes descending; ties broken by candidate id ascending."""
        return sorted(self.votes, key=lambda pair: (-pair[1], pair[0]))

    def winner(self) -> Optional[int]:
        ranking = self.ranking()
        if not ranking or ranking[0][1] == 0:
            return None
        return ranking[0][0]

    def percentage(self, candidate_id: int) -> float:
        total = self.total_votes
        if total == 0:
            return 0.0
        return self.votes_for(candidate_id) / total * 100

    def percentages(self) -> Dict[int, float]:
        return {cid: self.percentage(cid) for cid, _ in self.votes}

    def candidates_with_votes(self) -> List[Candidate]:
        """Known candidates annotated with their counts, in ranking order."""
        counts = self.counts
        annotated = [replace(c, votes=counts.get(c.id, 0)) for c in self.candidates]
        annotated.sort(key=lambda c: (-c.votes, c.id))
        return annotated

    def with_metadata(self, election: Election) -> "ElectionResult":
        return replace(self, status=election.status, candidates=election.candidates)

    def to_dict(self) -> dict:
        return {
            "election_id": self.election_id,
            "votes": [[cid, count] for cid, count in self.votes],
            "last_update": self.last_update.isoformat(),
            "status": self.status.value if self.status else None,
            "candidates": [c.to_dict() for c in self.candidates],
            "event_created_at": self.event_created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ElectionResult":
        if not isinstance(data, dict):
            raise ParseError("Stored election result must be a JSON object")
        try:
            status = data.get("status")
            return cls(
                election_id=data["election_id"],
                votes=tuple((int(cid), int(count)) for cid, count in data["votes"]),
                last_update=parse_timestamp(data["last_update"], "last_update"),
                status=ElectionStatus(status) if status else None,
                candidates=tuple(Candidate.from_dict(c) for c in data.get("candidates", [])),
                event_created_at=int(data.get("event_created_at", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(f"Invalid stored election result: {e}") from e


@dataclass(frozen=True)
class RelayStatus:
    url: str
    is_connected: bool
    last_seen: Optional[datetime] = None
    error: Optional[str] = None
    latency_ms: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "is_connected": self.is_connected,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "error": self.error,
            "latency_ms": self.latency_ms,
        }
