# criptocracia/voting/session.py
"""Voting session records and their persisted form.

A session is written to secure storage as a versioned JSON object with an exact
key set; anything unknown, missing or mistyped is rejected with
SessionFormatError instead of being defaulted. Binary fields are base64.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from criptocracia.crypto.blind_signature import BlindingResult, BlindSignatureProtocol
from criptocracia.crypto.voter_identity import VoterIdentity
from criptocracia.exceptions import ParseError, SessionFormatError, SignatureVerificationError
from criptocracia.models import Election, parse_timestamp
from criptocracia.transport.events import EcMessage, MessageKind

SESSION_FORMAT_VERSION = 1
SESSION_STORAGE_KEY = "voting_session"

SESSION_FIELDS = frozenset((
    "version", "session_id", "created_at", "step", "election", "candidate_id",
    "voter_pubkey", "nonce", "hashed_nonce", "blinded_message", "blinding_secret",
    "message_randomizer", "blind_signature", "token", "verified_at",
))


class VotingStep(Enum):
    INITIAL = "initial"
    GENERATE_NONCE = "generate_nonce"
    SEND_BLINDED_NONCE = "send_blinded_nonce"
    WAIT_FOR_SIGNATURE = "wait_for_signature"
    CAST_VOTE = "cast_vote"
    COMPLETE = "complete"

    @property
    def index(self) -> int:
        return _STEP_ORDER.index(self)

    def next(self) -> "VotingStep":
        if self is VotingStep.COMPLETE:
            return self
        return _STEP_ORDER[self.index + 1]


_STEP_ORDER = list(VotingStep)

_VERIFIED = object()


class VoteSignature:
    """An unblinded EC signature that has passed local verification.

    Obtain one through `VoteSignature.verify`; direct construction is refused.
    """
    __slots__ = ("token", "message", "verified_at")

    def __init__(self, token: bytes, message: bytes, verified_at: datetime, _marker=None):
        if _marker is not _VERIFIED:
            raise TypeError("VoteSignature can only be created by VoteSignature.verify")
        self.token = token
        self.message = message
        self.verified_at = verified_at

    @classmethod
    def verify(cls, protocol: BlindSignatureProtocol, token: bytes, randomizer: bytes,
               message: bytes, authority_public_key, verified_at: datetime) -> "VoteSignature":
        if not protocol.verify(token, randomizer, message, authority_public_key):
            raise SignatureVerificationError("EC signature does not verify for this session's hashed nonce")
        return cls(token, message, verified_at, _marker=_VERIFIED)

    def __repr__(self):
        return f"VoteSignature(verified_at={self.verified_at.isoformat()})"


@dataclass
class VotingSession:
    session_id: str
    created_at: datetime
    step: VotingStep
    election: Election
    candidate_id: int
    voter_pubkey: str
    identity: VoterIdentity
    blinded_message: bytes
    blinding_secret: Optional[bytes]
    message_randomizer: Optional[bytes]
    blind_signature: Optional[bytes] = None
    # Persisted form of the verified signature; vote_signature is only set after
    # verification in this process.
    token: Optional[bytes] = None
    verified_at: Optional[datetime] = None
    vote_signature: Optional[VoteSignature] = None

    @property
    def blinding(self) -> Optional[BlindingResult]:
        if self.blinding_secret is None or self.message_randomizer is None:
            return None
        return BlindingResult(self.blinded_message, self.blinding_secret, self.message_randomizer)

    def accept_signature(self, vote_signature: VoteSignature):
        self.vote_signature = vote_signature
        self.token = vote_signature.token
        self.verified_at = vote_signature.verified_at

    def clear_secrets(self):
        self.blinding_secret = None
        self.message_randomizer = None


@dataclass(frozen=True)
class CastableVote:
    election_id: str
    candidate_id: int
    hashed_nonce: bytes
    token: bytes
    message_randomizer: bytes
    voter_pubkey: str

    @classmethod
    def from_session(cls, session: VotingSession) -> "CastableVote":
        if session.vote_signature is None:
            raise SignatureVerificationError("Session has no verified signature to vote with")
        if session.message_randomizer is None:
            raise SignatureVerificationError("Session has no message randomizer")
        return cls(
            election_id=session.election.id,
            candidate_id=session.candidate_id,
            hashed_nonce=session.identity.hashed_nonce,
            token=session.vote_signature.token,
            message_randomizer=session.message_randomizer,
            voter_pubkey=session.voter_pubkey,
        )

    def to_payload(self) -> str:
        return ":".join((
            base64.b64encode(self.hashed_nonce).decode(),
            base64.b64encode(self.token).decode(),
            base64.b64encode(self.message_randomizer).decode(),
            str(self.candidate_id),
        ))

    def to_message(self) -> EcMessage:
        return EcMessage(election_id=self.election_id, kind=MessageKind.VOTE, payload=self.to_payload())

    @classmethod
    def from_payload(cls, election_id: str, payload: str, voter_pubkey: str = "") -> "CastableVote":
        """EC side: split a vote payload back into its parts."""
        parts = payload.split(":")
        if len(parts) != 4:
            raise ParseError(f"Vote payload must have 4 fields, got {len(parts)}")
        try:
            hashed_nonce, token, randomizer = (base64.b64decode(p, validate=True) for p in parts[:3])
            candidate_id = int(parts[3])
        except (binascii.Error, ValueError) as e:
            raise ParseError(f"Malformed vote payload: {e}")
        return cls(election_id, candidate_id, hashed_nonce, token, randomizer, voter_pubkey)


def _b64(value: Optional[bytes]) -> Optional[str]:
    return None if value is None else base64.b64encode(value).decode()


def encode_session(session: VotingSession) -> str:
    record = {
        "version": SESSION_FORMAT_VERSION,
        "session_id": session.session_id,
        "created_at": session.created_at.isoformat(),
        "step": session.step.value,
        "election": session.election.to_dict(),
        "candidate_id": session.candidate_id,
        "voter_pubkey": session.voter_pubkey,
        "nonce": _b64(session.identity.nonce),
        "hashed_nonce": _b64(session.identity.hashed_nonce),
        "blinded_message": _b64(session.blinded_message),
        "blinding_secret": _b64(session.blinding_secret),
        "message_randomizer": _b64(session.message_randomizer),
        "blind_signature": _b64(session.blind_signature),
        "token": _b64(session.token),
        "verified_at": session.verified_at.isoformat() if session.verified_at else None,
    }
    return json.dumps(record, sort_keys=True)


def _bytes_field(record, name, nullable=False) -> Optional[bytes]:
    value = record[name]
    if value is None:
        if nullable:
            return None
        raise SessionFormatError(f"Field {name} must not be null")
    if not isinstance(value, str):
        raise SessionFormatError(f"Field {name} must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise SessionFormatError(f"Field {name} is not valid base64")


def _str_field(record, name) -> str:
    value = record[name]
    if not isinstance(value, str) or not value:
        raise SessionFormatError(f"Field {name} must be a non-empty string")
    return value


def decode_session(text: str) -> VotingSession:
    """Parse a persisted session.

    Raises SessionFormatError for structural problems and IntegrityError when
    the stored nonce does not hash to the stored hashed nonce.
    """
    try:
        record = json.loads(text)
    except (TypeError, ValueError) as e:
        raise SessionFormatError(f"Session record is not JSON: {e}")
    if not isinstance(record, dict):
        raise SessionFormatError("Session record must be a JSON object")

    keys = set(record)
    unknown = keys - SESSION_FIELDS
    missing = SESSION_FIELDS - keys
    if unknown:
        raise SessionFormatError(f"Unknown session fields: {', '.join(sorted(unknown))}")
    if missing:
        raise SessionFormatError(f"Missing session fields: {', '.join(sorted(missing))}")

    if record["version"] != SESSION_FORMAT_VERSION:
        raise SessionFormatError(f"Unsupported session version: {record['version']!r}")

    try:
        step = VotingStep(record["step"])
    except ValueError:
        raise SessionFormatError(f"Unknown session step: {record['step']!r}")

    try:
        election = Election.from_dict(record["election"])
        created_at = parse_timestamp(_str_field(record, "created_at"), "created_at")
        verified_at = None
        if record["verified_at"] is not None:
            verified_at = parse_timestamp(_str_field(record, "verified_at"), "verified_at")
    except ParseError as e:
        raise SessionFormatError(f"Invalid session field: {e}")

    candidate_id = record["candidate_id"]
    if isinstance(candidate_id, bool) or not isinstance(candidate_id, int):
        raise SessionFormatError("Field candidate_id must be an integer")

    # Secrets may only be absent once the vote has been cast
    secrets_nullable = step is VotingStep.COMPLETE
    blinding_secret = _bytes_field(record, "blinding_secret", nullable=secrets_nullable)
    message_randomizer = _bytes_field(record, "message_randomizer", nullable=secrets_nullable)

    token = _bytes_field(record, "token", nullable=True)
    if (token is None) != (verified_at is None):
        raise SessionFormatError("Fields token and verified_at must be set together")

    identity = VoterIdentity.from_stored(
        _bytes_field(record, "nonce"),
        _bytes_field(record, "hashed_nonce"),
    )

    return VotingSession(
        session_id=_str_field(record, "session_id"),
        created_at=created_at,
        step=step,
        election=election,
        candidate_id=candidate_id,
        voter_pubkey=_str_field(record, "voter_pubkey"),
        identity=identity,
        blinded_message=_bytes_field(record, "blinded_message"),
        blinding_secret=blinding_secret,
        message_randomizer=message_randomizer,
        blind_signature=_bytes_field(record, "blind_signature", nullable=True),
        token=token,
        verified_at=verified_at,
    )
