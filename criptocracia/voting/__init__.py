# criptocracia/voting/__init__.py

from criptocracia.voting.session import (
    CastableVote,
    VoteSignature,
    VotingSession,
    VotingStep,
    decode_session,
    encode_session,
)
from criptocracia.voting.session_machine import VotingSessionMachine

__all__ = [
    "CastableVote",
    "VoteSignature",
    "VotingSession",
    "VotingSessionMachine",
    "VotingStep",
    "decode_session",
    "encode_session",
]
