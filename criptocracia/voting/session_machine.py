# criptocracia/voting/session_machine.py

import asyncio
import base64
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from criptocracia.config import AppConfig
from criptocracia.crypto.blind_signature import BlindSignatureProtocol
from criptocracia.crypto.voter_identity import VoterIdentity
from criptocracia.exceptions import (
    FATAL_SESSION_ERRORS,
    ConfigurationError,
    CriptocraciaError,
    ParseError,
    SessionStateError,
    SignatureTimeoutError,
    UnblindError,
)
from criptocracia.models import Election
from criptocracia.storage.secure_storage import SecureStorage
from criptocracia.transport.base import SubscriptionFilter, Transport
from criptocracia.transport.events import EcMessage, EventKind, MessageKind, TokenResponse, decode_event
from criptocracia.voting.session import (
    SESSION_STORAGE_KEY,
    CastableVote,
    VoteSignature,
    VotingSession,
    VotingStep,
    decode_session,
    encode_session,
)

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


class VotingSessionMachine:
    """Drives one vote through the blind signature exchange with the EC.

    Steps run strictly in order:
        initial -> generate_nonce -> send_blinded_nonce -> wait_for_signature
        -> cast_vote -> complete

    `current_step` is the step about to run (or the one that just failed).
    A failing step records `error` and leaves `current_step` untouched.
    Timeouts and transport errors can be retried in place with
    `retry_current_step()`; crypto and integrity errors are fatal and need
    `restart()`, which starts over with a fresh nonce.
    """

    def __init__(self, transport: Transport, storage: SecureStorage, config: AppConfig,
                 voter_pubkey: Optional[str] = None, audit=None,
                 protocol: Optional[BlindSignatureProtocol] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.transport = transport
        self.storage = storage
        self.config = config
        self.voter_pubkey = voter_pubkey or transport.public_key
        self.audit = audit
        self.protocol = protocol or BlindSignatureProtocol(min_modulus_bits=config.min_rsa_bits)
        self.clock = clock

        self.session: Optional[VotingSession] = None
        self._election: Optional[Election] = None
        self._candidate_id: Optional[int] = None
        self._session_id: Optional[str] = None
        self._step = VotingStep.INITIAL
        self._error: Optional[CriptocraciaError] = None
        self._fatal = False
        self._listeners: List[Callable] = []
        # Token responses already used by an earlier attempt in this process
        self._consumed_responses = set()

    @property
    def current_step(self) -> VotingStep:
        return self._step

    @property
    def error(self) -> Optional[CriptocraciaError]:
        return self._error

    @property
    def is_fatal(self) -> bool:
        return self._fatal

    @property
    def is_complete(self) -> bool:
        return self._step is VotingStep.COMPLETE

    def add_listener(self, callback: Callable):
        """callback(step, error) after every step attempt."""
        self._listeners.append(callback)

    def begin(self, election: Election, candidate_id: int) -> "VotingSessionMachine":
        """Select the election and candidate; no network activity yet."""
        if self.session is not None and not self.is_complete and not self._fatal:
            raise SessionStateError(
                f"Session {self.session.session_id} for election {self.session.election.id} is still active"
            )
        self.config.validate()
        if not election.accepts_votes:
            raise SessionStateError(f"Election {election.id} is {election.status.value}, voting is closed")
        if election.candidate(candidate_id) is None:
            raise SessionStateError(f"Candidate {candidate_id} is not part of election {election.id}")
        if not election.rsa_pub_key:
            raise ConfigurationError(f"Election {election.id} has no EC RSA public key")

        self._election = election
        self._candidate_id = candidate_id
        self._consumed_responses.clear()
        self._reset()
        logger.info("Voting session %s prepared for election %s", self._session_id, election.id)
        return self

    def _reset(self):
        self.session = None
        self._session_id = uuid.uuid4().hex
        self._step = VotingStep.INITIAL
        self._error = None
        self._fatal = False

    async def run(self) -> VotingSession:
        """Run the remaining steps until complete; raises the first failure."""
        self._ensure_runnable()
        while self._step is not VotingStep.COMPLETE:
            await self._attempt(self._step)
        return self.session

    async def retry_current_step(self):
        """Re-run only the step that failed. From `initial` this runs the whole pipeline."""
        self._ensure_runnable()
        if self._step is VotingStep.INITIAL:
            return await self.run()
        if self._step is VotingStep.COMPLETE:
            raise SessionStateError("Session is already complete")
        await self._attempt(self._step)
        return self.session

    async def restart(self) -> VotingSession:
        """Discard the current session and vote again with a brand new nonce."""
        if self._election is None:
            raise SessionStateError("No election selected")
        if self.is_complete:
            raise SessionStateError(f"Session {self._session_id} already cast its vote")
        old_session_id = self._session_id
        self.storage.delete(SESSION_STORAGE_KEY)
        self._reset()
        logger.info("Session %s discarded, restarting as %s", old_session_id, self._session_id)
        return await self.run()

    def resume(self) -> Optional[VotingSession]:
        """Load the persisted session, if any, and continue from its step.

        IntegrityError and SessionFormatError propagate; the stored record is
        left untouched so the caller can decide to discard it.
        """
        raw = self.storage.read(SESSION_STORAGE_KEY)
        if raw is None:
            return None
        try:
            session = decode_session(raw)
        except FATAL_SESSION_ERRORS as e:
            self._error = e
            self._fatal = True
            logger.error("Stored voting session failed its integrity check: %s", e)
            raise

        self.session = session
        self._election = session.election
        self._candidate_id = session.candidate_id
        self._session_id = session.session_id
        self._step = session.step
        self._error = None
        self._fatal = False
        logger.info("Resumed session %s at step %s", session.session_id, session.step.value)
        return session

    def _ensure_runnable(self):
        if self._election is None:
            raise SessionStateError("No election selected, call begin() first")
        if self._fatal:
            raise SessionStateError(
                f"Session failed with {type(self._error).__name__}; restart() with a new nonce"
            )

    async def _attempt(self, step: VotingStep):
        action = {
            VotingStep.INITIAL: self._start,
            VotingStep.GENERATE_NONCE: self._generate_nonce,
            VotingStep.SEND_BLINDED_NONCE: self._send_blinded_nonce,
            VotingStep.WAIT_FOR_SIGNATURE: self._wait_for_signature,
            VotingStep.CAST_VOTE: self._cast_vote,
        }[step]

        try:
            await action()
        except FATAL_SESSION_ERRORS as e:
            self._fail(step, e, fatal=True)
            raise
        except CriptocraciaError as e:
            self._fail(step, e, fatal=False)
            raise

        self._error = None
        self._step = step.next()
        if self.session is not None:
            self.session.step = self._step
            if self._step is VotingStep.COMPLETE:
                self.session.clear_secrets()
            self._persist()
        logger.info("Session %s: %s done, next %s", self._session_id, step.value, self._step.value)
        self._record(step, "ok")
        self._notify()

    def _fail(self, step, error, fatal):
        self._error = error
        self._fatal = fatal
        level = logging.ERROR if fatal else logging.WARNING
        logger.log(level, "Session %s: %s failed (%s): %s",
                   self._session_id, step.value, type(error).__name__, error)
        self._record(step, "fatal" if fatal else "failed", error)
        self._notify()

    def _record(self, step, outcome, error=None):
        if self.audit is not None:
            self.audit.record(self._session_id, step.value, outcome,
                              error=type(error).__name__ if error else None)

    def _notify(self):
        for callback in list(self._listeners):
            try:
                callback(self._step, self._error)
            except Exception as e:
                logger.error("Session listener failed: %s", e)

    def _persist(self):
        self.storage.write(SESSION_STORAGE_KEY, encode_session(self.session))

    # Steps

    async def _start(self):
        self.config.validate()

    async def _generate_nonce(self):
        election = self._election
        public_key = self.protocol.load_public_key(election.rsa_pub_key)
        identity = VoterIdentity.generate()
        blinding = self.protocol.blind(identity.hashed_nonce, public_key)

        self.session = VotingSession(
            session_id=self._session_id,
            created_at=self.clock(),
            step=VotingStep.GENERATE_NONCE,
            election=election,
            candidate_id=self._candidate_id,
            voter_pubkey=self.voter_pubkey,
            identity=identity,
            blinded_message=blinding.blinded_message,
            blinding_secret=blinding.secret,
            message_randomizer=blinding.message_randomizer,
        )
        # Persisted again by _attempt with the advanced step; write now so the
        # secret survives even if that fails
        self._persist()

    async def _send_blinded_nonce(self):
        message = EcMessage(
            election_id=self.session.election.id,
            kind=MessageKind.TOKEN,
            payload=base64.b64encode(self.session.blinded_message).decode(),
        )
        event_id = await self.transport.publish(self.config.ec_public_key, message.to_json())
        logger.info("Token request for election %s sent (%s)", message.election_id, event_id[:12])

    def _token_filter(self) -> SubscriptionFilter:
        return SubscriptionFilter(
            kinds=(EventKind.GIFT_WRAP,),
            since=int(self.session.created_at.timestamp()),
            tags=(("p", self.voter_pubkey),),
            authors=(self.config.ec_public_key,),
        )

    async def _receive_blind_signature(self) -> bytes:
        election_id = self.session.election.id
        stream = self.transport.subscribe(self._token_filter())
        try:
            async for event in stream:
                try:
                    decoded = decode_event(event)
                except ParseError as e:
                    logger.warning("Dropping malformed direct message %s: %s", event.id[:12], e)
                    continue
                if (isinstance(decoded, TokenResponse) and decoded.election_id == election_id
                        and event.id not in self._consumed_responses):
                    self._consumed_responses.add(event.id)
                    return decoded.blind_signature
        finally:
            await stream.aclose()
        raise SignatureTimeoutError("Subscription ended before the EC answered")

    async def _wait_for_signature(self):
        session = self.session
        if session.blind_signature is None:
            timeout = self.config.signature_timeout.total_seconds()
            try:
                blind_signature = await asyncio.wait_for(self._receive_blind_signature(), timeout)
            except SignatureTimeoutError:
                raise
            except asyncio.TimeoutError:
                raise SignatureTimeoutError(f"No EC response within {timeout:g}s")
            session.blind_signature = blind_signature
            # Keep the response even if unblinding below fails
            self._persist()
            logger.info("Blind signature received (%d bytes)", len(blind_signature))

        public_key = self.protocol.load_public_key(session.election.rsa_pub_key)
        blinding = session.blinding
        if blinding is None:
            raise UnblindError("Blinding secret is no longer available")
        token = self.protocol.unblind(
            session.blind_signature, blinding.secret, blinding.message_randomizer,
            session.identity.hashed_nonce, public_key,
        )
        session.accept_signature(VoteSignature.verify(
            self.protocol, token, blinding.message_randomizer,
            session.identity.hashed_nonce, public_key, self.clock(),
        ))

    async def _cast_vote(self):
        session = self.session
        if session.vote_signature is None:
            # Resumed at cast_vote: verify the stored token again before using it
            if session.token is None or session.message_randomizer is None:
                raise UnblindError("No token stored for this session")
            session.accept_signature(VoteSignature.verify(
                self.protocol, session.token, session.message_randomizer,
                session.identity.hashed_nonce, session.election.rsa_pub_key, session.verified_at,
            ))
        vote = CastableVote.from_session(session)
        event_id = await self.transport.publish(self.config.ec_public_key, vote.to_message().to_json())
        logger.info("Vote for election %s published (%s)", vote.election_id, event_id[:12])
