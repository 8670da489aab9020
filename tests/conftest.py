import base64
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from criptocracia.config import AppConfig, DEFAULT_EC_PUBLIC_KEY
from criptocracia.crypto.blind_signature import BlindSignatureProtocol
from criptocracia.models import Election
from criptocracia.transport.base import SubscriptionFilter
from criptocracia.transport.events import EcMessage, EventKind, MessageKind
from criptocracia.voting.session import CastableVote

EC_PUBKEY = DEFAULT_EC_PUBLIC_KEY
VOTER_PUBKEY = "5f" * 32


@pytest.fixture(scope="session")
def ec_private_key():
    """EC RSA signing key, generated once per test run."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ec_public_key_b64(ec_private_key):
    return BlindSignatureProtocol.public_key_to_b64_der(ec_private_key.public_key())


@pytest.fixture
def config():
    """Config with short timers so async tests finish quickly."""
    return AppConfig(
        relays=("wss://relay.test",),
        ec_public_key=EC_PUBKEY,
        signature_timeout=timedelta(seconds=0.3),
        reconciliation_interval=timedelta(seconds=0.05),
        reconciliation_window=timedelta(seconds=0.05),
        initial_load_grace=timedelta(seconds=0.05),
    )


@pytest.fixture
def make_election(ec_public_key_b64):
    """Factory for election payload dicts (the JSON published in kind 35000 events)."""
    def _make(election_id="E1", status="open", start=None, end=None, **overrides):
        start = start or datetime.now(timezone.utc)
        end = end or start + timedelta(hours=1)
        data = {
            "id": election_id,
            "name": f"Election {election_id}",
            "start_time": int(start.timestamp()),
            "end_time": int(end.timestamp()),
            "candidates": [{"id": 1, "name": "Alice"}, {"id": 2, "name": "Bob"}],
            "status": status,
            "rsa_pub_key": ec_public_key_b64,
        }
        data.update(overrides)
        return data
    return _make


@pytest.fixture
def election(make_election):
    return Election.from_dict(make_election())


class MockElectionCommission:
    """Answers token requests with blind signatures and records cast votes."""

    def __init__(self, transport, private_key):
        self.transport = transport
        self.private_key = private_key
        self.protocol = BlindSignatureProtocol()
        self.votes = []
        self.token_requests = 0
        self.corrupt_signatures = False
        self._handled = set()

    def _filter(self):
        return SubscriptionFilter(kinds=(EventKind.GIFT_WRAP,), tags=(("p", self.transport.public_key),))

    async def _handle(self, event):
        if event.id in self._handled:
            return
        self._handled.add(event.id)
        message = EcMessage.from_json(event.content)
        if message.kind == MessageKind.TOKEN:
            self.token_requests += 1
            blinded = base64.b64decode(message.payload)
            signature = self.protocol.blind_sign(blinded, self.private_key)
            if self.corrupt_signatures:
                signature = signature[:-1] + bytes([signature[-1] ^ 0x01])
            response = EcMessage(message.election_id, MessageKind.TOKEN, base64.b64encode(signature).decode())
            await self.transport.publish(event.pubkey, response.to_json())
        else:
            self.votes.append(CastableVote.from_payload(message.election_id, message.payload, event.pubkey))

    async def answer_pending(self):
        for event in await self.transport.fetch(self._filter(), timeout=0):
            await self._handle(event)

    async def serve(self):
        stream = self.transport.subscribe(self._filter())
        try:
            async for event in stream:
                await self._handle(event)
        finally:
            await stream.aclose()


@pytest.fixture
def mock_ec_class():
    return MockElectionCommission


