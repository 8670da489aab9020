# criptocracia/crypto/voter_identity.py

import hashlib
import hmac
import secrets

from criptocracia.exceptions import IntegrityError

NONCE_SIZE = 32


class VoterIdentity:
    """Per-election voter secret: a random nonce and its SHA-256 hash.

    The hash is what gets blinded and signed by the EC; the nonce never
    leaves the device.
    """

    def __init__(self, nonce: bytes):
        if len(nonce) != NONCE_SIZE:
            raise IntegrityError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
        self._nonce = bytes(nonce)
        self._hashed_nonce = hashlib.sha256(self._nonce).digest()

    @classmethod
    def generate(cls) -> "VoterIdentity":
        return cls(secrets.token_bytes(NONCE_SIZE))

    @classmethod
    def from_stored(cls, nonce: bytes, expected_hash: bytes) -> "VoterIdentity":
        """Rebuild an identity from storage, recomputing the hash instead of trusting it."""
        identity = cls(nonce)
        if not hmac.compare_digest(identity.hashed_nonce, bytes(expected_hash)):
            raise IntegrityError("Stored nonce hash does not match the nonce")
        return identity

    @property
    def nonce(self) -> bytes:
        return self._nonce

    @property
    def hashed_nonce(self) -> bytes:
        return self._hashed_nonce

    @property
    def nonce_hex(self) -> str:
        return self._nonce.hex()

    @property
    def hashed_nonce_hex(self) -> str:
        return self._hashed_nonce.hex()

    def __repr__(self):
        # Never print the nonce itself
        return f"VoterIdentity(hashed_nonce={self.hashed_nonce_hex[:16]}...)"
