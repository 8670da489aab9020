# criptocracia/exceptions.py
"""Exception hierarchy for the voter core.

Propagation rules:
- ConfigurationError: missing/invalid EC key or relay endpoints, nothing can start.
- IntegrityError, InvalidKeyError, UnblindError, SignatureVerificationError:
  fatal to the voting session, surfaced to the caller as a terminal error.
- SignatureTimeoutError, TransportError: retryable by re-invoking the same step.
- ParseError: raised while decoding a single inbound event; the sync engine and
  the results aggregator log it and drop that event.
"""


class CriptocraciaError(Exception):
    """Base exception for all voter core failures."""
    pass


class ConfigurationError(CriptocraciaError):
    """Raised when the injected configuration cannot start a flow."""
    pass


class IntegrityError(CriptocraciaError):
    """Raised when stored material fails its integrity check (nonce hash, storage token)."""
    pass


class InvalidKeyError(CriptocraciaError):
    """Raised when an RSA key is malformed or below the minimum modulus size."""
    pass


class UnblindError(CriptocraciaError):
    """Raised when a blind signature cannot be unblinded with the stored secret."""
    pass


class SignatureVerificationError(CriptocraciaError):
    """Raised when the EC response does not verify against the EC public key."""
    pass


class SignatureTimeoutError(CriptocraciaError, TimeoutError):
    """Raised when the EC does not answer within the configured deadline."""
    pass


class TransportError(CriptocraciaError):
    """Raised on relay connect/send/subscribe failures."""
    pass


class ParseError(CriptocraciaError):
    """Raised when an inbound event payload is malformed."""
    pass


class SessionStateError(CriptocraciaError):
    """Raised on an illegal voting session transition or retry."""
    pass


class SessionFormatError(CriptocraciaError):
    """Raised when a persisted session record has unknown, missing or invalid fields."""
    pass


# Errors after which the current session can only be discarded and restarted
FATAL_SESSION_ERRORS = (
    IntegrityError,
    InvalidKeyError,
    UnblindError,
    SignatureVerificationError,
)
