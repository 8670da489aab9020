# criptocracia/crypto/blind_signature.py

import base64
import binascii
import hashlib
import logging
import math
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from criptocracia.exceptions import InvalidKeyError, UnblindError

logger = logging.getLogger(__name__)

# RSA blind signatures, RSABSSA-SHA384-PSS-Randomized variant:
# SHA-384 for the message hash and MGF1, 48 byte salt, 32 byte message randomizer
# prepended to the message before encoding.

HASH_LEN = 48
SALT_LEN = 48
RANDOMIZER_LEN = 32
MIN_MODULUS_BITS = 2048


@dataclass(frozen=True)
class BlindingResult:
    blinded_message: bytes
    # Inverse of the blinding factor, big-endian, modulus length. Never transmitted.
    secret: bytes
    message_randomizer: bytes

    def __repr__(self):
        return f"BlindingResult(blinded_message=<{len(self.blinded_message)} bytes>)"


def _int_to_bytes(value: int, length: int) -> bytes:
    return value.to_bytes(length, "big")


def _bytes_to_int(data: bytes) -> int:
    return int.from_bytes(data, "big")


def _mgf1_sha384(seed: bytes, length: int) -> bytes:
    output = b""
    counter = 0
    while len(output) < length:
        output += hashlib.sha384(seed + counter.to_bytes(4, "big")).digest()
        counter += 1
    return output[:length]


def _emsa_pss_encode(message: bytes, em_bits: int, salt: bytes) -> bytes:
    em_len = (em_bits + 7) // 8
    if em_len < HASH_LEN + len(salt) + 2:
        raise InvalidKeyError("Modulus too small for PSS encoding")

    m_hash = hashlib.sha384(message).digest()
    h = hashlib.sha384(b"\x00" * 8 + m_hash + salt).digest()

    ps = b"\x00" * (em_len - len(salt) - HASH_LEN - 2)
    db = ps + b"\x01" + salt
    db_mask = _mgf1_sha384(h, em_len - HASH_LEN - 1)
    masked_db = bytearray(a ^ b for a, b in zip(db, db_mask))
    # Clear the bits above em_bits
    masked_db[0] &= 0xFF >> (8 * em_len - em_bits)

    return bytes(masked_db) + h + b"\xbc"


class BlindSignatureProtocol:
    """Blind, unblind and verify against an Election Commission RSA key.

    Keys may be given as `RSAPublicKey` objects, base64 DER strings (the
    `rsa_pub_key` form found in election events) or raw DER/PEM bytes.
    """

    def __init__(self, min_modulus_bits=MIN_MODULUS_BITS):
        self.min_modulus_bits = min_modulus_bits

    def load_public_key(self, key) -> rsa.RSAPublicKey:
        if isinstance(key, rsa.RSAPublicKey):
            public_key = key
        else:
            try:
                if isinstance(key, str):
                    text = key.strip()
                    key = text.encode() if text.startswith("-----BEGIN") else base64.b64decode(text, validate=True)
                if not isinstance(key, (bytes, bytearray)) or not key:
                    raise InvalidKeyError("Public key must be base64 text or DER bytes")
                if key.lstrip().startswith(b"-----BEGIN"):
                    public_key = serialization.load_pem_public_key(bytes(key))
                else:
                    # Accepts SubjectPublicKeyInfo and PKCS#1 RSAPublicKey
                    public_key = serialization.load_der_public_key(bytes(key))
            except (ValueError, binascii.Error, UnsupportedAlgorithm) as e:
                raise InvalidKeyError(f"Malformed RSA public key: {e}")

        if not isinstance(public_key, rsa.RSAPublicKey):
            raise InvalidKeyError(f"Expected an RSA public key, got {type(public_key).__name__}")
        if public_key.key_size < self.min_modulus_bits:
            raise InvalidKeyError(
                f"RSA modulus of {public_key.key_size} bits is below the {self.min_modulus_bits} bit minimum"
            )
        return public_key

    @staticmethod
    def public_key_to_b64_der(public_key: rsa.RSAPublicKey) -> str:
        der = public_key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo)
        return base64.b64encode(der).decode()

    def blind(self, message: bytes, authority_public_key) -> BlindingResult:
        public_key = self.load_public_key(authority_public_key)
        numbers = public_key.public_numbers()
        n, e = numbers.n, numbers.e
        k = (public_key.key_size + 7) // 8

        randomizer = secrets.token_bytes(RANDOMIZER_LEN)
        salt = secrets.token_bytes(SALT_LEN)
        encoded = _emsa_pss_encode(randomizer + message, public_key.key_size - 1, salt)

        m = _bytes_to_int(encoded)
        if math.gcd(m, n) != 1:
            raise InvalidKeyError("Encoded message is not invertible modulo n")

        while True:
            r = secrets.randbelow(n - 1) + 1
            if math.gcd(r, n) == 1:
                break
        r_inv = pow(r, -1, n)

        blinded = (m * pow(r, e, n)) % n
        logger.debug("Blinded %d byte message with %d bit key", len(message), public_key.key_size)
        return BlindingResult(
            blinded_message=_int_to_bytes(blinded, k),
            secret=_int_to_bytes(r_inv, k),
            message_randomizer=randomizer,
        )

    def unblind(self, blind_signature: bytes, secret: bytes, randomizer: bytes,
                original_message: bytes, authority_public_key) -> bytes:
        """Remove the blinding factor. Does not verify; call `verify` on the result."""
        public_key = self.load_public_key(authority_public_key)
        n = public_key.public_numbers().n
        k = (public_key.key_size + 7) // 8

        if not original_message:
            raise UnblindError("Original message is empty")
        if not randomizer or len(randomizer) != RANDOMIZER_LEN:
            raise UnblindError(f"Message randomizer must be {RANDOMIZER_LEN} bytes")
        if not blind_signature or len(blind_signature) != k:
            raise UnblindError(f"Blind signature must be {k} bytes, got {len(blind_signature or b'')}")
        if not secret or len(secret) != k:
            raise UnblindError("Blinding secret does not match the key size")

        z = _bytes_to_int(blind_signature)
        inv = _bytes_to_int(secret)
        if z >= n or inv == 0 or inv >= n:
            raise UnblindError("Blind signature or secret out of range for the modulus")

        return _int_to_bytes((z * inv) % n, k)

    def verify(self, signature: bytes, randomizer: bytes, message: bytes, authority_public_key) -> bool:
        """Return False for any signature that does not verify; raise only for key problems."""
        public_key = self.load_public_key(authority_public_key)
        if not signature or not randomizer:
            return False
        try:
            public_key.verify(
                signature,
                randomizer + message,
                padding.PSS(mgf=padding.MGF1(hashes.SHA384()), salt_length=SALT_LEN),
                hashes.SHA384()
            )
            return True
        except InvalidSignature:
            return False
        except ValueError as e:
            # Wrong signature length and similar encoding problems
            logger.debug("Signature rejected: %s", e)
            return False

    def blind_sign(self, blinded_message: bytes, authority_private_key: rsa.RSAPrivateKey) -> bytes:
        """Authority side: raw RSA signature over a blinded message."""
        if not isinstance(authority_private_key, rsa.RSAPrivateKey):
            raise InvalidKeyError("Expected an RSA private key")
        public_key = self.load_public_key(authority_private_key.public_key())
        private_numbers = authority_private_key.private_numbers()
        n = private_numbers.public_numbers.n
        e = private_numbers.public_numbers.e
        k = (public_key.key_size + 7) // 8

        m = _bytes_to_int(blinded_message)
        if len(blinded_message) != k or m >= n:
            raise InvalidKeyError("Blinded message does not fit the signing key")

        s = pow(m, private_numbers.d, n)
        if pow(s, e, n) != m:
            raise InvalidKeyError("Blind signature self-check failed")
        return _int_to_bytes(s, k)
