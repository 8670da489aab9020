# criptocracia/crypto/__init__.py

from criptocracia.crypto.blind_signature import BlindingResult, BlindSignatureProtocol
from criptocracia.crypto.voter_identity import VoterIdentity

__all__ = ["BlindingResult", "BlindSignatureProtocol", "VoterIdentity"]
