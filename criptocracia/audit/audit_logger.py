# criptocracia/audit/audit_logger.py

import base64
import hashlib
import json
import logging
import os
from datetime import datetime, timezone

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

logger = logging.getLogger(__name__)

# Append-only trail of voting session step transitions. Entries are hash chained
# and signed with Ed25519. Only ids, step names, outcomes and error class names
# are written, never key material.


class SessionAuditLog:
    LOG_FILE = 'session_audit.log'
    KEY_FILE = 'session_audit.key'

    def __init__(self, log_dir='logs', signing_key=None):
        self.log_dir = log_dir
        self.log_file = os.path.join(log_dir, self.LOG_FILE)
        self.previous_hash = None

        os.makedirs(log_dir, exist_ok=True)

        self.signing_key = signing_key or self._load_or_create_key()
        self._load_previous_hash()

    def _load_or_create_key(self):
        path = os.path.join(self.log_dir, self.KEY_FILE)
        if os.path.exists(path):
            with open(path, 'rb') as f:
                return serialization.load_pem_private_key(f.read(), password=None)
        key = Ed25519PrivateKey.generate()
        pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption())
        with open(path, 'wb') as f:
            f.write(pem)
        return key

    def _load_previous_hash(self):
        if os.path.exists(self.log_file):
            with open(self.log_file, 'r') as f:
                lines = [line for line in f.readlines() if line.strip()]
            if lines:
                try:
                    self.previous_hash = json.loads(lines[-1]).get('hash')
                except ValueError:
                    logger.warning("Last audit entry is unreadable, starting a new chain")
                    self.previous_hash = None

    @staticmethod
    def _canonical(entry) -> bytes:
        return json.dumps(entry, sort_keys=True).encode()

    def record(self, session_id, step, outcome, error=None):
        try:
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "session_id": session_id,
                "step": step,
                "outcome": outcome,
                "error": error,
                "previous_hash": self.previous_hash,
            }
            entry_json = self._canonical(entry)
            entry['hash'] = hashlib.sha256(entry_json).hexdigest()
            entry['signature'] = base64.b64encode(self.signing_key.sign(entry_json)).decode()

            with open(self.log_file, 'a') as f:
                f.write(json.dumps(entry) + "\n")

            self.previous_hash = entry['hash']
        except OSError as e:
            logger.error("Audit log error: %s", e)

    def entries(self):
        if not os.path.exists(self.log_file):
            return []
        with open(self.log_file, 'r') as f:
            return [json.loads(line) for line in f if line.strip()]

    def verify_log_integrity(self) -> bool:
        public_key = self.signing_key.public_key()
        previous_hash = None
        try:
            for entry in self.entries():
                if entry.get('previous_hash') != previous_hash:
                    return False
                body = dict(entry)
                signature = base64.b64decode(body.pop('signature'))
                entry_hash = body.pop('hash')
                entry_json = self._canonical(body)
                if hashlib.sha256(entry_json).hexdigest() != entry_hash:
                    return False
                public_key.verify(signature, entry_json)
                previous_hash = entry_hash
            return True
        except (InvalidSignature, KeyError, ValueError) as e:
            logger.warning("Audit log verification failed: %s", e)
            return False
