# criptocracia/storage/secure_storage.py
"""Key/value storage for session and tally persistence.

The voter core only relies on `write`, `read` and `delete` with string values.
Whether values are encrypted at rest is up to the implementation:

- MemoryStorage: process-local dict, used by tests and ephemeral observers.
- EncryptedFileStorage: one Fernet token per key on disk, with the Fernet key
  derived from a passphrase through PBKDF2-HMAC-SHA256.

Usage:
    storage = EncryptedFileStorage('/var/lib/criptocracia', passphrase='...')
    storage.write('voting_session', session_json)
    session_json = storage.read('voting_session')  # None if absent
"""

import base64
import hashlib
import logging
import os
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from criptocracia.exceptions import IntegrityError

logger = logging.getLogger(__name__)


class SecureStorage:
    """Storage contract used by the session machine and the results aggregator."""

    def write(self, key: str, value: str):
        raise NotImplementedError

    def read(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError


class MemoryStorage(SecureStorage):
    def __init__(self):
        self._items: Dict[str, str] = {}

    def write(self, key, value):
        self._items[key] = value

    def read(self, key):
        return self._items.get(key)

    def delete(self, key):
        self._items.pop(key, None)

    def keys(self):
        return sorted(self._items)


class EncryptedFileStorage(SecureStorage):
    SALT_FILE = '.salt'
    KDF_ITERATIONS = 100000

    def __init__(self, directory: str, passphrase: str):
        if not passphrase:
            raise ValueError("A passphrase is required for encrypted storage")
        self.directory = directory
        os.makedirs(directory, exist_ok=True)
        salt = self._load_or_create_salt()
        key, _ = self.derive_key(passphrase, salt)
        self._fernet = Fernet(key)

    def derive_key(self, passphrase: str, salt: bytes = None) -> tuple:
        """Derive a Fernet key from the passphrase."""
        if salt is None:
            salt = os.urandom(16)
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.KDF_ITERATIONS,
        )
        key = kdf.derive(passphrase.encode())
        return base64.urlsafe_b64encode(key), salt

    def _load_or_create_salt(self) -> bytes:
        path = os.path.join(self.directory, self.SALT_FILE)
        if os.path.exists(path):
            with open(path, 'rb') as f:
                return f.read()
        salt = os.urandom(16)
        with open(path, 'wb') as f:
            f.write(salt)
        return salt

    def _path(self, key: str) -> str:
        # Storage keys may contain ':' and other characters unsafe for filenames
        name = hashlib.sha256(key.encode()).hexdigest()
        return os.path.join(self.directory, name + '.enc')

    def write(self, key, value):
        token = self._fernet.encrypt(value.encode())
        path = self._path(key)
        tmp_path = path + '.tmp'
        with open(tmp_path, 'wb') as f:
            f.write(token)
        os.replace(tmp_path, path)
        logger.debug("Stored %d bytes under %s", len(value), key)

    def read(self, key):
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, 'rb') as f:
            token = f.read()
        try:
            return self._fernet.decrypt(token).decode()
        except InvalidToken as e:
            raise IntegrityError(f"Stored value for {key!r} failed authentication") from e

    def delete(self, key):
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)
