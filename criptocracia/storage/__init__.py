# criptocracia/storage/__init__.py

from criptocracia.storage.secure_storage import EncryptedFileStorage, MemoryStorage, SecureStorage

__all__ = ["EncryptedFileStorage", "MemoryStorage", "SecureStorage"]
