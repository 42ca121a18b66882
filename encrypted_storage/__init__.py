"""Encrypted Storage — Schema-typed records encrypted at rest.

Security Note (Threat Model):
    The derived key and decrypted records live in process memory while the
    store is open. ``close()`` overwrites the key buffer, but copies made by
    the crypto backend or by callers are outside its reach.
"""

from .version import __version__
from .exceptions import (
    StorageError,
    ConstructionError,
    StorageClosedError,
    InvalidKeyError,
    CryptoError,
    EncryptionError,
    DecryptionError,
)
from .crypto import Cipher, AESGCMCipher, derive_key
from .config import StoreConfig, generate_salt
from .medium import StorageMedium, MemoryMedium, JsonFileMedium, RedisMedium
from .storage import (
    EncryptedStorage,
    ScanResult,
    create_store,
    create_store_from_config,
)

__all__ = [
    "__version__",
    "StorageError",
    "ConstructionError",
    "StorageClosedError",
    "InvalidKeyError",
    "CryptoError",
    "EncryptionError",
    "DecryptionError",
    "Cipher",
    "AESGCMCipher",
    "derive_key",
    "StoreConfig",
    "generate_salt",
    "StorageMedium",
    "MemoryMedium",
    "JsonFileMedium",
    "RedisMedium",
    "EncryptedStorage",
    "ScanResult",
    "create_store",
    "create_store_from_config",
]
