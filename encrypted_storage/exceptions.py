"""Exception hierarchy for Encrypted Storage.

"Not found" is never an exception: lookups return ``None`` so that a
missing record is distinguishable from a record that cannot be decrypted.
"""


class StorageError(Exception):
    """Base class for every error raised by this package."""


class ConstructionError(StorageError):
    """The store could not be built (missing medium or crypto capability)."""


class StorageClosedError(StorageError):
    """Operation attempted on a store whose key has been released."""


class InvalidKeyError(StorageError, ValueError):
    """Table name, prefix or record key cannot form a reversible storage key."""


class CryptoError(StorageError):
    """Base class for cryptographic failures."""


class EncryptionError(CryptoError):
    """Encryption failed (key not initialized or payload rejected)."""


class DecryptionError(CryptoError):
    """Envelope malformed, authentication failed, or key not initialized."""
