"""
Storage Crypto Core — Key derivation, envelope encryption and serialization.

- Key derivation: PBKDF2-HMAC-SHA256(secret, salt, >=100k iterations) → 256-bit key
- Record encryption: AES-GCM, fresh 96-bit nonce per call
- Envelope: JSON ``{"iv": [12 byte values], "data": "<base64 ct+tag>"}``

Security Note:
    Never log secrets, derived keys, plaintext or envelopes.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import base64
import binascii
import logging
from abc import ABC, abstractmethod
from typing import Any, Union

import orjson
from pydantic import BaseModel
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import EncryptionError, DecryptionError

logger = logging.getLogger("encrypted_storage")

NONCE_SIZE = 12  # 96-bit nonce
KEY_LENGTH = 32  # AES-256
TAG_SIZE = 16  # GCM tag
DEFAULT_ITERATIONS = 100_000
MIN_ITERATIONS = 100_000


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(
    secret: str,
    salt: Union[str, bytes],
    iterations: int = DEFAULT_ITERATIONS,
) -> bytes:
    """Derive a 32-byte encryption key using PBKDF2-HMAC-SHA256.

    The derivation is deterministic: the same (secret, salt, iterations)
    always yields the same key, which is what lets a restarted process
    decrypt records written before.

    Args:
        secret: Human-supplied secret material.
        salt: Salt as text (UTF-8 encoded) or raw bytes.
        iterations: PBKDF2 iteration count (minimum 100,000).

    Returns:
        32-byte derived key.

    Raises:
        ValueError: If iterations is below the minimum.
    """
    if iterations < MIN_ITERATIONS:
        raise ValueError(
            f"PBKDF2 iterations must be at least {MIN_ITERATIONS}, "
            f"got {iterations}"
        )
    if isinstance(salt, str):
        salt = salt.encode("utf-8")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

def pack_envelope(nonce: bytes, ciphertext: bytes) -> str:
    """Serialize nonce and ciphertext(+tag) into the on-storage text format."""
    return orjson.dumps({
        "iv": list(nonce),
        "data": base64.b64encode(ciphertext).decode("ascii"),
    }).decode("utf-8")


def unpack_envelope(envelope: str) -> tuple[bytes, bytes]:
    """Parse an envelope back into (nonce, ciphertext).

    Raises:
        DecryptionError: If the envelope is not a well-formed envelope.
    """
    try:
        parsed = orjson.loads(envelope)
    except (orjson.JSONDecodeError, TypeError) as err:
        raise DecryptionError("Envelope is not valid JSON") from err
    if not isinstance(parsed, dict):
        raise DecryptionError("Envelope must be a JSON object")
    iv = parsed.get("iv")
    data = parsed.get("data")
    if not isinstance(iv, list) or not isinstance(data, str):
        raise DecryptionError("Envelope requires 'iv' list and 'data' string")
    if len(iv) != NONCE_SIZE or not all(
        isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255
        for b in iv
    ):
        raise DecryptionError(
            f"Envelope 'iv' must be {NONCE_SIZE} byte values"
        )
    try:
        ciphertext = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as err:
        raise DecryptionError("Envelope 'data' is not valid base64") from err
    if len(ciphertext) < TAG_SIZE:
        raise DecryptionError(
            f"Envelope payload too short: {len(ciphertext)} bytes "
            f"(minimum {TAG_SIZE})"
        )
    return bytes(iv), ciphertext


# ---------------------------------------------------------------------------
# Cipher
# ---------------------------------------------------------------------------

class Cipher(ABC):
    """Authenticated text cipher used by the record store."""

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        """Encrypt text and return a serialized envelope."""

    @abstractmethod
    def decrypt(self, envelope: str) -> str:
        """Decrypt a serialized envelope back to text."""

    @abstractmethod
    def close(self) -> None:
        """Release key material."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once key material has been released."""


class AESGCMCipher(Cipher):
    """AES-256-GCM cipher bound to a single derived key.

    The key lives in a mutable buffer so ``close()`` can overwrite it;
    after that every operation fails as "key not initialized".
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._key = bytearray(key)
        self._closed = False

    @classmethod
    def from_secret(
        cls,
        secret: str,
        salt: Union[str, bytes],
        iterations: int = DEFAULT_ITERATIONS,
    ) -> "AESGCMCipher":
        return cls(derive_key(secret, salt, iterations))

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        for i in range(len(self._key)):
            self._key[i] = 0
        self._closed = True

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext under a fresh random nonce.

        Raises:
            EncryptionError: If the key was released or AES-GCM rejects input.
        """
        if self._closed:
            raise EncryptionError("Encryption key has not been initialized")
        nonce = os.urandom(NONCE_SIZE)
        try:
            ct = AESGCM(bytes(self._key)).encrypt(
                nonce, plaintext.encode("utf-8"), None,
            )
        except (ValueError, TypeError, OverflowError) as err:
            raise EncryptionError(f"Encryption failed: {err}") from err
        return pack_envelope(nonce, ct)

    def decrypt(self, envelope: str) -> str:
        """Authenticate and decrypt an envelope.

        Raises:
            DecryptionError: If the key was released, the envelope is
                malformed, or the authentication tag does not verify.
        """
        if self._closed:
            raise DecryptionError("Encryption key has not been initialized")
        nonce, ct = unpack_envelope(envelope)
        try:
            plaintext = AESGCM(bytes(self._key)).decrypt(nonce, ct, None)
        except InvalidTag as err:
            raise DecryptionError(
                "Authentication failed: data corrupted or wrong key"
            ) from err
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecryptionError("Decrypted payload is not UTF-8 text") from err


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def serialize_value(value: Any) -> str:
    """Serialize a record to JSON text for encryption.

    Pydantic models are dumped in JSON mode; mappings go through orjson,
    which also handles datetime, UUID and dataclass members.

    Raises:
        EncryptionError: If the value cannot be represented as JSON.
    """
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    try:
        return orjson.dumps(value).decode("utf-8")
    except TypeError as err:
        raise EncryptionError(f"Value is not serializable: {err}") from err


def deserialize_value(data: str) -> Any:
    """Deserialize JSON text produced by :func:`serialize_value`.

    Raises:
        DecryptionError: If the decrypted payload is not valid JSON.
    """
    try:
        return orjson.loads(data)
    except orjson.JSONDecodeError as err:
        raise DecryptionError("Decrypted payload is not valid JSON") from err
