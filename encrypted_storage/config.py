"""
Storage Configuration — Secret material loading and validated settings.

Reads settings from environment variables:
    ENCRYPTED_STORAGE_SECRET = <secret text>
    ENCRYPTED_STORAGE_SALT = <salt text>
    ENCRYPTED_STORAGE_PREFIX = <namespace prefix> (default "@edb")
    ENCRYPTED_STORAGE_KDF_ITERATIONS = <integer> (default 100000)

Security Note:
    Never log the secret. Only log prefix and iteration counts.
"""
import os
import base64
import secrets
import logging

from pydantic import BaseModel, Field, SecretStr, field_validator

from .crypto import DEFAULT_ITERATIONS, MIN_ITERATIONS
from .exceptions import InvalidKeyError

logger = logging.getLogger("encrypted_storage")

DEFAULT_PREFIX = "@edb"
SEPARATOR = "_"


def validate_segment(value: str, what: str) -> str:
    """Check a prefix or table name can be recovered from a storage key.

    Raises:
        InvalidKeyError: If value is empty or contains the separator.
    """
    if not isinstance(value, str) or not value:
        raise InvalidKeyError(f"{what} must be a non-empty string")
    if SEPARATOR in value:
        raise InvalidKeyError(f"{what} cannot contain '{SEPARATOR}': {value!r}")
    return value


def generate_salt() -> str:
    """Generate a random 16-byte salt and return as base64 string.

    This is a utility for operators provisioning a new store.
    """
    return base64.b64encode(secrets.token_bytes(16)).decode("ascii")


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"{name} environment variable is not set")
    return value


class StoreConfig(BaseModel):
    """Validated store configuration."""

    secret: SecretStr
    salt: str = Field(min_length=1)
    prefix: str = Field(default=DEFAULT_PREFIX)
    iterations: int = Field(default=DEFAULT_ITERATIONS, ge=MIN_ITERATIONS)

    @field_validator("secret")
    @classmethod
    def validate_secret(cls, v: SecretStr) -> SecretStr:
        """Reject an empty secret."""
        if not v.get_secret_value():
            raise ValueError("secret cannot be empty")
        return v

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Prefix must be a single key segment."""
        return validate_segment(v, "prefix")

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """Create StoreConfig by loading values from environment.

        Raises:
            RuntimeError: If the secret or salt variables are not set.
        """
        config = cls(
            secret=_require_env("ENCRYPTED_STORAGE_SECRET"),
            salt=_require_env("ENCRYPTED_STORAGE_SALT"),
            prefix=os.environ.get("ENCRYPTED_STORAGE_PREFIX", DEFAULT_PREFIX),
            iterations=int(
                os.environ.get(
                    "ENCRYPTED_STORAGE_KDF_ITERATIONS", DEFAULT_ITERATIONS
                )
            ),
        )
        logger.debug(
            "Loaded store config: prefix=%s iterations=%d",
            config.prefix, config.iterations,
        )
        return config
