"""
EncryptedStorage — Table-scoped encrypted records over a key-value medium.

Provides the public API of the store:
- ``set(table, value, key)`` / ``set_multiple(table, values)`` — encrypt and persist
- ``get(table, key)`` — decrypt one record (``None`` when absent)
- ``get_all(table)`` / ``filter(table, predicate)`` — decrypt a whole table
- ``scan(table)`` — like ``get_all`` but collects undecryptable keys
- ``exists`` / ``keys`` / ``remove`` / ``clear`` — bookkeeping
- ``create_store()`` — factory that derives the key off the event loop

Records are stored at ``{prefix}_{table}_{key}``. Prefix and table names
cannot contain ``_`` so the table and record key are always recoverable.

Security Note:
    Never log record values or envelopes. Only log table names and keys.
"""
import uuid
import asyncio
import logging
from dataclasses import dataclass, field
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Optional, Union

from pydantic import BaseModel
from cryptography.exceptions import UnsupportedAlgorithm

from .config import DEFAULT_PREFIX, SEPARATOR, StoreConfig, validate_segment
from .crypto import (
    DEFAULT_ITERATIONS,
    AESGCMCipher,
    Cipher,
    serialize_value,
    deserialize_value,
)
from .exceptions import (
    ConstructionError,
    DecryptionError,
    InvalidKeyError,
    StorageClosedError,
)
from .medium import MediumAdapter, ensure_medium

logger = logging.getLogger("encrypted_storage")

KEY_FIELD = "key"

StoredValue = Union[dict[str, Any], BaseModel]
Schema = Mapping[str, type[BaseModel]]


@dataclass
class ScanResult:
    """Outcome of a tolerant table scan."""

    records: list[StoredValue] = field(default_factory=list)
    failed_keys: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_keys


class EncryptedStorage:
    """Encrypted record store bound to one cipher and one namespace prefix.

    Every value is serialized to JSON, encrypted with a fresh nonce and
    written to the medium as an envelope; plaintext never reaches the medium.

    An optional ``schema`` maps table names to pydantic models. Values set
    into such a table are validated against the model, and values read back
    are returned as model instances. Models must declare a ``key`` field,
    which carries the record key on every returned instance.
    """

    def __init__(
        self,
        cipher: Cipher,
        medium: Any,
        prefix: Optional[str] = None,
        schema: Optional[Schema] = None,
    ):
        if cipher is None:
            raise ConstructionError("A cipher is required")
        self._cipher = cipher
        self._medium: MediumAdapter = ensure_medium(medium)
        self._prefix = validate_segment(
            DEFAULT_PREFIX if prefix is None else prefix, "prefix"
        )
        self._schema: dict[str, type[BaseModel]] = {}
        for table, model in (schema or {}).items():
            validate_segment(table, "table name")
            if KEY_FIELD not in model.model_fields:
                raise ConstructionError(
                    f"Model {model.__name__} for table {table!r} must declare "
                    f"a '{KEY_FIELD}' field"
                )
            self._schema[table] = model

    def __repr__(self) -> str:
        return (
            f'<EncryptedStorage [prefix:{self._prefix}, closed:{self.closed}] '
            f'tables={sorted(self._schema)}>'
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def medium(self) -> Any:
        return self._medium.medium

    @property
    def closed(self) -> bool:
        return self._cipher.closed

    def close(self) -> None:
        """Release the derived key. The store is unusable afterwards."""
        if not self._cipher.closed:
            self._cipher.close()
            logger.info("Encrypted store closed: prefix=%s", self._prefix)

    async def __aenter__(self) -> "EncryptedStorage":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._cipher.closed:
            raise StorageClosedError("Encrypted store has been closed")

    # ------------------------------------------------------------------
    # Key helpers
    # ------------------------------------------------------------------

    def _table_prefix(self, table: str) -> str:
        validate_segment(table, "table name")
        return f"{self._prefix}{SEPARATOR}{table}{SEPARATOR}"

    def _storage_key(self, table: str, key: str) -> str:
        if not isinstance(key, str) or not key:
            raise InvalidKeyError("Record key must be a non-empty string")
        return f"{self._table_prefix(table)}{key}"

    async def _table_keys(self, table: str) -> list[str]:
        """Return the storage keys of the medium that belong to table."""
        table_prefix = self._table_prefix(table)
        return [
            name for name in await self._medium.list_keys()
            if name.startswith(table_prefix)
        ]

    async def _generate_key(self, table: str) -> str:
        while True:
            candidate = str(uuid.uuid4())
            if not await self.exists(table, candidate):
                return candidate
            logger.debug(
                "Generated key collided: table=%s key=%s", table, candidate,
            )

    # ------------------------------------------------------------------
    # Record conversion
    # ------------------------------------------------------------------

    def _to_payload(self, table: str, value: Any) -> dict[str, Any]:
        model = self._schema.get(table)
        if model is not None:
            if not isinstance(value, model):
                value = model.model_validate(value)
            return value.model_dump(mode="json")
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json")
        if isinstance(value, Mapping):
            return dict(value)
        raise TypeError(
            f"Records must be mappings or pydantic models, "
            f"got {type(value).__name__}"
        )

    def _present(self, table: str, payload: Any, key: str) -> StoredValue:
        model = self._schema.get(table)
        if model is None:
            if isinstance(payload, dict):
                return {**payload, KEY_FIELD: key}
            return payload
        return model.model_validate({**payload, KEY_FIELD: key})

    async def _read(self, storage_key: str) -> Optional[Any]:
        item = await self._medium.get_item(storage_key)
        if item is None:
            return None
        return deserialize_value(self._cipher.decrypt(item))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def exists(self, table: str, key: str) -> bool:
        """Check whether a record is stored at (table, key)."""
        self._check_open()
        return await self._medium.get_item(self._storage_key(table, key)) is not None

    async def set(
        self,
        table: str,
        value: Union[Mapping[str, Any], BaseModel],
        key: Optional[str] = None,
    ) -> StoredValue:
        """Encrypt and persist a record.

        Without ``key`` a random UUID is generated, regenerating on the
        (unlikely) collision with an existing record. With ``key`` any
        existing record at that key is overwritten.

        Args:
            table: Table name (non-empty, no '_').
            value: Mapping or pydantic model to store.
            key: Optional explicit record key.

        Returns:
            The stored record with its ``key``.

        Raises:
            EncryptionError: If the value cannot be serialized or encrypted.
            InvalidKeyError: If table or key cannot form a storage key.
        """
        self._check_open()
        payload = self._to_payload(table, value)
        if key is None:
            record_key = await self._generate_key(table)
        else:
            record_key = key
        storage_key = self._storage_key(table, record_key)
        envelope = self._cipher.encrypt(serialize_value(payload))
        await self._medium.set_item(storage_key, envelope)
        logger.debug("Store set: table=%s key=%s", table, record_key)
        return self._present(table, payload, record_key)

    async def set_multiple(
        self,
        table: str,
        values: Iterable[Union[Mapping[str, Any], BaseModel]],
    ) -> list[StoredValue]:
        """Store several records, each as an independent ``set``.

        There is no atomicity across the batch. Every ``set`` is allowed to
        settle before returning; if any failed, the first failure is raised
        and the records of the successful ones stay written.
        """
        self._check_open()
        results = await asyncio.gather(
            *(self.set(table, value) for value in values),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.debug(
                "Store set_multiple: table=%s stored=%d failed=%d",
                table, len(results) - len(failures), len(failures),
            )
            raise failures[0]
        return list(results)

    async def get(self, table: str, key: str) -> Optional[StoredValue]:
        """Decrypt and return a record, or ``None`` if not found.

        Raises:
            DecryptionError: If the record exists but cannot be decrypted.
        """
        self._check_open()
        payload = await self._read(self._storage_key(table, key))
        if payload is None:
            return None
        model = self._schema.get(table)
        if model is None:
            return payload
        return self._present(table, payload, key)

    async def get_all(self, table: str) -> list[StoredValue]:
        """Decrypt every record of a table.

        Order follows the medium's key enumeration. A single undecryptable
        record aborts the call with ``DecryptionError``.
        """
        self._check_open()
        table_prefix = self._table_prefix(table)
        results: list[StoredValue] = []
        for storage_key in await self._table_keys(table):
            payload = await self._read(storage_key)
            if payload is None:
                continue
            results.append(
                self._present(table, payload, storage_key[len(table_prefix):])
            )
        return results

    async def filter(
        self,
        table: str,
        predicate: Callable[[StoredValue], bool],
    ) -> list[StoredValue]:
        """Return the records of a table for which predicate is true."""
        return [record for record in await self.get_all(table) if predicate(record)]

    async def scan(self, table: str) -> ScanResult:
        """Decrypt every record of a table, collecting failures.

        Unlike :meth:`get_all`, records that fail to decrypt are reported
        in ``failed_keys`` instead of aborting the scan.
        """
        self._check_open()
        table_prefix = self._table_prefix(table)
        result = ScanResult()
        for storage_key in await self._table_keys(table):
            record_key = storage_key[len(table_prefix):]
            try:
                payload = await self._read(storage_key)
            except DecryptionError as err:
                logger.warning(
                    "Skipping undecryptable record: table=%s key=%s: %s",
                    table, record_key, err,
                )
                result.failed_keys.append(record_key)
                continue
            if payload is not None:
                result.records.append(self._present(table, payload, record_key))
        return result

    async def keys(self, table: str) -> list[str]:
        """List the record keys stored in a table."""
        self._check_open()
        table_prefix = self._table_prefix(table)
        return [name[len(table_prefix):] for name in await self._table_keys(table)]

    async def remove(self, table: str, key: str) -> None:
        """Delete a record. No-op if it does not exist."""
        self._check_open()
        await self._medium.remove_item(self._storage_key(table, key))
        logger.debug("Store remove: table=%s key=%s", table, key)

    async def clear(self, table: str) -> int:
        """Delete every record of a table.

        Returns:
            Number of records removed.
        """
        self._check_open()
        storage_keys = await self._table_keys(table)
        for storage_key in storage_keys:
            await self._medium.remove_item(storage_key)
        logger.debug("Store clear: table=%s removed=%d", table, len(storage_keys))
        return len(storage_keys)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

async def create_store(
    secret: str,
    salt: str,
    prefix: Optional[str] = None,
    *,
    medium: Any,
    schema: Optional[Schema] = None,
    iterations: int = DEFAULT_ITERATIONS,
) -> EncryptedStorage:
    """Derive the key from (secret, salt) and build a ready store.

    Key derivation is CPU bound and runs in a worker thread.

    Args:
        secret: Secret material for key derivation.
        salt: Salt for key derivation.
        prefix: Namespace prefix (default ``"@edb"``).
        medium: Persistent medium providing get_item/set_item/remove_item/list_keys.
        schema: Optional mapping of table name to pydantic model.
        iterations: PBKDF2 iteration count.

    Returns:
        Ready EncryptedStorage instance.

    Raises:
        ConstructionError: If the medium or the crypto provider is unusable,
            or the secret material is empty.
    """
    adapter = ensure_medium(medium)
    validate_segment(DEFAULT_PREFIX if prefix is None else prefix, "prefix")
    if not secret:
        raise ConstructionError("A non-empty secret is required")
    if not salt:
        raise ConstructionError("A non-empty salt is required")
    try:
        cipher = await asyncio.to_thread(
            AESGCMCipher.from_secret, secret, salt, iterations,
        )
    except UnsupportedAlgorithm as err:
        raise ConstructionError(
            "Crypto provider lacks PBKDF2-HMAC-SHA256 or AES-GCM"
        ) from err
    except ValueError as err:
        raise ConstructionError(str(err)) from err
    try:
        store = EncryptedStorage(cipher, adapter, prefix=prefix, schema=schema)
    except Exception:
        cipher.close()
        raise
    logger.info("Encrypted store ready: prefix=%s", store.prefix)
    return store


async def create_store_from_config(
    config: StoreConfig,
    medium: Any,
    schema: Optional[Schema] = None,
) -> EncryptedStorage:
    """Build a store from a validated :class:`StoreConfig`."""
    return await create_store(
        config.secret.get_secret_value(),
        config.salt,
        config.prefix,
        medium=medium,
        schema=schema,
        iterations=config.iterations,
    )
