"""
Storage Medium — the persistent, string-keyed blob store records land in.

The record store only needs four operations from a medium:
``get_item``, ``set_item``, ``remove_item`` and ``list_keys``.
Mediums may implement them synchronously or as coroutines.
"""
import os
import asyncio
import inspect
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Union

import orjson

from .config import DEFAULT_PREFIX, SEPARATOR
from .exceptions import ConstructionError

logger = logging.getLogger("encrypted_storage")

_REQUIRED_METHODS = ("get_item", "set_item", "remove_item", "list_keys")


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class StorageMedium(ABC):
    """Abstract durable key-value medium."""

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        """Return the stored text, or ``None`` if not found."""

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        """Create or overwrite a value."""

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        """Delete a value. No-op if the key does not exist."""

    @abstractmethod
    async def list_keys(self) -> list[str]:
        """Return every key held by the medium."""


class MediumAdapter:
    """Uniform async view over a medium with sync or async methods."""

    def __init__(self, medium: Any):
        self._medium = medium

    @property
    def medium(self) -> Any:
        return self._medium

    async def get_item(self, key: str) -> Optional[str]:
        return await _maybe_await(self._medium.get_item(key))

    async def set_item(self, key: str, value: str) -> None:
        await _maybe_await(self._medium.set_item(key, value))

    async def remove_item(self, key: str) -> None:
        await _maybe_await(self._medium.remove_item(key))

    async def list_keys(self) -> list[str]:
        return list(await _maybe_await(self._medium.list_keys()))


def ensure_medium(medium: Any) -> MediumAdapter:
    """Validate a medium and wrap it for the record store.

    Raises:
        ConstructionError: If medium is missing or lacks a required method.
    """
    if medium is None:
        raise ConstructionError("A storage medium is required")
    missing = [
        name for name in _REQUIRED_METHODS
        if not callable(getattr(medium, name, None))
    ]
    if missing:
        raise ConstructionError(
            f"Storage medium {type(medium).__name__} is missing: "
            f"{', '.join(missing)}"
        )
    if isinstance(medium, MediumAdapter):
        return medium
    return MediumAdapter(medium)


class MemoryMedium(StorageMedium):
    """In-process dict medium; contents vanish with the process."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._items: dict[str, str] = dict(initial or {})

    @property
    def items(self) -> dict[str, str]:
        return self._items

    async def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    async def list_keys(self) -> list[str]:
        return list(self._items.keys())


class JsonFileMedium(StorageMedium):
    """Single JSON file medium.

    Every write rewrites the whole map to a temporary file in the same
    directory and atomically replaces the target, so a crash leaves either
    the old or the new map on disk. File I/O runs in a worker thread and
    writes are serialized; readers see a change once it is on disk.
    """

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        self._items: dict[str, str] = self._load()
        self._lock: Optional[asyncio.Lock] = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        raw = self._path.read_bytes()
        if not raw:
            return {}
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as err:
            raise ConstructionError(
                f"Storage file {self._path} is not valid JSON"
            ) from err
        if not isinstance(data, dict):
            raise ConstructionError(
                f"Storage file {self._path} must hold a JSON object"
            )
        logger.debug("Loaded %d item(s) from %s", len(data), self._path)
        return data

    def _write(self, data: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.",
        )
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(data)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp, self._path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    async def _commit(self, key: str, value: Optional[str]) -> None:
        """Write the map with key set to value (removed when None)."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            items = dict(self._items)
            if value is None:
                if key not in items:
                    return
                del items[key]
            else:
                items[key] = value
            await asyncio.to_thread(self._write, orjson.dumps(items))
            self._items = items

    async def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        await self._commit(key, value)

    async def remove_item(self, key: str) -> None:
        await self._commit(key, None)

    async def list_keys(self) -> list[str]:
        return list(self._items.keys())


class RedisMedium(StorageMedium):
    """Adapter over an asyncio Redis-compatible client.

    The client must provide ``get``, ``set``, ``delete`` and ``scan_iter``
    coroutines, as ``redis.asyncio.Redis`` does. Byte replies are decoded
    as UTF-8.

    ``list_keys`` only scans keys under ``prefix`` (default ``"@edb"``),
    which must match the prefix of the stores using this medium. Pass
    ``prefix=None`` to scan the whole database.
    """

    def __init__(self, client: Any, prefix: Optional[str] = DEFAULT_PREFIX):
        self._redis = client
        self._match = f"{prefix}{SEPARATOR}*" if prefix else "*"

    @property
    def match(self) -> str:
        return self._match

    @staticmethod
    def _decode(value: Any) -> Any:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).decode("utf-8")
        return value

    async def get_item(self, key: str) -> Optional[str]:
        return self._decode(await self._redis.get(key))

    async def set_item(self, key: str, value: str) -> None:
        await self._redis.set(key, value)

    async def remove_item(self, key: str) -> None:
        await self._redis.delete(key)

    async def list_keys(self) -> list[str]:
        return [
            self._decode(key)
            async for key in self._redis.scan_iter(match=self._match)
        ]
