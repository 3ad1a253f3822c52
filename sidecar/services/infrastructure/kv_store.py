"""
Key-value stores backing the token cache, session records and dedup entries.

Values are JSON-serialisable dicts. A missing, unreadable or corrupt entry
reads as ``None``; the store never raises for those cases.
"""

import asyncio
import fcntl
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Protocol

from sidecar.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._-]+")


def safe_segment(value: str) -> str:
    """Make a key segment usable as a file name."""
    cleaned = _UNSAFE_SEGMENT.sub("_", value).strip(".")
    return cleaned or "_"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> dict | None: ...

    async def put(self, key: str, value: dict, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> bool: ...


class FileKeyValueStore:
    """
    One JSON file per key below ``base_dir``.

    ``/`` in a key creates sub-directories. Writes go to a temp file in the
    target directory under an exclusive lock and are renamed into place.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)

    def path_for(self, key: str) -> Path:
        segments = [safe_segment(part) for part in key.split("/") if part]
        if not segments:
            raise ValueError("Store key must not be empty")
        *dirs, name = segments
        return self.base_dir.joinpath(*dirs, f"{name}.json")

    async def get(self, key: str) -> dict | None:
        return await asyncio.to_thread(self._read, self.path_for(key))

    async def put(self, key: str, value: dict, ttl_seconds: int | None = None) -> None:
        # Expiry is enforced by readers for file entries.
        await asyncio.to_thread(self._write, self.path_for(key), value)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._remove, self.path_for(key))

    def _read(self, path: Path) -> dict | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Store entry unreadable", path=str(path), error=str(e))
            return None

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Store entry corrupt, ignoring", path=str(path))
            return None

        return data if isinstance(data, dict) else None

    def _write(self, path: Path, value: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(value, separators=(",", ":"), sort_keys=True)
        lock_path = path.with_name(path.name + ".lock")

        with open(lock_path, "a+") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as handle:
                        handle.write(payload)
                        handle.flush()
                        os.fsync(handle.fileno())
                    os.replace(tmp_name, path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _remove(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False


class MemoryKeyValueStore:
    """Process-local store; used for the fast token tier and in tests."""

    def __init__(self):
        self._data: dict[str, dict] = {}

    async def get(self, key: str) -> dict | None:
        value = self._data.get(key)
        return dict(value) if value is not None else None

    async def put(self, key: str, value: dict, ttl_seconds: int | None = None) -> None:
        self._data[key] = dict(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._data)


class RedisKeyValueStore:
    """Redis-backed store for deployments that run more than one sidecar instance."""

    def __init__(self, client: Any, prefix: str):
        self.client = client
        self.prefix = prefix.rstrip(":")

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> dict | None:
        raw = await self.client.get(self._key(key))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Redis store entry corrupt, ignoring", key=key)
            return None
        return data if isinstance(data, dict) else None

    async def put(self, key: str, value: dict, ttl_seconds: int | None = None) -> None:
        payload = json.dumps(value, separators=(",", ":"), sort_keys=True)
        if ttl_seconds and ttl_seconds > 0:
            await self.client.set(self._key(key), payload, ex=ttl_seconds)
        else:
            await self.client.set(self._key(key), payload)

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(self._key(key)))
