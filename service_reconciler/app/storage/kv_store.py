"""
Key-value stores for locally persisted engine state.

Trial start timestamps and the last backend observation live here. Every
implementation reports I/O failures as ``StorageUnavailable``.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import redis.asyncio as redis

from shared.errors import StorageUnavailable
from shared.logging import get_logger


def trial_key(user_id: str) -> str:
    return f"trial_started_at:{user_id}"


def backend_record_key(user_id: str) -> str:
    return f"backend_record:{user_id}"


LAST_USER_KEY = "last_user_id"


class KeyValueStore(ABC):
    """Async string key -> JSON-serializable value store."""

    async def start(self):
        """Open connections. No-op by default."""

    async def stop(self):
        """Release connections. No-op by default."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def set_if_absent(self, key: str, value: Any) -> bool:
        """Write ``value`` only when ``key`` is unset. Returns True if written."""
        if await self.get(key) is not None:
            return False
        await self.set(key, value)
        return True


class MemoryStore(KeyValueStore):
    """Process-local store, used in tests and development."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def set_if_absent(self, key: str, value: Any) -> bool:
        async with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True


class JsonFileStore(KeyValueStore):
    """Single JSON document on disk, rewritten atomically on every change."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self.logger = get_logger("reconciler.storage.file")

    def _read(self) -> Dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StorageUnavailable(f"Cannot read {self._path}", {"error": str(e)}) from e

        try:
            payload = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            raise StorageUnavailable(f"Corrupt state file {self._path}", {"error": str(e)}) from e
        if not isinstance(payload, dict):
            raise StorageUnavailable(f"Corrupt state file {self._path}", {"error": "root is not an object"})
        return payload

    def _write(self, payload: Dict[str, Any]) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise StorageUnavailable(f"Cannot write {self._path}", {"error": str(e)}) from e

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            payload = await asyncio.to_thread(self._read)
        return payload.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            payload = await asyncio.to_thread(self._read)
            payload[key] = value
            await asyncio.to_thread(self._write, payload)

    async def delete(self, key: str) -> None:
        async with self._lock:
            payload = await asyncio.to_thread(self._read)
            if payload.pop(key, None) is not None:
                await asyncio.to_thread(self._write, payload)

    async def set_if_absent(self, key: str, value: Any) -> bool:
        async with self._lock:
            payload = await asyncio.to_thread(self._read)
            if payload.get(key) is not None:
                return False
            payload[key] = value
            await asyncio.to_thread(self._write, payload)
            return True


class RedisStore(KeyValueStore):
    """Redis-backed store; values are JSON encoded."""

    def __init__(self, redis_url: str, prefix: str = "entitlement:", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.prefix = prefix
        self.redis: Optional[redis.Redis] = client
        self.logger = get_logger("reconciler.storage.redis")

    async def start(self):
        """Connect and ping Redis."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
        try:
            await self.redis.ping()
        except (redis.RedisError, OSError) as e:
            self.logger.error("Failed to start Redis store", error=str(e))
            raise StorageUnavailable("Redis unavailable", {"error": str(e)}) from e
        self.logger.info("Redis store started")

    async def stop(self):
        if self.redis is not None:
            await self.redis.aclose()
            self.logger.info("Redis store stopped")

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise StorageUnavailable("Redis store not started")
        return self.redis

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._client().get(self.prefix + key)
        except (redis.RedisError, OSError) as e:
            raise StorageUnavailable("Redis read failed", {"key": key, "error": str(e)}) from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageUnavailable("Corrupt Redis value", {"key": key, "error": str(e)}) from e

    async def set(self, key: str, value: Any) -> None:
        try:
            await self._client().set(self.prefix + key, json.dumps(value))
        except (redis.RedisError, OSError) as e:
            raise StorageUnavailable("Redis write failed", {"key": key, "error": str(e)}) from e

    async def delete(self, key: str) -> None:
        try:
            await self._client().delete(self.prefix + key)
        except (redis.RedisError, OSError) as e:
            raise StorageUnavailable("Redis delete failed", {"key": key, "error": str(e)}) from e

    async def set_if_absent(self, key: str, value: Any) -> bool:
        try:
            written = await self._client().set(self.prefix + key, json.dumps(value), nx=True)
        except (redis.RedisError, OSError) as e:
            raise StorageUnavailable("Redis write failed", {"key": key, "error": str(e)}) from e
        return bool(written)


def create_store(backend: str, *, path: str = "", redis_url: str = "") -> KeyValueStore:
    """Build the store selected by configuration."""
    if backend == "file":
        return JsonFileStore(Path(path))
    if backend == "redis":
        return RedisStore(redis_url)
    return MemoryStore()
