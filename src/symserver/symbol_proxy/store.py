"""Disk-backed response cache with an in-memory expiry table."""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, BinaryIO, Callable, Mapping, Optional
from uuid import uuid4

import structlog


LOGGER = structlog.get_logger("symserver.symbol_proxy.store")

READ_CHUNK_BYTES = 1024 * 1024
HEADERS_SUFFIX = ".headers"


class CacheMetadataError(ValueError):
    """Raised when a persisted headers record cannot be trusted."""


@dataclass(frozen=True)
class CacheEntry:
    """A fresh hit whose body file was already opened by :meth:`DiskCacheStore.lookup`.

    The handle keeps the body readable even if the entry is discarded while
    it is being served. The body can be consumed once.
    """

    key: str
    status: int
    headers: dict[str, str]
    body_path: Path
    expires_at: float = field(compare=False)
    body: BinaryIO = field(compare=False, repr=False, default=None)  # type: ignore[assignment]

    async def iter_body(self, chunk_size: int = READ_CHUNK_BYTES) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        try:
            while True:
                data = await loop.run_in_executor(None, self.body.read, chunk_size)
                if not data:
                    break
                yield data
        finally:
            await self.close()

    async def read_body(self) -> bytes:
        try:
            return await asyncio.to_thread(self.body.read)
        finally:
            await self.close()

    async def close(self) -> None:
        if self.body is not None and not self.body.closed:
            await asyncio.to_thread(self.body.close)


class DiskCacheStore:
    """Two files per entry (``<key>`` and ``<key>.headers``) plus an expiry table.

    The expiry table is the only source of truth for freshness: files without
    a live record are never served. It is never rebuilt from disk, so
    :meth:`prepare` wipes the directory on startup.
    """

    def __init__(
        self,
        directory: Path,
        *,
        hit_ttl_seconds: float,
        miss_ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._directory = Path(directory)
        self._hit_ttl = float(hit_ttl_seconds)
        self._miss_ttl = float(miss_ttl_seconds)
        self._max_entries = max(0, int(max_entries))
        self._clock = clock
        self._expiry: dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def body_path(self, key: str) -> Path:
        return self._directory / key

    def headers_path(self, key: str) -> Path:
        return self._directory / f"{key}{HEADERS_SUFFIX}"

    def prepare(self) -> None:
        if self._directory.exists():
            shutil.rmtree(self._directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._expiry.clear()
        LOGGER.info("cache_directory_reset", path=str(self._directory))

    def ttl_for(self, status: int) -> float:
        return self._hit_ttl if status == 200 else self._miss_ttl

    def expires_at(self, key: str) -> Optional[float]:
        with self._lock:
            return self._expiry.get(key)

    def live_entries(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for expires_at in self._expiry.values() if expires_at > now)

    def __len__(self) -> int:
        return self.live_entries()

    def reserve_capacity(self) -> bool:
        # Soft bound: concurrent finalizes may each pass this check near the ceiling.
        return self.live_entries() < self._max_entries

    async def lookup(self, key: str) -> Optional[CacheEntry]:
        expires_at = self.expires_at(key)
        if expires_at is None:
            return None

        if expires_at <= self._clock():
            await self._discard(key, expires_at)
            LOGGER.debug("cache_entry_expired", key=key)
            return None

        try:
            status, headers, body = await asyncio.to_thread(self._open_entry, key)
        except (OSError, CacheMetadataError) as exc:
            LOGGER.debug("cache_entry_unreadable", key=key, error=str(exc))
            await self._discard(key, expires_at)
            return None

        return CacheEntry(
            key=key,
            status=status,
            headers=headers,
            body_path=self.body_path(key),
            expires_at=expires_at,
            body=body,
        )

    async def finalize(
        self,
        key: str,
        status: int,
        headers: Mapping[str, str],
        body: AsyncIterable[bytes],
    ) -> bool:
        """Persist a response and register its expiry once body and headers are both on disk.

        Returns ``False`` when the cache is full or either write failed; in
        both cases no expiry record is registered for this attempt.
        """
        if not self.reserve_capacity():
            LOGGER.info("cache_full", key=key, max_entries=self._max_entries)
            await _release(body)
            return False

        token = uuid4().hex
        body_tmp = self._directory / f"{key}.{token}.tmp"
        headers_tmp = self._directory / f"{key}{HEADERS_SUFFIX}.{token}.tmp"

        # Both writes run to completion before either outcome is inspected.
        body_result, headers_result = await asyncio.gather(
            self._write_body(body_tmp, body),
            self._write_metadata(headers_tmp, status, headers),
            return_exceptions=True,
        )
        failure = next(
            (result for result in (body_result, headers_result) if isinstance(result, BaseException)),
            None,
        )
        if failure is not None:
            LOGGER.warning("cache_write_failed", key=key, status=status, error=repr(failure))
            await _release(body)
            await asyncio.to_thread(_unlink_all, body_tmp, headers_tmp)
            return False

        try:
            await asyncio.to_thread(self._publish, key, body_tmp, headers_tmp)
        except OSError as exc:
            LOGGER.warning("cache_publish_failed", key=key, error=str(exc))
            with self._lock:
                self._expiry.pop(key, None)
            await asyncio.to_thread(_unlink_all, body_tmp, headers_tmp)
            return False

        expires_at = self._clock() + self.ttl_for(status)
        with self._lock:
            self._expiry[key] = expires_at
        LOGGER.debug("cache_entry_stored", key=key, status=status, bytes=body_result, expires_at=expires_at)
        return True

    async def remove(self, key: str) -> None:
        with self._lock:
            self._expiry.pop(key, None)
        await asyncio.to_thread(_unlink_all, self.body_path(key), self.headers_path(key))

    async def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [(key, expires_at) for key, expires_at in self._expiry.items() if expires_at <= now]
        removed = 0
        for key, expires_at in expired:
            if await self._discard(key, expires_at):
                removed += 1
        if removed:
            LOGGER.info("cache_sweep_completed", removed=removed, remaining=self.live_entries())
        return removed

    async def _discard(self, key: str, seen_expires_at: float) -> bool:
        # Only drop the record we inspected; a finalize may have replaced it meanwhile.
        with self._lock:
            if self._expiry.get(key) != seen_expires_at:
                return False
            del self._expiry[key]
        await asyncio.to_thread(_unlink_all, self.body_path(key), self.headers_path(key))
        return True

    def _open_entry(self, key: str) -> tuple[int, dict[str, str], BinaryIO]:
        body = self.body_path(key).open("rb")
        try:
            status, headers = self._read_metadata(key)
        except BaseException:
            body.close()
            raise
        return status, headers, body

    def _read_metadata(self, key: str) -> tuple[int, dict[str, str]]:
        try:
            record = json.loads(self.headers_path(key).read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CacheMetadataError(f"Corrupt headers record: {exc}") from exc
        if not isinstance(record, dict):
            raise CacheMetadataError("Headers record is not an object")
        status = record.get("status")
        headers = record.get("headers")
        if not isinstance(status, int) or isinstance(status, bool):
            raise CacheMetadataError("Headers record has no status")
        if not isinstance(headers, dict) or not all(
            isinstance(name, str) and isinstance(value, str) for name, value in headers.items()
        ):
            raise CacheMetadataError("Headers record has malformed headers")
        return status, headers

    async def _write_body(self, path: Path, body: AsyncIterable[bytes]) -> int:
        size = 0
        handle = await asyncio.to_thread(path.open, "wb")
        try:
            async for chunk in body:
                if chunk:
                    await asyncio.to_thread(handle.write, chunk)
                    size += len(chunk)
        finally:
            await asyncio.to_thread(handle.close)
        return size

    async def _write_metadata(self, path: Path, status: int, headers: Mapping[str, str]) -> None:
        payload = json.dumps({"status": int(status), "headers": dict(headers)})
        await asyncio.to_thread(path.write_text, payload, encoding="utf-8")

    def _publish(self, key: str, body_tmp: Path, headers_tmp: Path) -> None:
        os.replace(body_tmp, self.body_path(key))
        os.replace(headers_tmp, self.headers_path(key))


def _unlink_all(*paths: Path) -> None:
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.debug("cache_unlink_failed", path=str(path), error=str(exc))


async def _release(body: AsyncIterable[bytes]) -> None:
    # Stop an unconsumed body subscription from buffering the rest of the stream.
    aclose = getattr(body, "aclose", None)
    if aclose is not None:
        await aclose()
