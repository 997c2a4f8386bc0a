from __future__ import annotations

import json
from pathlib import Path

import pytest

from symserver.symbol_proxy.forwarding import UpstreamResponse
from symserver.symbol_proxy.paths import derive_cache_key
from symserver.symbol_proxy.store import DiskCacheStore
from tests.utils.fakes import FakeClock, iter_chunks


HIT_TTL = 3600.0
MISS_TTL = 900.0


def _store(tmp_path: Path, clock: FakeClock, max_entries: int = 10) -> DiskCacheStore:
    store = DiskCacheStore(
        tmp_path / "cache",
        hit_ttl_seconds=HIT_TTL,
        miss_ttl_seconds=MISS_TTL,
        max_entries=max_entries,
        clock=clock,
    )
    store.prepare()
    return store


def _key(name: str) -> str:
    return derive_cache_key(f"/{name}.pdb/0123abcd/{name}.pdb")


@pytest.mark.asyncio
async def test_finalize_then_lookup_roundtrip(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("abc")
    headers = {"content-type": "application/octet-stream", "etag": '"abc"'}

    stored = await store.finalize(key, 200, headers, iter_chunks([b"MZ", b"\x90\x00", b"payload"]))

    assert stored is True
    entry = await store.lookup(key)
    assert entry is not None
    assert entry.status == 200
    assert entry.headers == headers
    chunks = [chunk async for chunk in entry.iter_body(chunk_size=4)]
    assert chunks[0] == b"MZ\x90\x00"
    assert b"".join(chunks) == b"MZ\x90\x00payload"


@pytest.mark.asyncio
async def test_persisted_layout_uses_key_file_names(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("layout")

    await store.finalize(key, 404, {"x-amz-request-id": "1"}, iter_chunks([b"missing"]))

    assert sorted(path.name for path in store.directory.iterdir()) == [key, f"{key}.headers"]
    record = json.loads(store.headers_path(key).read_text(encoding="utf-8"))
    assert record == {"status": 404, "headers": {"x-amz-request-id": "1"}}


@pytest.mark.asyncio
async def test_ttl_class_depends_on_status(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    found, missing = _key("found"), _key("missing")

    await store.finalize(found, 200, {}, iter_chunks([b"x"]))
    await store.finalize(missing, 404, {}, iter_chunks([b""]))

    hit_window = store.expires_at(found) - clock.now
    miss_window = store.expires_at(missing) - clock.now
    assert hit_window == HIT_TTL
    assert miss_window == MISS_TTL
    assert hit_window / miss_window == HIT_TTL / MISS_TTL


@pytest.mark.parametrize("status", [301, 404, 500, 503])
def test_non_200_statuses_use_miss_ttl(tmp_path: Path, clock: FakeClock, status: int) -> None:
    store = _store(tmp_path, clock)
    assert store.ttl_for(status) == MISS_TTL
    assert store.ttl_for(200) == HIT_TTL


@pytest.mark.asyncio
async def test_expired_entry_is_absent_and_purged(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("stale")
    await store.finalize(key, 404, {}, iter_chunks([b"nope"]))

    clock.advance(MISS_TTL + 1)
    assert store.body_path(key).exists()

    assert await store.lookup(key) is None
    assert store.expires_at(key) is None
    assert not store.body_path(key).exists()
    assert not store.headers_path(key).exists()


@pytest.mark.asyncio
async def test_entry_is_served_until_expiry(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("fresh")
    await store.finalize(key, 200, {}, iter_chunks([b"x"]))

    clock.advance(HIT_TTL - 1)
    entry = await store.lookup(key)
    assert entry is not None
    await entry.close()
    clock.advance(1)
    assert await store.lookup(key) is None


@pytest.mark.asyncio
async def test_unknown_key_is_absent(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    assert await store.lookup(_key("never")) is None


@pytest.mark.asyncio
async def test_files_without_expiry_record_are_not_served(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("orphan")
    store.body_path(key).write_bytes(b"orphan")
    store.headers_path(key).write_text(json.dumps({"status": 200, "headers": {}}), encoding="utf-8")

    assert await store.lookup(key) is None


@pytest.mark.asyncio
async def test_capacity_ceiling_stops_new_admissions(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock, max_entries=2)
    first, second, third = _key("one"), _key("two"), _key("three")

    assert await store.finalize(first, 200, {}, iter_chunks([b"1"]))
    assert await store.finalize(second, 200, {}, iter_chunks([b"2"]))
    assert store.reserve_capacity() is False

    assert await store.finalize(third, 200, {}, iter_chunks([b"3"])) is False
    assert await store.lookup(third) is None
    assert not store.body_path(third).exists()

    entry = await store.lookup(first)
    assert entry is not None
    assert await entry.read_body() == b"1"


@pytest.mark.asyncio
async def test_expired_entries_free_capacity(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock, max_entries=1)
    await store.finalize(_key("old"), 404, {}, iter_chunks([b""]))
    assert store.reserve_capacity() is False

    clock.advance(MISS_TTL + 1)

    assert store.reserve_capacity() is True
    assert await store.finalize(_key("new"), 200, {}, iter_chunks([b"n"]))


@pytest.mark.asyncio
async def test_failed_body_write_registers_nothing(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("broken")

    async def broken_body():
        yield b"partial"
        raise OSError("upstream went away")

    assert await store.finalize(key, 200, {}, broken_body()) is False
    assert store.expires_at(key) is None
    assert await store.lookup(key) is None
    assert list(store.directory.iterdir()) == []


@pytest.mark.asyncio
async def test_failed_headers_write_registers_nothing(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("unserializable")

    assert await store.finalize(key, 200, {"x-bad": object()}, iter_chunks([b"body"])) is False  # type: ignore[dict-item]
    assert store.expires_at(key) is None
    assert list(store.directory.iterdir()) == []


@pytest.mark.asyncio
async def test_refinalize_replaces_entry(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("replaced")
    await store.finalize(key, 404, {}, iter_chunks([b"old"]))
    clock.advance(10)

    await store.finalize(key, 200, {"etag": "new"}, iter_chunks([b"new"]))

    entry = await store.lookup(key)
    assert entry is not None
    assert entry.status == 200
    assert entry.headers == {"etag": "new"}
    assert await entry.read_body() == b"new"
    assert store.expires_at(key) == clock.now + HIT_TTL


@pytest.mark.asyncio
async def test_corrupt_metadata_is_a_miss(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("corrupt")
    await store.finalize(key, 200, {}, iter_chunks([b"x"]))
    store.headers_path(key).write_text("{not json", encoding="utf-8")

    assert await store.lookup(key) is None
    assert store.expires_at(key) is None
    assert not store.body_path(key).exists()


@pytest.mark.asyncio
async def test_metadata_without_status_is_a_miss(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("nostatus")
    await store.finalize(key, 200, {}, iter_chunks([b"x"]))
    store.headers_path(key).write_text(json.dumps({"headers": {}}), encoding="utf-8")

    assert await store.lookup(key) is None
    assert store.expires_at(key) is None


@pytest.mark.asyncio
async def test_missing_body_file_is_a_miss(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("nobody")
    await store.finalize(key, 200, {}, iter_chunks([b"x"]))
    store.body_path(key).unlink()

    assert await store.lookup(key) is None
    assert store.expires_at(key) is None
    assert not store.headers_path(key).exists()


def test_prepare_wipes_previous_run(tmp_path: Path, clock: FakeClock) -> None:
    directory = tmp_path / "cache"
    directory.mkdir()
    (directory / "leftover").write_bytes(b"old body")
    (directory / "leftover.headers").write_text("{}", encoding="utf-8")
    (directory / "nested").mkdir()

    store = DiskCacheStore(directory, hit_ttl_seconds=1, miss_ttl_seconds=1, max_entries=1, clock=clock)
    store.prepare()

    assert directory.is_dir()
    assert list(directory.iterdir()) == []
    assert len(store) == 0


@pytest.mark.asyncio
async def test_sweep_removes_only_expired_entries(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    short, long = _key("short"), _key("long")
    await store.finalize(short, 404, {}, iter_chunks([b""]))
    await store.finalize(long, 200, {}, iter_chunks([b"keep"]))

    clock.advance(MISS_TTL + 1)
    removed = await store.sweep_expired()

    assert removed == 1
    assert store.expires_at(short) is None
    assert not store.body_path(short).exists()
    assert store.live_entries() == 1
    entry = await store.lookup(long)
    assert entry is not None
    assert await entry.read_body() == b"keep"


@pytest.mark.asyncio
async def test_remove_drops_record_and_files(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("gone")
    await store.finalize(key, 200, {}, iter_chunks([b"x"]))

    await store.remove(key)

    assert store.expires_at(key) is None
    assert list(store.directory.iterdir()) == []


@pytest.mark.asyncio
async def test_hit_stays_readable_after_concurrent_sweep(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("racing")
    await store.finalize(key, 404, {}, iter_chunks([b"still here"]))

    clock.advance(MISS_TTL - 0.001)
    entry = await store.lookup(key)
    assert entry is not None

    clock.advance(0.01)
    assert await store.sweep_expired() == 1
    assert not store.body_path(key).exists()

    chunks = [chunk async for chunk in entry.iter_body()]
    assert b"".join(chunks) == b"still here"
    assert entry.body.closed


@pytest.mark.asyncio
async def test_lookup_with_vanished_body_is_a_miss(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    key = _key("vanished")
    await store.finalize(key, 200, {}, iter_chunks([b"x"]))
    store.body_path(key).unlink()

    assert await store.lookup(key) is None
    assert store.live_entries() == 0


@pytest.mark.asyncio
async def test_refused_admission_releases_body_subscription(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock, max_entries=1)
    await store.finalize(_key("resident"), 200, {}, iter_chunks([b"r"]))

    upstream = UpstreamResponse(200, {})
    body = upstream.subscribe()
    assert upstream.subscriber_count == 1

    assert await store.finalize(_key("late"), 200, {}, body) is False
    assert upstream.subscriber_count == 0
    upstream.publish(b"not buffered")
    upstream.close()
    assert [chunk async for chunk in body] == []


@pytest.mark.asyncio
async def test_failed_write_releases_body_subscription(tmp_path: Path, clock: FakeClock) -> None:
    store = _store(tmp_path, clock)
    upstream = UpstreamResponse(200, {})
    body = upstream.subscribe()
    upstream.publish(b"partial")

    async def write_fails(path, chunks):
        async for _ in chunks:
            raise OSError("disk full")
        return 0

    store._write_body = write_fails  # type: ignore[method-assign]

    assert await store.finalize(_key("diskfull"), 200, {}, body) is False
    assert upstream.subscriber_count == 0
