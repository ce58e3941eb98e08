"""
Tests for the content-addressable cache
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor


from shadow_build.cache import ContentAddressableCache, EvictionPolicy, FileBlobStore, MemoryBlobStore
from shadow_build.config import CachePolicy
from shadow_build.models.artifact import CacheKey


def key(name: str, deps=(), version="v1") -> CacheKey:
    return CacheKey.compute(f"hash-{name}", deps, version)


class SlowStore(MemoryBlobStore):
    """Store whose reads and writes block until released."""

    def __init__(self):
        super().__init__()
        self.gate = threading.Event()

    def get(self, k):
        self.gate.wait(timeout=5)
        return super().get(k)

    def put_if_absent(self, entry):
        self.gate.wait(timeout=5)
        return super().put_if_absent(entry)


class TestCacheKey:
    """Key derivation."""

    def test_deterministic(self):
        assert key("a", ["d1", "d2"]) == key("a", ["d2", "d1"])

    def test_inputs_change_key(self):
        base = key("a", ["d1"])
        assert key("b", ["d1"]) != base
        assert key("a", ["d2"]) != base
        assert key("a", ["d1"], version="v2") != base


class TestLookupPut:
    """Basic behaviour."""

    def test_miss_then_hit(self, cache):
        k = key("a")
        assert cache.lookup(k) is None
        cache.put(k, b"object-a")
        entry = cache.lookup(k)
        assert entry.blob == b"object-a"
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1

    def test_put_is_idempotent(self, cache):
        """The first writer wins; later writers get the stored entry."""
        k = key("a")
        first = cache.put(k, b"one")
        second = cache.put(k, b"two")
        assert second.blob == b"one"
        assert first.content_hash == second.content_hash
        assert cache.get_stats()["dedup_writes"] == 1

    def test_concurrent_puts_store_one_blob(self, clock):
        """Racing writers for one key leave exactly one stored blob."""
        store = MemoryBlobStore()
        cache = ContentAddressableCache(store=store, clock=clock)
        k = key("shared")
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda i: cache.put(k, f"blob-{i}".encode()), range(32)))

        assert store.write_count == 1
        assert len(store) == 1
        assert len({r.blob for r in results}) == 1
        cache.close()

    def test_corrupt_entry_is_evicted(self, clock):
        store = MemoryBlobStore()
        cache = ContentAddressableCache(store=store, clock=clock)
        k = key("a")
        entry = cache.put(k, b"good")
        entry.blob = b"bad!"

        assert cache.lookup(k) is None
        assert store.get(k) is None
        assert cache.get_stats()["corruptions"] == 1
        cache.close()


class TestTimeouts:
    """Bounded-time operations."""

    def test_lookup_timeout_is_miss(self, clock):
        store = SlowStore()
        cache = ContentAddressableCache(
            store=store,
            policy=CachePolicy(lookup_timeout_sec=0.05, put_timeout_sec=0.05),
            clock=clock,
        )
        assert cache.lookup(key("a")) is None
        assert cache.get_stats()["lookup_timeouts"] == 1
        store.gate.set()
        cache.close()

    def test_put_timeout_returns_uncommitted_entry(self, clock):
        store = SlowStore()
        cache = ContentAddressableCache(
            store=store,
            policy=CachePolicy(lookup_timeout_sec=0.05, put_timeout_sec=0.05),
            clock=clock,
        )
        entry = cache.put(key("a"), b"blob")
        assert entry.blob == b"blob"
        assert not cache.contains(key("a"))
        assert cache.get_stats()["put_timeouts"] == 1
        store.gate.set()
        cache.close()


class TestEviction:
    """LRU eviction."""

    def test_evicts_least_recently_used(self, cache, clock):
        for name in ("a", "b", "c"):
            cache.put(key(name), b"x" * 10)
            clock.advance(1)
        cache.lookup(key("a"))

        evicted = cache.evict(EvictionPolicy(max_bytes=20))
        assert evicted == [key("b").digest]
        assert cache.contains(key("a"))
        assert cache.get_stats()["total_bytes"] == 20

    def test_under_pressure(self, clock):
        cache = ContentAddressableCache(policy=CachePolicy(max_bytes=5), clock=clock)
        cache.put(key("a"), b"123456")
        assert cache.under_pressure()
        cache.evict()
        assert not cache.under_pressure()
        cache.close()


class TestFileBlobStore:
    """Persistent backend."""

    def test_survives_reopen(self, tmp_path, clock):
        cache = ContentAddressableCache(store=FileBlobStore(tmp_path), clock=clock)
        cache.put(key("a"), b"object")
        cache.close()

        reopened = ContentAddressableCache(store=FileBlobStore(tmp_path), clock=clock)
        assert reopened.get_stats()["entries"] == 1
        assert reopened.lookup(key("a")).blob == b"object"
        reopened.close()

    def test_first_writer_wins_on_disk(self, tmp_path):
        store = FileBlobStore(tmp_path)
        cache = ContentAddressableCache(store=store)
        k = key("a")
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda i: cache.put(k, f"v{i}".encode()), range(16)))
        assert store.write_count == 1
        assert len(list(tmp_path.glob("*/*.blob"))) == 1
        assert not list(tmp_path.glob("*/*.tmp"))
        cache.close()

    def test_tampered_blob_not_served(self, tmp_path, clock):
        store = FileBlobStore(tmp_path)
        cache = ContentAddressableCache(store=store, clock=clock)
        k = key("a")
        cache.put(k, b"object")
        blob_path = next(tmp_path.glob("*/*.blob"))
        blob_path.write_bytes(b"tampered")

        assert cache.lookup(k) is None
        assert not blob_path.exists()
        cache.close()

    def test_sidecar_metadata(self, tmp_path):
        store = FileBlobStore(tmp_path)
        cache = ContentAddressableCache(store=store)
        k = key("a")
        cache.put(k, b"object")
        meta = json.loads(next(tmp_path.glob("*/*.json")).read_text())
        assert meta["key"] == k.digest
        assert meta["size"] == len(b"object")
        cache.close()

    def test_truncated_sidecar_is_a_miss(self, tmp_path, clock):
        store = FileBlobStore(tmp_path)
        cache = ContentAddressableCache(store=store, clock=clock)
        k = key("a")
        cache.put(k, b"object")
        next(tmp_path.glob("*/*.json")).write_text("{trunc")

        assert cache.lookup(k) is None
        assert not list(tmp_path.glob("*/*.blob"))
        assert not cache.contains(k)
        assert cache.get_stats()["corruptions"] == 1

        cache.put(k, b"object")
        assert cache.lookup(k).blob == b"object"
        cache.close()

    def test_sidecar_without_content_hash_is_a_miss(self, tmp_path, clock):
        cache = ContentAddressableCache(store=FileBlobStore(tmp_path), clock=clock)
        k = key("a")
        cache.put(k, b"object")
        next(tmp_path.glob("*/*.json")).write_text(json.dumps({"key": k.digest}))

        assert cache.lookup(k) is None
        assert cache.get_stats()["corruptions"] == 1
        cache.close()

    def test_orphaned_blob_gets_its_sidecar(self, tmp_path, clock):
        """A blob left without metadata by an interrupted put is adopted by the next put."""
        store = FileBlobStore(tmp_path)
        k = key("a")
        blob_path, meta_path = store._paths(k)
        blob_path.parent.mkdir(parents=True)
        blob_path.write_bytes(b"object")

        cache = ContentAddressableCache(store=store, clock=clock)
        assert cache.lookup(k) is None
        stored = cache.put(k, b"object")

        assert meta_path.exists()
        assert stored.blob == b"object"
        assert cache.lookup(k).blob == b"object"
        assert store.write_count == 0
        cache.close()
