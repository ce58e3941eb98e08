"""
Content-Addressable Cache
=========================

Stores compiled unit blobs keyed by the hash of their inputs. Writes are
first-writer-wins and idempotent; reads and writes are bounded in time and
degrade to a miss rather than block a build.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Any, Tuple

from shadow_build.config import CachePolicy
from shadow_build.errors import CacheCorruption
from shadow_build.models.artifact import CacheEntry, CacheKey

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# Storage backends
# ─────────────────────────────────────────────────────────────────────

class BlobStore:
    """Storage layer used by the cache. put_if_absent must be atomic per key."""

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        raise NotImplementedError

    def put_if_absent(self, entry: CacheEntry) -> Tuple[CacheEntry, bool]:
        """Store entry unless the key exists. Returns (stored entry, created)."""
        raise NotImplementedError

    def delete(self, key: CacheKey) -> bool:
        raise NotImplementedError

    def scan(self) -> Iterator[Tuple[CacheKey, int, float]]:
        """Yield (key, size, created_at) for every stored entry."""
        raise NotImplementedError


class MemoryBlobStore(BlobStore):
    """In-process store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self.write_count = 0

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key.digest)

    def put_if_absent(self, entry: CacheEntry) -> Tuple[CacheEntry, bool]:
        with self._lock:
            existing = self._entries.get(entry.key.digest)
            if existing is not None:
                return existing, False
            self._entries[entry.key.digest] = entry
            self.write_count += 1
            return entry, True

    def delete(self, key: CacheKey) -> bool:
        with self._lock:
            return self._entries.pop(key.digest, None) is not None

    def scan(self) -> Iterator[Tuple[CacheKey, int, float]]:
        with self._lock:
            entries = list(self._entries.values())
        for entry in entries:
            yield entry.key, entry.size, entry.created_at

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FileBlobStore(BlobStore):
    """
    Directory-backed store that survives restarts.

    Layout: <root>/<key[:2]>/<key>.blob with a <key>.json sidecar holding the
    content hash. The blob is published with os.link, which fails if the
    target exists, so the first writer wins without an explicit lock.
    An entry without its sidecar is not visible yet.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.write_count = 0
        self._count_lock = threading.Lock()

    def _paths(self, key: CacheKey) -> Tuple[Path, Path]:
        shard = self.root / key.digest[:2]
        return shard / f"{key.digest}.blob", shard / f"{key.digest}.json"

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        blob_path, meta_path = self._paths(key)
        try:
            meta = json.loads(meta_path.read_text())
            blob = blob_path.read_bytes()
        except FileNotFoundError:
            return None
        except ValueError as e:
            raise CacheCorruption(key.digest, f"unreadable metadata: {e}") from e
        try:
            return CacheEntry(
                key=key,
                blob=blob,
                content_hash=meta["content_hash"],
                size=meta.get("size", len(blob)),
                created_at=meta.get("created_at", time.time()),
            )
        except (KeyError, TypeError) as e:
            raise CacheCorruption(key.digest, f"incomplete metadata: {e!r}") from e

    def _write_meta(self, entry: CacheEntry, meta_path: Path) -> None:
        fd, tmp_meta = tempfile.mkstemp(dir=meta_path.parent, suffix=".tmp")
        with os.fdopen(fd, "w") as f:
            json.dump(entry.metadata(), f)
        os.replace(tmp_meta, meta_path)

    def _adopt_orphan(
        self, entry: CacheEntry, blob_path: Path, meta_path: Path, rewrite: bool = False,
    ) -> CacheEntry:
        """Write the missing sidecar for a blob left behind by an interrupted put."""
        try:
            blob = blob_path.read_bytes()
        except FileNotFoundError:
            return entry
        adopted = CacheEntry(key=entry.key, blob=blob, created_at=entry.created_at)
        if rewrite or not meta_path.exists():
            self._write_meta(adopted, meta_path)
            logger.info(f"Restored missing cache metadata for {entry.key.digest[:12]}")
        return adopted

    def put_if_absent(self, entry: CacheEntry) -> Tuple[CacheEntry, bool]:
        blob_path, meta_path = self._paths(entry.key)
        blob_path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_blob = tempfile.mkstemp(dir=blob_path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(entry.blob)
            try:
                os.link(tmp_blob, blob_path)
            except FileExistsError:
                corrupt = False
                try:
                    existing = self.get(entry.key)
                except CacheCorruption:
                    existing, corrupt = None, True
                if existing is None:
                    existing = self._adopt_orphan(entry, blob_path, meta_path, rewrite=corrupt)
                return existing, False
        finally:
            os.unlink(tmp_blob)

        self._write_meta(entry, meta_path)

        with self._count_lock:
            self.write_count += 1
        return entry, True

    def delete(self, key: CacheKey) -> bool:
        blob_path, meta_path = self._paths(key)
        removed = False
        for path in (meta_path, blob_path):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                pass
        return removed

    def scan(self) -> Iterator[Tuple[CacheKey, int, float]]:
        for meta_path in self.root.glob("*/*.json"):
            try:
                meta = json.loads(meta_path.read_text())
                digest = meta["key"]
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable cache metadata {meta_path}: {e!r}")
                continue
            yield CacheKey(digest), meta.get("size", 0), meta.get("created_at", 0.0)


# ─────────────────────────────────────────────────────────────────────
# Cache
# ─────────────────────────────────────────────────────────────────────

@dataclass
class EvictionPolicy:
    """Target for an eviction pass (LRU by last access)."""
    max_bytes: int
    max_entries: Optional[int] = None


class ContentAddressableCache:
    """
    Content-addressed cache of compiled units.

    Thread-safe: the LRU index is protected by an RLock; entries themselves
    are immutable and read without locking.
    """

    def __init__(
        self,
        store: Optional[BlobStore] = None,
        policy: Optional[CachePolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._lock = threading.RLock()
        self._store = store or MemoryBlobStore()
        self._policy = policy or CachePolicy()
        self._clock = clock
        self._io = ThreadPoolExecutor(
            max_workers=self._policy.io_workers,
            thread_name_prefix="cache-io",
        )

        # digest -> (size, last_access), least recently used first
        self._index: "OrderedDict[str, Tuple[int, float]]" = OrderedDict()
        self._total_bytes = 0

        # Metrics
        self._hits = 0
        self._misses = 0
        self._lookup_timeouts = 0
        self._put_timeouts = 0
        self._corruptions = 0
        self._writes = 0
        self._dedup_writes = 0
        self._evictions = 0

        self._rebuild_index()

    @property
    def store(self) -> BlobStore:
        return self._store

    def _rebuild_index(self) -> None:
        """Index entries already present in the store, oldest first."""
        existing = sorted(self._store.scan(), key=lambda item: item[2])
        with self._lock:
            for key, size, created_at in existing:
                self._index[key.digest] = (size, created_at)
                self._total_bytes += size
        if existing:
            logger.info(f"Cache index rebuilt: {len(existing)} entries, {self._total_bytes} bytes")

    def _touch(self, key: CacheKey, size: int) -> None:
        with self._lock:
            previous = self._index.pop(key.digest, None)
            if previous is None:
                self._total_bytes += size
            self._index[key.digest] = (size, self._clock())

    def _forget(self, key: CacheKey) -> None:
        with self._lock:
            previous = self._index.pop(key.digest, None)
            if previous is not None:
                self._total_bytes -= previous[0]

    def _evict_corrupt(self, key: CacheKey) -> None:
        self._store.delete(key)
        self._forget(key)
        with self._lock:
            self._corruptions += 1
            self._misses += 1

    def lookup(self, key: CacheKey) -> Optional[CacheEntry]:
        """Return the entry for key, or None on miss, timeout or corruption."""
        future = self._io.submit(self._store.get, key)
        try:
            entry = future.result(timeout=self._policy.lookup_timeout_sec)
        except FutureTimeout:
            with self._lock:
                self._lookup_timeouts += 1
                self._misses += 1
            logger.warning(f"Cache lookup timed out for {key.digest[:12]}; treating as miss")
            return None
        except CacheCorruption as e:
            self._evict_corrupt(key)
            logger.warning(f"Cache entry {e}; evicted")
            return None
        except OSError as e:
            with self._lock:
                self._misses += 1
            logger.warning(f"Cache lookup failed for {key.digest[:12]}: {e}")
            return None

        if entry is None:
            with self._lock:
                self._misses += 1
            return None

        if not entry.verify():
            self._evict_corrupt(key)
            logger.warning(f"Cache entry {key.digest[:12]} failed hash check; evicted")
            return None

        self._touch(key, entry.size)
        entry.last_access = self._clock()
        with self._lock:
            self._hits += 1
        return entry

    def put(self, key: CacheKey, blob: bytes) -> CacheEntry:
        """
        Store blob under key. Idempotent: if the key already exists the
        stored entry is returned and nothing is written.
        """
        now = self._clock()
        entry = CacheEntry(key=key, blob=blob, created_at=now, last_access=now)
        future = self._io.submit(self._store.put_if_absent, entry)
        try:
            stored, created = future.result(timeout=self._policy.put_timeout_sec)
        except FutureTimeout:
            with self._lock:
                self._put_timeouts += 1
            logger.warning(f"Cache put timed out for {key.digest[:12]}; entry not committed")
            return entry

        self._touch(key, stored.size)
        with self._lock:
            if created:
                self._writes += 1
            else:
                self._dedup_writes += 1
        logger.debug(f"Cache put {key.digest[:12]} ({'new' if created else 'existing'})")
        return stored

    def contains(self, key: CacheKey) -> bool:
        with self._lock:
            return key.digest in self._index

    def under_pressure(self) -> bool:
        with self._lock:
            return self._total_bytes > self._policy.max_bytes

    def evict(self, policy: Optional[EvictionPolicy] = None) -> List[str]:
        """Evict least recently used entries until the policy is met."""
        policy = policy or EvictionPolicy(max_bytes=self._policy.max_bytes)
        evicted: List[str] = []
        while True:
            with self._lock:
                over_bytes = self._total_bytes > policy.max_bytes
                over_count = (
                    policy.max_entries is not None
                    and len(self._index) > policy.max_entries
                )
                if not self._index or not (over_bytes or over_count):
                    break
                digest, (size, _) = self._index.popitem(last=False)
                self._total_bytes -= size
                self._evictions += 1
            self._store.delete(CacheKey(digest))
            evicted.append(digest)

        if evicted:
            logger.info(f"Evicted {len(evicted)} cache entries")
        return evicted

    def close(self) -> None:
        self._io.shutdown(wait=False)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "entries": len(self._index),
                "total_bytes": self._total_bytes,
                "max_bytes": self._policy.max_bytes,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / max(1, lookups),
                "lookup_timeouts": self._lookup_timeouts,
                "put_timeouts": self._put_timeouts,
                "corruptions": self._corruptions,
                "writes": self._writes,
                "dedup_writes": self._dedup_writes,
                "evictions": self._evictions,
            }
