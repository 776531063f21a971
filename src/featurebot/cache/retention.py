"""
Bounded retention cache for recent items.

Entries are grouped in buckets (e.g. a conversation) and kept under two
bounds: at most ``max_per_bucket`` entries per bucket, evicted oldest first
on insert, and a global retention window enforced by a periodic sweep. The
sweep walks a time-ordered index from the oldest end, so both ``put`` and
``sweep`` stay amortized O(1) per entry.
"""

import asyncio
import dataclasses
import threading
import time
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from featurebot.utils.errors import SweepFailure
from featurebot.utils.logging import setup_logging

if TYPE_CHECKING:
    from featurebot.core.storage import FeatureStorage

logger = setup_logging(__name__)

SNAPSHOT_VERSION = 1


@dataclass
class CacheEntry:
    """A cached item and its bookkeeping."""
    entry_id: str
    bucket_id: str
    payload: Any
    inserted_at: float
    deleted: bool = False
    deleted_at: float | None = None
    updated_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to a JSON-compatible dictionary."""
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheEntry":
        """Create entry from dictionary."""
        return cls(
            entry_id=str(data["entry_id"]),
            bucket_id=str(data["bucket_id"]),
            payload=data.get("payload"),
            inserted_at=float(data["inserted_at"]),
            deleted=bool(data.get("deleted", False)),
            deleted_at=data.get("deleted_at"),
            updated_at=data.get("updated_at")
        )


class RetentionCache:
    """Per-bucket FIFO cache with a global time-based retention window."""

    def __init__(
        self,
        max_per_bucket: int = 1000,
        retention_seconds: float = 3 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time
    ):
        """Initialize the retention cache.

        Args:
            max_per_bucket: Maximum entries kept per bucket; 0 keeps nothing
            retention_seconds: Entries older than this are removed by sweep
            clock: Time source, injectable for tests
        """
        if max_per_bucket < 0:
            raise ValueError("max_per_bucket must not be negative")
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")

        self.max_per_bucket = max_per_bucket
        self.retention_seconds = retention_seconds
        self._clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._buckets: dict[str, OrderedDict[str, None]] = {}
        # (inserted_at, entry_id) in insertion order; records of removed
        # entries are skipped when popped
        self._time_index: deque[tuple[float, str]] = deque()
        self._index_ordered = True
        self._lock = threading.RLock()

        self._stats = {
            "puts": 0,
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0
        }

        self._sweeper_task: asyncio.Task | None = None
        self._sweeper_stop: asyncio.Event | None = None

        logger.info(
            f"Retention cache initialized: max_per_bucket={max_per_bucket}, "
            f"retention={retention_seconds}s"
        )

    # Writes

    def put(self, bucket_id: str, entry_id: str, payload: Any, timestamp: float | None = None) -> None:
        """Store an entry, evicting the bucket's oldest entries beyond the bound.

        Re-putting an existing id replaces it and makes it the most recent
        entry of its (possibly new) bucket.
        """
        inserted_at = self._clock() if timestamp is None else timestamp

        with self._lock:
            existing = self._entries.get(entry_id)
            if existing is not None:
                self._remove_locked(existing)

            entry = CacheEntry(
                entry_id=entry_id,
                bucket_id=bucket_id,
                payload=payload,
                inserted_at=inserted_at
            )
            self._entries[entry_id] = entry

            bucket = self._buckets.setdefault(bucket_id, OrderedDict())
            bucket[entry_id] = None

            if self._time_index and inserted_at < self._time_index[-1][0]:
                self._index_ordered = False
            self._time_index.append((inserted_at, entry_id))
            self._stats["puts"] += 1

            while len(bucket) > self.max_per_bucket:
                oldest_id, _ = bucket.popitem(last=False)
                self._entries.pop(oldest_id, None)
                self._stats["evictions"] += 1
                logger.debug(f"Evicted {oldest_id} from bucket {bucket_id}")

            if not bucket:
                del self._buckets[bucket_id]

            self._maybe_compact_index()

    def mark_deleted(self, entry_id: str) -> Any | None:
        """Flag an entry as deleted, keeping its payload.

        Returns:
            The last known payload, or None if the entry is not cached
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            if not entry.deleted:
                entry.deleted = True
                entry.deleted_at = self._clock()
            return entry.payload

    def update(self, entry_id: str, changes: Mapping[str, Any]) -> Any | None:
        """Merge metadata changes into a cached payload.

        Mapping payloads are updated in place; any other payload is replaced
        by a dict copy of ``changes``.

        Returns:
            The updated payload, or None if the entry is not cached
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            if isinstance(entry.payload, dict):
                entry.payload.update(changes)
            else:
                entry.payload = dict(changes)
            entry.updated_at = self._clock()
            return entry.payload

    def remove(self, entry_id: str) -> bool:
        """Remove one entry outright."""
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            self._remove_locked(entry)
            return True

    def clear(self, bucket_id: str | None = None) -> int:
        """Remove all entries, or all entries of one bucket.

        Returns:
            Number of entries removed
        """
        with self._lock:
            if bucket_id is None:
                removed = len(self._entries)
                self._entries.clear()
                self._buckets.clear()
                self._time_index.clear()
                self._index_ordered = True
            else:
                bucket = self._buckets.pop(bucket_id, None) or OrderedDict()
                for entry_id in bucket:
                    self._entries.pop(entry_id, None)
                removed = len(bucket)

        logger.info(f"Cleared {removed} cached entries" + (f" from bucket {bucket_id}" if bucket_id else ""))
        return removed

    # Reads

    def get(self, entry_id: str) -> Any | None:
        """Get an entry's payload, or None if it is not cached."""
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                self._stats["misses"] += 1
                return None
            self._stats["hits"] += 1
            return entry.payload

    def get_entry(self, entry_id: str) -> CacheEntry | None:
        """Get a copy of an entry's full record, or None."""
        with self._lock:
            entry = self._entries.get(entry_id)
            return dataclasses.replace(entry) if entry else None

    def list_bucket(self, bucket_id: str, limit: int = 50) -> list[CacheEntry]:
        """List a bucket's entries, most recent first.

        Returns a snapshot; later writes do not affect it.
        """
        if limit <= 0:
            return []

        with self._lock:
            bucket = self._buckets.get(bucket_id)
            if not bucket:
                return []
            result = []
            for entry_id in reversed(bucket):
                result.append(dataclasses.replace(self._entries[entry_id]))
                if len(result) >= limit:
                    break
            return result

    def bucket_ids(self) -> list[str]:
        with self._lock:
            return list(self._buckets.keys())

    def bucket_size(self, bucket_id: str) -> int:
        with self._lock:
            return len(self._buckets.get(bucket_id, ()))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    # Retention

    def sweep(self, now: float | None = None) -> int:
        """Remove every entry older than the retention window.

        Args:
            now: Reference time (defaults to the cache clock)

        Returns:
            Number of entries removed
        """
        now = self._clock() if now is None else now
        removed = 0

        with self._lock:
            if not self._index_ordered:
                self._rebuild_index()

            while self._time_index and now - self._time_index[0][0] > self.retention_seconds:
                inserted_at, entry_id = self._time_index.popleft()
                entry = self._entries.get(entry_id)
                if entry is None or entry.inserted_at != inserted_at:
                    continue
                self._remove_locked(entry)
                removed += 1

            self._stats["expirations"] += removed

        if removed:
            logger.debug(f"Swept {removed} expired entries")
        return removed

    def start_sweeper(
        self,
        interval_seconds: float,
        on_sweep: Callable[[int], Awaitable[None] | None] | None = None
    ) -> asyncio.Task:
        """Start the background sweep task on the running loop.

        Args:
            interval_seconds: Time between sweeps
            on_sweep: Optional callback receiving the removed count after a
                sweep that removed something

        Returns:
            The sweeper task (the running one if already started)
        """
        if self._sweeper_task is not None and not self._sweeper_task.done():
            return self._sweeper_task

        self._sweeper_stop = asyncio.Event()
        self._sweeper_task = asyncio.create_task(
            self._sweep_loop(interval_seconds, self._sweeper_stop, on_sweep),
            name="retention-cache-sweeper"
        )
        logger.debug(f"Started retention sweeper (interval={interval_seconds}s)")
        return self._sweeper_task

    async def stop_sweeper(self) -> None:
        """Stop the background sweep task and wait for it to finish."""
        task = self._sweeper_task
        if task is None:
            return

        if self._sweeper_stop is not None:
            self._sweeper_stop.set()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        self._sweeper_task = None
        self._sweeper_stop = None
        logger.debug("Stopped retention sweeper")

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper_task is not None and not self._sweeper_task.done()

    async def _sweep_loop(
        self,
        interval_seconds: float,
        stop: asyncio.Event,
        on_sweep: Callable[[int], Awaitable[None] | None] | None
    ) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            try:
                removed = self.sweep()
                if removed and on_sweep is not None:
                    result = on_sweep(removed)
                    if asyncio.iscoroutine(result):
                        await result
            except Exception as e:
                failure = SweepFailure(f"Retention sweep failed: {e}")
                logger.error(str(failure), exc_info=e)

    # Observability

    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            timestamps = [entry.inserted_at for entry in self._entries.values()]
            total_requests = self._stats["hits"] + self._stats["misses"]
            return {
                "total_entries": len(self._entries),
                "total_buckets": len(self._buckets),
                "deleted_entries": sum(1 for entry in self._entries.values() if entry.deleted),
                "avg_entries_per_bucket": len(self._entries) / len(self._buckets) if self._buckets else 0.0,
                "oldest_entry": min(timestamps) if timestamps else None,
                "newest_entry": max(timestamps) if timestamps else None,
                "max_per_bucket": self.max_per_bucket,
                "retention_seconds": self.retention_seconds,
                "hit_rate": self._stats["hits"] / total_requests if total_requests else 0.0,
                **self._stats
            }

    # Persistence

    def snapshot(self) -> dict[str, Any]:
        """Serialize all entries, bucket order preserved."""
        with self._lock:
            entries = [
                self._entries[entry_id].to_dict()
                for bucket in self._buckets.values()
                for entry_id in bucket
            ]
        return {
            "version": SNAPSHOT_VERSION,
            "saved_at": self._clock(),
            "entries": entries
        }

    def restore(self, data: Mapping[str, Any] | None) -> int:
        """Load entries from a snapshot, then sweep anything already expired.

        Malformed records are skipped with a warning. Bucket bounds apply.

        Returns:
            Number of entries cached after the restore
        """
        if not data:
            return 0

        records = []
        for raw in data.get("entries", []):
            try:
                records.append(CacheEntry.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed cache record: {e}")

        records.sort(key=lambda entry: entry.inserted_at)

        with self._lock:
            for record in records:
                self.put(record.bucket_id, record.entry_id, record.payload, timestamp=record.inserted_at)
                entry = self._entries.get(record.entry_id)
                if entry is not None:
                    entry.deleted = record.deleted
                    entry.deleted_at = record.deleted_at
                    entry.updated_at = record.updated_at
            self.sweep()
            restored = len(self._entries)

        logger.debug(f"Restored {restored} cached entries from {len(records)} records")
        return restored

    async def save(self, storage: "FeatureStorage") -> int:
        """Persist a snapshot through a storage handle.

        Returns:
            Number of entries saved
        """
        snapshot = self.snapshot()
        await storage.save(snapshot)
        logger.debug(f"Saved {len(snapshot['entries'])} cached entries")
        return len(snapshot["entries"])

    async def load(self, storage: "FeatureStorage") -> int:
        """Restore a snapshot from a storage handle."""
        return self.restore(await storage.load())

    # Internals

    def _remove_locked(self, entry: CacheEntry) -> None:
        self._entries.pop(entry.entry_id, None)
        bucket = self._buckets.get(entry.bucket_id)
        if bucket is not None:
            bucket.pop(entry.entry_id, None)
            if not bucket:
                del self._buckets[entry.bucket_id]

    def _rebuild_index(self) -> None:
        self._time_index = deque(sorted(
            (entry.inserted_at, entry.entry_id) for entry in self._entries.values()
        ))
        self._index_ordered = True

    def _maybe_compact_index(self) -> None:
        # Evicted and replaced entries leave stale records behind until swept
        if len(self._time_index) <= 2 * len(self._entries) + 1024:
            return
        self._time_index = deque(
            (inserted_at, entry_id)
            for inserted_at, entry_id in self._time_index
            if (entry := self._entries.get(entry_id)) is not None and entry.inserted_at == inserted_at
        )
