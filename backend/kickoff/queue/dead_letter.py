"""
backend/kickoff/queue/dead_letter.py

Purpose:
    Dead-letter sink for jobs that exhausted their attempts or failed
    permanently. Entries keep the original id, type, payload and failure
    history for operator inspection and replay. Nothing in the pipeline
    consumes this store automatically.

Dependencies:
    - pydantic
    - motor / pymongo (MongoDeadLetterStore)
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING

from kickoff.queue.models import Job, job_key
from kickoff.utils import ensure_utc, utcnow

logger = logging.getLogger("kickoff.queue.dead_letter")


class DeadLetterEntry(BaseModel):
    queue: str
    job_id: str
    job_type: str
    payload: dict[str, Any] = {}
    priority: int = 10
    attempts: int = 0
    max_attempts: int = 0
    error_kind: str = "retryable"
    failed_reason: str = ""
    failure_history: list[dict[str, Any]] = Field(default_factory=list)
    failed_at: datetime
    replayed_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return job_key(self.queue, self.job_id)

    @classmethod
    def from_job(cls, job: Job, *, error_kind: str, reason: str, now: datetime) -> "DeadLetterEntry":
        return cls(
            queue=job.queue,
            job_id=job.id,
            job_type=job.type,
            payload=dict(job.payload),
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            error_kind=error_kind,
            failed_reason=reason,
            failure_history=list(job.failure_history),
            failed_at=now,
        )


class DeadLetterStore(Protocol):
    async def put(self, entry: DeadLetterEntry) -> None: ...
    async def get(self, queue: str, job_id: str) -> DeadLetterEntry | None: ...
    async def list_entries(self, queue: str | None = None, limit: int = 100) -> list[DeadLetterEntry]: ...
    async def count(self) -> int: ...
    async def delete(self, queue: str, job_id: str) -> bool: ...
    async def clear(self) -> int: ...
    async def trim(self, max_entries: int) -> int: ...
    async def purge_older_than(self, cutoff: datetime) -> int: ...


class InMemoryDeadLetterStore:
    def __init__(self) -> None:
        self._entries: "OrderedDict[str, DeadLetterEntry]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def put(self, entry: DeadLetterEntry) -> None:
        async with self._lock:
            self._entries.pop(entry.key, None)
            self._entries[entry.key] = entry.model_copy(deep=True)

    async def get(self, queue: str, job_id: str) -> DeadLetterEntry | None:
        entry = self._entries.get(job_key(queue, job_id))
        return entry.model_copy(deep=True) if entry else None

    async def list_entries(self, queue: str | None = None, limit: int = 100) -> list[DeadLetterEntry]:
        rows = [e for e in reversed(self._entries.values()) if queue is None or e.queue == queue]
        return [e.model_copy(deep=True) for e in rows[:limit]]

    async def count(self) -> int:
        return len(self._entries)

    async def delete(self, queue: str, job_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(job_key(queue, job_id), None) is not None

    async def clear(self) -> int:
        async with self._lock:
            n = len(self._entries)
            self._entries.clear()
            return n

    async def trim(self, max_entries: int) -> int:
        removed = 0
        async with self._lock:
            while len(self._entries) > max_entries:
                self._entries.popitem(last=False)
                removed += 1
        return removed

    async def purge_older_than(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [k for k, e in self._entries.items() if e.failed_at < cutoff]
            for key in stale:
                del self._entries[key]
            return len(stale)


def _to_entry(doc: dict[str, Any]) -> DeadLetterEntry:
    data = {k: v for k, v in doc.items() if k != "_id"}
    data["failed_at"] = ensure_utc(data["failed_at"])
    if data.get("replayed_at") is not None:
        data["replayed_at"] = ensure_utc(data["replayed_at"])
    return DeadLetterEntry.model_validate(data)


class MongoDeadLetterStore:
    def __init__(self, db, collection: str = "dead_letters") -> None:
        self._col = db[collection]

    async def ensure_indexes(self) -> None:
        await self._col.create_index([("failed_at", DESCENDING)])
        await self._col.create_index([("queue", ASCENDING), ("failed_at", DESCENDING)])

    async def put(self, entry: DeadLetterEntry) -> None:
        doc = entry.model_dump(mode="python")
        await self._col.replace_one({"_id": entry.key}, {"_id": entry.key, **doc}, upsert=True)

    async def get(self, queue: str, job_id: str) -> DeadLetterEntry | None:
        doc = await self._col.find_one({"_id": job_key(queue, job_id)})
        return _to_entry(doc) if doc else None

    async def list_entries(self, queue: str | None = None, limit: int = 100) -> list[DeadLetterEntry]:
        query = {"queue": queue} if queue else {}
        cursor = self._col.find(query).sort("failed_at", DESCENDING).limit(limit)
        return [_to_entry(doc) async for doc in cursor]

    async def count(self) -> int:
        return int(await self._col.count_documents({}))

    async def delete(self, queue: str, job_id: str) -> bool:
        res = await self._col.delete_one({"_id": job_key(queue, job_id)})
        return res.deleted_count == 1

    async def clear(self) -> int:
        res = await self._col.delete_many({})
        return int(res.deleted_count)

    async def trim(self, max_entries: int) -> int:
        excess = await self.count() - max_entries
        if excess <= 0:
            return 0
        cursor = self._col.find({}, {"_id": 1}).sort("failed_at", ASCENDING).limit(excess)
        ids = [doc["_id"] async for doc in cursor]
        res = await self._col.delete_many({"_id": {"$in": ids}})
        return int(res.deleted_count)

    async def purge_older_than(self, cutoff: datetime) -> int:
        res = await self._col.delete_many({"failed_at": {"$lt": cutoff}})
        return int(res.deleted_count)


class DeadLetterSink:
    """Bounded dead-letter writer with a size alert."""

    def __init__(
        self,
        store: DeadLetterStore,
        *,
        max_entries: int = 1000,
        alert_threshold: int = 50,
        ttl_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_entries = max_entries
        self.alert_threshold = alert_threshold
        self.ttl = timedelta(days=ttl_days)
        self._clock = clock

    async def capture(self, job: Job, *, error_kind: str, reason: str) -> DeadLetterEntry:
        entry = DeadLetterEntry.from_job(job, error_kind=error_kind, reason=reason, now=self._clock())
        await self.store.put(entry)
        logger.error(
            "Dead-lettered job queue=%s job_id=%s job_type=%s attempts=%d kind=%s: %s",
            job.queue, job.id, job.type, job.attempts, error_kind, reason,
        )
        trimmed = await self.store.trim(self.max_entries)
        if trimmed:
            logger.warning("Dead-letter store over %d entries, trimmed %d oldest", self.max_entries, trimmed)
        size = await self.store.count()
        if size >= self.alert_threshold:
            logger.error("Dead-letter store holds %d entries (alert threshold %d)", size, self.alert_threshold)
        return entry

    async def purge_expired(self) -> int:
        return await self.store.purge_older_than(self._clock() - self.ttl)
