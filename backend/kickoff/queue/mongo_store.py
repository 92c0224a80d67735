"""
backend/kickoff/queue/mongo_store.py

Purpose:
    MongoDB-backed job store. Claims and state transitions are single
    find_one_and_update / update_one calls filtered on state and lease holder,
    so concurrent workers in different processes never own the same job.

Dependencies:
    - motor
    - pymongo
    - kickoff.queue.models
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from kickoff.queue.models import PENDING_STATES, Job, JobState, job_key
from kickoff.queue.store import STALLED_REASON
from kickoff.utils import ensure_utc

_DATE_FIELDS = ("run_at", "lock_until", "created_at", "updated_at", "finished_at")
_PENDING = [state.value for state in PENDING_STATES]


def _to_doc(job: Job) -> dict[str, Any]:
    doc = job.model_dump(mode="python")
    doc["state"] = job.state.value
    doc["_id"] = job.key
    return doc


def _to_job(doc: dict[str, Any]) -> Job:
    data = {k: v for k, v in doc.items() if k != "_id"}
    for name in _DATE_FIELDS:
        if data.get(name) is not None:
            data[name] = ensure_utc(data[name])
    for entry in data.get("failure_history") or []:
        if isinstance(entry.get("at"), datetime):
            entry["at"] = ensure_utc(entry["at"])
    return Job.model_validate(data)


class MongoJobStore:
    def __init__(self, db, collection: str = "jobs") -> None:
        self._col = db[collection]
        self._seq = db["counters"]

    async def ensure_indexes(self) -> None:
        await self._col.create_index(
            [("queue", ASCENDING), ("state", ASCENDING), ("priority", ASCENDING),
             ("run_at", ASCENDING), ("seq", ASCENDING)],
            name="claim_order",
        )
        await self._col.create_index([("queue", ASCENDING), ("state", ASCENDING), ("lock_until", ASCENDING)])
        await self._col.create_index([("queue", ASCENDING), ("state", ASCENDING), ("finished_at", ASCENDING)])

    async def _next_seq(self) -> int:
        doc = await self._seq.find_one_and_update(
            {"_id": "jobs"},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["value"])

    async def add(self, job: Job) -> bool:
        doc = _to_doc(job)
        doc["seq"] = await self._next_seq()
        try:
            await self._col.insert_one(doc)
        except DuplicateKeyError:
            return False
        return True

    async def get(self, queue: str, job_id: str) -> Job | None:
        doc = await self._col.find_one({"_id": job_key(queue, job_id)})
        return _to_job(doc) if doc else None

    async def remove(self, queue: str, job_id: str) -> bool:
        res = await self._col.delete_one({"_id": job_key(queue, job_id)})
        return res.deleted_count == 1

    async def remove_if(self, queue: str, job_id: str, states: tuple[JobState, ...]) -> bool:
        res = await self._col.delete_one(
            {"_id": job_key(queue, job_id), "state": {"$in": [s.value for s in states]}},
        )
        return res.deleted_count == 1

    async def claim(
        self, queue: str, worker_id: str, now: datetime, lease_seconds: float,
    ) -> Job | None:
        doc = await self._col.find_one_and_update(
            {"queue": queue, "state": {"$in": _PENDING}, "run_at": {"$lte": now}},
            {
                "$set": {
                    "state": JobState.active.value,
                    "locked_by": worker_id,
                    "lock_until": now + timedelta(seconds=lease_seconds),
                    "updated_at": now,
                },
                "$inc": {"attempts": 1},
            },
            sort=[("priority", ASCENDING), ("run_at", ASCENDING), ("seq", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )
        return _to_job(doc) if doc else None

    @staticmethod
    def _owned_filter(queue: str, job_id: str, worker_id: str) -> dict[str, Any]:
        return {
            "_id": job_key(queue, job_id),
            "state": JobState.active.value,
            "locked_by": worker_id,
        }

    async def extend_lock(self, queue: str, job_id: str, worker_id: str, until: datetime) -> bool:
        res = await self._col.update_one(
            self._owned_filter(queue, job_id, worker_id),
            {"$set": {"lock_until": until}},
        )
        return res.modified_count == 1

    async def complete(
        self, queue: str, job_id: str, worker_id: str, result: dict[str, Any] | None, now: datetime,
    ) -> bool:
        res = await self._col.update_one(
            self._owned_filter(queue, job_id, worker_id),
            {"$set": {
                "state": JobState.completed.value,
                "result": result,
                "lock_until": None,
                "locked_by": None,
                "finished_at": now,
                "updated_at": now,
            }},
        )
        return res.modified_count == 1

    async def retry_later(
        self, queue: str, job_id: str, worker_id: str, run_at: datetime,
        failure: dict[str, Any], now: datetime,
    ) -> bool:
        res = await self._col.update_one(
            self._owned_filter(queue, job_id, worker_id),
            {
                "$set": {
                    "state": JobState.delayed.value,
                    "run_at": run_at,
                    "failed_reason": failure.get("error"),
                    "lock_until": None,
                    "locked_by": None,
                    "updated_at": now,
                },
                "$push": {"failure_history": failure},
            },
        )
        return res.modified_count == 1

    async def fail(
        self, queue: str, job_id: str, worker_id: str, reason: str,
        failure: dict[str, Any], now: datetime,
    ) -> Job | None:
        doc = await self._col.find_one_and_update(
            self._owned_filter(queue, job_id, worker_id),
            {
                "$set": {
                    "state": JobState.failed.value,
                    "failed_reason": reason,
                    "lock_until": None,
                    "locked_by": None,
                    "finished_at": now,
                    "updated_at": now,
                },
                "$push": {"failure_history": failure},
            },
            return_document=ReturnDocument.AFTER,
        )
        return _to_job(doc) if doc else None

    async def reschedule(
        self, queue: str, job_id: str, worker_id: str, run_at: datetime,
        payload: dict[str, Any], now: datetime,
    ) -> bool:
        res = await self._col.update_one(
            self._owned_filter(queue, job_id, worker_id),
            {"$set": {
                "state": JobState.delayed.value,
                "run_at": run_at,
                "payload": payload,
                "attempts": 0,
                "stall_count": 0,
                "lock_until": None,
                "locked_by": None,
                "updated_at": now,
            }},
        )
        return res.modified_count == 1

    async def recover_stalled(
        self, queue: str, now: datetime, max_stalls: int,
    ) -> tuple[list[Job], list[Job]]:
        returned: list[Job] = []
        failed: list[Job] = []
        expired = {"queue": queue, "state": JobState.active.value, "lock_until": {"$lt": now}}

        while True:
            doc = await self._col.find_one_and_update(
                {**expired, "stall_count": {"$gte": max_stalls}},
                {
                    "$set": {
                        "state": JobState.failed.value,
                        "failed_reason": STALLED_REASON,
                        "lock_until": None,
                        "locked_by": None,
                        "finished_at": now,
                        "updated_at": now,
                    },
                    "$push": {"failure_history": {"kind": "stalled", "error": STALLED_REASON, "at": now}},
                },
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                break
            failed.append(_to_job(doc))

        while True:
            doc = await self._col.find_one_and_update(
                {**expired, "stall_count": {"$lt": max_stalls}},
                {
                    "$set": {
                        "state": JobState.waiting.value,
                        "lock_until": None,
                        "locked_by": None,
                        "updated_at": now,
                    },
                    "$inc": {"stall_count": 1},
                },
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                break
            returned.append(_to_job(doc))

        return returned, failed

    async def counts(self, queue: str) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        pipeline = [
            {"$match": {"queue": queue}},
            {"$group": {"_id": "$state", "n": {"$sum": 1}}},
        ]
        async for row in self._col.aggregate(pipeline):
            counts[row["_id"]] = int(row["n"])
        return counts

    async def list_jobs(self, queue: str, state: JobState | None = None, limit: int = 100) -> list[Job]:
        query: dict[str, Any] = {"queue": queue}
        if state is not None:
            query["state"] = state.value
        cursor = self._col.find(query).sort([("run_at", ASCENDING), ("seq", ASCENDING)]).limit(limit)
        return [_to_job(doc) async for doc in cursor]

    async def prune_finished(self, queue: str, before: datetime) -> int:
        res = await self._col.delete_many(
            {"queue": queue, "state": JobState.completed.value, "finished_at": {"$lt": before}},
        )
        return int(res.deleted_count)
