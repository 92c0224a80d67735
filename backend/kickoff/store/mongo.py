"""
backend/kickoff/store/mongo.py

Purpose:
    MongoDB PipelineStore. Scoring uses a per-prediction compare-and-set
    (status pending -> scored) and settlement is serialized per match through
    a lease document in ``settlement_locks``.

Dependencies:
    - motor
    - pymongo
    - kickoff.models.*
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncIterator, Callable

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from kickoff.errors import RetryableError
from kickoff.models.artifacts import Analysis, Lineups, OddsSnapshot
from kickoff.models.match import FixtureData, Match, MatchStatus, Quota
from kickoff.models.model_health import ModelHealth, ModelStats
from kickoff.models.prediction import PointsBreakdown, Prediction, PredictionStatus
from kickoff.store.base import FIXTURE_REFRESH_FIELDS
from kickoff.utils import ensure_utc, utcnow

logger = logging.getLogger("kickoff.store.mongo")


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _utc(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, dict):
        return {k: _utc(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_utc(v) for v in value]
    return value


def _dump(model) -> dict[str, Any]:
    return _plain(model.model_dump(mode="python"))


def _load(cls, doc: dict[str, Any] | None):
    if doc is None:
        return None
    data = {k: v for k, v in doc.items() if k != "_id"}
    return cls.model_validate(_utc(data))


class MongoPipelineStore:
    def __init__(
        self,
        db,
        *,
        lock_ttl_seconds: float = 60.0,
        lock_wait_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self.lock_wait_seconds = lock_wait_seconds
        self._clock = clock

    async def ensure_indexes(self) -> None:
        await self.db.matches.create_index("external_id", unique=True)
        await self.db.matches.create_index([("status", ASCENDING), ("kickoff", ASCENDING)])
        await self.db.predictions.create_index(
            [("match_id", ASCENDING), ("requested_model_id", ASCENDING)], unique=True,
        )
        await self.db.predictions.create_index([("match_id", ASCENDING), ("status", ASCENDING)])
        await self.db.predictions.create_index("status")
        await self.db.model_health.create_index("disabled")
        await self.db.settlement_locks.create_index("expires_at")

    async def ping(self) -> bool:
        await self.db.command("ping")
        return True

    # -- matches ---------------------------------------------------------

    async def get_match(self, match_id: str) -> Match | None:
        return _load(Match, await self.db.matches.find_one({"_id": match_id}))

    async def get_match_by_external_id(self, external_id: str) -> Match | None:
        return _load(Match, await self.db.matches.find_one({"external_id": external_id}))

    async def upsert_fixture(self, fixture: FixtureData, now: datetime) -> tuple[Match, Match | None]:
        refreshed = _plain(fixture.model_dump(include=set(FIXTURE_REFRESH_FIELDS)))
        previous = await self.db.matches.find_one_and_update(
            {"external_id": fixture.external_id},
            {"$set": {**refreshed, "updated_at": now}},
            return_document=ReturnDocument.BEFORE,
        )
        if previous is not None:
            return await self.get_match(previous["_id"]), _load(Match, previous)

        match = Match(id=uuid.uuid4().hex, created_at=now, updated_at=now, **fixture.model_dump())
        try:
            await self.db.matches.insert_one({"_id": match.id, **_dump(match)})
        except DuplicateKeyError:
            # Lost an insert race with another ingester; the winner's record stands.
            existing = await self.get_match_by_external_id(fixture.external_id)
            return existing, existing
        return match, None

    async def update_match(self, match_id: str, changes: dict[str, Any], now: datetime) -> Match | None:
        doc = await self.db.matches.find_one_and_update(
            {"_id": match_id},
            {"$set": {**_plain(changes), "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return _load(Match, doc)

    async def list_matches(
        self,
        *,
        statuses: tuple[MatchStatus, ...] | None = None,
        kickoff_from: datetime | None = None,
        kickoff_to: datetime | None = None,
    ) -> list[Match]:
        query: dict[str, Any] = {}
        if statuses is not None:
            query["status"] = {"$in": [s.value for s in statuses]}
        window: dict[str, Any] = {}
        if kickoff_from is not None:
            window["$gte"] = kickoff_from
        if kickoff_to is not None:
            window["$lte"] = kickoff_to
        if window:
            query["kickoff"] = window
        cursor = self.db.matches.find(query).sort("kickoff", ASCENDING)
        return [_load(Match, doc) async for doc in cursor]

    async def set_quota(self, match_id: str, quota: Quota, now: datetime) -> None:
        await self.db.matches.update_one(
            {"_id": match_id},
            {"$set": {"quota": _dump(quota), "updated_at": now}},
        )

    # -- artifacts -------------------------------------------------------

    async def get_analysis(self, match_id: str) -> Analysis | None:
        return _load(Analysis, await self.db.analyses.find_one({"_id": match_id}))

    async def save_analysis(self, analysis: Analysis) -> None:
        await self.db.analyses.replace_one(
            {"_id": analysis.match_id}, {"_id": analysis.match_id, **_dump(analysis)}, upsert=True,
        )

    async def get_odds(self, match_id: str) -> OddsSnapshot | None:
        return _load(OddsSnapshot, await self.db.odds.find_one({"_id": match_id}))

    async def save_odds(self, odds: OddsSnapshot) -> OddsSnapshot:
        fields = _dump(odds)
        fields.pop("refresh_count", None)
        doc = await self.db.odds.find_one_and_update(
            {"_id": odds.match_id},
            {"$set": fields, "$inc": {"refresh_count": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return _load(OddsSnapshot, doc)

    async def get_lineups(self, match_id: str) -> Lineups | None:
        return _load(Lineups, await self.db.lineups.find_one({"_id": match_id}))

    async def save_lineups(self, lineups: Lineups) -> None:
        await self.db.lineups.replace_one(
            {"_id": lineups.match_id}, {"_id": lineups.match_id, **_dump(lineups)}, upsert=True,
        )

    # -- predictions -----------------------------------------------------

    async def list_predictions(self, match_id: str) -> list[Prediction]:
        cursor = self.db.predictions.find({"match_id": match_id}).sort("requested_model_id", ASCENDING)
        return [_load(Prediction, doc) async for doc in cursor]

    async def insert_prediction(self, prediction: Prediction) -> bool:
        try:
            await self.db.predictions.insert_one(_dump(prediction))
        except DuplicateKeyError:
            return False
        return True

    async def mark_scored(
        self, match_id: str, requested_model_id: str, points: PointsBreakdown, now: datetime,
    ) -> bool:
        res = await self.db.predictions.update_one(
            {"match_id": match_id, "requested_model_id": requested_model_id, "status": PredictionStatus.pending.value},
            {"$set": {
                "status": PredictionStatus.scored.value,
                "points": _dump(points),
                "scored_at": now,
            }},
        )
        return res.modified_count == 1

    async def count_pending(self, match_id: str) -> int:
        return int(await self.db.predictions.count_documents(
            {"match_id": match_id, "status": PredictionStatus.pending.value},
        ))

    async def list_scored_predictions(self) -> list[Prediction]:
        cursor = self.db.predictions.find({"status": PredictionStatus.scored.value})
        return [_load(Prediction, doc) async for doc in cursor]

    # -- model health / stats -------------------------------------------

    async def get_model_health(self, model_id: str) -> ModelHealth | None:
        return _load(ModelHealth, await self.db.model_health.find_one({"_id": model_id}))

    async def list_model_health(self) -> list[ModelHealth]:
        cursor = self.db.model_health.find({}).sort("_id", ASCENDING)
        return [_load(ModelHealth, doc) async for doc in cursor]

    async def record_model_success(self, model_id: str, now: datetime) -> ModelHealth:
        doc = await self.db.model_health.find_one_and_update(
            {"_id": model_id},
            {
                "$set": {
                    "model_id": model_id,
                    "consecutive_failures": 0,
                    "disabled": False,
                    "disabled_at": None,
                    "last_success_at": now,
                },
                "$inc": {"total_successes": 1},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return _load(ModelHealth, doc)

    async def record_model_failure(
        self, model_id: str, error: str, now: datetime, threshold: int,
    ) -> tuple[ModelHealth, bool]:
        doc = await self.db.model_health.find_one_and_update(
            {"_id": model_id},
            {
                "$set": {"model_id": model_id, "last_failure_at": now, "last_error": error[:500]},
                "$inc": {"consecutive_failures": 1, "total_failures": 1},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        res = await self.db.model_health.update_one(
            {"_id": model_id, "disabled": {"$ne": True}, "consecutive_failures": {"$gte": threshold}},
            {"$set": {"disabled": True, "disabled_at": now}},
        )
        if res.modified_count:
            doc = await self.db.model_health.find_one({"_id": model_id})
        return _load(ModelHealth, doc), res.modified_count == 1

    async def recover_models(self, cutoff: datetime, reset_to: int, now: datetime) -> list[str]:
        query = {"disabled": True, "last_failure_at": {"$lte": cutoff}}
        ids = [doc["_id"] async for doc in self.db.model_health.find(query, {"_id": 1})]
        if not ids:
            return []
        await self.db.model_health.update_many(
            {**query, "_id": {"$in": ids}},
            {"$set": {"disabled": False, "disabled_at": None, "consecutive_failures": reset_to}},
        )
        return sorted(ids)

    async def reenable_model(self, model_id: str, now: datetime) -> ModelHealth:
        doc = await self.db.model_health.find_one_and_update(
            {"_id": model_id},
            {"$set": {
                "model_id": model_id,
                "disabled": False,
                "disabled_at": None,
                "consecutive_failures": 0,
            }},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return _load(ModelHealth, doc)

    async def save_model_stats(self, stats: list[ModelStats]) -> None:
        for row in stats:
            await self.db.model_stats.replace_one(
                {"_id": row.model_id}, {"_id": row.model_id, **_dump(row)}, upsert=True,
            )

    async def list_model_stats(self) -> list[ModelStats]:
        cursor = self.db.model_stats.find({}).sort("_id", ASCENDING)
        return [_load(ModelStats, doc) async for doc in cursor]

    # -- settlement ------------------------------------------------------

    async def _try_acquire(self, match_id: str, holder: str) -> bool:
        now = self._clock()
        try:
            doc = await self.db.settlement_locks.find_one_and_update(
                {"_id": match_id, "expires_at": {"$lt": now}},
                {"$set": {"holder": holder, "acquired_at": now, "expires_at": now + self.lock_ttl}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Lock document exists and has not expired.
            return False
        return doc is not None and doc.get("holder") == holder

    @asynccontextmanager
    async def settlement_lock(self, match_id: str) -> AsyncIterator[None]:
        holder = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lock_wait_seconds
        while not await self._try_acquire(match_id, holder):
            if loop.time() >= deadline:
                raise RetryableError(f"settlement lock for match {match_id} is held elsewhere")
            await asyncio.sleep(0.25)
        try:
            yield
        finally:
            await self.db.settlement_locks.delete_one({"_id": match_id, "holder": holder})
