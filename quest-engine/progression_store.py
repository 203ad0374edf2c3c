"""Progression ledger and reward grant storage with per-key atomic updates.

Two backends share one contract:

* ``JsonProgressionStore`` keeps state in memory behind a lock and persists
  it to a JSON file after every write. Single-instance deployments and tests.
* ``MongoProgressionStore`` keeps one document per (user, quest) and one per
  reward grant, both under unique indexes. Every transition is a guarded
  ``find_one_and_update`` so several engine instances can share the store.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Union

import pymongo
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import engine_config as config
from errors import StoreConflict
from models import (
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_REWARD_ISSUED,
    TASK_SATISFIED,
    TASK_UNRESOLVED,
    ProgressionRecord,
    Quest,
    RewardGrant,
    Satisfied,
    TaskProgress,
    Verdict,
)

log = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _record_key(user: str, quest_id: int) -> str:
    return f"{user}:{quest_id}"


def _new_record(user: str, quest: Quest) -> ProgressionRecord:
    return ProgressionRecord(
        user=user,
        quest_id=quest.quest_id,
        tasks={task_id: TaskProgress() for task_id in quest.task_ids},
    )


def _quest_satisfied(record: ProgressionRecord, quest: Quest) -> bool:
    task_ids = quest.task_ids
    return bool(task_ids) and all(
        record.tasks.get(task_id) is not None and record.tasks[task_id].satisfied for task_id in task_ids
    )


def _claim_doc(claim_id: str, lease_seconds: float, now: float) -> dict[str, object]:
    return {
        "claim_id": claim_id,
        "claimed_at": datetime.fromtimestamp(now, UTC).isoformat(),
        "expires_at_ts": now + lease_seconds,
    }


class JsonProgressionStore:
    """In-memory progression ledger persisted to a JSON file."""

    def __init__(self, storage_path: Path | None = None) -> None:
        self._lock = threading.Lock()
        self._storage_path = Path(storage_path or config.PROGRESSION_STORE_PATH)
        self.records: dict[str, ProgressionRecord] = {}
        self.grants: dict[str, RewardGrant] = {}
        self._load_from_disk()

    def _snapshot_locked(self) -> dict[str, object]:
        return {
            "records": [record.to_dict() for record in self.records.values()],
            "grants": [grant.to_dict() for grant in self.grants.values()],
        }

    def _persist_locked(self) -> None:
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._storage_path.with_suffix(f"{self._storage_path.suffix}.tmp")
        temp_path.write_text(json.dumps(self._snapshot_locked(), indent=2), encoding="utf-8")
        temp_path.replace(self._storage_path)

    def _load_from_disk(self) -> None:
        if not self._storage_path.exists():
            return
        try:
            payload = json.loads(self._storage_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.error("could not load progression store %s: %s", self._storage_path, exc)
            return
        if not isinstance(payload, dict):
            return

        records_obj = payload.get("records")
        if isinstance(records_obj, list):
            for record_obj in records_obj:
                if not isinstance(record_obj, dict):
                    continue
                try:
                    record = ProgressionRecord.from_dict(record_obj)
                except (KeyError, TypeError, ValueError):
                    continue
                self.records[_record_key(record.user, record.quest_id)] = record

        grants_obj = payload.get("grants")
        if isinstance(grants_obj, list):
            for grant_obj in grants_obj:
                if not isinstance(grant_obj, dict):
                    continue
                try:
                    grant = RewardGrant.from_dict(grant_obj)
                except (KeyError, TypeError, ValueError):
                    continue
                self.grants[_record_key(grant.user, grant.quest_id)] = grant

    def _touch_locked(self, record: ProgressionRecord) -> None:
        record.version += 1
        record.updated_at = _now_iso()
        self._persist_locked()

    def _get_or_create_locked(self, user: str, quest: Quest) -> ProgressionRecord:
        key = _record_key(user, quest.quest_id)
        record = self.records.get(key)
        if record is None:
            record = _new_record(user, quest)
            self.records[key] = record
            self._persist_locked()
            log.info("progression started user=%s quest=%s", user, quest.quest_id)
            return record
        if record.status == STATUS_IN_PROGRESS:
            missing = [task_id for task_id in quest.task_ids if task_id not in record.tasks]
            if missing:
                for task_id in missing:
                    record.tasks[task_id] = TaskProgress()
                self._touch_locked(record)
        return record

    def get(self, user: str, quest_id: int) -> ProgressionRecord | None:
        with self._lock:
            record = self.records.get(_record_key(user, quest_id))
            return copy.deepcopy(record)

    def get_or_create(self, user: str, quest: Quest) -> ProgressionRecord:
        with self._lock:
            return copy.deepcopy(self._get_or_create_locked(user, quest))

    def apply_task_result(self, user: str, quest: Quest, task_id: int | str, verdict: Verdict) -> ProgressionRecord:
        with self._lock:
            record = self._get_or_create_locked(user, quest)
            task_key = str(task_id)
            progress = record.tasks.get(task_key)
            if (
                not isinstance(verdict, Satisfied)
                or progress is None
                or progress.satisfied
                or record.status != STATUS_IN_PROGRESS
            ):
                return copy.deepcopy(record)

            now = _now_iso()
            progress.state = TASK_SATISFIED
            progress.evidence = dict(verdict.evidence)
            progress.satisfied_at = now
            if _quest_satisfied(record, quest):
                record.status = STATUS_COMPLETED
                record.completed_at = now
                log.info("quest completed user=%s quest=%s", user, quest.quest_id)
            self._touch_locked(record)
            return copy.deepcopy(record)

    def refresh_status(self, user: str, quest: Quest) -> ProgressionRecord | None:
        """Complete an in-progress record whose tasks are all satisfied."""
        with self._lock:
            record = self.records.get(_record_key(user, quest.quest_id))
            if record is None:
                return None
            if record.status == STATUS_IN_PROGRESS and _quest_satisfied(record, quest):
                record.status = STATUS_COMPLETED
                record.completed_at = _now_iso()
                self._touch_locked(record)
            return copy.deepcopy(record)

    def claim_reward(
        self,
        user: str,
        quest_id: int,
        claim_id: str,
        lease_seconds: float,
        now: float | None = None,
    ) -> bool:
        current = time.time() if now is None else now
        with self._lock:
            record = self.records.get(_record_key(user, quest_id))
            if record is None or record.status != STATUS_COMPLETED or record.has_live_claim(current):
                return False
            record.reward_claim = _claim_doc(claim_id, lease_seconds, current)
            self._touch_locked(record)
            return True

    def mark_reward_issued(self, user: str, quest_id: int) -> bool:
        with self._lock:
            record = self.records.get(_record_key(user, quest_id))
            if record is None or record.status != STATUS_COMPLETED:
                return False
            record.status = STATUS_REWARD_ISSUED
            record.reward_issued_at = _now_iso()
            record.reward_claim = None
            record.last_reward_error = None
            self._touch_locked(record)
            return True

    def release_reward_claim(self, user: str, quest_id: int, claim_id: str, error: str) -> bool:
        with self._lock:
            record = self.records.get(_record_key(user, quest_id))
            if record is None or not record.reward_claim or record.reward_claim.get("claim_id") != claim_id:
                return False
            record.reward_claim = None
            record.reward_attempts += 1
            record.last_reward_error = error
            self._touch_locked(record)
            return True

    def list_records(self, quest_id: int, statuses: list[str] | None = None) -> list[ProgressionRecord]:
        with self._lock:
            return [
                copy.deepcopy(record)
                for record in self.records.values()
                if record.quest_id == quest_id and (statuses is None or record.status in statuses)
            ]

    def get_grant(self, user: str, quest_id: int) -> RewardGrant | None:
        with self._lock:
            return copy.deepcopy(self.grants.get(_record_key(user, quest_id)))

    def insert_grant(self, grant: RewardGrant) -> tuple[RewardGrant, bool]:
        """Insert unless one exists for the key; returns ``(stored_grant, created)``."""
        with self._lock:
            key = _record_key(grant.user, grant.quest_id)
            existing = self.grants.get(key)
            if existing is not None:
                return copy.deepcopy(existing), False
            self.grants[key] = copy.deepcopy(grant)
            self._persist_locked()
            return copy.deepcopy(grant), True

    def list_grants(self, quest_id: int) -> list[RewardGrant]:
        with self._lock:
            return [copy.deepcopy(grant) for grant in self.grants.values() if grant.quest_id == quest_id]


class MongoProgressionStore:
    """MongoDB-backed progression ledger; safe across engine instances."""

    def __init__(self, database: object, max_cas_attempts: int = 5) -> None:
        self.database = database
        self._records = database["progression"]  # type: ignore[index]
        self._grants = database["reward_grants"]  # type: ignore[index]
        self._max_cas_attempts = max(1, max_cas_attempts)
        self._records.create_index([("user", 1), ("quest_id", 1)], unique=True)
        self._records.create_index([("quest_id", 1), ("status", 1)])
        self._grants.create_index([("user", 1), ("quest_id", 1)], unique=True)

    @classmethod
    def from_config(cls) -> MongoProgressionStore:
        """Connect using MONGO_URI / MONGO_DB_NAME. Fail fast if env missing."""
        if not config.MONGO_URI:
            raise SystemExit("MONGO_URI environment variable is required")
        if not config.MONGO_DB_NAME:
            raise SystemExit("MONGO_DB_NAME environment variable is required")
        client = pymongo.MongoClient(config.MONGO_URI)
        return cls(client[config.MONGO_DB_NAME])

    @staticmethod
    def _key(user: str, quest_id: int) -> dict[str, object]:
        return {"user": user, "quest_id": quest_id}

    def _update(self, query: dict[str, object], update: dict[str, object]) -> ProgressionRecord | None:
        doc = self._records.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        return ProgressionRecord.from_dict(doc) if doc else None

    def get(self, user: str, quest_id: int) -> ProgressionRecord | None:
        doc = self._records.find_one(self._key(user, quest_id))
        return ProgressionRecord.from_dict(doc) if doc else None

    def get_or_create(self, user: str, quest: Quest) -> ProgressionRecord:
        key = self._key(user, quest.quest_id)
        for _ in range(self._max_cas_attempts):
            record = self.get(user, quest.quest_id)
            if record is None:
                record = _new_record(user, quest)
                try:
                    self._records.insert_one(record.to_dict())
                except DuplicateKeyError:
                    # A concurrent request created it first.
                    continue
                log.info("progression started user=%s quest=%s", user, quest.quest_id)
                return record

            missing = [task_id for task_id in quest.task_ids if task_id not in record.tasks]
            if not missing or record.status != STATUS_IN_PROGRESS:
                return record
            added = self._update(
                {**key, "status": STATUS_IN_PROGRESS, "version": record.version},
                {
                    "$set": {
                        **{f"tasks.{task_id}": {"state": TASK_UNRESOLVED, "evidence": None, "satisfied_at": None} for task_id in missing},
                        "updated_at": _now_iso(),
                    },
                    "$inc": {"version": 1},
                },
            )
            if added is not None:
                return added
        latest = self.get(user, quest.quest_id)
        if latest is not None:
            # Task sync is retried on the next request.
            log.warning("task sync for user=%s quest=%s kept losing races", user, quest.quest_id)
            return latest
        raise StoreConflict(f"could not settle progression record for {user} quest {quest.quest_id}")

    def apply_task_result(self, user: str, quest: Quest, task_id: int | str, verdict: Verdict) -> ProgressionRecord:
        record = self.get_or_create(user, quest)
        task_key = str(task_id)
        if not isinstance(verdict, Satisfied) or task_key not in record.tasks:
            return record

        now = _now_iso()
        updated = self._update(
            {
                **self._key(user, quest.quest_id),
                "status": STATUS_IN_PROGRESS,
                f"tasks.{task_key}.state": {"$ne": TASK_SATISFIED},
            },
            {
                "$set": {
                    f"tasks.{task_key}": {
                        "state": TASK_SATISFIED,
                        "evidence": dict(verdict.evidence),
                        "satisfied_at": now,
                    },
                    "updated_at": now,
                },
                "$inc": {"version": 1},
            },
        )
        if updated is None:
            # Already satisfied (idempotent re-verification) or no longer in progress.
            return self.get(user, quest.quest_id) or record
        return self._advance(updated, quest)

    def _advance(self, record: ProgressionRecord, quest: Quest) -> ProgressionRecord:
        if record.status != STATUS_IN_PROGRESS or not _quest_satisfied(record, quest):
            return record
        now = _now_iso()
        completed = self._update(
            {**self._key(record.user, record.quest_id), "status": STATUS_IN_PROGRESS},
            {"$set": {"status": STATUS_COMPLETED, "completed_at": now, "updated_at": now}, "$inc": {"version": 1}},
        )
        if completed is None:
            return self.get(record.user, record.quest_id) or record
        log.info("quest completed user=%s quest=%s", record.user, record.quest_id)
        return completed

    def refresh_status(self, user: str, quest: Quest) -> ProgressionRecord | None:
        """Complete an in-progress record whose tasks are all satisfied."""
        record = self.get(user, quest.quest_id)
        return self._advance(record, quest) if record else None

    def claim_reward(
        self,
        user: str,
        quest_id: int,
        claim_id: str,
        lease_seconds: float,
        now: float | None = None,
    ) -> bool:
        current = time.time() if now is None else now
        claimed = self._update(
            {
                **self._key(user, quest_id),
                "status": STATUS_COMPLETED,
                "$or": [{"reward_claim": None}, {"reward_claim.expires_at_ts": {"$lte": current}}],
            },
            {"$set": {"reward_claim": _claim_doc(claim_id, lease_seconds, current)}, "$inc": {"version": 1}},
        )
        return claimed is not None

    def mark_reward_issued(self, user: str, quest_id: int) -> bool:
        now = _now_iso()
        issued = self._update(
            {**self._key(user, quest_id), "status": STATUS_COMPLETED},
            {
                "$set": {
                    "status": STATUS_REWARD_ISSUED,
                    "reward_issued_at": now,
                    "reward_claim": None,
                    "last_reward_error": None,
                    "updated_at": now,
                },
                "$inc": {"version": 1},
            },
        )
        return issued is not None

    def release_reward_claim(self, user: str, quest_id: int, claim_id: str, error: str) -> bool:
        result = self._records.update_one(
            {**self._key(user, quest_id), "reward_claim.claim_id": claim_id},
            {
                "$set": {"reward_claim": None, "last_reward_error": error, "updated_at": _now_iso()},
                "$inc": {"reward_attempts": 1, "version": 1},
            },
        )
        return result.modified_count > 0

    def list_records(self, quest_id: int, statuses: list[str] | None = None) -> list[ProgressionRecord]:
        query: dict[str, object] = {"quest_id": quest_id}
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        return [ProgressionRecord.from_dict(doc) for doc in self._records.find(query)]

    def get_grant(self, user: str, quest_id: int) -> RewardGrant | None:
        doc = self._grants.find_one(self._key(user, quest_id))
        return RewardGrant.from_dict(doc) if doc else None

    def insert_grant(self, grant: RewardGrant) -> tuple[RewardGrant, bool]:
        try:
            self._grants.insert_one(grant.to_dict())
        except DuplicateKeyError:
            existing = self.get_grant(grant.user, grant.quest_id)
            if existing is None:
                raise StoreConflict(f"grant for {grant.user} quest {grant.quest_id} vanished") from None
            return existing, False
        return grant, True

    def list_grants(self, quest_id: int) -> list[RewardGrant]:
        return [RewardGrant.from_dict(doc) for doc in self._grants.find({"quest_id": quest_id})]


ProgressionStore = Union[JsonProgressionStore, MongoProgressionStore]


def build_store() -> ProgressionStore:
    if config.STORE_BACKEND == "mongo":
        return MongoProgressionStore.from_config()
    if config.STORE_BACKEND != "json":
        raise ValueError(f"unknown STORE_BACKEND: {config.STORE_BACKEND}")
    return JsonProgressionStore(storage_path=config.PROGRESSION_STORE_PATH)
