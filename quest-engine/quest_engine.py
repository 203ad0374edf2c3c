"""Quest progression orchestrator: verification, completion, reward issuance.

Per (user, quest) the engine walks Unstarted -> InProgress -> Completed ->
RewardIssued. It holds no locks of its own across requests; every
cross-request guarantee comes from the store's atomic operations:

* ``apply_task_result`` persists each satisfied task as soon as it is
  verified, so partial progress survives crashes, cancellations and
  request timeouts;
* ``claim_reward`` lets exactly one caller issue the reward, and
  ``mark_reward_issued`` moves the record to its terminal state once the
  grant exists. A failed issuance releases the claim and leaves the record
  Completed for the next request or reconciliation pass.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait

import engine_config as config
import task_verifier
from chain_reader import ChainReader
from errors import QuestNotFound, RewardIssuanceFailed, StoreConflict
from models import (
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_REWARD_ISSUED,
    ProgressionRecord,
    ProgressionSnapshot,
    Quest,
    Satisfied,
    Task,
    Verdict,
    VerificationError,
)
from progression_store import ProgressionStore
from quest_catalog import MongoQuestCatalog, QuestCatalog
from reward_issuer import RewardIssuer

log = logging.getLogger(__name__)

FIRST_PARTICIPANTS_LIMIT = 3


class QuestEngine:
    def __init__(
        self,
        catalog: QuestCatalog | MongoQuestCatalog,
        store: ProgressionStore,
        reader: ChainReader,
        issuer: RewardIssuer,
        check_timeout: float | None = None,
        workers: int | None = None,
        claim_lease_seconds: float | None = None,
        settle_interval: float = 0.05,
    ) -> None:
        self._catalog = catalog
        self._store = store
        self._reader = reader
        self._issuer = issuer
        self._check_timeout = check_timeout if check_timeout is not None else config.CHECK_TIMEOUT_SECONDS
        self._claim_lease_seconds = (
            claim_lease_seconds if claim_lease_seconds is not None else config.REWARD_CLAIM_LEASE_SECONDS
        )
        self._settle_interval = settle_interval
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, workers or config.VERIFY_WORKERS),
            thread_name_prefix="quest-verify",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _require_quest(self, quest_id: int) -> Quest:
        quest = self._catalog.get_quest(quest_id)
        if quest is None or not quest.visible:
            raise QuestNotFound(quest_id)
        return quest

    def _snapshot(self, quest: Quest, user: str, record: ProgressionRecord | None) -> ProgressionSnapshot:
        grant = None
        if record is not None and record.status == STATUS_REWARD_ISSUED:
            grant = self._store.get_grant(user, quest.quest_id)
        return ProgressionSnapshot.build(quest, user, record, grant)

    def list_quests(self) -> list[dict[str, object]]:
        return [
            {
                "quest_id": quest.quest_id,
                "name": quest.name,
                "active": quest.is_active(),
                "start_time": quest.start_time,
                "expiry": quest.expiry,
                "task_count": len(quest.tasks),
                "reward": {"kind": quest.reward.kind, "amount": str(quest.reward.amount)},
            }
            for quest in self._catalog.list_quests()
            if quest.visible
        ]

    # ------------------------------------------------------------------
    # Request operations
    # ------------------------------------------------------------------

    def get_progress(self, user: str, quest_id: int) -> ProgressionSnapshot:
        """Stored progress only; never touches the chain."""
        quest = self._require_quest(quest_id)
        return self._snapshot(quest, user, self._store.get(user, quest_id))

    def check_progress(self, user: str, quest_id: int) -> ProgressionSnapshot:
        """Verify unresolved tasks, persist results and settle the reward."""
        deadline = time.monotonic() + self._check_timeout
        quest = self._require_quest(quest_id)
        active = quest.is_active()
        record: ProgressionRecord | None
        if active:
            try:
                record = self._store.get_or_create(user, quest)
            except StoreConflict as exc:
                log.warning("progression for %s quest %s unavailable: %s", user, quest_id, exc)
                record = self._store.get(user, quest_id)
        else:
            record = self._store.get(user, quest_id)

        errors: dict[str, dict[str, str]] = {}
        pending: list[str] = []
        if record is not None and record.status == STATUS_IN_PROGRESS and active:
            record, errors, pending = self._verify_unresolved(quest, user, record, deadline)
        if record is not None and record.status == STATUS_COMPLETED:
            record = self._settle_reward(quest, user, record, deadline)

        snapshot = self._snapshot(quest, user, record)
        snapshot.errors = errors
        snapshot.pending_tasks = pending
        snapshot.quest_active = active
        return snapshot

    def _verify_and_apply(self, quest: Quest, task: Task, user: str) -> Verdict:
        verdict = task_verifier.verify(task, self._reader, user)
        if isinstance(verdict, Satisfied):
            self._store.apply_task_result(user, quest, task.task_id, verdict)
        return verdict

    def _verify_unresolved(
        self,
        quest: Quest,
        user: str,
        record: ProgressionRecord,
        deadline: float,
    ) -> tuple[ProgressionRecord, dict[str, dict[str, str]], list[str]]:
        unresolved = [
            task
            for task in quest.tasks
            if not (record.tasks.get(str(task.task_id)) and record.tasks[str(task.task_id)].satisfied)
        ]
        futures: list[tuple[Task, Future[Verdict]]] = [
            (task, self._executor.submit(self._verify_and_apply, quest, task, user)) for task in unresolved
        ]
        wait([future for _, future in futures], timeout=max(0.0, deadline - time.monotonic()))

        errors: dict[str, dict[str, str]] = {}
        pending: list[str] = []
        for task, future in futures:
            task_key = str(task.task_id)
            if not future.done():
                # Keeps running; its result is still persisted when it lands.
                pending.append(task_key)
                continue
            try:
                verdict = future.result()
            except Exception as exc:
                log.exception("task %s for %s failed to apply", task_key, user)
                errors[task_key] = {"kind": "internal_error", "message": str(exc)}
                continue
            if isinstance(verdict, VerificationError):
                errors[task_key] = {"kind": verdict.kind, "message": verdict.message}

        if pending:
            log.warning("check for %s quest %s timed out with pending tasks %s", user, quest.quest_id, pending)
        # Also completes records whose remaining tasks were removed from the quest.
        refreshed = self._store.refresh_status(user, quest)
        return refreshed or record, errors, pending

    # ------------------------------------------------------------------
    # Reward settlement
    # ------------------------------------------------------------------

    def _settle_reward(
        self,
        quest: Quest,
        user: str,
        record: ProgressionRecord,
        deadline: float,
    ) -> ProgressionRecord:
        claim_id = str(uuid.uuid4())
        if self._store.claim_reward(user, quest.quest_id, claim_id, self._claim_lease_seconds):
            return self._issue_claimed(quest, user, claim_id) or record
        return self._await_settlement(quest, user, record, deadline)

    def _issue_claimed(self, quest: Quest, user: str, claim_id: str) -> ProgressionRecord | None:
        try:
            self._issuer.issue(user, quest)
        except RewardIssuanceFailed as exc:
            log.error("reward issuance failed user=%s quest=%s: %s", user, quest.quest_id, exc)
            self._store.release_reward_claim(user, quest.quest_id, claim_id, str(exc))
        except Exception as exc:
            self._store.release_reward_claim(user, quest.quest_id, claim_id, f"unexpected error: {exc}")
            raise
        else:
            if not self._store.mark_reward_issued(user, quest.quest_id):
                log.info("reward for user=%s quest=%s was already marked issued", user, quest.quest_id)
        return self._store.get(user, quest.quest_id)

    def _await_settlement(
        self,
        quest: Quest,
        user: str,
        record: ProgressionRecord,
        deadline: float,
    ) -> ProgressionRecord:
        """Another caller holds the claim; poll until it settles or the deadline passes."""
        while time.monotonic() < deadline:
            current = self._store.get(user, quest.quest_id)
            if current is None:
                return record
            record = current
            if record.status == STATUS_REWARD_ISSUED or not record.has_live_claim():
                return record
            time.sleep(self._settle_interval)
        return record

    # ------------------------------------------------------------------
    # Administrative
    # ------------------------------------------------------------------

    def reconcile(self, quest_id: int) -> dict[str, int]:
        """Retry stalled reward issuance for a quest without re-verifying tasks."""
        quest = self._catalog.get_quest(quest_id)
        if quest is None:
            raise QuestNotFound(quest_id)
        counts = {"scanned": 0, "in_progress": 0, "issued": 0, "failed": 0, "skipped": 0}
        for record in self._store.list_records(quest_id, [STATUS_IN_PROGRESS, STATUS_COMPLETED]):
            counts["scanned"] += 1
            if record.status == STATUS_IN_PROGRESS:
                refreshed = self._store.refresh_status(record.user, quest)
                if refreshed is None or refreshed.status != STATUS_COMPLETED:
                    counts["in_progress"] += 1
                    continue
            claim_id = str(uuid.uuid4())
            if not self._store.claim_reward(record.user, quest_id, claim_id, self._claim_lease_seconds):
                counts["skipped"] += 1
                continue
            try:
                settled = self._issue_claimed(quest, record.user, claim_id)
            except Exception:
                log.exception("reconcile of user=%s quest=%s failed", record.user, quest_id)
                counts["failed"] += 1
                continue
            if settled is not None and settled.status == STATUS_REWARD_ISSUED:
                counts["issued"] += 1
            else:
                counts["failed"] += 1
        log.info("reconciled quest %s: %s", quest_id, counts)
        return {"quest_id": quest_id, **counts}

    def reconcile_all(self) -> dict[str, object]:
        results: list[dict[str, object]] = []
        issued = 0
        for quest in self._catalog.list_quests():
            try:
                result = self.reconcile(quest.quest_id)
            except Exception as exc:
                log.exception("reconcile of quest %s failed", quest.quest_id)
                results.append({"quest_id": quest.quest_id, "error": str(exc)})
                continue
            issued += result["issued"]
            results.append(result)
        return {"quests": results, "issued": issued}

    def quest_participants(self, quest_id: int) -> dict[str, object]:
        """Completers of a quest, with the earliest few by completion time."""
        self._require_quest(quest_id)
        finished = [
            record
            for record in self._store.list_records(quest_id, [STATUS_COMPLETED, STATUS_REWARD_ISSUED])
            if record.completed_at
        ]
        finished.sort(key=lambda record: record.completed_at or "")
        return {
            "count": len(finished),
            "first_participants": [
                {"address": record.user, "completion_time": record.completed_at}
                for record in finished[:FIRST_PARTICIPANTS_LIMIT]
            ],
        }

    def quest_users(self, quest_id: int) -> list[str]:
        """Addresses that satisfied at least one task of the quest."""
        quest = self._catalog.get_quest(quest_id)
        if quest is None:
            raise QuestNotFound(quest_id)
        users = {
            record.user
            for record in self._store.list_records(quest_id)
            if any(progress.satisfied for progress in record.tasks.values())
        }
        return sorted(users)
