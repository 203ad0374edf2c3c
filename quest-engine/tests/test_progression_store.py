"""Contract tests run against both progression store backends."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from errors import StoreConflict
from fakes import OTHER_USER, USER, FakeDatabase, balance_rule, equals_rule, make_quest
from models import (
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_REWARD_ISSUED,
    RewardGrant,
    Satisfied,
    Unresolved,
)
from progression_store import JsonProgressionStore, MongoProgressionStore


@pytest.fixture(params=["json", "mongo"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "json":
        return JsonProgressionStore(storage_path=tmp_path / "progression.json")
    return MongoProgressionStore(FakeDatabase())


def _satisfied(tag: str = "x") -> Satisfied:
    return Satisfied({"rule": "balance-at-least", "observed": tag})


def _three_rules() -> list[dict[str, object]]:
    return [balance_rule(), equals_rule(), equals_rule("has_title")]


class TestRecords:
    def test_get_or_create_starts_in_progress(self, store) -> None:
        quest = make_quest()
        assert store.get(USER, 1) is None
        record = store.get_or_create(USER, quest)
        assert record.status == STATUS_IN_PROGRESS
        assert sorted(record.tasks) == ["1", "2"]
        assert store.get_or_create(USER, quest).version == record.version

    def test_in_progress_record_picks_up_added_tasks(self, store) -> None:
        store.get_or_create(USER, make_quest())
        record = store.get_or_create(USER, make_quest(rules=_three_rules()))
        assert sorted(record.tasks) == ["1", "2", "3"]

    def test_completed_record_is_not_reopened_by_new_tasks(self, store) -> None:
        quest = make_quest()
        store.apply_task_result(USER, quest, 1, _satisfied())
        store.apply_task_result(USER, quest, 2, _satisfied())
        record = store.get_or_create(USER, make_quest(rules=_three_rules()))
        assert record.status == STATUS_COMPLETED
        assert sorted(record.tasks) == ["1", "2"]

    def test_keys_are_isolated_per_user(self, store) -> None:
        quest = make_quest()
        store.apply_task_result(USER, quest, 1, _satisfied())
        other = store.get_or_create(OTHER_USER, quest)
        assert not any(progress.satisfied for progress in other.tasks.values())


class TestApplyTaskResult:
    def test_satisfied_verdict_records_evidence(self, store) -> None:
        quest = make_quest()
        record = store.apply_task_result(USER, quest, 1, _satisfied("first"))
        assert record.tasks["1"].satisfied
        assert record.tasks["1"].evidence == {"rule": "balance-at-least", "observed": "first"}
        assert record.tasks["1"].satisfied_at
        assert record.status == STATUS_IN_PROGRESS

    def test_reapplying_never_changes_evidence(self, store) -> None:
        quest = make_quest()
        first = store.apply_task_result(USER, quest, 1, _satisfied("first"))
        second = store.apply_task_result(USER, quest, 1, _satisfied("second"))
        assert second.tasks["1"].evidence == first.tasks["1"].evidence
        assert second.version == first.version

    def test_unresolved_verdict_is_a_no_op(self, store) -> None:
        quest = make_quest()
        before = store.get_or_create(USER, quest)
        after = store.apply_task_result(USER, quest, 1, Unresolved("balance is 0"))
        assert after.version == before.version
        assert not after.tasks["1"].satisfied

    def test_last_task_completes_the_record(self, store) -> None:
        quest = make_quest()
        store.apply_task_result(USER, quest, 1, _satisfied())
        record = store.apply_task_result(USER, quest, 2, _satisfied())
        assert record.status == STATUS_COMPLETED
        assert record.completed_at

    def test_concurrent_applies_all_land(self, store) -> None:
        quest = make_quest(rules=_three_rules())
        store.get_or_create(USER, quest)
        threads = [
            threading.Thread(target=store.apply_task_result, args=(USER, quest, task_id, _satisfied(str(task_id))))
            for task_id in (1, 2, 3)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        record = store.get(USER, 1)
        assert record.status == STATUS_COMPLETED
        assert all(progress.satisfied for progress in record.tasks.values())


class TestRewardTransitions:
    def _completed(self, store) -> None:
        quest = make_quest()
        store.apply_task_result(USER, quest, 1, _satisfied())
        store.apply_task_result(USER, quest, 2, _satisfied())

    def test_claim_requires_completed_record(self, store) -> None:
        store.get_or_create(USER, make_quest())
        assert not store.claim_reward(USER, 1, "c1", 60)

    def test_only_one_live_claim(self, store) -> None:
        self._completed(store)
        assert store.claim_reward(USER, 1, "c1", 60, now=1000.0)
        assert not store.claim_reward(USER, 1, "c2", 60, now=1001.0)

    def test_expired_claim_can_be_taken_over(self, store) -> None:
        self._completed(store)
        assert store.claim_reward(USER, 1, "c1", 60, now=1000.0)
        assert store.claim_reward(USER, 1, "c2", 60, now=1061.0)

    def test_release_keeps_record_completed(self, store) -> None:
        self._completed(store)
        store.claim_reward(USER, 1, "c1", 60)
        assert not store.release_reward_claim(USER, 1, "someone-else", "boom")
        assert store.release_reward_claim(USER, 1, "c1", "relayer down")
        record = store.get(USER, 1)
        assert record.status == STATUS_COMPLETED
        assert record.reward_claim is None
        assert record.reward_attempts == 1
        assert record.reward_status == "failed"
        assert store.claim_reward(USER, 1, "c3", 60)

    def test_mark_issued_is_forward_only(self, store) -> None:
        self._completed(store)
        store.claim_reward(USER, 1, "c1", 60)
        assert store.mark_reward_issued(USER, 1)
        assert not store.mark_reward_issued(USER, 1)
        record = store.get(USER, 1)
        assert record.status == STATUS_REWARD_ISSUED
        assert record.reward_claim is None
        assert not store.claim_reward(USER, 1, "c2", 60)
        quest = make_quest()
        assert store.apply_task_result(USER, quest, 1, _satisfied("late")).status == STATUS_REWARD_ISSUED

    def test_refresh_status_completes_fully_satisfied_record(self, store) -> None:
        quest = make_quest()
        store.apply_task_result(USER, quest, 1, _satisfied())
        # Quest later trimmed to the satisfied task only.
        trimmed = make_quest(rules=[_three_rules()[0]])
        assert store.refresh_status(USER, trimmed).status == STATUS_COMPLETED
        assert store.refresh_status(OTHER_USER, trimmed) is None

    def test_list_records_filters_by_status(self, store) -> None:
        self._completed(store)
        store.get_or_create(OTHER_USER, make_quest())
        assert {r.user for r in store.list_records(1)} == {USER, OTHER_USER}
        assert [r.user for r in store.list_records(1, [STATUS_COMPLETED])] == [USER]
        assert store.list_records(2) == []


class TestGrants:
    def test_insert_grant_is_unique_per_key(self, store) -> None:
        first, created = store.insert_grant(RewardGrant(user=USER, quest_id=1, kind="points", amount=10, ledger_id="a"))
        assert created
        second, created = store.insert_grant(RewardGrant(user=USER, quest_id=1, kind="points", amount=10, ledger_id="b"))
        assert not created
        assert second.ledger_id == "a"
        assert store.get_grant(USER, 1).ledger_id == "a"
        assert len(store.list_grants(1)) == 1

    def test_large_amounts_survive_storage(self, store) -> None:
        amount = 10**30
        store.insert_grant(RewardGrant(user=USER, quest_id=1, kind="token", amount=amount, tx_hash="0x1"))
        assert store.get_grant(USER, 1).amount == amount


class TestJsonPersistence:
    def test_store_persists_and_loads_from_json(self, tmp_path: Path) -> None:
        path = tmp_path / "progression.json"
        quest = make_quest()
        store = JsonProgressionStore(storage_path=path)
        store.apply_task_result(USER, quest, 1, _satisfied("kept"))
        store.insert_grant(RewardGrant(user=USER, quest_id=1, kind="points", amount=5, ledger_id="l1"))

        reloaded = JsonProgressionStore(storage_path=path)
        record = reloaded.get(USER, 1)
        assert record.tasks["1"].evidence["observed"] == "kept"
        assert reloaded.get_grant(USER, 1).ledger_id == "l1"

    def test_corrupt_file_starts_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "progression.json"
        path.write_text("{not json", encoding="utf-8")
        assert JsonProgressionStore(storage_path=path).get(USER, 1) is None


class TestMongoConflicts:
    def test_lost_creation_race_is_retried(self) -> None:
        database = FakeDatabase()
        store = MongoProgressionStore(database)
        quest = make_quest()
        rival = MongoProgressionStore(database)
        original_get = store.get
        calls = {"n": 0}

        def racing_get(user: str, quest_id: int):
            calls["n"] += 1
            if calls["n"] == 1:
                # A rival instance inserts between our read and our insert.
                rival.get_or_create(user, quest)
                return None
            return original_get(user, quest_id)

        store.get = racing_get  # type: ignore[method-assign]
        record = store.get_or_create(USER, quest)
        assert record.user == USER
        assert len(database["progression"].find({})) == 1

    def test_persistent_conflict_raises_store_conflict(self) -> None:
        store = MongoProgressionStore(FakeDatabase(), max_cas_attempts=2)
        quest = make_quest()
        store.get_or_create(USER, quest)
        store.get = lambda user, quest_id: None  # type: ignore[method-assign]
        with pytest.raises(StoreConflict):
            store.get_or_create(USER, quest)

    def test_task_sync_that_keeps_losing_returns_stored_record(self) -> None:
        store = MongoProgressionStore(FakeDatabase(), max_cas_attempts=2)
        store.get_or_create(USER, make_quest(rules=[balance_rule()]))
        store._update = lambda query, update: None  # type: ignore[method-assign]

        record = store.get_or_create(USER, make_quest(rules=[balance_rule(), equals_rule()]))
        assert record.status == STATUS_IN_PROGRESS
        assert sorted(record.tasks) == ["1"]
