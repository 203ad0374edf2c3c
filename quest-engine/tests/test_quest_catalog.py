"""Tests for the JSON and MongoDB quest catalogs."""

from __future__ import annotations

import json
from pathlib import Path

from fakes import FakeDatabase, GAME, balance_rule, equals_rule
from quest_catalog import MongoQuestCatalog, QuestCatalog


class TestQuestCatalog:
    def test_loads_quests_and_keeps_broken_rules_as_errors(self, tmp_path: Path) -> None:
        path = tmp_path / "quests.json"
        path.write_text(
            json.dumps(
                {
                    "quests": [
                        {"id": 2, "name": "Second", "tasks": [{"id": 1, "rule": balance_rule()}]},
                        {
                            "id": 1,
                            "name": "First",
                            "reward": {"kind": "points", "amount": 50},
                            "tasks": [
                                {"id": 1, "rule": equals_rule()},
                                {"id": 2, "rule": {"kind": "balance-at-least"}},
                            ],
                        },
                    ]
                }
            ),
            encoding="utf-8",
        )
        catalog = QuestCatalog.from_file(path)
        assert [quest.quest_id for quest in catalog.list_quests()] == [1, 2]
        quest = catalog.get_quest(1)
        assert quest.reward.amount == 50
        assert quest.tasks[1].rule is None
        assert quest.tasks[1].rule_error
        assert catalog.get_quest(99) is None

    def test_missing_file_gives_empty_catalog(self, tmp_path: Path) -> None:
        assert QuestCatalog.from_file(tmp_path / "absent.json").list_quests() == []

    def test_quest_without_tasks_is_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "quests.json"
        path.write_text(
            json.dumps([{"id": 1, "tasks": []}, {"id": 2, "tasks": [{"id": 1, "rule": balance_rule()}]}]),
            encoding="utf-8",
        )
        catalog = QuestCatalog.from_file(path)
        assert catalog.get_quest(1) is None
        assert [quest.quest_id for quest in catalog.list_quests()] == [2]


class TestMongoQuestCatalog:
    def test_joins_tasks_in_order(self) -> None:
        database = FakeDatabase()
        database["quests"].insert_one({"id": 7, "name": "Mongo quest", "reward": {"kind": "points", "amount": 1}})
        database["tasks"].insert_one({"id": 20, "quest_id": 7, "order": 2, "rule": balance_rule()})
        database["tasks"].insert_one({"id": 10, "quest_id": 7, "order": 1, "rule": equals_rule()})
        database["tasks"].insert_one({"id": 30, "quest_id": 8, "rule": balance_rule()})
        catalog = MongoQuestCatalog(database)
        quest = catalog.get_quest(7)
        assert [task.task_id for task in quest.tasks] == [10, 20]
        assert quest.tasks[0].rule.contract_address == GAME
        assert catalog.get_quest(8) is None
        assert [q.quest_id for q in catalog.list_quests()] == [7]

    def test_quest_without_tasks_is_skipped(self) -> None:
        database = FakeDatabase()
        database["quests"].insert_one({"id": 7, "name": "Empty"})
        database["quests"].insert_one({"id": 9, "name": "Ready"})
        database["tasks"].insert_one({"id": 1, "quest_id": 9, "rule": balance_rule()})
        catalog = MongoQuestCatalog(database)
        assert catalog.get_quest(7) is None
        assert [quest.quest_id for quest in catalog.list_quests()] == [9]
