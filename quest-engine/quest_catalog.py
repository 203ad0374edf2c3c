"""Read-only quest metadata providers."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

import engine_config as config
from models import Quest, quest_from_dict

log = logging.getLogger(__name__)


class QuestCatalog:
    """Quest definitions loaded from a JSON file (``{"quests": [...]}``)."""

    def __init__(self, quests: list[Quest] | None = None, catalog_path: Path | None = None) -> None:
        self._lock = threading.Lock()
        self._catalog_path = catalog_path
        self._quests: dict[int, Quest] = {quest.quest_id: quest for quest in quests or []}
        if catalog_path is not None:
            self.reload()

    @classmethod
    def from_file(cls, catalog_path: Path | None = None) -> QuestCatalog:
        return cls(catalog_path=Path(catalog_path or config.QUEST_CATALOG_PATH))

    def reload(self) -> int:
        if self._catalog_path is None or not self._catalog_path.exists():
            log.warning("quest catalog %s not found; catalog is empty", self._catalog_path)
            return 0
        payload = json.loads(self._catalog_path.read_text(encoding="utf-8"))
        quests_obj = payload.get("quests") if isinstance(payload, dict) else payload
        if not isinstance(quests_obj, list):
            raise ValueError("quest catalog must contain a list of quests")
        loaded: dict[int, Quest] = {}
        for quest_obj in quests_obj:
            if not isinstance(quest_obj, dict):
                continue
            try:
                quest = quest_from_dict(quest_obj)
            except ValueError as exc:
                log.error("skipping quest %s: %s", quest_obj.get("id", quest_obj.get("quest_id")), exc)
                continue
            for task in quest.tasks:
                if task.rule_error:
                    log.error("quest %s task %s: %s", quest.quest_id, task.task_id, task.rule_error)
            loaded[quest.quest_id] = quest
        with self._lock:
            self._quests = loaded
        return len(loaded)

    def get_quest(self, quest_id: int) -> Quest | None:
        with self._lock:
            return self._quests.get(quest_id)

    def list_quests(self) -> list[Quest]:
        with self._lock:
            return sorted(self._quests.values(), key=lambda quest: quest.quest_id)


class MongoQuestCatalog:
    """Quest definitions read from the ``quests`` and ``tasks`` collections."""

    def __init__(self, database: object) -> None:
        self._quests = database["quests"]  # type: ignore[index]
        self._tasks = database["tasks"]  # type: ignore[index]

    def _build(self, quest_doc: dict[str, object]) -> Quest:
        tasks = [dict(doc) for doc in self._tasks.find({"quest_id": quest_doc.get("id")})]
        tasks.sort(key=lambda doc: (doc.get("order", 0), doc.get("id", 0)))
        return quest_from_dict({**quest_doc, "tasks": tasks})

    def get_quest(self, quest_id: int) -> Quest | None:
        doc = self._quests.find_one({"id": quest_id})
        if not doc:
            return None
        try:
            return self._build(doc)
        except ValueError as exc:
            log.error("skipping quest %s: %s", quest_id, exc)
            return None

    def list_quests(self) -> list[Quest]:
        quests: list[Quest] = []
        for doc in self._quests.find({}):
            try:
                quests.append(self._build(doc))
            except ValueError as exc:
                log.error("skipping quest %s: %s", doc.get("id"), exc)
        return sorted(quests, key=lambda quest: quest.quest_id)
