"""Exception taxonomy for quest verification and reward issuance."""

from __future__ import annotations


class EngineError(Exception):
    """Base class for engine errors."""


class ChainUnreachable(EngineError):
    """The RPC node could not be reached after every retry attempt."""

    def __init__(self, method: str, attempts: int, last_error: str) -> None:
        super().__init__(f"{method} failed after {attempts} attempts: {last_error}")
        self.method = method
        self.attempts = attempts
        self.last_error = last_error


class InvalidTaskRule(EngineError):
    """A task's verification rule is malformed or rejected by the node."""


class StoreConflict(EngineError):
    """A compare-and-set kept losing to concurrent writers."""


class RewardIssuanceFailed(EngineError):
    """The reward could not be dispatched; progression state is unaffected."""


class QuestNotFound(EngineError):
    """Raised when a quest id does not resolve to a visible quest."""

    def __init__(self, quest_id: int) -> None:
        super().__init__(f"quest {quest_id} not found")
        self.quest_id = quest_id
