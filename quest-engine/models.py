"""Quest, rule, progression and reward dataclass definitions."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import ClassVar, Union

from errors import InvalidTaskRule
from felt import normalize_address, parse_felt, selector_from_name

STATUS_UNSTARTED = "unstarted"
STATUS_IN_PROGRESS = "in-progress"
STATUS_COMPLETED = "completed"
STATUS_REWARD_ISSUED = "reward-issued"
STATUS_ORDER = (STATUS_UNSTARTED, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_REWARD_ISSUED)

TASK_UNRESOLVED = "unresolved"
TASK_SATISFIED = "satisfied"

REWARD_NONE = "none"
REWARD_PENDING = "pending"
REWARD_ISSUED = "issued"
REWARD_FAILED = "failed"

USER_PLACEHOLDER = "$user"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def status_rank(status: str) -> int:
    return STATUS_ORDER.index(status)


# ---------------------------------------------------------------------------
# Verification rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContractCallEquals:
    kind: ClassVar[str] = "contract-call-equals"
    contract_address: str
    entry_point: str
    calldata: tuple[str, ...]
    expected: tuple[int, ...]


@dataclass(frozen=True)
class ContractCallAtLeast:
    kind: ClassVar[str] = "contract-call-at-least"
    contract_address: str
    entry_point: str
    calldata: tuple[str, ...]
    threshold: int
    result_index: int = 0
    u256: bool = False


@dataclass(frozen=True)
class BalanceAtLeast:
    kind: ClassVar[str] = "balance-at-least"
    token_address: str
    threshold: int


@dataclass(frozen=True)
class EventEmitted:
    kind: ClassVar[str] = "event-emitted"
    contract_address: str
    event_name: str
    from_block: int
    to_block: int | None = None


VerificationRule = Union[ContractCallEquals, ContractCallAtLeast, BalanceAtLeast, EventEmitted]
RULE_KINDS = {
    rule_cls.kind: rule_cls
    for rule_cls in (ContractCallEquals, ContractCallAtLeast, BalanceAtLeast, EventEmitted)
}


def _rule_param(data: dict[str, object], key: str) -> object:
    value = data.get(key)
    if value is None:
        raise InvalidTaskRule(f"{data.get('kind')}: {key} is required")
    return value


def _rule_felt(data: dict[str, object], key: str) -> int:
    try:
        return parse_felt(_rule_param(data, key))
    except ValueError as exc:
        raise InvalidTaskRule(f"{data.get('kind')}: {key}: {exc}") from None


def _rule_address(data: dict[str, object], key: str) -> str:
    try:
        return normalize_address(_rule_param(data, key))
    except ValueError as exc:
        raise InvalidTaskRule(f"{data.get('kind')}: {key}: {exc}") from None


def _rule_int(data: dict[str, object], key: str, default: int | None = None) -> int | None:
    value = data.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidTaskRule(f"{data.get('kind')}: {key} must be an integer")
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        raise InvalidTaskRule(f"{data.get('kind')}: {key} must be an integer") from None


def _rule_entry_point(data: dict[str, object], key: str) -> str:
    name = _rule_param(data, key)
    if not isinstance(name, str):
        raise InvalidTaskRule(f"{data.get('kind')}: {key} must be a string")
    try:
        selector_from_name(name)
    except ValueError as exc:
        raise InvalidTaskRule(f"{data.get('kind')}: {key}: {exc}") from None
    return name.strip()


def _rule_calldata(data: dict[str, object]) -> tuple[str, ...]:
    raw = data.get("calldata", [])
    if not isinstance(raw, list):
        raise InvalidTaskRule(f"{data.get('kind')}: calldata must be a list")
    calldata: list[str] = []
    for item in raw:
        if item == USER_PLACEHOLDER:
            calldata.append(USER_PLACEHOLDER)
            continue
        try:
            calldata.append(hex(parse_felt(item)))
        except ValueError as exc:
            raise InvalidTaskRule(f"{data.get('kind')}: calldata: {exc}") from None
    return tuple(calldata)


def rule_from_dict(data: object) -> VerificationRule:
    """Parse the JSON form of a verification rule."""
    if not isinstance(data, dict):
        raise InvalidTaskRule("rule must be an object")
    kind = data.get("kind")
    if kind not in RULE_KINDS:
        raise InvalidTaskRule(f"unknown rule kind: {kind!r}")

    if kind == ContractCallEquals.kind:
        expected_raw = _rule_param(data, "expected")
        if not isinstance(expected_raw, list) or not expected_raw:
            raise InvalidTaskRule(f"{kind}: expected must be a non-empty list")
        try:
            expected = tuple(parse_felt(item) for item in expected_raw)
        except ValueError as exc:
            raise InvalidTaskRule(f"{kind}: expected: {exc}") from None
        return ContractCallEquals(
            contract_address=_rule_address(data, "contract_address"),
            entry_point=_rule_entry_point(data, "entry_point"),
            calldata=_rule_calldata(data),
            expected=expected,
        )
    if kind == ContractCallAtLeast.kind:
        result_index = _rule_int(data, "result_index", 0) or 0
        if result_index < 0:
            raise InvalidTaskRule(f"{kind}: result_index must be >= 0")
        return ContractCallAtLeast(
            contract_address=_rule_address(data, "contract_address"),
            entry_point=_rule_entry_point(data, "entry_point"),
            calldata=_rule_calldata(data),
            threshold=_rule_felt(data, "threshold"),
            result_index=result_index,
            u256=bool(data.get("u256", False)),
        )
    if kind == BalanceAtLeast.kind:
        return BalanceAtLeast(
            token_address=_rule_address(data, "token_address"),
            threshold=_rule_felt(data, "threshold"),
        )

    from_block = _rule_int(data, "from_block", 0) or 0
    to_block = _rule_int(data, "to_block")
    if from_block < 0 or (to_block is not None and to_block < from_block):
        raise InvalidTaskRule(f"{kind}: invalid block range {from_block}..{to_block}")
    return EventEmitted(
        contract_address=_rule_address(data, "contract_address"),
        event_name=_rule_entry_point(data, "event_name"),
        from_block=from_block,
        to_block=to_block,
    )


def rule_to_dict(rule: VerificationRule) -> dict[str, object]:
    if isinstance(rule, ContractCallEquals):
        return {
            "kind": rule.kind,
            "contract_address": rule.contract_address,
            "entry_point": rule.entry_point,
            "calldata": list(rule.calldata),
            "expected": [str(value) for value in rule.expected],
        }
    if isinstance(rule, ContractCallAtLeast):
        return {
            "kind": rule.kind,
            "contract_address": rule.contract_address,
            "entry_point": rule.entry_point,
            "calldata": list(rule.calldata),
            "threshold": str(rule.threshold),
            "result_index": rule.result_index,
            "u256": rule.u256,
        }
    if isinstance(rule, BalanceAtLeast):
        return {"kind": rule.kind, "token_address": rule.token_address, "threshold": str(rule.threshold)}
    return {
        "kind": rule.kind,
        "contract_address": rule.contract_address,
        "event_name": rule.event_name,
        "from_block": rule.from_block,
        "to_block": rule.to_block,
    }


# ---------------------------------------------------------------------------
# Quest metadata
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RewardDescriptor:
    kind: str
    amount: int
    token_address: str | None = None

    @property
    def on_chain(self) -> bool:
        return self.kind in ("token", "nft")


@dataclass(frozen=True)
class Task:
    task_id: int
    name: str
    rule: VerificationRule | None
    rule_error: str | None = None


@dataclass(frozen=True)
class Quest:
    quest_id: int
    name: str
    tasks: tuple[Task, ...]
    reward: RewardDescriptor
    start_time: int | None = None
    expiry: int | None = None
    disabled: bool = False
    issuer: str = ""

    @property
    def visible(self) -> bool:
        return not self.disabled

    @property
    def task_ids(self) -> list[str]:
        return [str(task.task_id) for task in self.tasks]

    def is_active(self, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        if self.start_time is not None and current < self.start_time:
            return False
        if self.expiry is not None and current > self.expiry:
            return False
        return True


def task_from_dict(data: dict[str, object]) -> Task:
    """Build a task; a broken rule is kept as ``rule_error`` so siblings still verify."""
    task_id = data.get("id", data.get("task_id"))
    if not isinstance(task_id, int) or isinstance(task_id, bool):
        raise ValueError("task id must be an integer")
    name = str(data.get("name") or f"task-{task_id}")
    try:
        return Task(task_id=task_id, name=name, rule=rule_from_dict(data.get("rule")))
    except InvalidTaskRule as exc:
        return Task(task_id=task_id, name=name, rule=None, rule_error=str(exc))


def quest_from_dict(data: dict[str, object]) -> Quest:
    quest_id = data.get("id", data.get("quest_id"))
    if not isinstance(quest_id, int) or isinstance(quest_id, bool):
        raise ValueError("quest id must be an integer")
    tasks_obj = data.get("tasks") or []
    if not isinstance(tasks_obj, list):
        raise ValueError("tasks must be a list")
    tasks = tuple(task_from_dict(task) for task in tasks_obj if isinstance(task, dict))
    if not tasks:
        raise ValueError(f"quest {quest_id} has no tasks")
    task_ids = [task.task_id for task in tasks]
    if len(set(task_ids)) != len(task_ids):
        raise ValueError(f"quest {quest_id} has duplicate task ids")
    reward_obj = data.get("reward") or {}
    if not isinstance(reward_obj, dict):
        raise ValueError("reward must be an object")
    token_address = reward_obj.get("token_address")
    reward = RewardDescriptor(
        kind=str(reward_obj.get("kind", "points")),
        amount=int(reward_obj.get("amount", 0)),
        token_address=normalize_address(token_address) if token_address else None,
    )
    start_time = data.get("start_time")
    expiry = data.get("expiry")
    return Quest(
        quest_id=quest_id,
        name=str(data.get("name", "")),
        tasks=tasks,
        reward=reward,
        start_time=int(start_time) if isinstance(start_time, (int, float)) else None,
        expiry=int(expiry) if isinstance(expiry, (int, float)) else None,
        disabled=bool(data.get("disabled", False)),
        issuer=str(data.get("issuer", "")),
    )


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Satisfied:
    evidence: dict[str, object]


@dataclass(frozen=True)
class Unresolved:
    reason: str = ""


@dataclass(frozen=True)
class VerificationError:
    kind: str
    message: str


Verdict = Union[Satisfied, Unresolved, VerificationError]


# ---------------------------------------------------------------------------
# Progression ledger
# ---------------------------------------------------------------------------


@dataclass
class TaskProgress:
    state: str = TASK_UNRESOLVED
    evidence: dict[str, object] | None = None
    satisfied_at: str | None = None

    @property
    def satisfied(self) -> bool:
        return self.state == TASK_SATISFIED


@dataclass
class ProgressionRecord:
    user: str
    quest_id: int
    tasks: dict[str, TaskProgress] = field(default_factory=dict)
    status: str = STATUS_IN_PROGRESS
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    completed_at: str | None = None
    reward_issued_at: str | None = None
    reward_claim: dict[str, object] | None = None
    reward_attempts: int = 0
    last_reward_error: str | None = None
    version: int = 0

    def has_live_claim(self, now: float | None = None) -> bool:
        if not self.reward_claim:
            return False
        current = time.time() if now is None else now
        expires = self.reward_claim.get("expires_at_ts")
        return isinstance(expires, (int, float)) and expires > current

    @property
    def reward_status(self) -> str:
        if self.status == STATUS_REWARD_ISSUED:
            return REWARD_ISSUED
        if self.status != STATUS_COMPLETED:
            return REWARD_NONE
        if self.has_live_claim():
            return REWARD_PENDING
        if self.last_reward_error:
            return REWARD_FAILED
        return REWARD_PENDING

    def to_dict(self) -> dict[str, object]:
        return {
            "user": self.user,
            "quest_id": self.quest_id,
            "tasks": {
                task_id: {
                    "state": progress.state,
                    "evidence": progress.evidence,
                    "satisfied_at": progress.satisfied_at,
                }
                for task_id, progress in self.tasks.items()
            },
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "reward_issued_at": self.reward_issued_at,
            "reward_claim": self.reward_claim,
            "reward_attempts": self.reward_attempts,
            "last_reward_error": self.last_reward_error,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ProgressionRecord:
        tasks_obj = data.get("tasks") or {}
        tasks: dict[str, TaskProgress] = {}
        if isinstance(tasks_obj, dict):
            for task_id, progress_obj in tasks_obj.items():
                if not isinstance(progress_obj, dict):
                    continue
                evidence = progress_obj.get("evidence")
                tasks[str(task_id)] = TaskProgress(
                    state=str(progress_obj.get("state", TASK_UNRESOLVED)),
                    evidence=dict(evidence) if isinstance(evidence, dict) else None,
                    satisfied_at=progress_obj.get("satisfied_at"),  # type: ignore[arg-type]
                )
        claim = data.get("reward_claim")
        return cls(
            user=str(data["user"]),
            quest_id=int(data["quest_id"]),  # type: ignore[call-overload]
            tasks=tasks,
            status=str(data.get("status", STATUS_IN_PROGRESS)),
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
            completed_at=data.get("completed_at"),  # type: ignore[arg-type]
            reward_issued_at=data.get("reward_issued_at"),  # type: ignore[arg-type]
            reward_claim=dict(claim) if isinstance(claim, dict) else None,
            reward_attempts=int(data.get("reward_attempts", 0) or 0),  # type: ignore[call-overload]
            last_reward_error=data.get("last_reward_error"),  # type: ignore[arg-type]
            version=int(data.get("version", 0) or 0),  # type: ignore[call-overload]
        )


@dataclass
class RewardGrant:
    user: str
    quest_id: int
    kind: str
    amount: int
    issued_at: str = field(default_factory=_now_iso)
    tx_hash: str | None = None
    ledger_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "user": self.user,
            "quest_id": self.quest_id,
            "kind": self.kind,
            "amount": str(self.amount),
            "issued_at": self.issued_at,
            "tx_hash": self.tx_hash,
            "ledger_id": self.ledger_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> RewardGrant:
        return cls(
            user=str(data["user"]),
            quest_id=int(data["quest_id"]),  # type: ignore[call-overload]
            kind=str(data.get("kind", "points")),
            amount=int(str(data.get("amount", "0"))),
            issued_at=str(data.get("issued_at") or _now_iso()),
            tx_hash=data.get("tx_hash"),  # type: ignore[arg-type]
            ledger_id=data.get("ledger_id"),  # type: ignore[arg-type]
        )


@dataclass
class ProgressionSnapshot:
    quest_id: int
    user: str
    status: str
    reward_status: str
    tasks: list[dict[str, object]] = field(default_factory=list)
    reward: dict[str, object] | None = None
    errors: dict[str, dict[str, str]] = field(default_factory=dict)
    pending_tasks: list[str] = field(default_factory=list)
    quest_active: bool = True

    @property
    def still_pending(self) -> bool:
        return bool(self.pending_tasks)

    @classmethod
    def build(
        cls,
        quest: Quest,
        user: str,
        record: ProgressionRecord | None,
        grant: RewardGrant | None = None,
    ) -> ProgressionSnapshot:
        tasks: list[dict[str, object]] = []
        for task in quest.tasks:
            progress = record.tasks.get(str(task.task_id)) if record else None
            satisfied = progress is not None and progress.satisfied
            tasks.append(
                {
                    "task_id": task.task_id,
                    "name": task.name,
                    "status": TASK_SATISFIED if satisfied else TASK_UNRESOLVED,
                    "evidence": progress.evidence if satisfied and progress else None,
                    "satisfied_at": progress.satisfied_at if satisfied and progress else None,
                }
            )
        return cls(
            quest_id=quest.quest_id,
            user=user,
            status=record.status if record else STATUS_UNSTARTED,
            reward_status=record.reward_status if record else REWARD_NONE,
            tasks=tasks,
            reward=grant.to_dict() if grant else None,
            quest_active=quest.is_active(),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "quest_id": self.quest_id,
            "user": self.user,
            "status": self.status,
            "reward_status": self.reward_status,
            "tasks": self.tasks,
            "reward": self.reward,
            "errors": self.errors,
            "pending_tasks": self.pending_tasks,
            "still_pending": self.still_pending,
            "quest_active": self.quest_active,
        }
