"""Maps a task's verification rule plus chain reads to a verdict."""

from __future__ import annotations

import logging

from chain_reader import BalanceRequest, BlockNumberRequest, CallRequest, ChainReader, EventsRequest
from errors import ChainUnreachable, InvalidTaskRule
from felt import parse_felt, selector_from_name, to_hex_trimmed
from models import (
    USER_PLACEHOLDER,
    BalanceAtLeast,
    ContractCallAtLeast,
    ContractCallEquals,
    EventEmitted,
    Satisfied,
    Task,
    Unresolved,
    Verdict,
    VerificationError,
    VerificationRule,
)

log = logging.getLogger(__name__)

ERROR_CHAIN_UNREACHABLE = "chain_unreachable"
ERROR_INVALID_TASK_RULE = "invalid_task_rule"


def verify(task: Task, reader: ChainReader, user: str) -> Verdict:
    """Evaluate one task for ``user``. Never raises for chain or rule problems."""
    if task.rule is None:
        return VerificationError(ERROR_INVALID_TASK_RULE, task.rule_error or "task has no rule")
    try:
        return _dispatch(task.rule, reader, parse_felt(user))
    except ChainUnreachable as exc:
        log.warning("task %s unverifiable for %s: %s", task.task_id, user, exc)
        return VerificationError(ERROR_CHAIN_UNREACHABLE, str(exc))
    except InvalidTaskRule as exc:
        log.error("task %s has an invalid rule: %s", task.task_id, exc)
        return VerificationError(ERROR_INVALID_TASK_RULE, str(exc))


def _dispatch(rule: VerificationRule, reader: ChainReader, user: int) -> Verdict:
    if isinstance(rule, ContractCallEquals):
        return _verify_call_equals(rule, reader, user)
    if isinstance(rule, ContractCallAtLeast):
        return _verify_call_at_least(rule, reader, user)
    if isinstance(rule, BalanceAtLeast):
        return _verify_balance(rule, reader, user)
    if isinstance(rule, EventEmitted):
        return _verify_event(rule, reader, user)
    raise InvalidTaskRule(f"unsupported rule type: {type(rule).__name__}")


def _latest_block(reader: ChainReader) -> int | None:
    result = reader.query(BlockNumberRequest())
    if result.ok and isinstance(result.value, int):
        return result.value
    return None


def _resolve_calldata(calldata: tuple[str, ...], user: int) -> tuple[int, ...]:
    return tuple(user if item == USER_PLACEHOLDER else parse_felt(item) for item in calldata)


def _evidence(rule: VerificationRule, block_number: int | None, **fields: object) -> dict[str, object]:
    evidence: dict[str, object] = {"rule": rule.kind, "block_number": block_number}
    evidence.update(fields)
    return evidence


def _verify_call_equals(rule: ContractCallEquals, reader: ChainReader, user: int) -> Verdict:
    block = _latest_block(reader)
    result = reader.query(
        CallRequest(rule.contract_address, rule.entry_point, _resolve_calldata(rule.calldata, user), block)
    )
    if not result.ok:
        return Unresolved(result.reason)
    observed = tuple(result.value) if isinstance(result.value, list) else ()
    if observed != rule.expected:
        return Unresolved(f"{rule.entry_point} returned {[to_hex_trimmed(v) for v in observed]}")
    return Satisfied(_evidence(rule, block, observed=[to_hex_trimmed(v) for v in observed]))


def _verify_call_at_least(rule: ContractCallAtLeast, reader: ChainReader, user: int) -> Verdict:
    block = _latest_block(reader)
    result = reader.query(
        CallRequest(rule.contract_address, rule.entry_point, _resolve_calldata(rule.calldata, user), block)
    )
    if not result.ok:
        return Unresolved(result.reason)
    values = result.value if isinstance(result.value, list) else []
    needed = rule.result_index + (2 if rule.u256 else 1)
    if len(values) < needed:
        raise InvalidTaskRule(f"{rule.entry_point} returned {len(values)} values, rule reads index {rule.result_index}")
    observed = values[rule.result_index]
    if rule.u256:
        observed += values[rule.result_index + 1] << 128
    if observed < rule.threshold:
        return Unresolved(f"{rule.entry_point} is {observed}, needs {rule.threshold}")
    return Satisfied(_evidence(rule, block, observed=str(observed), threshold=str(rule.threshold)))


def _verify_balance(rule: BalanceAtLeast, reader: ChainReader, user: int) -> Verdict:
    block = _latest_block(reader)
    result = reader.query(BalanceRequest(rule.token_address, hex(user), block))
    if not result.ok:
        return Unresolved(result.reason)
    balance = result.value if isinstance(result.value, int) else 0
    if balance < rule.threshold:
        return Unresolved(f"balance is {balance}, needs {rule.threshold}")
    return Satisfied(_evidence(rule, block, observed=str(balance), threshold=str(rule.threshold)))


def _verify_event(rule: EventEmitted, reader: ChainReader, user: int) -> Verdict:
    to_block = rule.to_block
    if to_block is None:
        to_block = _latest_block(reader)
        if to_block is None:
            return Unresolved("latest block unavailable")
    if to_block < rule.from_block:
        return Unresolved(f"block range {rule.from_block}..{to_block} not reached yet")
    key = selector_from_name(rule.event_name)
    result = reader.query(EventsRequest(rule.contract_address, ((key,),), rule.from_block, to_block))
    if not result.ok:
        return Unresolved(result.reason)
    events = result.value if isinstance(result.value, list) else []
    for event in events:
        keys = event.get("keys") or []
        data = event.get("data") or []
        if user in keys[1:] or user in data:
            return Satisfied(
                _evidence(
                    rule,
                    to_block,
                    event_block=event.get("block_number"),
                    tx_hash=event.get("transaction_hash"),
                    from_block=rule.from_block,
                )
            )
    return Unresolved(f"no {rule.event_name} event for user in blocks {rule.from_block}..{to_block}")
