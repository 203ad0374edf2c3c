"""Typed Starknet JSON-RPC queries with per-call timeout and retry policy."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Union

import engine_config as config
import http_client
from errors import ChainUnreachable, InvalidTaskRule
from felt import parse_felt, selector_from_name, to_hex_trimmed, u256_from_felts

log = logging.getLogger(__name__)

# Starknet RPC error codes that are a definitive "no" from the chain.
NEGATIVE_CODES = {
    20: "contract_not_found",
    21: "entrypoint_not_found",
    24: "block_not_found",
    29: "transaction_not_found",
    40: "contract_error",
}
# Codes caused by the request itself; retrying cannot help.
REJECTED_CODES = {-32600, -32601, -32602, 31, 32, 33, 34}
TRANSIENT_HTTP_STATUSES = {408, 425, 429, 500, 502, 503, 504}
MAX_EVENT_PAGES = 500


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0

    def delays(self) -> list[float]:
        """Backoff waits between consecutive attempts."""
        return [
            min(self.base_delay * self.multiplier**step, self.max_delay)
            for step in range(max(self.max_attempts, 1) - 1)
        ]

    @classmethod
    def from_config(cls) -> RetryPolicy:
        return cls(
            max_attempts=max(1, config.RPC_MAX_ATTEMPTS),
            base_delay=config.RPC_BACKOFF_BASE_SECONDS,
            max_delay=config.RPC_BACKOFF_MAX_SECONDS,
        )


@dataclass(frozen=True)
class CallRequest:
    contract_address: str
    entry_point: str
    calldata: tuple[int, ...] = ()
    block_number: int | None = None


@dataclass(frozen=True)
class BalanceRequest:
    token_address: str
    account: str
    block_number: int | None = None


@dataclass(frozen=True)
class ReceiptRequest:
    tx_hash: str


@dataclass(frozen=True)
class EventsRequest:
    contract_address: str
    keys: tuple[tuple[int, ...], ...]
    from_block: int
    to_block: int | None = None
    chunk_size: int | None = None


@dataclass(frozen=True)
class BlockNumberRequest:
    pass


ChainRequest = Union[CallRequest, BalanceRequest, ReceiptRequest, EventsRequest, BlockNumberRequest]


@dataclass(frozen=True)
class ChainResult:
    """Outcome of a query; ``ok=False`` is a definitive negative, not an error."""

    ok: bool
    value: object = None
    block_number: int | None = None
    reason: str = ""

    @classmethod
    def not_satisfied(cls, reason: str) -> ChainResult:
        return cls(ok=False, reason=reason)


def _block_id(block_number: int | None) -> object:
    return "latest" if block_number is None else {"block_number": block_number}


def _felts(raw: object) -> list[int]:
    if not isinstance(raw, list):
        raise ValueError(f"expected a felt list, got {type(raw).__name__}")
    return [parse_felt(item) for item in raw]


class ChainReader:
    """Reads chain state over JSON-RPC. Stateless: nothing is cached between calls."""

    def __init__(
        self,
        rpc_url: str | None = None,
        timeout: float | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        events_chunk_size: int | None = None,
    ) -> None:
        self._rpc_url = rpc_url or config.RPC_URL
        self._timeout = timeout if timeout is not None else config.RPC_TIMEOUT_SECONDS
        self._policy = policy or RetryPolicy.from_config()
        self._sleep = sleep
        self._events_chunk_size = events_chunk_size or config.EVENTS_CHUNK_SIZE

    def query(self, request: ChainRequest) -> ChainResult:
        if isinstance(request, CallRequest):
            return self._call(request)
        if isinstance(request, BalanceRequest):
            return self._balance(request)
        if isinstance(request, ReceiptRequest):
            return self._receipt(request)
        if isinstance(request, EventsRequest):
            return self._events(request)
        if isinstance(request, BlockNumberRequest):
            return self._block_number()
        raise TypeError(f"unsupported chain request: {type(request).__name__}")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _rpc(self, method: str, params: dict[str, object]) -> tuple[object, str | None]:
        """Return ``(result, None)`` or ``(None, negative_reason)``.

        Raises ChainUnreachable once every attempt failed transiently and
        InvalidTaskRule when the node rejects the request itself.
        """
        attempts = max(1, self._policy.max_attempts)
        delays = self._policy.delays()
        last_error = ""
        for attempt in range(attempts):
            if attempt:
                delay = delays[attempt - 1]
                log.warning("%s attempt %d/%d failed (%s); retrying in %.2fs", method, attempt, attempts, last_error, delay)
                self._sleep(delay)
            status, payload = http_client._rpc_request(self._rpc_url, method, params, timeout=self._timeout)
            if status == 200 and "result" in payload:
                return payload["result"], None

            error_obj = payload.get("error")
            if status == 200 and isinstance(error_obj, dict):
                code = error_obj.get("code")
                message = str(error_obj.get("message", "")).strip()
                if code in NEGATIVE_CODES:
                    return None, f"{NEGATIVE_CODES[code]}: {message}"  # type: ignore[index]
                if code in REJECTED_CODES:
                    raise InvalidTaskRule(f"{method} rejected by node: {message} (code {code})")
                last_error = f"rpc error {code}: {message}"
                continue
            if status in TRANSIENT_HTTP_STATUSES:
                last_error = f"http {status}: {error_obj or ''}"
                continue
            raise ChainUnreachable(method, attempt + 1, f"http {status}: {error_obj or payload}")
        raise ChainUnreachable(method, attempts, last_error)

    # ------------------------------------------------------------------
    # Query kinds
    # ------------------------------------------------------------------

    def _call(self, request: CallRequest) -> ChainResult:
        params: dict[str, object] = {
            "request": {
                "contract_address": request.contract_address,
                "entry_point_selector": to_hex_trimmed(selector_from_name(request.entry_point)),
                "calldata": [to_hex_trimmed(value) for value in request.calldata],
            },
            "block_id": _block_id(request.block_number),
        }
        result, negative = self._rpc("starknet_call", params)
        if negative is not None:
            return ChainResult.not_satisfied(negative)
        try:
            values = _felts(result)
        except ValueError as exc:
            raise ChainUnreachable("starknet_call", 1, f"malformed result: {exc}") from None
        return ChainResult(ok=True, value=values, block_number=request.block_number)

    def _balance(self, request: BalanceRequest) -> ChainResult:
        call = CallRequest(
            contract_address=request.token_address,
            entry_point="balanceOf",
            calldata=(parse_felt(request.account),),
            block_number=request.block_number,
        )
        result = self._call(call)
        if not result.ok:
            return result
        values = result.value if isinstance(result.value, list) else []
        if len(values) >= 2:
            balance = u256_from_felts(values[0], values[1])
        elif len(values) == 1:
            balance = values[0]
        else:
            return ChainResult.not_satisfied("balanceOf returned no value")
        return ChainResult(ok=True, value=balance, block_number=request.block_number)

    def _receipt(self, request: ReceiptRequest) -> ChainResult:
        result, negative = self._rpc("starknet_getTransactionReceipt", {"transaction_hash": request.tx_hash})
        if negative is not None:
            return ChainResult.not_satisfied(negative)
        if not isinstance(result, dict):
            raise ChainUnreachable("starknet_getTransactionReceipt", 1, "malformed receipt")
        block_number = result.get("block_number")
        block = block_number if isinstance(block_number, int) else None
        if result.get("execution_status") == "REVERTED":
            return ChainResult(ok=False, value=result, block_number=block, reason=str(result.get("revert_reason", "reverted")))
        return ChainResult(ok=True, value=result, block_number=block)

    def _events(self, request: EventsRequest) -> ChainResult:
        event_filter: dict[str, object] = {
            "from_block": _block_id(request.from_block),
            "to_block": _block_id(request.to_block),
            "address": request.contract_address,
            "keys": [[to_hex_trimmed(key) for key in position] for position in request.keys],
            "chunk_size": request.chunk_size or self._events_chunk_size,
        }
        events: list[dict[str, object]] = []
        continuation: str | None = None
        for _ in range(MAX_EVENT_PAGES):
            page_filter = dict(event_filter)
            if continuation:
                page_filter["continuation_token"] = continuation
            result, negative = self._rpc("starknet_getEvents", {"filter": page_filter})
            if negative is not None:
                return ChainResult.not_satisfied(negative)
            if not isinstance(result, dict):
                raise ChainUnreachable("starknet_getEvents", 1, "malformed events page")
            for raw_event in result.get("events") or []:
                if not isinstance(raw_event, dict):
                    continue
                try:
                    events.append(
                        {
                            "block_number": raw_event.get("block_number"),
                            "transaction_hash": raw_event.get("transaction_hash"),
                            "keys": _felts(raw_event.get("keys", [])),
                            "data": _felts(raw_event.get("data", [])),
                        }
                    )
                except ValueError as exc:
                    raise ChainUnreachable("starknet_getEvents", 1, f"malformed event: {exc}") from None
            token = result.get("continuation_token")
            if not isinstance(token, str) or not token:
                return ChainResult(ok=True, value=events, block_number=request.to_block)
            continuation = token
        raise InvalidTaskRule(f"event range {request.from_block}..{request.to_block} exceeds {MAX_EVENT_PAGES} pages")

    def _block_number(self) -> ChainResult:
        result, negative = self._rpc("starknet_blockNumber", {})
        if negative is not None:
            return ChainResult.not_satisfied(negative)
        if not isinstance(result, int) or isinstance(result, bool):
            raise ChainUnreachable("starknet_blockNumber", 1, f"malformed block number: {result!r}")
        return ChainResult(ok=True, value=result, block_number=result)
