"""Idempotent reward issuance keyed by (user, quest)."""

from __future__ import annotations

import logging
import uuid

import engine_config as config
import http_client
from errors import RewardIssuanceFailed
from models import Quest, RewardDescriptor, RewardGrant
from progression_store import ProgressionStore

log = logging.getLogger(__name__)


class RelayerDispatcher:
    """Submits on-chain rewards through the payout relayer service."""

    def __init__(self, relayer_url: str | None = None, api_key: str | None = None, timeout: float = 30) -> None:
        self._relayer_url = (relayer_url if relayer_url is not None else config.REWARD_RELAYER_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else config.REWARD_RELAYER_API_KEY
        self._timeout = timeout

    def dispatch(self, user: str, quest: Quest, descriptor: RewardDescriptor) -> str:
        """Return the submitted transaction hash."""
        if not self._relayer_url:
            raise RewardIssuanceFailed("reward relayer is not configured")
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        body: dict[str, object] = {
            "idempotency_key": f"quest:{quest.quest_id}:{user}",
            "recipient": user,
            "quest_id": quest.quest_id,
            "kind": descriptor.kind,
            "amount": str(descriptor.amount),
            "token_address": descriptor.token_address,
        }
        status, payload = http_client._json_request(
            "POST", f"{self._relayer_url}/rewards", body=body, headers=headers, timeout=self._timeout
        )
        if status not in (200, 201):
            raise RewardIssuanceFailed(f"relayer returned {status}: {payload.get('error', payload)}")
        tx_hash = payload.get("transaction_hash") or payload.get("tx_hash")
        if not isinstance(tx_hash, str) or not tx_hash.strip():
            raise RewardIssuanceFailed("relayer response has no transaction hash")
        return tx_hash.strip()


class RewardIssuer:
    """Creates at most one RewardGrant per (user, quest).

    Callers must hold the store's reward claim; the existence check and the
    store's unique key still guard against a second grant.
    """

    def __init__(self, store: ProgressionStore, dispatcher: RelayerDispatcher | None = None) -> None:
        self._store = store
        self._dispatcher = dispatcher or RelayerDispatcher()

    def issue(self, user: str, quest: Quest, descriptor: RewardDescriptor | None = None) -> RewardGrant:
        reward = descriptor or quest.reward
        existing = self._store.get_grant(user, quest.quest_id)
        if existing is not None:
            log.info("reward already granted user=%s quest=%s", user, quest.quest_id)
            return existing

        grant = RewardGrant(user=user, quest_id=quest.quest_id, kind=reward.kind, amount=reward.amount)
        if reward.on_chain:
            grant.tx_hash = self._dispatcher.dispatch(user, quest, reward)
        else:
            grant.ledger_id = str(uuid.uuid4())

        stored, created = self._store.insert_grant(grant)
        if created:
            log.info("reward granted user=%s quest=%s kind=%s amount=%s", user, quest.quest_id, reward.kind, reward.amount)
        else:
            log.warning("duplicate grant suppressed user=%s quest=%s", user, quest.quest_id)
        return stored
