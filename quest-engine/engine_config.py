"""Engine configuration constants and environment variables."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent / ".env")

ENGINE_DIR = Path(__file__).parent
HOST = os.environ.get("HOST", "0.0.0.0").strip()
PORT = int(os.environ.get("PORT", "8080"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper()

STORE_BACKEND = os.environ.get("STORE_BACKEND", "json").strip().lower()
PROGRESSION_STORE_PATH = Path(
    os.environ.get("PROGRESSION_STORE_PATH", str(ENGINE_DIR / "progression_store.json"))
)
QUEST_CATALOG_PATH = Path(os.environ.get("QUEST_CATALOG_PATH", str(ENGINE_DIR / "quests.json")))
MONGO_URI = os.environ.get("MONGO_URI", "").strip()
MONGO_DB_NAME = os.environ.get("MONGO_DB_NAME", "").strip()

RPC_URL = os.environ.get("RPC_URL", "http://localhost:9545/rpc/v0_7").strip()
RPC_TIMEOUT_SECONDS = float(os.environ.get("RPC_TIMEOUT_SECONDS", "10"))
RPC_MAX_ATTEMPTS = int(os.environ.get("RPC_MAX_ATTEMPTS", "4"))
RPC_BACKOFF_BASE_SECONDS = float(os.environ.get("RPC_BACKOFF_BASE_SECONDS", "0.5"))
RPC_BACKOFF_MAX_SECONDS = float(os.environ.get("RPC_BACKOFF_MAX_SECONDS", "8"))
EVENTS_CHUNK_SIZE = int(os.environ.get("EVENTS_CHUNK_SIZE", "100"))

CHECK_TIMEOUT_SECONDS = float(os.environ.get("CHECK_TIMEOUT_SECONDS", "25"))
VERIFY_WORKERS = int(os.environ.get("VERIFY_WORKERS", "8"))
REWARD_CLAIM_LEASE_SECONDS = int(os.environ.get("REWARD_CLAIM_LEASE_SECONDS", "120"))
RECONCILE_INTERVAL_SECONDS = int(os.environ.get("RECONCILE_INTERVAL_SECONDS", "300"))

REWARD_RELAYER_URL = os.environ.get("REWARD_RELAYER_URL", "").strip().rstrip("/")
REWARD_RELAYER_API_KEY = os.environ.get("REWARD_RELAYER_API_KEY", "").strip()
ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY", "").strip()
