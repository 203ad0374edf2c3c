"""Pytest setup for quest-engine tests. Puts the engine modules on sys.path."""

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
os.environ.setdefault("RPC_URL", "http://rpc.test/rpc/v0_7")
os.environ.setdefault("RPC_MAX_ATTEMPTS", "3")
