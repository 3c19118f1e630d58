"""
Dependency wiring for the API.

Environment variables (loaded from the project .env when present):
- PARTNER_STORE_BACKEND: "memory" (default) or "supabase"
- COMMISSION_POLICY_PATH: JSON commission policy file
- LOCK_TIMEOUT_SECONDS: lock wait bound for the in-memory store (default 5)
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

from domain.commission import CommissionPolicy
from repositories.base import NetworkStore
from repositories.memory_store import InMemoryNetworkStore
from repositories.supabase_store import SupabaseNetworkStore
from services.policy_service import load_commission_policy

env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _lock_timeout() -> float:
    raw = os.getenv("LOCK_TIMEOUT_SECONDS", "5")
    try:
        timeout = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"LOCK_TIMEOUT_SECONDS must be a number, got {raw!r}") from exc
    if timeout <= 0:
        raise RuntimeError("LOCK_TIMEOUT_SECONDS must be > 0")
    return timeout


@lru_cache(maxsize=1)
def get_store() -> NetworkStore:
    """Shared store for the process, chosen by PARTNER_STORE_BACKEND."""

    backend = os.getenv("PARTNER_STORE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryNetworkStore(lock_timeout=_lock_timeout())
    if backend == "supabase":
        return SupabaseNetworkStore()
    raise RuntimeError(
        f"Unknown PARTNER_STORE_BACKEND: {backend!r}. "
        "Set PARTNER_STORE_BACKEND to 'memory' or 'supabase'."
    )


@lru_cache(maxsize=1)
def get_policy() -> CommissionPolicy:
    return load_commission_policy()


__all__ = ["get_store", "get_policy"]
