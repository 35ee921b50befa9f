"""
Store Factory: pick the follow-up store backend from the ``database:`` section.

    database:
      url: "sqlite:///./followup_engine.db"   # postgresql:// | mysql:// | sqlite://
      store_backend: "sql"                    # "sql" | "memory"

``sql`` keeps follow-ups and company rule sets in the database at ``url``;
``memory`` keeps them in process dicts (development, tests).
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig
from database.session import SessionScope
from database.store_base import BaseFollowUpStore

logger = structlog.get_logger()

_instance: Optional[BaseFollowUpStore] = None


def create_store(config: DatabaseConfig = None, session_scope: SessionScope = None) -> BaseFollowUpStore:
    """Build a new store. ``session_scope`` overrides the global engine for the sql backend."""
    config = config or DatabaseConfig()
    backend = (config.store_backend or "memory").lower()

    if backend == "sql":
        from database.store import SqlFollowUpStore
        store = SqlFollowUpStore(session_scope)
    elif backend == "memory":
        from database.store_memory import InMemoryFollowUpStore
        store = InMemoryFollowUpStore()
    else:
        raise ValueError(f"unknown store backend: {config.store_backend!r}")

    logger.info("store_created", backend=backend)
    return store


def get_store(config: DatabaseConfig = None) -> BaseFollowUpStore:
    """Return the process-wide store, creating it on first use."""
    global _instance
    if _instance is None:
        _instance = create_store(config)
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
