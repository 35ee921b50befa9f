"""
Database layer: Multi-backend follow-up persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  due = await store.list_due(now)
"""
from database.models import Base, FollowUpRow, CompanyRulesRow
from database.session import (
    get_engine, get_session, init_db, close_db,
    create_engine_for, make_session_scope,
)
from database.store_base import BaseFollowUpStore
from database.store import SqlFollowUpStore
from database.store_memory import InMemoryFollowUpStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "FollowUpRow", "CompanyRulesRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    "create_engine_for", "make_session_scope",
    # Store interface
    "BaseFollowUpStore",
    # Store backends
    "SqlFollowUpStore", "InMemoryFollowUpStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
