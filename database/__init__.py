"""
Database layer — Multi-backend persistence for the durable log.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  await store.append_event(Event(event_type="opportunity.created", ...))
"""
from database.models import (
    Base, EventRow, DeadLetterRow, TaskRow, ActionLogRow,
    IntroOpportunityRow, ConnectionRequestRow, IntroOfferRow, SubjectHoldRow,
    PriorityRow, CreditEventRow,
)
from database.session import get_engine, configure_engine, get_session, init_db, close_db
from database.store_base import BaseStore
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "EventRow", "DeadLetterRow", "TaskRow", "ActionLogRow",
    "IntroOpportunityRow", "ConnectionRequestRow", "IntroOfferRow", "SubjectHoldRow",
    "PriorityRow", "CreditEventRow",
    # Session management
    "get_engine", "configure_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseStore",
    # Store backends
    "SqlStore", "InMemoryStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
