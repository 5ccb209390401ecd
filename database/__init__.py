"""
Persistence for flows, published flow versions, conversations, contacts,
the message log, settings and appointments.

Three interchangeable backends implement BaseStore:
  SqlStore       SQLAlchemy async (SQLite, PostgreSQL, MySQL)
  FileStore      JSON files in one directory
  InMemoryStore  dicts; tests and local runs

    from database import create_store
    store = create_store(settings.database)
    flows = await store.find_active_published_flows()
"""
from database.models import (
    Base, AppointmentRow, ContactRow, ConversationRow, FlowRow,
    FlowVersionRow, MessageRow, SettingRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseStore
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_file import FileStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "AppointmentRow", "ContactRow", "ConversationRow", "FlowRow",
    "FlowVersionRow", "MessageRow", "SettingRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseStore",
    # Store backends
    "SqlStore", "InMemoryStore", "FileStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
