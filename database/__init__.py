"""
ZapFlow persistence: conversations, routine definitions and states,
campaigns and their dispatched targets.

    from database import create_store
    store = create_store({"store_backend": "memory"})
    conversation = await store.get_conversation("c1")

All backends implement `BaseCrmStore`; the SQL one shares its engine
with `database.session`.
"""
from database.models import (
    Base, TenantRow, MessagingSessionRow, ConversationRow, MessageRow,
    RoutineDefinitionRow, RoutineStateRow, CampaignRow, CampaignDispatchedRow,
)
from database.session import configure_engine, get_engine, get_session, init_db, close_db
from database.store_base import BaseCrmStore
from database.store import SqlCrmStore
from database.store_memory import InMemoryCrmStore
from database.store_file import FileCrmStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    "Base", "TenantRow", "MessagingSessionRow", "ConversationRow", "MessageRow",
    "RoutineDefinitionRow", "RoutineStateRow", "CampaignRow", "CampaignDispatchedRow",
    "configure_engine", "get_engine", "get_session", "init_db", "close_db",
    "BaseCrmStore", "SqlCrmStore", "InMemoryCrmStore", "FileCrmStore",
    "create_store", "get_store", "reset_store",
]
