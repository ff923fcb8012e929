"""Shared test fixtures for ZapFlow."""
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio

from channels.mock_gateway import MockGateway
from config.settings import RoutineConfig
from core.notifications import InMemoryNotificationBroker
from core.outbound import OutboundSender
from core.routine_machine import RoutineStateMachine, index_definitions
from database.store_memory import InMemoryCrmStore
from models.schemas import (
    BoardColumn, Conversation, Message, MessagingSession, RoutineDefinition, Tenant,
)


# Wednesday 2024-03-06 15:00 UTC (12:00 in São Paulo)
FIXED_NOW = datetime(2024, 3, 6, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


async def add_conversation(
    store, tenant_id: str, column: BoardColumn = BoardColumn.HOT_LEAD,
    last_from_me: Optional[bool] = True, last_at: Optional[datetime] = None,
    **fields,
) -> Conversation:
    """Create a conversation, optionally with one message authored by tenant or customer."""
    conv = Conversation(tenant_id=tenant_id, board_column=column,
                        name=fields.pop("name", "Maria"), phone=fields.pop("phone", "5511999990000"),
                        **fields)
    await store.save_conversation(conv)
    if last_from_me is not None:
        await store.add_message(Message(
            conversation_id=conv.id, content="hello", from_me=last_from_me,
            timestamp=last_at or FIXED_NOW,
        ))
    return conv


async def add_definitions(store, tenant_id: str, delays: dict[int, int],
                          blank: tuple = ()) -> dict[int, RoutineDefinition]:
    """Create routine steps {sequence_number: hours_delay}."""
    created = []
    for seq, hours in delays.items():
        definition = RoutineDefinition(
            tenant_id=tenant_id, sequence_number=seq, hours_delay=hours,
            text_content="" if seq in blank else f"step {seq} text",
        )
        await store.save_routine_definition(definition)
        created.append(definition)
    return index_definitions(created)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryCrmStore()


@pytest.fixture
def gateway():
    return MockGateway()


@pytest.fixture
def broker():
    return InMemoryNotificationBroker()


@pytest.fixture
def sender(store, gateway, clock):
    return OutboundSender(store, gateway, send_timeout_s=1.0, media_delay_s=0, clock=clock)


@pytest.fixture
def routine_config():
    return RoutineConfig()


@pytest.fixture
def machine(store, sender, broker, routine_config, clock):
    return RoutineStateMachine(store, sender, broker, routine_config, clock=clock)


@pytest_asyncio.fixture
async def tenant(store):
    t = Tenant(id="tenant_a", name="Loja A", email="a@example.com")
    await store.upsert_tenant(t)
    return t


@pytest_asyncio.fixture
async def session(store, tenant):
    s = MessagingSession(tenant_id=tenant.id, instance_id="inst1", token="tok1", client_token="ct1")
    await store.upsert_session(s)
    return s
