"""
Abstract CRM Store - Interface for all storage backends.

Implementations:
  - SqlCrmStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryCrmStore (dict-based, single-process, no persistence)
  - FileCrmStore     (JSON files on disk, single-process, durable)

Every method returns detached pydantic models; callers mutate their copy
and write it back with the matching save_* method.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from models.schemas import (
    BoardColumn, Campaign, CampaignStatus, Conversation, ConversationRoutineState,
    Message, MessageStatus, MessagingSession, RoutineDefinition, TargetSelector, Tenant,
)


class BaseCrmStore(ABC):
    """Interface that all CRM store backends must implement."""

    # ── Tenants & sessions ────────────────────────────────────

    @abstractmethod
    async def list_tenants(self) -> list[Tenant]:
        ...

    @abstractmethod
    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        ...

    @abstractmethod
    async def upsert_session(self, session: MessagingSession) -> MessagingSession:
        ...

    @abstractmethod
    async def find_active_session(self, tenant_id: str) -> Optional[MessagingSession]:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> Conversation:
        ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation with its messages and routine state."""
        ...

    @abstractmethod
    async def find_by_column(self, tenant_id: str, column: BoardColumn) -> list[Conversation]:
        ...

    @abstractmethod
    async def find_monitored(self, tenant_id: str, columns: Iterable[BoardColumn]) -> list[Conversation]:
        ...

    @abstractmethod
    async def find_campaign_targets(self, tenant_id: str, selector: TargetSelector) -> list[Conversation]:
        """Trusted conversations matching the selector (all, or any of the tags)."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def add_message(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def reconcile_message(self, message_id: str, status: MessageStatus,
                                provider_message_id: str = "") -> bool:
        ...

    @abstractmethod
    async def last_message(self, conversation_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def last_message_by(self, conversation_id: str, from_me: bool) -> Optional[Message]:
        ...

    @abstractmethod
    async def get_messages(self, conversation_id: str, limit: int = 50) -> list[Message]:
        ...

    # ── Routine definitions ───────────────────────────────────

    @abstractmethod
    async def find_routine_definitions(self, tenant_id: str) -> list[RoutineDefinition]:
        """All definitions of a tenant ordered by sequence number."""
        ...

    @abstractmethod
    async def get_routine_definition(self, definition_id: str) -> Optional[RoutineDefinition]:
        ...

    @abstractmethod
    async def save_routine_definition(self, definition: RoutineDefinition) -> RoutineDefinition:
        ...

    @abstractmethod
    async def delete_routine_definition(self, definition_id: str) -> None:
        ...

    # ── Routine states ────────────────────────────────────────

    @abstractmethod
    async def find_routine_state(self, conversation_id: str) -> Optional[ConversationRoutineState]:
        ...

    @abstractmethod
    async def save_routine_state(self, state: ConversationRoutineState) -> ConversationRoutineState:
        ...

    @abstractmethod
    async def stamp_routine_send(self, conversation_id: str, step: int, sent_at: datetime) -> bool:
        """
        Record `sent_at` as the last automated send, only while the stored state
        is still in follow-up at `step`. Returns whether the row was updated.
        """
        ...

    # ── Campaigns ─────────────────────────────────────────────

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    @abstractmethod
    async def list_campaigns(self, tenant_id: str) -> list[Campaign]:
        ...

    @abstractmethod
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Persist campaign fields. The dispatched-target set is not written here."""
        ...

    @abstractmethod
    async def delete_campaign(self, campaign_id: str) -> None:
        ...

    @abstractmethod
    async def find_due_for_dispatch(self, now: datetime) -> list[Campaign]:
        ...

    @abstractmethod
    async def add_dispatched_target(self, campaign_id: str, conversation_id: str) -> bool:
        """Record a delivered target. Returns False if it was already recorded."""
        ...

    @abstractmethod
    async def transition_campaign(
        self, campaign_id: str, from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus, next_dispatch_time: Optional[datetime] = None,
    ) -> Optional[Campaign]:
        """
        Compare-and-set the campaign status. Applies only when the stored
        status is one of `from_statuses`; returns the updated campaign or None.
        """
        ...
