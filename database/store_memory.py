"""
InMemoryCrmStore - Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlCrmStore
  - Returns copies, so callers never mutate stored state by accident
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional

from database.store_base import BaseCrmStore
from models.schemas import (
    BoardColumn, Campaign, CampaignStatus, Conversation, ConversationRoutineState,
    Message, MessageStatus, MessagingSession, RoutineDefinition, TargetSelector, Tenant,
    utcnow,
)

logger = structlog.get_logger()


class InMemoryCrmStore(BaseCrmStore):
    """Full-featured in-memory store with the same interface as SqlCrmStore."""

    def __init__(self):
        self._tenants: dict[str, Tenant] = {}
        self._sessions: dict[str, MessagingSession] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = defaultdict(list)  # conv_id → [msgs]
        self._definitions: dict[str, RoutineDefinition] = {}
        self._states: dict[str, ConversationRoutineState] = {}        # conv_id → state
        self._campaigns: dict[str, Campaign] = {}
        self._dispatched: dict[str, set[str]] = defaultdict(set)      # campaign_id → conv ids
        logger.info("inmemory_store_initialized")

    # ── Tenants & sessions ────────────────────────────────

    async def list_tenants(self) -> list[Tenant]:
        return [t.model_copy() for t in self._tenants.values()]

    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        self._tenants[tenant.id] = tenant.model_copy()
        return tenant

    async def upsert_session(self, session: MessagingSession) -> MessagingSession:
        self._sessions[session.id] = session.model_copy()
        return session

    async def find_active_session(self, tenant_id: str) -> Optional[MessagingSession]:
        for s in self._sessions.values():
            if s.tenant_id == tenant_id and s.is_active:
                return s.model_copy()
        return None

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        return conv.model_copy(deep=True) if conv else None

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        self._messages.pop(conversation_id, None)
        self._states.pop(conversation_id, None)

    async def find_by_column(self, tenant_id: str, column: BoardColumn) -> list[Conversation]:
        return await self.find_monitored(tenant_id, [column])

    async def find_monitored(self, tenant_id: str, columns: Iterable[BoardColumn]) -> list[Conversation]:
        wanted = {BoardColumn(c) for c in columns}
        return [
            c.model_copy(deep=True) for c in self._conversations.values()
            if c.tenant_id == tenant_id and c.board_column in wanted
        ]

    async def find_campaign_targets(self, tenant_id: str, selector: TargetSelector) -> list[Conversation]:
        if not selector.all_trusted and not selector.tag_ids:
            return []
        targets = []
        for c in self._conversations.values():
            if c.tenant_id != tenant_id or not c.trusted:
                continue
            if selector.all_trusted or selector.tag_ids.intersection(c.tag_ids):
                targets.append(c.model_copy(deep=True))
        return targets

    # ── Messages ──────────────────────────────────────────

    async def add_message(self, message: Message) -> Message:
        self._messages[message.conversation_id].append(message.model_copy())
        conv = self._conversations.get(message.conversation_id)
        if conv:
            conv.last_message_timestamp = message.timestamp
        return message

    async def reconcile_message(self, message_id: str, status: MessageStatus,
                                provider_message_id: str = "") -> bool:
        for msgs in self._messages.values():
            for msg in msgs:
                if msg.id == message_id:
                    msg.status = status
                    if provider_message_id:
                        msg.provider_message_id = provider_message_id
                    return True
        logger.warning("message_not_found_for_reconcile", message_id=message_id)
        return False

    async def last_message(self, conversation_id: str) -> Optional[Message]:
        msgs = self._messages.get(conversation_id) or []
        if not msgs:
            return None
        return max(msgs, key=lambda m: m.timestamp).model_copy()

    async def last_message_by(self, conversation_id: str, from_me: bool) -> Optional[Message]:
        msgs = [m for m in self._messages.get(conversation_id) or [] if m.from_me == from_me]
        if not msgs:
            return None
        return max(msgs, key=lambda m: m.timestamp).model_copy()

    async def get_messages(self, conversation_id: str, limit: int = 50) -> list[Message]:
        msgs = sorted(self._messages.get(conversation_id) or [], key=lambda m: m.timestamp)
        # Return last N messages in chronological order
        return [m.model_copy() for m in msgs[-limit:]]

    # ── Routine definitions ───────────────────────────────

    async def find_routine_definitions(self, tenant_id: str) -> list[RoutineDefinition]:
        defs = [d for d in self._definitions.values() if d.tenant_id == tenant_id]
        defs.sort(key=lambda d: d.sequence_number)
        return [d.model_copy(deep=True) for d in defs]

    async def get_routine_definition(self, definition_id: str) -> Optional[RoutineDefinition]:
        d = self._definitions.get(definition_id)
        return d.model_copy(deep=True) if d else None

    async def save_routine_definition(self, definition: RoutineDefinition) -> RoutineDefinition:
        for other in self._definitions.values():
            if (other.id != definition.id and other.tenant_id == definition.tenant_id
                    and other.sequence_number == definition.sequence_number):
                raise ValueError(
                    f"routine #{definition.sequence_number} already exists for tenant {definition.tenant_id}"
                )
        self._definitions[definition.id] = definition.model_copy(deep=True)
        return definition

    async def delete_routine_definition(self, definition_id: str) -> None:
        self._definitions.pop(definition_id, None)

    # ── Routine states ────────────────────────────────────

    async def find_routine_state(self, conversation_id: str) -> Optional[ConversationRoutineState]:
        state = self._states.get(conversation_id)
        return state.model_copy() if state else None

    async def save_routine_state(self, state: ConversationRoutineState) -> ConversationRoutineState:
        state.updated_at = utcnow()
        self._states[state.conversation_id] = state.model_copy()
        return state

    async def stamp_routine_send(self, conversation_id: str, step: int, sent_at: datetime) -> bool:
        state = self._states.get(conversation_id)
        if state is None or not state.in_follow_up or state.last_routine_sent != step:
            return False
        state.last_automated_message_sent = sent_at
        state.updated_at = utcnow()
        return True

    # ── Campaigns ─────────────────────────────────────────

    def _assemble(self, campaign: Campaign) -> Campaign:
        out = campaign.model_copy(deep=True)
        out.dispatched_target_ids = set(self._dispatched.get(campaign.id, set()))
        return out

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        c = self._campaigns.get(campaign_id)
        return self._assemble(c) if c else None

    async def list_campaigns(self, tenant_id: str) -> list[Campaign]:
        camps = [c for c in self._campaigns.values() if c.tenant_id == tenant_id]
        camps.sort(key=lambda c: c.updated_at, reverse=True)
        return [self._assemble(c) for c in camps]

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        campaign.updated_at = utcnow()
        stored = campaign.model_copy(deep=True)
        stored.dispatched_target_ids = set()
        self._campaigns[campaign.id] = stored
        return campaign

    async def delete_campaign(self, campaign_id: str) -> None:
        self._campaigns.pop(campaign_id, None)
        self._dispatched.pop(campaign_id, None)

    async def find_due_for_dispatch(self, now: datetime) -> list[Campaign]:
        return [
            self._assemble(c) for c in self._campaigns.values()
            if c.status == CampaignStatus.RUNNING
            and c.next_dispatch_time is not None
            and c.next_dispatch_time <= now
        ]

    async def add_dispatched_target(self, campaign_id: str, conversation_id: str) -> bool:
        if campaign_id not in self._campaigns:
            return False
        targets = self._dispatched[campaign_id]
        if conversation_id in targets:
            return False
        targets.add(conversation_id)
        return True

    async def transition_campaign(
        self, campaign_id: str, from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus, next_dispatch_time: Optional[datetime] = None,
    ) -> Optional[Campaign]:
        c = self._campaigns.get(campaign_id)
        if c is None or c.status not in set(from_statuses):
            return None
        c.status = to_status
        c.next_dispatch_time = next_dispatch_time
        c.updated_at = utcnow()
        return self._assemble(c)

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "tenants": len(self._tenants),
            "sessions": len(self._sessions),
            "conversations": len(self._conversations),
            "messages": sum(len(v) for v in self._messages.values()),
            "routine_definitions": len(self._definitions),
            "routine_states": len(self._states),
            "campaigns": len(self._campaigns),
        }
