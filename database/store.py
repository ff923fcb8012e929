"""
SqlCrmStore - Portable SQL queries for PostgreSQL, MySQL, SQLite.

Portability notes:
  - Tag matching on conversations is done Python-side (JSON containment
    is not portable across dialects).
  - SQLite returns naive datetimes; every converter re-attaches UTC.
  - Campaign status changes are a single conditional UPDATE so concurrent
    writers never overwrite each other's transition.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select, update, delete, and_
from sqlalchemy.exc import IntegrityError

from database.models import (
    TenantRow, MessagingSessionRow, ConversationRow, MessageRow,
    RoutineDefinitionRow, RoutineStateRow, CampaignRow, CampaignDispatchedRow,
)
from database.session import get_session
from database.store_base import BaseCrmStore
from models.schemas import (
    BoardColumn, Campaign, CampaignStatus, Conversation, ConversationRoutineState,
    MediaRef, Message, MessageStatus, MessagingSession, RoutineDefinition,
    SessionStatus, TargetSelector, Tenant, utcnow,
)

logger = structlog.get_logger()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _json_list(value: Any) -> list:
    # SQLite may hand JSON back as text
    if isinstance(value, str):
        value = json.loads(value)
    return list(value or [])


class SqlCrmStore(BaseCrmStore):
    """
    Persistent CRM store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Tenants & sessions ─────────────────────────────────

    async def list_tenants(self) -> list[Tenant]:
        async with get_session() as db:
            result = await db.execute(select(TenantRow).order_by(TenantRow.created_at))
            return [Tenant(id=r.id, name=r.name, email=r.email) for r in result.scalars().all()]

    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        async with get_session() as db:
            await db.merge(TenantRow(id=tenant.id, name=tenant.name, email=tenant.email))
        return tenant

    async def upsert_session(self, session: MessagingSession) -> MessagingSession:
        async with get_session() as db:
            await db.merge(MessagingSessionRow(
                id=session.id, tenant_id=session.tenant_id,
                instance_id=session.instance_id, token=session.token,
                client_token=session.client_token, status=session.status.value,
            ))
        return session

    async def find_active_session(self, tenant_id: str) -> Optional[MessagingSession]:
        async with get_session() as db:
            stmt = (
                select(MessagingSessionRow)
                .where(and_(
                    MessagingSessionRow.tenant_id == tenant_id,
                    MessagingSessionRow.status == SessionStatus.ACTIVE.value,
                ))
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            if not row:
                return None
            return MessagingSession(
                id=row.id, tenant_id=row.tenant_id, instance_id=row.instance_id,
                token=row.token, client_token=row.client_token,
                status=SessionStatus(row.status),
            )

    # ── Conversations ──────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return self._row_to_conversation(row) if row else None

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        async with get_session() as db:
            await db.merge(ConversationRow(
                id=conversation.id, tenant_id=conversation.tenant_id,
                name=conversation.name, phone=conversation.phone,
                board_column=conversation.board_column.value,
                last_message_timestamp=conversation.last_message_timestamp,
                active=conversation.active, trusted=conversation.trusted,
                is_group=conversation.is_group, tag_ids=list(conversation.tag_ids),
            ))
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        async with get_session() as db:
            await db.execute(delete(MessageRow).where(MessageRow.conversation_id == conversation_id))
            await db.execute(delete(RoutineStateRow).where(RoutineStateRow.conversation_id == conversation_id))
            await db.execute(delete(ConversationRow).where(ConversationRow.id == conversation_id))

    async def find_by_column(self, tenant_id: str, column: BoardColumn) -> list[Conversation]:
        return await self.find_monitored(tenant_id, [column])

    async def find_monitored(self, tenant_id: str, columns: Iterable[BoardColumn]) -> list[Conversation]:
        values = [BoardColumn(c).value for c in columns]
        if not values:
            return []
        async with get_session() as db:
            stmt = select(ConversationRow).where(and_(
                ConversationRow.tenant_id == tenant_id,
                ConversationRow.board_column.in_(values),
            ))
            result = await db.execute(stmt)
            return [self._row_to_conversation(r) for r in result.scalars().all()]

    async def find_campaign_targets(self, tenant_id: str, selector: TargetSelector) -> list[Conversation]:
        if not selector.all_trusted and not selector.tag_ids:
            return []
        async with get_session() as db:
            stmt = select(ConversationRow).where(and_(
                ConversationRow.tenant_id == tenant_id,
                ConversationRow.trusted.is_(True),
            ))
            result = await db.execute(stmt)
            rows = result.scalars().all()
        targets = []
        for row in rows:
            if selector.all_trusted or selector.tag_ids.intersection(_json_list(row.tag_ids)):
                targets.append(self._row_to_conversation(row))
        return targets

    # ── Messages ───────────────────────────────────────────

    async def add_message(self, message: Message) -> Message:
        async with get_session() as db:
            db.add(MessageRow(
                id=message.id, conversation_id=message.conversation_id,
                provider_message_id=message.provider_message_id,
                content=message.content, from_me=message.from_me,
                timestamp=message.timestamp, status=message.status.value,
            ))
            await db.execute(
                update(ConversationRow)
                .where(ConversationRow.id == message.conversation_id)
                .values(last_message_timestamp=message.timestamp)
            )
        return message

    async def reconcile_message(self, message_id: str, status: MessageStatus,
                                provider_message_id: str = "") -> bool:
        values: dict[str, Any] = {"status": status.value}
        if provider_message_id:
            values["provider_message_id"] = provider_message_id
        async with get_session() as db:
            result = await db.execute(
                update(MessageRow).where(MessageRow.id == message_id).values(**values)
            )
            found = result.rowcount > 0
        if not found:
            logger.warning("message_not_found_for_reconcile", message_id=message_id)
        return found

    async def last_message(self, conversation_id: str) -> Optional[Message]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.timestamp.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_message(row) if row else None

    async def last_message_by(self, conversation_id: str, from_me: bool) -> Optional[Message]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.conversation_id == conversation_id,
                    MessageRow.from_me.is_(from_me),
                ))
                .order_by(MessageRow.timestamp.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_message(row) if row else None

    async def get_messages(self, conversation_id: str, limit: int = 50) -> list[Message]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.timestamp.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = result.scalars().all()
            return [self._row_to_message(r) for r in reversed(rows)]

    # ── Routine definitions ────────────────────────────────

    async def find_routine_definitions(self, tenant_id: str) -> list[RoutineDefinition]:
        async with get_session() as db:
            stmt = (
                select(RoutineDefinitionRow)
                .where(RoutineDefinitionRow.tenant_id == tenant_id)
                .order_by(RoutineDefinitionRow.sequence_number)
            )
            result = await db.execute(stmt)
            return [self._row_to_definition(r) for r in result.scalars().all()]

    async def get_routine_definition(self, definition_id: str) -> Optional[RoutineDefinition]:
        async with get_session() as db:
            row = await db.get(RoutineDefinitionRow, definition_id)
            return self._row_to_definition(row) if row else None

    async def save_routine_definition(self, definition: RoutineDefinition) -> RoutineDefinition:
        async with get_session() as db:
            stmt = select(RoutineDefinitionRow.id).where(and_(
                RoutineDefinitionRow.tenant_id == definition.tenant_id,
                RoutineDefinitionRow.sequence_number == definition.sequence_number,
                RoutineDefinitionRow.id != definition.id,
            ))
            if (await db.execute(stmt)).first() is not None:
                raise ValueError(
                    f"routine #{definition.sequence_number} already exists for tenant {definition.tenant_id}"
                )
            await db.merge(RoutineDefinitionRow(
                id=definition.id, tenant_id=definition.tenant_id,
                sequence_number=definition.sequence_number,
                text_content=definition.text_content,
                hours_delay=definition.hours_delay,
                media=[m.model_dump(mode="json") for m in definition.media],
            ))
        return definition

    async def delete_routine_definition(self, definition_id: str) -> None:
        async with get_session() as db:
            await db.execute(delete(RoutineDefinitionRow).where(RoutineDefinitionRow.id == definition_id))

    # ── Routine states ─────────────────────────────────────

    async def find_routine_state(self, conversation_id: str) -> Optional[ConversationRoutineState]:
        async with get_session() as db:
            stmt = select(RoutineStateRow).where(RoutineStateRow.conversation_id == conversation_id)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_state(row) if row else None

    async def save_routine_state(self, state: ConversationRoutineState) -> ConversationRoutineState:
        state.updated_at = utcnow()
        async with get_session() as db:
            stmt = select(RoutineStateRow).where(RoutineStateRow.conversation_id == state.conversation_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = RoutineStateRow(
                    id=state.id, conversation_id=state.conversation_id,
                    created_at=state.created_at,
                )
                db.add(row)
            row.tenant_id = state.tenant_id
            row.scheduled_send_time = state.scheduled_send_time
            row.previous_column = state.previous_column.value
            row.last_routine_sent = state.last_routine_sent
            row.last_automated_message_sent = state.last_automated_message_sent
            row.last_user_message_time = state.last_user_message_time
            row.in_follow_up = state.in_follow_up
            row.follow_up_completed = state.follow_up_completed
            row.updated_at = state.updated_at
        return state

    async def stamp_routine_send(self, conversation_id: str, step: int, sent_at: datetime) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(RoutineStateRow)
                .where(and_(
                    RoutineStateRow.conversation_id == conversation_id,
                    RoutineStateRow.last_routine_sent == step,
                    RoutineStateRow.in_follow_up.is_(True),
                ))
                .values(last_automated_message_sent=sent_at, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    # ── Campaigns ──────────────────────────────────────────

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        async with get_session() as db:
            row = await db.get(CampaignRow, campaign_id)
            return self._row_to_campaign(row) if row else None

    async def list_campaigns(self, tenant_id: str) -> list[Campaign]:
        async with get_session() as db:
            stmt = (
                select(CampaignRow)
                .where(CampaignRow.tenant_id == tenant_id)
                .order_by(CampaignRow.updated_at.desc())
            )
            result = await db.execute(stmt)
            return [self._row_to_campaign(r) for r in result.scalars().all()]

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        campaign.updated_at = utcnow()
        async with get_session() as db:
            await db.merge(CampaignRow(
                id=campaign.id, tenant_id=campaign.tenant_id, name=campaign.name,
                message_template=campaign.message_template,
                chats_per_dispatch=campaign.chats_per_dispatch,
                interval_minutes=campaign.interval_minutes,
                status=campaign.status.value, total_targets=campaign.total_targets,
                next_dispatch_time=campaign.next_dispatch_time,
                tag_ids=sorted(campaign.target_selector.tag_ids),
                all_trusted=campaign.target_selector.all_trusted,
                media=[m.model_dump(mode="json") for m in campaign.media],
                created_at=campaign.created_at, updated_at=campaign.updated_at,
            ))
        return campaign

    async def delete_campaign(self, campaign_id: str) -> None:
        async with get_session() as db:
            await db.execute(delete(CampaignDispatchedRow).where(CampaignDispatchedRow.campaign_id == campaign_id))
            await db.execute(delete(CampaignRow).where(CampaignRow.id == campaign_id))

    async def find_due_for_dispatch(self, now: datetime) -> list[Campaign]:
        async with get_session() as db:
            stmt = (
                select(CampaignRow)
                .where(and_(
                    CampaignRow.status == CampaignStatus.RUNNING.value,
                    CampaignRow.next_dispatch_time.is_not(None),
                    CampaignRow.next_dispatch_time <= now,
                ))
                .order_by(CampaignRow.next_dispatch_time)
            )
            result = await db.execute(stmt)
            return [self._row_to_campaign(r) for r in result.scalars().all()]

    async def add_dispatched_target(self, campaign_id: str, conversation_id: str) -> bool:
        try:
            async with get_session() as db:
                if await db.get(CampaignRow, campaign_id) is None:
                    return False
                if await db.get(CampaignDispatchedRow, (campaign_id, conversation_id)) is not None:
                    return False
                db.add(CampaignDispatchedRow(campaign_id=campaign_id, conversation_id=conversation_id))
        except IntegrityError:
            # Lost an insert race; the target is recorded either way
            return False
        return True

    async def transition_campaign(
        self, campaign_id: str, from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus, next_dispatch_time: Optional[datetime] = None,
    ) -> Optional[Campaign]:
        allowed = [CampaignStatus(s).value for s in from_statuses]
        async with get_session() as db:
            result = await db.execute(
                update(CampaignRow)
                .where(and_(CampaignRow.id == campaign_id, CampaignRow.status.in_(allowed)))
                .values(status=to_status.value, next_dispatch_time=next_dispatch_time,
                        updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            row = await db.get(CampaignRow, campaign_id, populate_existing=True)
            return self._row_to_campaign(row) if row else None

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id, tenant_id=row.tenant_id, name=row.name or "",
            phone=row.phone or "", board_column=BoardColumn(row.board_column),
            last_message_timestamp=_as_utc(row.last_message_timestamp),
            active=row.active, trusted=row.trusted, is_group=row.is_group,
            tag_ids=_json_list(row.tag_ids),
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id, conversation_id=row.conversation_id,
            provider_message_id=row.provider_message_id or "",
            content=row.content or "", from_me=row.from_me,
            timestamp=_as_utc(row.timestamp), status=MessageStatus(row.status),
        )

    @staticmethod
    def _row_to_definition(row: RoutineDefinitionRow) -> RoutineDefinition:
        return RoutineDefinition(
            id=row.id, tenant_id=row.tenant_id,
            sequence_number=row.sequence_number,
            text_content=row.text_content or "",
            hours_delay=row.hours_delay,
            media=[MediaRef(**m) for m in _json_list(row.media)],
        )

    @staticmethod
    def _row_to_state(row: RoutineStateRow) -> ConversationRoutineState:
        return ConversationRoutineState(
            id=row.id, conversation_id=row.conversation_id, tenant_id=row.tenant_id,
            scheduled_send_time=_as_utc(row.scheduled_send_time),
            previous_column=BoardColumn(row.previous_column),
            last_routine_sent=row.last_routine_sent,
            last_automated_message_sent=_as_utc(row.last_automated_message_sent),
            last_user_message_time=_as_utc(row.last_user_message_time),
            in_follow_up=row.in_follow_up,
            follow_up_completed=row.follow_up_completed,
            created_at=_as_utc(row.created_at), updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_campaign(row: CampaignRow) -> Campaign:
        return Campaign(
            id=row.id, tenant_id=row.tenant_id, name=row.name,
            message_template=row.message_template,
            chats_per_dispatch=row.chats_per_dispatch,
            interval_minutes=row.interval_minutes,
            status=CampaignStatus(row.status), total_targets=row.total_targets,
            dispatched_target_ids={d.conversation_id for d in row.dispatched},
            next_dispatch_time=_as_utc(row.next_dispatch_time),
            target_selector=TargetSelector(
                tag_ids=set(_json_list(row.tag_ids)), all_trusted=row.all_trusted,
            ),
            media=[MediaRef(**m) for m in _json_list(row.media)],
            created_at=_as_utc(row.created_at), updated_at=_as_utc(row.updated_at),
        )
