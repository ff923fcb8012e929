"""
Conversation Routine State Machine - the follow-up ("repescagem") sequence.

States per conversation:

    IDLE ──entry──▶ IN_FOLLOWUP(1) ──advance──▶ … ──▶ IN_FOLLOWUP(7) ──▶ COLD
                         │                                 │
                         └────────── customer reply ───────┴──▶ IDLE (column restored)

Rules evaluated once per tick:
  1. Entry:    monitored column, last message authored by the tenant and at
               least definition #1's delay old → send #1, move to follow_up.
  2. Reply:    in follow_up and the last message is the customer's → restore
               the previous column. Always checked before rule 3.
  3. Advance:  definition n+1's delay elapsed since the last automated send →
               send #n+1.
  4. Terminal: after #7's delay, or when the next definition is missing or
               blank → cold_lead, follow_up_completed.
  5. Reset:    operator action, back to IDLE with no history.

Persistence order for entry and advance is the same: the step counter (and
on entry the column move) is saved before the gateway call; the
`last_automated_message_sent` timestamp is stamped after the attempt,
whatever its result, but only while the stored state is still at that
step, so a reset or reply recorded during the send is kept. A failed
send never rolls the counter back.
"""
from __future__ import annotations

import random
import structlog
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from config.settings import RoutineConfig
from core.business_hours import BusinessHours
from core.notifications import NotificationSink
from core.outbound import OutboundSender
from database.store_base import BaseCrmStore
from models.schemas import (
    BoardColumn, Conversation, ConversationRoutineState, MAX_ROUTINE_STEPS,
    MessagingSession, NotificationEvent, NotificationType, RESTORABLE_COLUMNS,
    RoutineDefinition, utcnow,
)

logger = structlog.get_logger()


class RoutineOutcome(str, Enum):
    ENTERED = "entered"
    ADVANCED = "advanced"
    EXITED = "exited"
    COMPLETED = "completed"
    DEFERRED = "deferred"


def index_definitions(definitions: list[RoutineDefinition]) -> dict[int, RoutineDefinition]:
    """Map sequence number → definition."""
    return {d.sequence_number: d for d in definitions}


def _elapsed(since: datetime, now: datetime, hours: int) -> bool:
    return now - since >= timedelta(hours=hours)


class RoutineStateMachine:
    """
    Applies the routine rules to one conversation at a time.

    The caller (the scheduler) supplies the tenant's active session and its
    indexed definitions; the machine reads and writes conversation, message
    and routine-state records through the store.
    """

    def __init__(
        self,
        store: BaseCrmStore,
        sender: OutboundSender,
        notifier: NotificationSink,
        config: RoutineConfig = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random = None,
    ):
        self.store = store
        self.sender = sender
        self.notifier = notifier
        self.config = config or RoutineConfig()
        self.business_hours = BusinessHours(self.config.business_hours)
        self._clock = clock
        self._rng = rng or random.Random()

    # ── Entry into follow-up ──────────────────────────────────────

    async def process_monitored(
        self, conversation: Conversation, session: MessagingSession,
        definitions: dict[int, RoutineDefinition], now: Optional[datetime] = None,
    ) -> Optional[RoutineOutcome]:
        now = now or self._clock()
        state = await self.store.find_routine_state(conversation.id)
        if state and state.follow_up_completed:
            return None

        last = await self.store.last_message(conversation.id)
        if last is None or not last.from_me:
            return None

        first = definitions.get(1)
        if first is None:
            logger.warning("routine_first_step_missing", tenant_id=conversation.tenant_id,
                           conversation_id=conversation.id)
            return await self._complete(conversation, state, previous=conversation.board_column)

        if not _elapsed(last.timestamp, now, first.hours_delay):
            return None

        if first.is_blank:
            logger.warning("routine_step_blank", tenant_id=conversation.tenant_id,
                           conversation_id=conversation.id, step=1)
            return await self._complete(conversation, state, previous=conversation.board_column)

        if self._defer(state, now):
            if state is not None:
                await self.store.save_routine_state(state)
            return RoutineOutcome.DEFERRED

        previous = conversation.board_column
        state = state or ConversationRoutineState(
            conversation_id=conversation.id, tenant_id=conversation.tenant_id,
        )
        state.previous_column = previous if previous in RESTORABLE_COLUMNS else BoardColumn.INBOX
        state.last_routine_sent = 1
        state.in_follow_up = True
        state.follow_up_completed = False
        state.scheduled_send_time = None
        state.last_automated_message_sent = now
        conversation.board_column = BoardColumn.FOLLOW_UP
        await self.store.save_conversation(conversation)
        await self.store.save_routine_state(state)

        logger.info("routine_entered", tenant_id=conversation.tenant_id,
                    conversation_id=conversation.id, previous_column=state.previous_column.value)

        await self._send_step(conversation, session, first)
        await self._stamp_sent(conversation, state, 1)
        return RoutineOutcome.ENTERED

    # ── Conversations already in follow-up ────────────────────────

    async def process_follow_up(
        self, conversation: Conversation, session: MessagingSession,
        definitions: dict[int, RoutineDefinition], now: Optional[datetime] = None,
    ) -> Optional[RoutineOutcome]:
        now = now or self._clock()
        state = await self.store.find_routine_state(conversation.id)
        if state is None:
            logger.warning("routine_state_missing", tenant_id=conversation.tenant_id,
                           conversation_id=conversation.id)
            return None

        last = await self.store.last_message(conversation.id)
        if last is not None and not last.from_me:
            return await self._exit_on_reply(conversation, state, last.timestamp)

        if state.last_automated_message_sent is None:
            logger.warning("routine_timestamp_missing", conversation_id=conversation.id)
            return None

        step = state.last_routine_sent
        since = state.last_automated_message_sent

        if step >= MAX_ROUTINE_STEPS:
            final = definitions.get(MAX_ROUTINE_STEPS)
            if final is None or _elapsed(since, now, final.hours_delay):
                return await self._complete(conversation, state)
            return None

        nxt = definitions.get(step + 1)
        if nxt is None:
            logger.warning("routine_step_missing", tenant_id=conversation.tenant_id,
                           conversation_id=conversation.id, step=step + 1)
            return await self._complete(conversation, state)

        if nxt.is_blank:
            logger.warning("routine_step_blank", tenant_id=conversation.tenant_id,
                           conversation_id=conversation.id, step=nxt.sequence_number)
            return await self._complete(conversation, state)

        if not _elapsed(since, now, nxt.hours_delay):
            return None

        if self._defer(state, now):
            await self.store.save_routine_state(state)
            return RoutineOutcome.DEFERRED

        state.last_routine_sent = nxt.sequence_number
        state.in_follow_up = True
        state.scheduled_send_time = None
        await self.store.save_routine_state(state)

        await self._send_step(conversation, session, nxt)
        await self._stamp_sent(conversation, state, nxt.sequence_number)

        logger.info("routine_advanced", tenant_id=conversation.tenant_id,
                    conversation_id=conversation.id, step=state.last_routine_sent)
        return RoutineOutcome.ADVANCED

    # ── Manual reset ──────────────────────────────────────────────

    async def reset(self, conversation: Conversation) -> Optional[ConversationRoutineState]:
        state = await self.store.find_routine_state(conversation.id)
        if state is None:
            return None

        state.last_routine_sent = 0
        state.last_automated_message_sent = None
        state.scheduled_send_time = None
        state.in_follow_up = False
        state.follow_up_completed = False

        restored = None
        if conversation.board_column == BoardColumn.FOLLOW_UP:
            restored = state.previous_column or BoardColumn.INBOX
            conversation.board_column = restored
            await self.store.save_conversation(conversation)

        await self.store.save_routine_state(state)
        logger.info("routine_reset", tenant_id=conversation.tenant_id,
                    conversation_id=conversation.id, column=conversation.board_column.value)
        if restored is not None:
            await self._notify(conversation, NotificationType.FOLLOWUP_EXITED, restored, BoardColumn.FOLLOW_UP)
        return state

    # ── Transitions ───────────────────────────────────────────────

    async def _exit_on_reply(self, conversation: Conversation, state: ConversationRoutineState,
                             replied_at: datetime) -> RoutineOutcome:
        restored = state.previous_column or BoardColumn.INBOX
        conversation.board_column = restored
        state.in_follow_up = False
        state.scheduled_send_time = None
        state.last_user_message_time = replied_at
        await self.store.save_conversation(conversation)
        await self.store.save_routine_state(state)

        logger.info("routine_exited_on_reply", tenant_id=conversation.tenant_id,
                    conversation_id=conversation.id, column=restored.value,
                    last_routine_sent=state.last_routine_sent)
        await self._notify(conversation, NotificationType.FOLLOWUP_EXITED, restored, BoardColumn.FOLLOW_UP)
        return RoutineOutcome.EXITED

    async def _complete(self, conversation: Conversation, state: Optional[ConversationRoutineState],
                        previous: Optional[BoardColumn] = None) -> RoutineOutcome:
        if state is None:
            state = ConversationRoutineState(
                conversation_id=conversation.id, tenant_id=conversation.tenant_id,
                previous_column=previous if previous in RESTORABLE_COLUMNS else BoardColumn.INBOX,
            )
        from_column = conversation.board_column
        conversation.board_column = BoardColumn.COLD_LEAD
        state.in_follow_up = False
        state.follow_up_completed = True
        state.scheduled_send_time = None
        await self.store.save_conversation(conversation)
        await self.store.save_routine_state(state)

        logger.info("routine_completed", tenant_id=conversation.tenant_id,
                    conversation_id=conversation.id, last_routine_sent=state.last_routine_sent)
        await self._notify(conversation, NotificationType.FOLLOWUP_COMPLETED, BoardColumn.COLD_LEAD, from_column)
        return RoutineOutcome.COMPLETED

    def _defer(self, state: Optional[ConversationRoutineState], now: datetime) -> bool:
        """
        True when a due send must wait for business hours. Records the next
        opening on the state so later ticks hold until then.
        """
        if not self.business_hours.enabled:
            return False
        if self.business_hours.is_open(now):
            if state is None or state.scheduled_send_time is None or now >= state.scheduled_send_time:
                return False
            return True
        if state is not None:
            state.scheduled_send_time = self.business_hours.next_opening(now)
            logger.info("routine_send_deferred", conversation_id=state.conversation_id,
                        until=state.scheduled_send_time.isoformat())
        return True

    # ── Sending ───────────────────────────────────────────────────

    def render(self, conversation: Conversation, definition: RoutineDefinition) -> str:
        """`<greeting><name>, <text>` when greetings are configured, otherwise the raw text."""
        text = definition.text_content
        greetings = self.config.greetings
        if not greetings:
            return text
        name = (conversation.name or "").strip()
        if name:
            return f"{self._rng.choice(greetings)}{name}, {text}"
        fallbacks = self.config.fallback_greetings
        if fallbacks:
            return f"{self._rng.choice(fallbacks)}, {text}"
        return text

    async def _send_step(self, conversation: Conversation, session: MessagingSession,
                         definition: RoutineDefinition) -> bool:
        result = await self.sender.send_text(session, conversation, self.render(conversation, definition))
        if not result.success:
            logger.error("routine_send_failed", tenant_id=conversation.tenant_id,
                         conversation_id=conversation.id, step=definition.sequence_number,
                         error=result.error)
            return False
        if definition.media:
            await self.sender.send_media(session, conversation, definition.media)
        return True

    async def _stamp_sent(self, conversation: Conversation, state: ConversationRoutineState,
                          step: int) -> bool:
        """Record the attempt time unless the state moved on (reset, reply) while sending."""
        sent_at = self._clock()
        if not await self.store.stamp_routine_send(conversation.id, step, sent_at):
            logger.info("routine_send_stamp_skipped", tenant_id=conversation.tenant_id,
                        conversation_id=conversation.id, step=step)
            return False
        state.last_automated_message_sent = sent_at
        return True

    async def _notify(self, conversation: Conversation, event_type: NotificationType,
                      new_column: BoardColumn, previous_column: Optional[BoardColumn]) -> None:
        event = NotificationEvent(
            type=event_type,
            tenant_id=conversation.tenant_id,
            conversation_id=conversation.id,
            conversation_name=conversation.name,
            new_column=new_column,
            previous_column=previous_column,
        )
        try:
            await self.notifier.publish(conversation.tenant_id, event)
        except Exception as e:
            logger.warning("notification_publish_failed", conversation_id=conversation.id, error=str(e))
