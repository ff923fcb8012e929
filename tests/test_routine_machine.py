"""
Tests for the conversation routine state machine.

Covers entry, reply exit, advance, terminal transition, misconfiguration,
failed and hung sends, manual reset, greetings, media and business hours.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from channels.mock_gateway import MockGateway
from config.settings import BusinessHoursConfig, RoutineConfig
from conftest import FIXED_NOW, add_conversation, add_definitions
from core.outbound import OutboundSender
from core.routine_machine import RoutineOutcome, RoutineStateMachine
from models.schemas import (
    BoardColumn, MediaKind, MediaRef, Message, MessageStatus, NotificationType,
    RoutineDefinition, SendResult,
)


SEVEN_STEPS = {n: 24 for n in range(1, 8)}


async def _enter(machine, store, tenant, session, delays=None, **conv_fields):
    defs = await add_definitions(store, tenant.id, delays or SEVEN_STEPS)
    conv = await add_conversation(store, tenant.id, last_at=FIXED_NOW - timedelta(hours=25), **conv_fields)
    outcome = await machine.process_monitored(conv, session, defs)
    assert outcome == RoutineOutcome.ENTERED
    return conv, defs


async def _reload(store, conv):
    return await store.get_conversation(conv.id), await store.find_routine_state(conv.id)


# ──────────────────────────────────────────────────────────────
#  Entry into follow-up
# ──────────────────────────────────────────────────────────────

class TestEntry:

    @pytest.mark.asyncio
    async def test_enters_after_first_delay(self, machine, store, gateway, tenant, session):
        conv, _ = await _enter(machine, store, tenant, session)

        conv, state = await _reload(store, conv)
        assert conv.board_column == BoardColumn.FOLLOW_UP
        assert state.in_follow_up is True
        assert state.last_routine_sent == 1
        assert state.previous_column == BoardColumn.HOT_LEAD
        assert state.last_automated_message_sent == FIXED_NOW
        assert [s.body for s in gateway.sent] == ["step 1 text"]

    @pytest.mark.asyncio
    async def test_outbound_message_recorded_as_sent(self, machine, store, gateway, tenant, session):
        conv, _ = await _enter(machine, store, tenant, session)

        last = await store.last_message(conv.id)
        assert last.from_me is True
        assert last.status == MessageStatus.SENT
        assert last.provider_message_id == gateway.sent[0].provider_message_id

    @pytest.mark.asyncio
    async def test_not_due_yet(self, machine, store, gateway, tenant, session):
        defs = await add_definitions(store, tenant.id, SEVEN_STEPS)
        conv = await add_conversation(store, tenant.id, last_at=FIXED_NOW - timedelta(hours=23))

        assert await machine.process_monitored(conv, session, defs) is None
        conv, state = await _reload(store, conv)
        assert conv.board_column == BoardColumn.HOT_LEAD
        assert state is None
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_customer_last_message_blocks_entry(self, machine, store, gateway, tenant, session):
        defs = await add_definitions(store, tenant.id, SEVEN_STEPS)
        conv = await add_conversation(store, tenant.id, last_from_me=False,
                                      last_at=FIXED_NOW - timedelta(days=10))

        assert await machine.process_monitored(conv, session, defs) is None
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_no_messages_no_entry(self, machine, store, tenant, session):
        defs = await add_definitions(store, tenant.id, SEVEN_STEPS)
        conv = await add_conversation(store, tenant.id, last_from_me=None)
        assert await machine.process_monitored(conv, session, defs) is None

    @pytest.mark.asyncio
    async def test_blank_first_step_goes_cold(self, machine, store, gateway, broker, tenant, session):
        defs = await add_definitions(store, tenant.id, {1: 24, 2: 24}, blank=(1,))
        conv = await add_conversation(store, tenant.id, column=BoardColumn.INBOX,
                                      last_at=FIXED_NOW - timedelta(hours=30))
        queue = broker.subscribe(tenant.id)

        assert await machine.process_monitored(conv, session, defs) == RoutineOutcome.COMPLETED
        conv, state = await _reload(store, conv)
        assert conv.board_column == BoardColumn.COLD_LEAD
        assert state.follow_up_completed is True
        assert state.previous_column == BoardColumn.INBOX
        assert gateway.sent == []
        assert queue.get_nowait().type == NotificationType.FOLLOWUP_COMPLETED

    @pytest.mark.asyncio
    async def test_completed_conversation_is_not_reentered(self, machine, store, gateway, tenant, session, clock):
        conv, defs = await _enter(machine, store, tenant, session, delays={1: 1})
        clock.advance(hours=1)
        # No definition #2: straight to cold
        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.COMPLETED

        conv, _ = await _reload(store, conv)
        conv.board_column = BoardColumn.HOT_LEAD
        await store.save_conversation(conv)
        clock.advance(days=5)
        assert await machine.process_monitored(conv, session, defs) is None
        assert len(gateway.sent) == 1


# ──────────────────────────────────────────────────────────────
#  Reply short-circuit
# ──────────────────────────────────────────────────────────────

class TestReplyExit:

    @pytest.mark.asyncio
    async def test_reply_restores_previous_column(self, machine, store, broker, tenant, session, clock):
        conv, defs = await _enter(machine, store, tenant, session)
        queue = broker.subscribe(tenant.id)

        await store.add_message(Message(conversation_id=conv.id, content="oi!", from_me=False,
                                        timestamp=clock.advance(hours=1)))
        outcome = await machine.process_follow_up(await store.get_conversation(conv.id), session, defs)

        assert outcome == RoutineOutcome.EXITED
        conv, state = await _reload(store, conv)
        assert conv.board_column == BoardColumn.HOT_LEAD
        assert state.in_follow_up is False
        assert state.last_routine_sent == 1
        assert state.last_user_message_time == clock.now
        event = queue.get_nowait()
        assert event.type == NotificationType.FOLLOWUP_EXITED
        assert event.new_column == BoardColumn.HOT_LEAD

    @pytest.mark.asyncio
    async def test_reply_wins_over_due_advance(self, machine, store, gateway, tenant, session, clock):
        conv, defs = await _enter(machine, store, tenant, session)
        await store.add_message(Message(conversation_id=conv.id, from_me=False,
                                        timestamp=clock.advance(hours=30)))

        outcome = await machine.process_follow_up(await store.get_conversation(conv.id), session, defs)

        assert outcome == RoutineOutcome.EXITED
        assert len(gateway.sent) == 1


# ──────────────────────────────────────────────────────────────
#  Advance and cold terminal
# ──────────────────────────────────────────────────────────────

class TestAdvance:

    @pytest.mark.asyncio
    async def test_advances_after_next_delay(self, machine, store, gateway, tenant, session, clock):
        conv, defs = await _enter(machine, store, tenant, session)

        clock.advance(hours=23)
        assert await machine.process_follow_up(conv, session, defs) is None

        clock.advance(hours=1)
        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.ADVANCED
        _, state = await _reload(store, conv)
        assert state.last_routine_sent == 2
        assert state.last_automated_message_sent == clock.now
        assert [s.body for s in gateway.sent] == ["step 1 text", "step 2 text"]

    @pytest.mark.asyncio
    async def test_full_sequence_is_monotonic_and_ends_cold(self, machine, store, gateway, broker,
                                                            tenant, session, clock):
        conv, defs = await _enter(machine, store, tenant, session)
        queue = broker.subscribe(tenant.id)
        seen = [1]

        for _ in range(6):
            clock.advance(hours=24)
            assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.ADVANCED
            _, state = await _reload(store, conv)
            seen.append(state.last_routine_sent)

        assert seen == sorted(seen) == [1, 2, 3, 4, 5, 6, 7]

        clock.advance(hours=23)
        assert await machine.process_follow_up(conv, session, defs) is None
        clock.advance(hours=1)
        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.COMPLETED

        conv, state = await _reload(store, conv)
        assert conv.board_column == BoardColumn.COLD_LEAD
        assert state.in_follow_up is False
        assert state.follow_up_completed is True
        assert state.last_routine_sent == 7
        assert len(gateway.sent) == 7
        assert queue.get_nowait().type == NotificationType.FOLLOWUP_COMPLETED

    @pytest.mark.asyncio
    async def test_terminal_state_is_idempotent(self, machine, store, gateway, tenant, session, clock):
        conv, defs = await _enter(machine, store, tenant, session, delays={1: 1})
        clock.advance(hours=1)
        await machine.process_follow_up(conv, session, defs)
        conv, before = await _reload(store, conv)

        for _ in range(3):
            clock.advance(days=1)
            assert await machine.process_monitored(conv, session, defs) is None

        conv_after, after = await _reload(store, conv)
        assert conv_after.board_column == BoardColumn.COLD_LEAD
        assert after.model_dump(exclude={"updated_at"}) == before.model_dump(exclude={"updated_at"})
        assert len(gateway.sent) == 1

    @pytest.mark.asyncio
    async def test_missing_next_step_goes_cold_immediately(self, machine, store, gateway, tenant, session, clock):
        conv, defs = await _enter(machine, store, tenant, session, delays={1: 1, 2: 1})
        clock.advance(hours=1)
        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.ADVANCED

        # Step 3 never configured
        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.COMPLETED
        conv, state = await _reload(store, conv)
        assert conv.board_column == BoardColumn.COLD_LEAD
        assert state.follow_up_completed is True
        assert len(gateway.sent) == 2

    @pytest.mark.asyncio
    async def test_blank_next_step_goes_cold_without_waiting(self, machine, store, gateway, tenant, session, clock):
        defs = await add_definitions(store, tenant.id, {1: 24, 2: 24, 3: 48}, blank=(3,))
        conv = await add_conversation(store, tenant.id, last_at=FIXED_NOW - timedelta(hours=25))
        await machine.process_monitored(conv, session, defs)
        clock.advance(hours=24)
        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.ADVANCED

        clock.advance(hours=1)
        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.COMPLETED
        conv, _ = await _reload(store, conv)
        assert conv.board_column == BoardColumn.COLD_LEAD
        assert len(gateway.sent) == 2

    @pytest.mark.asyncio
    async def test_step_seven_removed_goes_cold(self, machine, store, tenant, session, clock):
        conv, defs = await _enter(machine, store, tenant, session, delays={n: 1 for n in range(1, 8)})
        for _ in range(6):
            clock.advance(hours=1)
            await machine.process_follow_up(conv, session, defs)
        del defs[7]

        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.COMPLETED


# ──────────────────────────────────────────────────────────────
#  Failure semantics
# ──────────────────────────────────────────────────────────────

class HangingGateway(MockGateway):
    async def send_text(self, session, phone, text):
        await asyncio.sleep(10)


class SnoopingGateway(MockGateway):
    """Captures the persisted step counter at the moment of the send call."""

    def __init__(self, store):
        super().__init__()
        self.store = store
        self.counter_at_send: list[int] = []

    async def send_text(self, session, phone, text):
        conv = next(c for c in self.store._conversations.values() if c.phone == phone)
        state = await self.store.find_routine_state(conv.id)
        self.counter_at_send.append(state.last_routine_sent)
        return await super().send_text(session, phone, text)


class HoldingGateway(MockGateway):
    """Parks text sends on an event once `hold` is set."""

    def __init__(self):
        super().__init__()
        self.hold = False
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def send_text(self, session, phone, text):
        if self.hold:
            self.entered.set()
            await self.release.wait()
        return await super().send_text(session, phone, text)


class TestFailureSemantics:

    @pytest.mark.asyncio
    async def test_failed_send_still_advances(self, machine, store, gateway, tenant, session, clock):
        defs = await add_definitions(store, tenant.id, SEVEN_STEPS)
        conv = await add_conversation(store, tenant.id, last_at=FIXED_NOW - timedelta(hours=25))
        gateway.fail_phones.add(conv.phone)

        assert await machine.process_monitored(conv, session, defs) == RoutineOutcome.ENTERED
        clock.advance(hours=24)
        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.ADVANCED

        _, state = await _reload(store, conv)
        assert state.last_routine_sent == 2
        assert state.last_automated_message_sent == clock.now
        statuses = [m.status for m in await store.get_messages(conv.id) if m.from_me]
        assert statuses[-2:] == [MessageStatus.FAILED, MessageStatus.FAILED]

    @pytest.mark.asyncio
    async def test_send_timeout_counts_as_failure(self, store, broker, clock, tenant, session):
        sender = OutboundSender(store, HangingGateway(), send_timeout_s=0.05, media_delay_s=0, clock=clock)
        machine = RoutineStateMachine(store, sender, broker, RoutineConfig(), clock=clock)
        conv, _ = await _enter(machine, store, tenant, session)

        _, state = await _reload(store, conv)
        assert state.last_routine_sent == 1
        last = await store.last_message(conv.id)
        assert last.status == MessageStatus.FAILED
        assert last.provider_message_id.startswith("pending_")

    @pytest.mark.asyncio
    async def test_counter_persisted_before_send(self, store, broker, clock, tenant, session):
        gateway = SnoopingGateway(store)
        sender = OutboundSender(store, gateway, send_timeout_s=1.0, media_delay_s=0, clock=clock)
        machine = RoutineStateMachine(store, sender, broker, RoutineConfig(), clock=clock)
        conv, defs = await _enter(machine, store, tenant, session)
        clock.advance(hours=24)
        await machine.process_follow_up(conv, session, defs)

        assert gateway.counter_at_send == [1, 2]

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_break_transition(self, store, sender, clock, tenant, session):
        from unittest.mock import AsyncMock
        notifier = AsyncMock()
        notifier.publish.side_effect = RuntimeError("sink down")
        machine = RoutineStateMachine(store, sender, notifier, RoutineConfig(), clock=clock)
        conv, defs = await _enter(machine, store, tenant, session, delays={1: 1})
        clock.advance(hours=1)

        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.COMPLETED
        notifier.publish.assert_awaited_once()


# ──────────────────────────────────────────────────────────────
#  Manual reset
# ──────────────────────────────────────────────────────────────

class TestReset:

    @pytest.mark.asyncio
    async def test_reset_in_follow_up_restores_column(self, machine, store, tenant, session):
        conv, _ = await _enter(machine, store, tenant, session, column=BoardColumn.INBOX)

        state = await machine.reset(await store.get_conversation(conv.id))

        assert state.last_routine_sent == 0
        assert state.last_automated_message_sent is None
        assert state.in_follow_up is False
        conv, _ = await _reload(store, conv)
        assert conv.board_column == BoardColumn.INBOX

    @pytest.mark.asyncio
    async def test_reset_publishes_exit_event(self, machine, store, broker, tenant, session):
        conv, _ = await _enter(machine, store, tenant, session)
        queue = broker.subscribe(tenant.id)

        await machine.reset(await store.get_conversation(conv.id))

        event = queue.get_nowait()
        assert event.type == NotificationType.FOLLOWUP_EXITED
        assert event.new_column == BoardColumn.HOT_LEAD
        assert event.previous_column == BoardColumn.FOLLOW_UP

    @pytest.mark.asyncio
    async def test_reset_outside_follow_up_is_silent(self, machine, store, broker, tenant, session, clock):
        conv, defs = await _enter(machine, store, tenant, session, delays={1: 1})
        clock.advance(hours=1)
        await machine.process_follow_up(conv, session, defs)
        queue = broker.subscribe(tenant.id)

        await machine.reset(await store.get_conversation(conv.id))

        assert queue.empty()

    @pytest.mark.asyncio
    async def test_reset_during_advance_send_is_kept(self, store, broker, clock, tenant, session):
        gateway = HoldingGateway()
        sender = OutboundSender(store, gateway, send_timeout_s=5.0, media_delay_s=0, clock=clock)
        machine = RoutineStateMachine(store, sender, broker, RoutineConfig(), clock=clock)
        conv, defs = await _enter(machine, store, tenant, session)
        gateway.hold = True
        clock.advance(hours=24)

        tick = asyncio.create_task(machine.process_follow_up(conv, session, defs))
        await asyncio.wait_for(gateway.entered.wait(), timeout=1)
        await machine.reset(await store.get_conversation(conv.id))
        gateway.release.set()
        assert await tick == RoutineOutcome.ADVANCED

        conv, state = await _reload(store, conv)
        assert conv.board_column == BoardColumn.HOT_LEAD
        assert state.in_follow_up is False
        assert state.last_routine_sent == 0
        assert state.last_automated_message_sent is None

    @pytest.mark.asyncio
    async def test_reset_during_entry_send_is_kept(self, store, broker, clock, tenant, session):
        gateway = HoldingGateway()
        gateway.hold = True
        sender = OutboundSender(store, gateway, send_timeout_s=5.0, media_delay_s=0, clock=clock)
        machine = RoutineStateMachine(store, sender, broker, RoutineConfig(), clock=clock)
        defs = await add_definitions(store, tenant.id, SEVEN_STEPS)
        conv = await add_conversation(store, tenant.id, last_at=FIXED_NOW - timedelta(hours=25))

        tick = asyncio.create_task(machine.process_monitored(conv, session, defs))
        await asyncio.wait_for(gateway.entered.wait(), timeout=1)
        await machine.reset(await store.get_conversation(conv.id))
        gateway.release.set()
        assert await tick == RoutineOutcome.ENTERED

        conv, state = await _reload(store, conv)
        assert conv.board_column == BoardColumn.HOT_LEAD
        assert state.in_follow_up is False
        assert state.last_routine_sent == 0
        assert state.last_automated_message_sent is None

    @pytest.mark.asyncio
    async def test_reset_after_completion_allows_new_episode(self, machine, store, gateway, tenant, session, clock):
        conv, defs = await _enter(machine, store, tenant, session, delays={1: 1})
        clock.advance(hours=1)
        await machine.process_follow_up(conv, session, defs)

        conv = await store.get_conversation(conv.id)
        state = await machine.reset(conv)
        assert state.follow_up_completed is False
        assert conv.board_column == BoardColumn.COLD_LEAD

        conv.board_column = BoardColumn.HOT_LEAD
        await store.save_conversation(conv)
        await store.add_message(Message(conversation_id=conv.id, from_me=True, timestamp=clock.now))
        clock.advance(hours=2)
        assert await machine.process_monitored(conv, session, defs) == RoutineOutcome.ENTERED
        _, state = await _reload(store, conv)
        assert state.last_routine_sent == 1

    @pytest.mark.asyncio
    async def test_reset_without_state_is_noop(self, machine, store, tenant):
        conv = await add_conversation(store, tenant.id)
        assert await machine.reset(conv) is None


# ──────────────────────────────────────────────────────────────
#  Rendering & media
# ──────────────────────────────────────────────────────────────

class TestRendering:

    def _machine(self, store, sender, broker, clock, **cfg):
        return RoutineStateMachine(store, sender, broker, RoutineConfig(**cfg), clock=clock)

    def test_raw_text_without_greetings(self, machine):
        from models.schemas import Conversation
        conv = Conversation(tenant_id="t", name="Ana")
        definition = RoutineDefinition(tenant_id="t", sequence_number=1, text_content="tudo bem?")
        assert machine.render(conv, definition) == "tudo bem?"

    def test_greeting_with_name(self, store, sender, broker, clock):
        from models.schemas import Conversation
        machine = self._machine(store, sender, broker, clock, greetings=["Olá "], fallback_greetings=["Oii querid@"])
        definition = RoutineDefinition(tenant_id="t", sequence_number=1, text_content="tudo bem?")
        assert machine.render(Conversation(tenant_id="t", name="Ana"), definition) == "Olá Ana, tudo bem?"
        assert machine.render(Conversation(tenant_id="t", name="  "), definition) == "Oii querid@, tudo bem?"

    @pytest.mark.asyncio
    async def test_media_sent_after_text(self, machine, store, gateway, tenant, session):
        definition = RoutineDefinition(
            tenant_id=tenant.id, sequence_number=1, hours_delay=1, text_content="veja",
            media=[MediaRef(kind=MediaKind.IMAGE, url="https://cdn/x.jpg"),
                   MediaRef(kind=MediaKind.VIDEO, url="https://cdn/y.mp4")],
        )
        await store.save_routine_definition(definition)
        conv = await add_conversation(store, tenant.id, last_at=FIXED_NOW - timedelta(hours=2))

        await machine.process_monitored(conv, session, {1: definition})

        assert [(s.kind, s.body) for s in gateway.sent] == [
            ("text", "veja"), ("image", "https://cdn/x.jpg"), ("video", "https://cdn/y.mp4"),
        ]


# ──────────────────────────────────────────────────────────────
#  Business hours
# ──────────────────────────────────────────────────────────────

SATURDAY = datetime(2024, 3, 9, 15, 0, tzinfo=timezone.utc)
MONDAY_OPENING = datetime(2024, 3, 11, 11, 0, tzinfo=timezone.utc)   # 08:00 in São Paulo


class TestBusinessHours:

    @pytest.fixture
    def routine_config(self):
        return RoutineConfig(business_hours=BusinessHoursConfig(enabled=True))

    @pytest.mark.asyncio
    async def test_advance_deferred_until_next_opening(self, machine, store, gateway, tenant, session, clock):
        conv, defs = await _enter(machine, store, tenant, session)

        clock.now = SATURDAY
        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.DEFERRED
        _, state = await _reload(store, conv)
        assert state.last_routine_sent == 1
        assert state.scheduled_send_time == MONDAY_OPENING

        clock.now = MONDAY_OPENING + timedelta(minutes=30)
        assert await machine.process_follow_up(conv, session, defs) == RoutineOutcome.ADVANCED
        _, state = await _reload(store, conv)
        assert state.last_routine_sent == 2
        assert state.scheduled_send_time is None
        assert len(gateway.sent) == 2

    @pytest.mark.asyncio
    async def test_entry_outside_hours_waits(self, machine, store, gateway, tenant, session, clock):
        defs = await add_definitions(store, tenant.id, SEVEN_STEPS)
        clock.now = SATURDAY
        conv = await add_conversation(store, tenant.id, last_at=SATURDAY - timedelta(hours=30))

        assert await machine.process_monitored(conv, session, defs) == RoutineOutcome.DEFERRED
        conv, state = await _reload(store, conv)
        assert conv.board_column == BoardColumn.HOT_LEAD
        assert state is None
        assert gateway.sent == []
