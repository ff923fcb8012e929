"""
Routine Automation Scheduler - periodic driver of the routine state machine.

Per tick, for every tenant:
  1. Load the tenant's routine definitions; skip the tenant if step #1 is
     not configured.
  2. Resolve the tenant's active messaging session; without one the whole
     tenant is skipped until the next tick.
  3. Apply reply/advance/terminal rules to live conversations in follow_up.
  4. Apply the entry rule to live conversations in the monitored columns.

Every conversation is processed in isolation: an exception is logged and
counted, and the scan continues with the next one.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Callable, Optional

from config.settings import RoutineConfig
from core.routine_machine import RoutineOutcome, RoutineStateMachine, index_definitions
from database.store_base import BaseCrmStore
from models.schemas import BoardColumn, utcnow

logger = structlog.get_logger()


def _new_stats() -> dict[str, int]:
    return {
        "tenants": 0, "scanned": 0, "entered": 0, "advanced": 0,
        "exited": 0, "completed": 0, "deferred": 0, "errors": 0,
    }


def _parse_columns(names: list[str]) -> list[BoardColumn]:
    columns = []
    for name in names:
        try:
            column = BoardColumn(name)
        except ValueError:
            logger.warning("monitored_column_unknown", column=name)
            continue
        if column in (BoardColumn.FOLLOW_UP, BoardColumn.COLD_LEAD):
            logger.warning("monitored_column_ignored", column=name)
            continue
        columns.append(column)
    return columns


class RoutineScheduler:

    def __init__(self, store: BaseCrmStore, machine: RoutineStateMachine,
                 config: RoutineConfig = None, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.machine = machine
        self.config = config or machine.config
        self.monitored_columns = _parse_columns(self.config.monitored_columns)
        self._clock = clock

    async def tick(self, now: Optional[datetime] = None) -> dict[str, int]:
        """One full scan over all tenants. Returns per-tick counters."""
        now = now or self._clock()
        stats = _new_stats()

        for tenant in await self.store.list_tenants():
            stats["tenants"] += 1
            try:
                await self.process_tenant(tenant.id, now, stats)
            except Exception as e:
                stats["errors"] += 1
                logger.error("routine_tenant_scan_failed", tenant_id=tenant.id, error=str(e), exc_info=True)

        if any(stats[k] for k in ("entered", "advanced", "exited", "completed", "errors")):
            logger.info("routine_tick_complete", **stats)
        return stats

    async def process_tenant(self, tenant_id: str, now: datetime, stats: dict[str, int]) -> None:
        definitions = index_definitions(await self.store.find_routine_definitions(tenant_id))
        if 1 not in definitions:
            logger.debug("routine_tenant_skipped", tenant_id=tenant_id, reason="no_first_step")
            return

        session = await self.store.find_active_session(tenant_id)
        if session is None:
            logger.warning("routine_tenant_skipped", tenant_id=tenant_id, reason="no_active_session")
            return

        in_follow_up = await self.store.find_by_column(tenant_id, BoardColumn.FOLLOW_UP)
        for conversation in in_follow_up:
            if not conversation.schedulable:
                continue
            stats["scanned"] += 1
            try:
                outcome = await self.machine.process_follow_up(conversation, session, definitions, now)
                self._count(stats, outcome)
            except Exception as e:
                stats["errors"] += 1
                logger.error("routine_follow_up_failed", tenant_id=tenant_id,
                             conversation_id=conversation.id, error=str(e), exc_info=True)

        if not self.monitored_columns:
            return
        monitored = await self.store.find_monitored(tenant_id, self.monitored_columns)
        for conversation in monitored:
            if not conversation.schedulable:
                continue
            stats["scanned"] += 1
            try:
                outcome = await self.machine.process_monitored(conversation, session, definitions, now)
                self._count(stats, outcome)
            except Exception as e:
                stats["errors"] += 1
                logger.error("routine_entry_failed", tenant_id=tenant_id,
                             conversation_id=conversation.id, error=str(e), exc_info=True)

    @staticmethod
    def _count(stats: dict[str, int], outcome: Optional[RoutineOutcome]) -> None:
        if outcome is not None:
            stats[outcome.value] += 1
