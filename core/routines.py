"""Routine definition management and manual routine reset."""
from __future__ import annotations

import structlog
from typing import Optional

from core.errors import NotFoundError, TenantMismatchError, ValidationError
from core.routine_machine import RoutineStateMachine
from database.store_base import BaseCrmStore
from models.schemas import (
    Conversation, ConversationRoutineState, RoutineDefinition, RoutineRequest,
)

logger = structlog.get_logger()


class RoutineService:
    """CRUD over a tenant's (at most seven) routine steps."""

    def __init__(self, store: BaseCrmStore, machine: RoutineStateMachine):
        self.store = store
        self.machine = machine

    async def list_routines(self, tenant_id: str) -> list[RoutineDefinition]:
        return await self.store.find_routine_definitions(tenant_id)

    async def get(self, tenant_id: str, routine_id: str) -> RoutineDefinition:
        definition = await self.store.get_routine_definition(routine_id)
        if definition is None:
            raise NotFoundError(f"Routine {routine_id} not found", routine_id)
        if definition.tenant_id != tenant_id:
            raise TenantMismatchError(f"Routine {routine_id} belongs to another tenant", routine_id)
        return definition

    async def _save(self, definition: RoutineDefinition) -> RoutineDefinition:
        try:
            return await self.store.save_routine_definition(definition)
        except ValueError as e:
            raise ValidationError(str(e), definition.id) from e

    async def create(self, tenant_id: str, request: RoutineRequest) -> RoutineDefinition:
        definition = RoutineDefinition(
            tenant_id=tenant_id,
            sequence_number=request.sequence_number,
            text_content=request.text_content,
            hours_delay=request.hours_delay,
            media=list(request.media),
        )
        await self._save(definition)
        logger.info("routine_definition_created", tenant_id=tenant_id,
                    routine_id=definition.id, sequence_number=definition.sequence_number)
        return definition

    async def update(self, tenant_id: str, routine_id: str, request: RoutineRequest) -> RoutineDefinition:
        definition = await self.get(tenant_id, routine_id)
        definition.sequence_number = request.sequence_number
        definition.text_content = request.text_content
        definition.hours_delay = request.hours_delay
        definition.media = list(request.media)
        await self._save(definition)
        logger.info("routine_definition_updated", tenant_id=tenant_id, routine_id=routine_id,
                    sequence_number=definition.sequence_number)
        return definition

    async def delete(self, tenant_id: str, routine_id: str) -> None:
        await self.get(tenant_id, routine_id)
        await self.store.delete_routine_definition(routine_id)
        logger.info("routine_definition_deleted", tenant_id=tenant_id, routine_id=routine_id)

    async def _conversation(self, tenant_id: str, conversation_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found", conversation_id)
        if conversation.tenant_id != tenant_id:
            raise TenantMismatchError(f"Conversation {conversation_id} belongs to another tenant", conversation_id)
        return conversation

    async def reset_conversation(self, tenant_id: str, conversation_id: str) -> Optional[ConversationRoutineState]:
        """Operator reset: clears routine progress and restores the column if in follow-up."""
        conversation = await self._conversation(tenant_id, conversation_id)
        return await self.machine.reset(conversation)
