"""
FileCrmStore - the in-memory store, snapshotted to JSON files.

One file per collection under `data_dir` (tenants.json, conversations.json,
routine_states.json, campaigns.json, campaign_dispatched.json, ...). A write
rewrites only the collections it touched, through a temp file and rename.
With `flush_interval_s > 0` rewrites are coalesced into one deferred flush.

Single process only: two stores on the same directory overwrite each other.
"""
from __future__ import annotations

import asyncio
import functools
import json
import structlog
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, NamedTuple, Optional

from pydantic import BaseModel

from database.store_memory import InMemoryCrmStore
from models.schemas import (
    Campaign, CampaignStatus, Conversation, ConversationRoutineState,
    Message, MessageStatus, MessagingSession, RoutineDefinition, Tenant,
)

logger = structlog.get_logger()


class _Codec(NamedTuple):
    attr: str
    decode: Callable[[dict], Any]
    encode: Callable[[Any], dict]


def _models(model: type[BaseModel]) -> tuple[Callable, Callable]:
    def decode(raw: dict) -> dict:
        return {key: model.model_validate(value) for key, value in raw.items()}

    def encode(items: dict) -> dict:
        return {key: item.model_dump(mode="json") for key, item in items.items()}

    return decode, encode


def _decode_messages(raw: dict):
    return defaultdict(list, {cid: [Message.model_validate(m) for m in msgs] for cid, msgs in raw.items()})


def _encode_messages(messages: dict) -> dict:
    return {cid: [m.model_dump(mode="json") for m in msgs] for cid, msgs in messages.items()}


def _decode_dispatched(raw: dict):
    return defaultdict(set, {cid: set(targets) for cid, targets in raw.items()})


def _encode_dispatched(dispatched: dict) -> dict:
    return {cid: sorted(targets) for cid, targets in dispatched.items()}


_CODECS: dict[str, _Codec] = {
    "tenants": _Codec("_tenants", *_models(Tenant)),
    "sessions": _Codec("_sessions", *_models(MessagingSession)),
    "conversations": _Codec("_conversations", *_models(Conversation)),
    "messages": _Codec("_messages", _decode_messages, _encode_messages),
    "routine_definitions": _Codec("_definitions", *_models(RoutineDefinition)),
    "routine_states": _Codec("_states", *_models(ConversationRoutineState)),
    "campaigns": _Codec("_campaigns", *_models(Campaign)),
    "campaign_dispatched": _Codec("_dispatched", _decode_dispatched, _encode_dispatched),
}


def _persists(*collections: str, when: Callable[[Any], bool] = lambda result: True):
    """Mark `collections` dirty after the wrapped write, if `when(result)` holds."""
    def decorator(method):
        @functools.wraps(method)
        async def wrapper(self, *args, **kwargs):
            result = await method(self, *args, **kwargs)
            if when(result):
                self._touch(*collections)
            return result
        return wrapper
    return decorator


class FileCrmStore(InMemoryCrmStore):

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._pending: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        loaded = self._restore()
        logger.info("file_store_initialized", data_dir=str(self._data_dir), collections=loaded)

    def _path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _restore(self) -> list[str]:
        loaded = []
        for name, codec in _CODECS.items():
            path = self._path(name)
            if not path.exists():
                continue
            try:
                raw = json.loads(path.read_text())
                if not isinstance(raw, dict):
                    raise ValueError(f"expected an object, got {type(raw).__name__}")
                setattr(self, codec.attr, codec.decode(raw))
                loaded.append(name)
            except ValueError as e:
                # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors
                logger.warning("file_store_load_error", collection=name, error=str(e))
        return loaded

    def _write(self, collection: str) -> None:
        codec = _CODECS[collection]
        target = self._path(collection)
        staging = target.with_suffix(".tmp")
        staging.write_text(json.dumps(codec.encode(getattr(self, codec.attr)), indent=2, default=str))
        staging.replace(target)

    def _touch(self, *collections: str) -> None:
        if self._flush_interval <= 0:
            for name in collections:
                self._write(name)
            return
        self._pending.update(collections)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self._flush_interval)
        pending, self._pending = self._pending, set()
        for name in pending:
            self._write(name)

    def flush_all(self) -> None:
        for name in _CODECS:
            self._write(name)
        self._pending.clear()
        logger.info("file_store_flushed_all", data_dir=str(self._data_dir))

    # ── Writes ────────────────────────────────────────────

    @_persists("tenants")
    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        return await super().upsert_tenant(tenant)

    @_persists("sessions")
    async def upsert_session(self, session: MessagingSession) -> MessagingSession:
        return await super().upsert_session(session)

    @_persists("conversations")
    async def save_conversation(self, conversation: Conversation) -> Conversation:
        return await super().save_conversation(conversation)

    @_persists("conversations", "messages", "routine_states")
    async def delete_conversation(self, conversation_id: str) -> None:
        await super().delete_conversation(conversation_id)

    @_persists("messages", "conversations")
    async def add_message(self, message: Message) -> Message:
        return await super().add_message(message)

    @_persists("messages", when=bool)
    async def reconcile_message(self, message_id: str, status: MessageStatus,
                                provider_message_id: str = "") -> bool:
        return await super().reconcile_message(message_id, status, provider_message_id)

    @_persists("routine_definitions")
    async def save_routine_definition(self, definition: RoutineDefinition) -> RoutineDefinition:
        return await super().save_routine_definition(definition)

    @_persists("routine_definitions")
    async def delete_routine_definition(self, definition_id: str) -> None:
        await super().delete_routine_definition(definition_id)

    @_persists("routine_states")
    async def save_routine_state(self, state: ConversationRoutineState) -> ConversationRoutineState:
        return await super().save_routine_state(state)

    @_persists("routine_states", when=bool)
    async def stamp_routine_send(self, conversation_id: str, step: int, sent_at: datetime) -> bool:
        return await super().stamp_routine_send(conversation_id, step, sent_at)

    @_persists("campaigns")
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        return await super().save_campaign(campaign)

    @_persists("campaigns", "campaign_dispatched")
    async def delete_campaign(self, campaign_id: str) -> None:
        await super().delete_campaign(campaign_id)

    @_persists("campaign_dispatched", when=bool)
    async def add_dispatched_target(self, campaign_id: str, conversation_id: str) -> bool:
        return await super().add_dispatched_target(campaign_id, conversation_id)

    @_persists("campaigns", when=lambda result: result is not None)
    async def transition_campaign(
        self, campaign_id: str, from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus, next_dispatch_time: Optional[datetime] = None,
    ) -> Optional[Campaign]:
        return await super().transition_campaign(campaign_id, from_statuses, to_status, next_dispatch_time)
