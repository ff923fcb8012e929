"""
Core data models for the ZapFlow automation service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


MAX_ROUTINE_STEPS = 7


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class BoardColumn(str, Enum):
    INBOX = "inbox"
    HOT_LEAD = "hot_lead"
    FOLLOW_UP = "follow_up"
    COLD_LEAD = "cold_lead"
    TASK = "task"
    CLOSED = "closed"


# Columns a conversation may be restored to when it leaves follow-up
RESTORABLE_COLUMNS = frozenset(c for c in BoardColumn if c not in (BoardColumn.FOLLOW_UP, BoardColumn.COLD_LEAD))


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class MessageStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    RECEIVED = "RECEIVED"


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class CampaignStatus(str, Enum):
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in (CampaignStatus.COMPLETED, CampaignStatus.CANCELED)


class NotificationType(str, Enum):
    FOLLOWUP_COMPLETED = "followup-completed"
    FOLLOWUP_EXITED = "followup-exited"


# ──────────────────────────────────────────────────────────────
#  Tenant & messaging session
# ──────────────────────────────────────────────────────────────

class Tenant(BaseModel):
    """An account owning its own conversations, routines and campaigns."""
    id: str = Field(default_factory=_new_id)
    name: str = ""
    email: str = ""


class MessagingSession(BaseModel):
    """A connected provider instance the tenant sends through."""
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    instance_id: str = ""
    token: str = ""
    client_token: str = ""
    status: SessionStatus = SessionStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


# ──────────────────────────────────────────────────────────────
#  Conversation & Message
# ──────────────────────────────────────────────────────────────

class Conversation(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    name: str = ""
    phone: str = ""
    board_column: BoardColumn = BoardColumn.INBOX
    last_message_timestamp: Optional[datetime] = None
    active: bool = True                       # still present in the provider
    trusted: bool = False
    is_group: bool = False
    tag_ids: list[str] = []

    @property
    def schedulable(self) -> bool:
        return self.active and not self.is_group


class Message(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    provider_message_id: str = ""
    content: str = ""
    from_me: bool = False                     # True when authored by the tenant
    timestamp: datetime = Field(default_factory=utcnow)
    status: MessageStatus = MessageStatus.RECEIVED


class MediaRef(BaseModel):
    kind: MediaKind
    url: str


# ──────────────────────────────────────────────────────────────
#  Routines
# ──────────────────────────────────────────────────────────────

class RoutineDefinition(BaseModel):
    """One step of a tenant's follow-up sequence."""
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    sequence_number: int = Field(ge=1, le=MAX_ROUTINE_STEPS)
    text_content: str = ""
    hours_delay: int = Field(default=0, ge=0)
    media: list[MediaRef] = []

    @property
    def is_blank(self) -> bool:
        return not (self.text_content or "").strip()


class ConversationRoutineState(BaseModel):
    """
    Follow-up progress of one conversation.

    `in_follow_up` mirrors `board_column == follow_up` on the owning
    conversation; `last_routine_sent` only moves forward inside an episode.
    """
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    tenant_id: str
    scheduled_send_time: Optional[datetime] = None
    previous_column: BoardColumn = BoardColumn.INBOX
    last_routine_sent: int = Field(default=0, ge=0, le=MAX_ROUTINE_STEPS)
    last_automated_message_sent: Optional[datetime] = None
    last_user_message_time: Optional[datetime] = None
    in_follow_up: bool = False
    follow_up_completed: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("previous_column")
    @classmethod
    def _restorable(cls, v: BoardColumn) -> BoardColumn:
        if v not in RESTORABLE_COLUMNS:
            raise ValueError(f"previous_column cannot be '{v.value}'")
        return v


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class TargetSelector(BaseModel):
    tag_ids: set[str] = set()
    all_trusted: bool = False


class Campaign(BaseModel):
    """
    A rate-limited bulk send.

    Only the set of dispatched conversation ids is stored; the dispatched
    count and progress are always derived from it.
    """
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    name: str
    message_template: str
    chats_per_dispatch: int = Field(ge=1)
    interval_minutes: int = Field(ge=1)
    status: CampaignStatus = CampaignStatus.CREATED
    total_targets: int = 0
    dispatched_target_ids: set[str] = set()
    next_dispatch_time: Optional[datetime] = None
    target_selector: TargetSelector = Field(default_factory=TargetSelector)
    media: list[MediaRef] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def dispatched_count(self) -> int:
        return len(self.dispatched_target_ids)

    @property
    def progress(self) -> float:
        if self.total_targets == 0:
            return 0.0
        return self.dispatched_count / self.total_targets * 100.0

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["dispatched_target_ids"] = sorted(self.dispatched_target_ids)
        data["dispatched_count"] = self.dispatched_count
        data["progress"] = round(self.progress, 1)
        return data


class CampaignRequest(BaseModel):
    """Tenant input for creating or editing a campaign."""
    name: str
    message_template: str
    chats_per_dispatch: int = Field(ge=1)
    interval_minutes: int = Field(ge=1)
    tag_ids: list[str] = []
    all_trusted: bool = False
    media: list[MediaRef] = []


class RoutineRequest(BaseModel):
    sequence_number: int = Field(ge=1, le=MAX_ROUTINE_STEPS)
    text_content: str
    hours_delay: int = Field(default=0, ge=0)
    media: list[MediaRef] = []


# ──────────────────────────────────────────────────────────────
#  Gateway results & notifications
# ──────────────────────────────────────────────────────────────

class SendResult(BaseModel):
    success: bool
    provider_message_id: Optional[str] = None
    error: str = ""


class NotificationEvent(BaseModel):
    name: str = "task-completed"
    type: NotificationType
    tenant_id: str
    conversation_id: str
    conversation_name: str = ""
    new_column: BoardColumn
    previous_column: Optional[BoardColumn] = None
    timestamp: datetime = Field(default_factory=utcnow)
