"""
SQLAlchemy ORM models - Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB.
  - String primary keys (uuid hex) - no database-specific sequences.
  - Enumerated fields are stored as plain strings and validated when rows
    are converted back into models.
  - Campaign progress is stored only as the dispatched-target rows; there
    is no counter column.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Tenants & messaging sessions
# ──────────────────────────────────────────────────────────────

class TenantRow(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    email: Mapped[str] = mapped_column(String(256), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class MessagingSessionRow(Base):
    __tablename__ = "messaging_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    instance_id: Mapped[str] = mapped_column(String(128), default="")
    token: Mapped[str] = mapped_column(String(256), default="")
    client_token: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(16), default="ACTIVE")

    __table_args__ = (
        Index("ix_sessions_tenant_status", "tenant_id", "status"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversations & messages
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    phone: Mapped[str] = mapped_column(String(32), default="")
    board_column: Mapped[str] = mapped_column(String(32), default="inbox")
    last_message_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    trusted: Mapped[bool] = mapped_column(Boolean, default=False)
    is_group: Mapped[bool] = mapped_column(Boolean, default=False)
    tag_ids: Mapped[Any] = mapped_column(JSON, default=list)

    messages: Mapped[list["MessageRow"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan",
    )
    routine_state: Mapped[Optional["RoutineStateRow"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan", uselist=False,
    )

    __table_args__ = (
        Index("ix_conversations_tenant_column", "tenant_id", "board_column"),
        Index("ix_conversations_tenant_trusted", "tenant_id", "trusted"),
    )


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    provider_message_id: Mapped[str] = mapped_column(String(256), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    from_me: Mapped[bool] = mapped_column(Boolean, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    status: Mapped[str] = mapped_column(String(16), default="RECEIVED")

    conversation: Mapped["ConversationRow"] = relationship(back_populates="messages")

    __table_args__ = (
        Index("ix_messages_conversation_ts", "conversation_id", "timestamp"),
        Index("ix_messages_provider_id", "provider_message_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Routines
# ──────────────────────────────────────────────────────────────

class RoutineDefinitionRow(Base):
    __tablename__ = "routine_definitions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    text_content: Mapped[str] = mapped_column(Text, default="")
    hours_delay: Mapped[int] = mapped_column(Integer, default=0)
    media: Mapped[Any] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "sequence_number", name="uq_routine_tenant_sequence"),
    )


class RoutineStateRow(Base):
    __tablename__ = "conversation_routine_states"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.id"), nullable=False, unique=True,
    )
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    scheduled_send_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    previous_column: Mapped[str] = mapped_column(String(32), default="inbox")
    last_routine_sent: Mapped[int] = mapped_column(Integer, default=0)
    last_automated_message_sent: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_user_message_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    in_follow_up: Mapped[bool] = mapped_column(Boolean, default=False)
    follow_up_completed: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    conversation: Mapped["ConversationRow"] = relationship(back_populates="routine_state")


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class CampaignRow(Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    message_template: Mapped[str] = mapped_column(Text, nullable=False)
    chats_per_dispatch: Mapped[int] = mapped_column(Integer, nullable=False)
    interval_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="CREATED")
    total_targets: Mapped[int] = mapped_column(Integer, default=0)
    next_dispatch_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    tag_ids: Mapped[Any] = mapped_column(JSON, default=list)
    all_trusted: Mapped[bool] = mapped_column(Boolean, default=False)
    media: Mapped[Any] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    dispatched: Mapped[list["CampaignDispatchedRow"]] = relationship(
        back_populates="campaign", cascade="all, delete-orphan", lazy="selectin",
    )

    __table_args__ = (
        Index("ix_campaigns_tenant", "tenant_id"),
        Index("ix_campaigns_status_next", "status", "next_dispatch_time"),
    )


class CampaignDispatchedRow(Base):
    __tablename__ = "campaign_dispatched_targets"

    campaign_id: Mapped[str] = mapped_column(String(64), ForeignKey("campaigns.id"), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    dispatched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    campaign: Mapped["CampaignRow"] = relationship(back_populates="dispatched")
