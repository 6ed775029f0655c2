"""ORM models for providers, the key pool, chat sessions and telemetry events."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)

from .database import Base


class KeyStatus:
    ACTIVE = "active"
    RATE_LIMITED = "rate_limited"
    DISABLED = "disabled"


class SessionStatus:
    ACTIVE = "active"
    PENDING_RATE_LIMIT = "pending_rate_limit"


class MessageRole:
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Provider(Base):
    __tablename__ = "providers"
    __table_args__ = (UniqueConstraint("code", name="uq_providers_code"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(100), nullable=False)
    display_name = Column(String(200), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    adapter = Column(String(100), nullable=False)
    endpoint = Column(String(512), nullable=False)
    default_model = Column(String(200))
    options = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ProviderKey(Base):
    __tablename__ = "provider_keys"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'rate_limited', 'disabled')",
            name="ck_provider_keys_status",
        ),
        CheckConstraint(
            "(status = 'rate_limited' AND rate_limit_reset_at IS NOT NULL)"
            " OR (status != 'rate_limited' AND rate_limit_reset_at IS NULL)",
            name="ck_provider_keys_reset_at",
        ),
        CheckConstraint("usage_count >= 0", name="ck_provider_keys_usage_count"),
        Index("ix_provider_keys_selection", "provider_id", "status", "usage_count"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(Integer, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False)
    model = Column(String(200))
    label = Column(String(200))
    secret = Column(Text, nullable=False)
    usage_count = Column(Integer, nullable=False, default=0)
    usage_limit = Column(Integer)
    last_used_at = Column(DateTime(timezone=True))
    status = Column(String(32), nullable=False, default=KeyStatus.ACTIVE)
    rate_limit_reset_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ChatSession(Base):
    __tablename__ = "chat_sessions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'pending_rate_limit')", name="ck_chat_sessions_status"
        ),
        Index("ix_chat_sessions_key_status", "key_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(100), nullable=False)
    title = Column(String(255), nullable=False, default="New Chat")
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False)
    key_id = Column(Integer, ForeignKey("provider_keys.id"), nullable=False)
    model = Column(String(200))
    status = Column(String(32), nullable=False, default=SessionStatus.ACTIVE)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("role IN ('user', 'assistant', 'system')", name="ck_messages_role"),
        Index("ix_messages_session_created", "session_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(
        Integer, ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    token_count = Column(Integer)
    created_at = Column(DateTime(timezone=True), nullable=False)


class DispatchEvent(Base):
    __tablename__ = "dispatch_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    level = Column(String(16), nullable=False)
    kind = Column(String(64), nullable=False)
    request_id = Column(String(64))
    provider_code = Column(String(100))
    key_id = Column(Integer)
    session_id = Column(Integer)
    message = Column(String(512))
    meta = Column(Text)

    __table_args__ = (
        Index("ix_dispatch_events_ts", "ts"),
        Index("ix_dispatch_events_kind_ts", "kind", "ts"),
    )
