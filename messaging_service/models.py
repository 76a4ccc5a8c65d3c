"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from messaging_service.storage import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(Base):
    """
    A thread between exactly two normalized participants.

    Table: conversations
    Unique: participants (sorted JSON array of the two normalized contacts)
    """
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_new_id)
    participants = Column(Text, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    last_message_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Message(Base):
    """
    A single SMS, MMS or email message owned by a conversation.

    Table: messages
    Unique: (provider_type, provider_message_id) - idempotency for webhooks
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("provider_type", "provider_message_id", name="uq_messages_provider_type_id"),
        CheckConstraint("provider_type IN ('sms', 'email')", name="ck_messages_provider_type"),
        CheckConstraint("message_type IN ('sms', 'mms', 'email')", name="ck_messages_message_type"),
        CheckConstraint("direction IN ('inbound', 'outbound')", name="ck_messages_direction"),
        CheckConstraint(
            "status IN ('pending', 'sent', 'delivered', 'failed')", name="ck_messages_status"
        ),
        Index("idx_messages_conversation_id_timestamp", "conversation_id", "timestamp"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    conversation_id = Column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider_type = Column(String(16), nullable=False)
    message_type = Column(String(16), nullable=False)
    provider_message_id = Column(String, nullable=True)
    direction = Column(String(16), nullable=False)
    from_address = Column("from", String, nullable=False)
    to_address = Column("to", String, nullable=False)
    body = Column(Text, nullable=False)
    attachments = Column(Text, nullable=True)  # JSON array of URLs
    status = Column(String(16), nullable=False, default="pending")
    timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    conversation = relationship("Conversation", back_populates="messages")
