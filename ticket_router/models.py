"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB

from ticket_router.storage import Base


# Statuses a ticket can be "still being handled" in. The partial unique index
# below hard-codes the same list, so the two must change together.
OPEN_STATUSES = ("pending", "in_progress")

JSONType = JSON().with_variant(JSONB(), "postgresql")
TagsType = JSON().with_variant(ARRAY(String), "postgresql")

_OPEN_STATUS_SQL = "status IN ('pending', 'in_progress')"


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Ticket(Base):
    """
    Support ticket, one per open conversation with a WhatsApp contact.

    Table: tickets
    At most one open ticket per (client_phone, instance_name): enforced by
    the partial unique index uq_tickets_open_contact.
    """
    __tablename__ = "tickets"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String, nullable=False)
    subject = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    priority = Column(String, nullable=False, default="normal")
    channel = Column(String, nullable=False, default="whatsapp")
    department_id = Column(String, nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSONType, nullable=False, default=dict)
    client_phone = Column(String, nullable=True, index=True)
    instance_name = Column(String, nullable=True, index=True)
    auto_created = Column(Boolean, nullable=False, default=False)
    unread = Column(Boolean, nullable=False, default=True)
    tags = Column(TagsType, nullable=False, default=list)
    is_internal = Column(Boolean, nullable=False, default=False)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index(
            "uq_tickets_open_contact",
            "client_phone",
            "instance_name",
            unique=True,
            sqlite_where=text(_OPEN_STATUS_SQL),
            postgresql_where=text(_OPEN_STATUS_SQL),
        ),
    )


class Message(Base):
    """
    A single chat message attached to a ticket.

    Table: messages
    The gateway message id lives in metadata["evolution_message_id"].
    """
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    ticket_id = Column(String(36), ForeignKey("tickets.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    type = Column(String, nullable=False, default="text")
    sender_role = Column(String, nullable=False, default="client")
    sender_name = Column(String, nullable=True)
    sender_id = Column(String, nullable=True)
    is_internal = Column(Boolean, nullable=False, default=False)
    is_read = Column(Boolean, nullable=False, default=False)
    meta = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class EvolutionInstance(Base):
    """Connection status row for one gateway instance."""
    __tablename__ = "evolution_instances"

    id = Column(String(36), primary_key=True, default=_uuid)
    instance_name = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=True)
    connection_state = Column(String, nullable=True)
    status_reason = Column(String, nullable=True)
    qr_code = Column(Text, nullable=True)
    department_id = Column(String, nullable=True)
    profile_name = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    connected_at = Column(DateTime(timezone=True), nullable=True)
    disconnected_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class EvolutionContact(Base):
    """Contact card as reported by a gateway instance."""
    __tablename__ = "evolution_contacts"

    id = Column(String(36), primary_key=True, default=_uuid)
    instance_name = Column(String, nullable=False)
    contact_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    notify_name = Column(String, nullable=True)
    verified_name = Column(String, nullable=True)
    profile_pic_url = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("instance_name", "contact_id", name="uq_evolution_contacts_instance_contact"),
    )
