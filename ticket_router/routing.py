"""
Webhook-to-ticket routing.

For each inbound message: normalize the sender's phone, find the open
ticket for (phone, instance) or create one, then append the message and
bump the ticket. Reads and writes are separate round-trips with no lock
spanning them; the partial unique index on open tickets turns the
check-then-act race into an IntegrityError that is resolved by reusing
the ticket that won.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, TYPE_CHECKING

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ticket_router.extractor import NormalizedMessage
from ticket_router.metrics import record_routing_outcome
from ticket_router.models import OPEN_STATUSES, EvolutionInstance, Message, Ticket
from ticket_router.phone import normalize_phone

if TYPE_CHECKING:
    from ticket_router.batching import MessageBatcher

logger = logging.getLogger(__name__)

AUTO_CREATED_TAGS = ["whatsapp", "auto-created"]


@dataclass
class TicketResolution:
    """
    Outcome of finding or creating the ticket for a message.

    outcome: created, reused, conflict_reused or degraded. A degraded
    resolution has no ticket_id: the store failed and nothing was written.
    """
    ticket_id: Optional[str]
    created: bool
    outcome: str


@dataclass
class RoutingResult:
    ticket_id: Optional[str]
    ticket_created: bool
    outcome: str
    # created, duplicate, queued or skipped (no ticket)
    message_result: str


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Ticket Resolver
# =============================================================================

def find_open_ticket(db: Session, phone_key: str, instance_name: str) -> Optional[str]:
    """
    Most recently created open ticket for a canonical phone on an instance.

    Store errors are logged and reported as "no match", which errs on the
    side of creating a ticket rather than dropping the message.
    """
    try:
        ticket = (
            db.query(Ticket.id)
            .filter(
                Ticket.client_phone == phone_key,
                Ticket.instance_name == instance_name,
                Ticket.status.in_(OPEN_STATUSES),
            )
            .order_by(Ticket.created_at.desc())
            .first()
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Open ticket lookup failed for {phone_key}@{instance_name}: {e}")
        return None

    if ticket is None:
        logger.debug(f"No open ticket for {phone_key}@{instance_name}")
        return None
    return ticket.id


# =============================================================================
# Ticket Creator
# =============================================================================

def _instance_department(db: Session, instance_name: str) -> Optional[str]:
    row = (
        db.query(EvolutionInstance.department_id)
        .filter(EvolutionInstance.instance_name == instance_name)
        .first()
    )
    return row.department_id if row else None


def create_ticket(
    db: Session,
    phone: str,
    display_name: str,
    instance_name: str,
    first_message: str,
    *,
    channel: str = "whatsapp",
    priority: str = "normal",
    is_group: bool = False,
    whatsapp_number: Optional[str] = None,
    gateway_message_id: Optional[str] = None,
    last_message_at: Optional[datetime] = None,
) -> TicketResolution:
    """
    Insert a new auto-created ticket for a contact.

    Does not write the first message; the caller persists it. If another
    request opened a ticket for the same contact in the meantime, the
    unique index rejects this insert and the existing ticket is returned.
    """
    phone_key = normalize_phone(phone)
    label = "WhatsApp group" if is_group else "WhatsApp"

    try:
        ticket = Ticket(
            title=f"{label} - {display_name}",
            subject=f"{label} conversation - {phone_key}",
            description=(
                "Ticket created automatically from an incoming WhatsApp message.\n\n"
                f'First message: "{first_message}"'
            ),
            status=OPEN_STATUSES[0],
            priority=priority,
            channel=f"{channel}_group" if is_group else channel,
            department_id=_instance_department(db, instance_name),
            meta={
                "client_name": display_name,
                "client_phone": phone_key,
                "whatsapp_number": whatsapp_number or phone,
                "anonymous_contact": display_name,
                "evolution_instance_name": instance_name,
                "evolution_message_id": gateway_message_id,
                "first_message_content": first_message,
                "is_group": is_group,
                "auto_created": True,
                "created_from_whatsapp": True,
            },
            client_phone=phone_key,
            instance_name=instance_name,
            auto_created=True,
            unread=True,
            tags=list(AUTO_CREATED_TAGS),
            is_internal=False,
            last_message_at=last_message_at or datetime.now(timezone.utc),
        )
        db.add(ticket)
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = find_open_ticket(db, phone_key, instance_name)
        if winner:
            logger.info(f"Concurrent ticket creation for {phone_key}@{instance_name}, reusing {winner}")
            return TicketResolution(ticket_id=winner, created=False, outcome="conflict_reused")
        logger.error(f"Ticket insert conflicted but no open ticket found for {phone_key}@{instance_name}")
        return TicketResolution(ticket_id=None, created=False, outcome="degraded")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create ticket for {phone_key}@{instance_name}: {e}")
        return TicketResolution(ticket_id=None, created=False, outcome="degraded")

    logger.info(f"Ticket created: {ticket.id} for {phone_key}@{instance_name}")
    return TicketResolution(ticket_id=ticket.id, created=True, outcome="created")


def resolve_ticket(
    db: Session,
    message: NormalizedMessage,
    channel: str = "whatsapp",
    priority: str = "normal",
) -> TicketResolution:
    phone_key = normalize_phone(message.sender_phone)

    existing = find_open_ticket(db, phone_key, message.instance_name)
    if existing:
        resolution = TicketResolution(ticket_id=existing, created=False, outcome="reused")
    else:
        resolution = create_ticket(
            db,
            message.sender_phone,
            message.sender_name,
            message.instance_name,
            message.content,
            channel=channel,
            priority=priority,
            is_group=message.is_group,
            whatsapp_number=message.sender_phone,
            gateway_message_id=message.gateway_message_id,
            last_message_at=message.timestamp,
        )

    record_routing_outcome(resolution.outcome)
    return resolution


# =============================================================================
# Message Persister
# =============================================================================

def message_exists(db: Session, ticket_id: str, gateway_message_id: str) -> bool:
    """Whether this gateway message is already stored on the ticket."""
    if not gateway_message_id:
        return False
    found = (
        db.query(Message.id)
        .filter(
            Message.ticket_id == ticket_id,
            Message.meta["evolution_message_id"].as_string() == gateway_message_id,
        )
        .first()
    )
    return found is not None


def build_message_row(
    ticket_id: str,
    message: NormalizedMessage,
    sender_role: str = "client",
    sender_id: Optional[str] = None,
) -> Message:
    quoted = None
    if message.quoted is not None:
        quoted = {
            "id": message.quoted.id,
            "content": message.quoted.content,
            "sender": message.quoted.sender,
        }

    return Message(
        ticket_id=ticket_id,
        content=message.content,
        type=message.message_type,
        sender_role=sender_role,
        sender_name=message.sender_name,
        sender_id=sender_id,
        is_internal=False,
        is_read=sender_role != "client",
        meta={
            "evolution_instance": message.instance_name,
            "evolution_message_id": message.gateway_message_id,
            "sender_phone": message.sender_phone,
            "normalized_phone": normalize_phone(message.sender_phone),
            "remote_jid": message.remote_jid,
            "participant": message.participant,
            "is_group": message.is_group,
            "is_from_whatsapp": True,
            "from_me": message.from_me,
            "media_url": message.media_url,
            "media_caption": message.media_caption,
            "file_name": message.file_name,
            "quoted_message": quoted,
            "raw_message": message.raw,
        },
        created_at=message.timestamp,
    )


def bump_ticket(db: Session, ticket_id: str, timestamp: datetime, unread: bool = True) -> None:
    """
    Move the ticket's last_message_at forward and flag it unread.

    Advisory bookkeeping for UI sorting: failures are logged, not raised.
    """
    try:
        ticket = db.get(Ticket, ticket_id)
        if ticket is None:
            logger.warning(f"Cannot bump unknown ticket {ticket_id}")
            return
        current = as_utc(ticket.last_message_at)
        if current is None or as_utc(timestamp) > current:
            ticket.last_message_at = timestamp
        if unread:
            ticket.unread = True
        ticket.updated_at = datetime.now(timezone.utc)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to bump ticket {ticket_id}: {e}")


def persist_message(
    db: Session,
    ticket_id: str,
    message: NormalizedMessage,
    sender_role: str = "client",
    sender_id: Optional[str] = None,
) -> Optional[Message]:
    """
    Append a message to a ticket, then bump the ticket.

    Returns the stored row, or None when the gateway message id is already
    on the ticket (redelivery). Insert failures are rolled back and raised.
    """
    if message_exists(db, ticket_id, message.gateway_message_id):
        logger.info(f"Duplicate delivery of {message.gateway_message_id} on ticket {ticket_id}")
        return None

    row = build_message_row(ticket_id, message, sender_role, sender_id)
    try:
        db.add(row)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Failed to store message {message.gateway_message_id} on ticket {ticket_id}")
        raise

    bump_ticket(db, ticket_id, message.timestamp, unread=sender_role == "client")
    logger.info(f"Message {message.gateway_message_id} stored on ticket {ticket_id}")
    return row


# =============================================================================
# Full routing path
# =============================================================================

def route_message(
    db: Session,
    message: NormalizedMessage,
    channel: str = "whatsapp",
    priority: str = "normal",
    batcher: Optional["MessageBatcher"] = None,
) -> RoutingResult:
    resolution = resolve_ticket(db, message, channel=channel, priority=priority)

    if resolution.ticket_id is None:
        return RoutingResult(
            ticket_id=None,
            ticket_created=False,
            outcome=resolution.outcome,
            message_result="skipped",
        )

    if batcher is not None:
        batcher.enqueue(resolution.ticket_id, message)
        message_result = "queued"
    else:
        stored = persist_message(db, resolution.ticket_id, message)
        message_result = "created" if stored is not None else "duplicate"

    return RoutingResult(
        ticket_id=resolution.ticket_id,
        ticket_created=resolution.created,
        outcome=resolution.outcome,
        message_result=message_result,
    )
