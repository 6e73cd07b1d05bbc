"""
Webhook event dispatch.

EVENT_HANDLERS maps an Evolution API event type onto its handler. Message
upserts go through extraction and ticket routing; every other known event
is a single-table upsert or a logged acknowledgement. dispatch() never
raises: failures come back as DispatchResult(success=False).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticket_router.context import AppContext
from ticket_router.extractor import extract_message
from ticket_router.metrics import record_webhook_outcome
from ticket_router.models import EvolutionContact, EvolutionInstance, Message
from ticket_router.phone import phone_from_jid
from ticket_router.routing import route_message
from ticket_router.schemas import GatewayEnvelope

logger = logging.getLogger(__name__)

DELETED_PLACEHOLDER = "[Message deleted]"
READ_STATUSES = {"READ", "PLAYED"}

CONNECTION_STATUS = {
    "open": "connected",
    "connecting": "connecting",
    "close": "disconnected",
}


@dataclass
class DispatchResult:
    success: bool
    processed: bool
    event: str
    message: str
    # created, reused, duplicate, queued, ignored, degraded, updated, acknowledged, error
    result: str = "acknowledged"
    ticket_id: Optional[str] = None
    ticket_created: bool = False
    message_id: Optional[str] = None


def normalize_event_name(event: str) -> str:
    """'messages.upsert' -> 'MESSAGES_UPSERT'."""
    return (event or "").strip().replace(".", "_").replace("-", "_").upper()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _items(data: Any, list_key: Optional[str] = None) -> Iterable[dict]:
    if list_key and isinstance(data, dict) and isinstance(data.get(list_key), list):
        data = data[list_key]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        return [data]
    return []


# =============================================================================
# MESSAGES_UPSERT
# =============================================================================

def handle_messages_upsert(db: Session, envelope: GatewayEnvelope, ctx: AppContext) -> DispatchResult:
    event = normalize_event_name(envelope.event)
    settings = ctx.settings
    last: Optional[DispatchResult] = None
    routed = 0
    degraded = 0

    for item in _items(envelope.data):
        message = extract_message(item, envelope.instance)
        if message is None:
            continue

        routing = route_message(
            db,
            message,
            channel=settings.TICKET_CHANNEL,
            priority=settings.TICKET_DEFAULT_PRIORITY,
            batcher=ctx.batcher,
        )

        if routing.ticket_id is None:
            degraded += 1
            logger.error(
                f"Message {message.gateway_message_id} from {message.sender_phone} not stored: "
                "ticket could not be resolved"
            )
            continue

        routed += 1
        if routing.message_result == "duplicate":
            text = f"Duplicate message ignored on ticket {routing.ticket_id}"
        elif routing.message_result == "queued":
            text = f"Message queued for ticket {routing.ticket_id}"
        elif routing.ticket_created:
            text = f"Message stored on new ticket {routing.ticket_id}"
        else:
            text = f"Message stored on existing ticket {routing.ticket_id}"

        last = DispatchResult(
            success=True,
            processed=True,
            event=event,
            message=text,
            result=routing.message_result if routing.message_result != "created" else routing.outcome,
            ticket_id=routing.ticket_id,
            ticket_created=routing.ticket_created,
            message_id=message.gateway_message_id,
        )

    if last is not None:
        if routed > 1:
            last.message = f"{routed} messages routed; last: {last.message}"
        return last

    if degraded:
        return DispatchResult(
            success=False,
            processed=False,
            event=event,
            message="Ticket could not be resolved; message not stored",
            result="degraded",
        )

    return DispatchResult(True, False, event, "No routable message in event", result="ignored")


# =============================================================================
# Instance status upserts
# =============================================================================

def upsert_instance(db: Session, instance_name: str, **fields: Any) -> EvolutionInstance:
    """Insert or update the status row of an instance."""
    for attempt in range(2):
        row = (
            db.query(EvolutionInstance)
            .filter(EvolutionInstance.instance_name == instance_name)
            .first()
        )
        if row is None:
            row = EvolutionInstance(instance_name=instance_name)
            db.add(row)
        for name, value in fields.items():
            setattr(row, name, value)
        row.updated_at = _now()
        try:
            db.commit()
            return row
        except IntegrityError:
            # Another request inserted the row first
            db.rollback()
            if attempt:
                raise
    return row


def handle_connection_update(db: Session, envelope: GatewayEnvelope, ctx: AppContext) -> DispatchResult:
    data = envelope.data if isinstance(envelope.data, dict) else {}
    state = data.get("state") or "unknown"
    status = CONNECTION_STATUS.get(state, "disconnected")

    fields: Dict[str, Any] = {
        "status": status,
        "connection_state": state,
        "status_reason": str(data["statusReason"]) if data.get("statusReason") is not None else None,
    }
    if state == "open":
        fields["connected_at"] = _now()
        fields["qr_code"] = None
    elif state == "close":
        fields["disconnected_at"] = _now()

    upsert_instance(db, envelope.instance, **fields)
    logger.info(f"Instance {envelope.instance} connection state: {state}")
    return DispatchResult(True, True, normalize_event_name(envelope.event), f"Connection status updated: {status}", result="updated")


def handle_qrcode_updated(db: Session, envelope: GatewayEnvelope, ctx: AppContext) -> DispatchResult:
    data = envelope.data if isinstance(envelope.data, dict) else {}
    qrcode = data.get("qrcode")
    if isinstance(qrcode, dict):
        qr = qrcode.get("base64") or qrcode.get("code")
    else:
        qr = qrcode or data.get("base64") or data.get("qr")

    upsert_instance(db, envelope.instance, qr_code=qr, status="qrcode", connection_state="connecting")
    logger.info(f"QR code updated for instance {envelope.instance}")
    return DispatchResult(True, True, normalize_event_name(envelope.event), "QR code updated", result="updated")


def handle_instance_ready(db: Session, envelope: GatewayEnvelope, ctx: AppContext) -> DispatchResult:
    data = envelope.data if isinstance(envelope.data, dict) else {}
    user = data.get("user") or {}
    upsert_instance(
        db,
        envelope.instance,
        status="connected",
        connection_state="open",
        connected_at=_now(),
        profile_name=user.get("name"),
        phone_number=phone_from_jid(user.get("id") or "") or None,
    )
    return DispatchResult(True, True, normalize_event_name(envelope.event), "Instance ready", result="updated")


def handle_instance_logout(db: Session, envelope: GatewayEnvelope, ctx: AppContext) -> DispatchResult:
    upsert_instance(
        db,
        envelope.instance,
        status="disconnected",
        connection_state="close",
        disconnected_at=_now(),
        qr_code=None,
    )
    return DispatchResult(True, True, normalize_event_name(envelope.event), "Instance logged out", result="updated")


# =============================================================================
# Message status updates
# =============================================================================

def _messages_by_gateway_id(db: Session, gateway_message_id: str) -> list:
    return (
        db.query(Message)
        .filter(Message.meta["evolution_message_id"].as_string() == gateway_message_id)
        .all()
    )


def _gateway_id(item: dict) -> Optional[str]:
    key = item.get("key") or {}
    return key.get("id") or item.get("keyId") or item.get("messageId") or item.get("id")


def handle_messages_update(db: Session, envelope: GatewayEnvelope, ctx: AppContext) -> DispatchResult:
    updated = 0
    for item in _items(envelope.data):
        gateway_id = _gateway_id(item)
        status = item.get("status") or (item.get("update") or {}).get("status")
        if not gateway_id or not status:
            continue
        for row in _messages_by_gateway_id(db, gateway_id):
            row.meta = {**(row.meta or {}), "delivery_status": str(status), "status_updated_at": _now().isoformat()}
            if str(status).upper() in READ_STATUSES:
                row.is_read = True
            updated += 1
    db.commit()
    return DispatchResult(True, updated > 0, normalize_event_name(envelope.event), f"{updated} message(s) updated", result="updated")


def handle_message_receipt(db: Session, envelope: GatewayEnvelope, ctx: AppContext) -> DispatchResult:
    updated = 0
    for item in _items(envelope.data):
        gateway_id = _gateway_id(item)
        receipt = item.get("receipt") or {}
        if not gateway_id or not receipt:
            continue
        for row in _messages_by_gateway_id(db, gateway_id):
            meta = dict(row.meta or {})
            if receipt.get("deliveredTimestamp") or receipt.get("receiptTimestamp"):
                meta["delivered"] = True
            if receipt.get("readTimestamp"):
                meta["read"] = True
                row.is_read = True
            row.meta = meta
            updated += 1
    db.commit()
    return DispatchResult(True, updated > 0, normalize_event_name(envelope.event), f"{updated} receipt(s) applied", result="updated")


def handle_messages_delete(db: Session, envelope: GatewayEnvelope, ctx: AppContext) -> DispatchResult:
    deleted = 0
    for item in _items(envelope.data):
        gateway_id = _gateway_id(item)
        if not gateway_id:
            continue
        for row in _messages_by_gateway_id(db, gateway_id):
            row.content = DELETED_PLACEHOLDER
            row.meta = {**(row.meta or {}), "deleted": True, "deleted_at": _now().isoformat()}
            deleted += 1
    db.commit()
    return DispatchResult(True, deleted > 0, normalize_event_name(envelope.event), f"{deleted} message(s) marked deleted", result="updated")


# =============================================================================
# Contacts
# =============================================================================

def handle_contacts_upsert(db: Session, envelope: GatewayEnvelope, ctx: AppContext) -> DispatchResult:
    count = 0
    for contact in _items(envelope.data, list_key="contacts"):
        contact_id = contact.get("id") or contact.get("remoteJid")
        if not contact_id:
            continue
        row = (
            db.query(EvolutionContact)
            .filter(
                EvolutionContact.instance_name == envelope.instance,
                EvolutionContact.contact_id == contact_id,
            )
            .first()
        )
        if row is None:
            row = EvolutionContact(instance_name=envelope.instance, contact_id=contact_id)
            db.add(row)
        row.name = contact.get("name") or contact.get("pushName") or row.name
        row.notify_name = contact.get("notify") or row.notify_name
        row.verified_name = contact.get("verifiedName") or row.verified_name
        row.profile_pic_url = contact.get("profilePicUrl") or contact.get("imgUrl") or row.profile_pic_url
        row.updated_at = _now()
        count += 1
    db.commit()
    return DispatchResult(True, count > 0, normalize_event_name(envelope.event), f"{count} contact(s) saved", result="updated")


# =============================================================================
# Acknowledged without storage
# =============================================================================

def handle_acknowledge(db: Session, envelope: GatewayEnvelope, ctx: AppContext) -> DispatchResult:
    event = normalize_event_name(envelope.event)
    logger.info(f"Event {event} from {envelope.instance} acknowledged")
    return DispatchResult(True, True, event, f"Event {event} acknowledged", result="acknowledged")


Handler = Callable[[Session, GatewayEnvelope, AppContext], DispatchResult]

EVENT_HANDLERS: Dict[str, Handler] = {
    "MESSAGES_UPSERT": handle_messages_upsert,
    "MESSAGES_UPDATE": handle_messages_update,
    "MESSAGES_DELETE": handle_messages_delete,
    "MESSAGE_RECEIPT_UPDATE": handle_message_receipt,
    "CONNECTION_UPDATE": handle_connection_update,
    "QRCODE_UPDATED": handle_qrcode_updated,
    "INSTANCE_READY": handle_instance_ready,
    "INSTANCE_LOGOUT": handle_instance_logout,
    "LOGOUT_INSTANCE": handle_instance_logout,
    "CONTACTS_UPSERT": handle_contacts_upsert,
    "CONTACTS_UPDATE": handle_contacts_upsert,
}

for _event in (
    "SEND_MESSAGE",
    "MESSAGES_SET",
    "CONTACTS_SET",
    "PRESENCE_UPDATE",
    "CHATS_SET",
    "CHATS_UPSERT",
    "CHATS_UPDATE",
    "CHATS_DELETE",
    "GROUPS_UPSERT",
    "GROUP_UPDATE",
    "GROUP_PARTICIPANTS_UPDATE",
    "CALL",
    "CALL_OFFER",
    "CALL_ACCEPT",
    "CALL_REJECT",
    "TYPING_START",
    "TYPING_STOP",
    "MEDIA_UPLOAD",
    "MEDIA_DOWNLOAD",
    "STATUS_UPDATE",
    "LABELS_EDIT",
    "LABELS_ASSOCIATION",
    "APPLICATION_STARTUP",
    "NEW_JWT_TOKEN",
):
    EVENT_HANDLERS[_event] = handle_acknowledge


def dispatch(db: Session, envelope: GatewayEnvelope, ctx: AppContext) -> DispatchResult:
    """Route one webhook envelope to its handler. Never raises."""
    event = normalize_event_name(envelope.event)
    handler = EVENT_HANDLERS.get(event)

    if handler is None:
        logger.info(f"Unhandled event type {envelope.event!r} from {envelope.instance!r}")
        result = DispatchResult(
            success=True,
            processed=False,
            event=event or "unknown",
            message=f"Event {envelope.event or 'unknown'} received but not processed",
            result="ignored",
        )
        record_webhook_outcome(result.event, result.result)
        return result

    if not envelope.instance and handler is not handle_acknowledge:
        logger.warning(f"{event} without instance name, skipping")
        result = DispatchResult(True, False, event, "Missing instance name", result="ignored")
        record_webhook_outcome(result.event, result.result)
        return result

    try:
        result = handler(db, envelope, ctx)
    except Exception as e:
        db.rollback()
        logger.exception(f"Failed to process {event} from {envelope.instance}")
        result = DispatchResult(
            success=False,
            processed=False,
            event=event,
            message=f"Processing failed: {e}",
            result="error",
        )

    record_webhook_outcome(result.event, result.result)
    return result
