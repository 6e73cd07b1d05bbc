"""
Maps Evolution API message payloads onto NormalizedMessage records.

A WhatsApp message object may carry several sub-type fields at once; the
first match in MESSAGE_TYPE_PRIORITY wins.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ticket_router.phone import format_phone_number, is_group_jid, phone_from_jid

logger = logging.getLogger(__name__)


@dataclass
class QuotedMessage:
    id: Optional[str]
    content: str
    sender: str


@dataclass
class NormalizedMessage:
    """One inbound chat message, independent of the gateway's wire format."""
    sender_phone: str  # raw digits, normalized later by the resolver
    sender_name: str
    content: str
    message_type: str
    instance_name: str
    gateway_message_id: str
    timestamp: datetime
    from_me: bool = False
    is_group: bool = False
    remote_jid: str = ""
    participant: Optional[str] = None
    media_url: Optional[str] = None
    media_caption: Optional[str] = None
    file_name: Optional[str] = None
    quoted: Optional[QuotedMessage] = None
    raw: dict = field(default_factory=dict)


@dataclass
class ParsedContent:
    content: str
    message_type: str
    media_url: Optional[str] = None
    caption: Optional[str] = None
    file_name: Optional[str] = None
    quoted: Optional[QuotedMessage] = None


# =============================================================================
# Content parsers, one per message sub-type
# =============================================================================

def _parse_conversation(value: Any) -> Optional[ParsedContent]:
    if isinstance(value, str) and value:
        return ParsedContent(content=value, message_type="text")
    return None


def _parse_extended_text(value: dict) -> Optional[ParsedContent]:
    text = value.get("text")
    if not text:
        return None

    quoted = None
    context = value.get("contextInfo") or {}
    if context.get("quotedMessage"):
        quoted = QuotedMessage(
            id=context.get("stanzaId"),
            content=quoted_content(context["quotedMessage"]),
            sender=context.get("participant") or "unknown",
        )
    return ParsedContent(content=text, message_type="text", quoted=quoted)


def _media_parser(message_type: str, label: str) -> Callable[[dict], ParsedContent]:
    def parse(value: dict) -> ParsedContent:
        caption = value.get("caption") or None
        return ParsedContent(
            content=caption or f"[{label}]",
            message_type=message_type,
            media_url=value.get("url") or None,
            caption=caption,
        )
    return parse


def _parse_document(value: dict) -> ParsedContent:
    caption = value.get("caption") or None
    file_name = value.get("fileName") or value.get("title") or None
    placeholder = f"[Document: {file_name}]" if file_name else "[Document]"
    return ParsedContent(
        content=caption or placeholder,
        message_type="document",
        media_url=value.get("url") or None,
        caption=caption,
        file_name=file_name,
    )


def _parse_location(value: dict) -> ParsedContent:
    lat = value.get("degreesLatitude")
    lng = value.get("degreesLongitude")
    return ParsedContent(content=f"[Location: {lat}, {lng}]", message_type="location")


def _parse_contact(value: dict) -> ParsedContent:
    return ParsedContent(content=f"[Contact: {value.get('displayName', '')}]", message_type="contact")


def _parse_live_location(value: dict) -> ParsedContent:
    return ParsedContent(content="[Live location]", message_type="live_location")


def _parse_poll(value: dict) -> ParsedContent:
    return ParsedContent(content=f"[Poll: {value.get('name', '')}]", message_type="poll")


def _parse_list(value: dict) -> ParsedContent:
    return ParsedContent(content=f"[List: {value.get('title', '')}]", message_type="list")


def _parse_buttons(value: dict) -> ParsedContent:
    return ParsedContent(content=f"[Buttons: {value.get('contentText', '')}]", message_type="buttons")


def _parse_template(value: dict) -> ParsedContent:
    return ParsedContent(content="[Template message]", message_type="template")


def _parse_reaction(value: dict) -> Optional[ParsedContent]:
    # An empty reaction text is the removal of a reaction
    emoji = value.get("text")
    if not emoji:
        return None
    return ParsedContent(content=f"[Reaction: {emoji}]", message_type="reaction")


MESSAGE_TYPE_PRIORITY = (
    ("conversation", _parse_conversation),
    ("extendedTextMessage", _parse_extended_text),
    ("imageMessage", _media_parser("image", "Image")),
    ("videoMessage", _media_parser("video", "Video")),
    ("audioMessage", _media_parser("audio", "Audio")),
    ("documentMessage", _parse_document),
    ("stickerMessage", _media_parser("sticker", "Sticker")),
    ("locationMessage", _parse_location),
    ("contactMessage", _parse_contact),
    ("liveLocationMessage", _parse_live_location),
    ("pollCreationMessage", _parse_poll),
    ("listMessage", _parse_list),
    ("buttonsMessage", _parse_buttons),
    ("templateMessage", _parse_template),
    ("reactionMessage", _parse_reaction),
)

UNSUPPORTED_PLACEHOLDER = "[Unsupported message]"

# Seconds values stay below this until the year 5138
MILLISECOND_TIMESTAMP_THRESHOLD = 100_000_000_000


def parse_message_content(message: dict) -> Optional[ParsedContent]:
    """
    Resolve the content of a WhatsApp message object.

    Returns None when the object is empty or its only populated field
    carries nothing to show (e.g. empty text, removed reaction).
    """
    if not message:
        return None

    for key, parser in MESSAGE_TYPE_PRIORITY:
        value = message.get(key)
        if value is None:
            continue
        if key != "conversation" and not isinstance(value, dict):
            continue
        parsed = parser(value)
        if parsed is not None:
            return parsed

    if any(key in message for key, _ in MESSAGE_TYPE_PRIORITY):
        # A known field was present but empty
        return None

    return ParsedContent(content=UNSUPPORTED_PLACEHOLDER, message_type="unsupported")


def quoted_content(quoted: dict) -> str:
    if quoted.get("conversation"):
        return quoted["conversation"]
    if (quoted.get("extendedTextMessage") or {}).get("text"):
        return quoted["extendedTextMessage"]["text"]
    if (quoted.get("imageMessage") or {}).get("caption"):
        return quoted["imageMessage"]["caption"]
    return "[Quoted message]"


def parse_timestamp(value: Any) -> datetime:
    """
    messageTimestamp arrives as seconds (int or str), sometimes as {"low": n}
    and sometimes in milliseconds. Anything unusable falls back to now.
    """
    if isinstance(value, dict):
        value = value.get("low")
    try:
        seconds = int(value)
        if seconds > MILLISECOND_TIMESTAMP_THRESHOLD:
            seconds = seconds // 1000
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


# =============================================================================
# Entry point
# =============================================================================

def extract_message(data: Any, instance_name: str) -> Optional[NormalizedMessage]:
    """
    Build a NormalizedMessage from one MESSAGES_UPSERT data item.

    Returns None (and logs why) for anything that must not be routed:
    no message identity, agent's own outbound echo, no resolvable content.
    """
    if not isinstance(data, dict):
        logger.warning("Message payload is not an object, skipping")
        return None

    key = data.get("key") or {}
    message_id = key.get("id")
    remote_jid = key.get("remoteJid")
    if not message_id or not remote_jid:
        logger.info("Message without id or remoteJid, skipping")
        return None

    if key.get("fromMe"):
        logger.info(f"Own outbound message {message_id} ignored")
        return None

    parsed = parse_message_content(data.get("message") or {})
    if parsed is None or (not parsed.content and not parsed.media_url):
        logger.info(f"Message {message_id} has no text or media, skipping")
        return None

    sender_phone = phone_from_jid(remote_jid)
    group = is_group_jid(remote_jid)
    sender_name = (
        data.get("pushName")
        or data.get("verifiedBizName")
        or format_phone_number(sender_phone)
    )

    return NormalizedMessage(
        sender_phone=sender_phone,
        sender_name=sender_name,
        content=parsed.content,
        message_type=parsed.message_type,
        instance_name=instance_name,
        gateway_message_id=message_id,
        timestamp=parse_timestamp(data.get("messageTimestamp")),
        from_me=False,
        is_group=group,
        remote_jid=remote_jid,
        participant=key.get("participant"),
        media_url=parsed.media_url,
        media_caption=parsed.caption,
        file_name=parsed.file_name,
        quoted=parsed.quoted,
        raw=data,
    )
