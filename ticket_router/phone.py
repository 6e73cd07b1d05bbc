"""
Phone number helpers.

The gateway and the agents' UI hand us phone numbers as WhatsApp JIDs,
E.164-ish strings, legacy 10-digit numbers and already-normalized keys.
Ticket lookups only work if all of them collapse to the same key.
"""

import re

_NON_DIGITS = re.compile(r"\D")

BRAZIL_COUNTRY_CODE = "55"
GROUP_JID_SUFFIX = "@g.us"


def normalize_phone(raw: str) -> str:
    """
    Canonical search key for a phone number.

    - strip everything that is not a digit
    - 13 digits starting with 55: drop the country code
    - 11 digits (area code + 9-digit mobile): unchanged
    - 10 digits (legacy mobile): insert a 9 after the area code
    - anything else: the bare digits

    Never raises; garbage in gives a key that matches nothing. Note that a
    12-digit "55" + legacy number is returned as is and will not meet its
    10-digit spelling.
    """
    cleaned = _NON_DIGITS.sub("", raw or "")

    if len(cleaned) == 13 and cleaned.startswith(BRAZIL_COUNTRY_CODE):
        return cleaned[2:]

    if len(cleaned) == 11:
        return cleaned

    if len(cleaned) == 10:
        return cleaned[:2] + "9" + cleaned[2:]

    return cleaned


def phone_from_jid(jid: str) -> str:
    """'5511988887766@s.whatsapp.net' -> '5511988887766' (device suffix dropped)."""
    if not jid:
        return ""
    user = jid.split("@", 1)[0]
    return user.split(":", 1)[0]


def is_group_jid(jid: str) -> bool:
    return bool(jid) and jid.endswith(GROUP_JID_SUFFIX)


def format_phone_number(phone: str) -> str:
    """Human readable form used as a display name of last resort."""
    cleaned = _NON_DIGITS.sub("", phone or "")

    if len(cleaned) == 13 and cleaned.startswith(BRAZIL_COUNTRY_CODE):
        return f"+{cleaned[:2]} ({cleaned[2:4]}) {cleaned[4:9]}-{cleaned[9:]}"

    return f"+{cleaned}"
