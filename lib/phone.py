"""Phone number helpers.

Every number stored by this service is E.164 (+1XXXXXXXXXX for US lines).
"""

from __future__ import annotations

import re

_E164 = re.compile(r"^\+[1-9]\d{1,14}$")


def normalize_phone_number(phone: str | None) -> str | None:
    """Normalize a phone number to E.164.

    Accepts (713) 555-1234, 713-555-1234, 7135551234, +17135551234.
    Returns None when there are too few digits to be a phone number.
    """
    if not phone:
        return None

    has_plus = phone.startswith("+")
    digits = re.sub(r"\D", "", phone)
    if not digits:
        return None

    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) > 11 and has_plus:
        return f"+{digits}"
    if len(digits) >= 11:
        # 11+ digits without a leading 1: assume international
        return f"+{digits}"
    return None


def is_valid_e164(phone: str | None) -> bool:
    return bool(phone) and bool(_E164.match(phone))


def last_ten_digits(phone: str | None) -> str:
    """Keep the last 10 digits of a phone number ('' when absent)."""
    if not phone:
        return ""
    return re.sub(r"\D", "", phone)[-10:]


def phone_numbers_match(a: str | None, b: str | None) -> bool:
    na, nb = normalize_phone_number(a), normalize_phone_number(b)
    return bool(na) and na == nb
