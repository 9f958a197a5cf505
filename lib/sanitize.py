"""PII sanitization utilities.

Masks phone numbers, emails and dial destinations, and truncates content
for safe logging.
"""

from __future__ import annotations

import re


def mask_phone(phone: str | None) -> str:
    """Mask a phone number: '+15551234567' → '***4567'."""
    if not phone:
        return "[no-phone]"
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 4:
        return "****"
    return "***" + digits[-4:]


def mask_email(email: str | None) -> str:
    """Mask an email for logs: 'jane.doe@example.com' → 'j***@example.com'."""
    if not email or "@" not in email:
        return "[no-email]"
    local, domain = email.split("@", 1)
    return (local[:1] or "*") + "***@" + domain


def mask_destination(destination: str | None) -> str:
    """Mask any dial destination: emails and phones are masked, user ids pass through."""
    if not destination:
        return "[none]"
    if "@" in destination:
        return mask_email(destination)
    if destination.startswith("client:") or (len(destination) == 36 and destination.count("-") == 4):
        return destination
    return mask_phone(destination)


def truncate(text: str | None, max_len: int = 30) -> str:
    """Truncate content for safe logging."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."
