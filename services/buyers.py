"""Buyer lookup by caller phone number."""

from __future__ import annotations

from loguru import logger

from db import query_one
from lib.phone import last_ten_digits, normalize_phone_number
from lib.sanitize import mask_phone


async def find_buyer_by_phone(tenant_id: str, phone: str | None) -> str | None:
    """Return the id of the tenant's buyer with this phone number, if any.

    Matches the E.164 form or the last 10 digits against the main,
    secondary and mobile numbers. Lookup errors never block a call.
    """
    normalized = normalize_phone_number(phone)
    if not normalized:
        return None
    last10 = last_ten_digits(normalized)

    try:
        row = await query_one(
            """SELECT id FROM buyers
               WHERE tenant_id = $1 AND (
                 phone_main IN ($2, $3) OR phone_secondary IN ($2, $3) OR phone_mobile IN ($2, $3)
               )
               LIMIT 1""",
            tenant_id,
            normalized,
            last10,
        )
    except Exception as e:
        logger.error("Buyer lookup failed for {phone}: {err}", phone=mask_phone(phone), err=str(e))
        return None

    if row:
        logger.debug("Matched buyer {id} for {phone}", id=row["id"], phone=mask_phone(phone))
        return str(row["id"])
    return None
