"""Twilio webhook verification.

Validates X-Twilio-Signature on every /voice endpoint. Callback URLs carry
query parameters (step, branch, seq, ...), and Twilio signs the full URL,
so the query string is part of what is checked.
"""

from __future__ import annotations

from fastapi import HTTPException, Request
from loguru import logger
from twilio.request_validator import RequestValidator

from config import settings


async def verify_twilio_webhook(request: Request) -> None:
    """FastAPI dependency that validates Twilio webhook signatures.

    Usage: Depends(verify_twilio_webhook)

    Outside production, unsigned requests from localhost are let through.
    """
    auth_token = settings.twilio_auth_token
    if not auth_token:
        logger.error("TWILIO_AUTH_TOKEN not set, cannot validate webhooks")
        raise HTTPException(status_code=500, detail="Server configuration error")

    signature = request.headers.get("x-twilio-signature", "")

    # Build the URL Twilio signed (respect proxy headers)
    protocol = request.headers.get("x-forwarded-proto", request.url.scheme)
    host = request.headers.get("x-forwarded-host", request.headers.get("host", ""))
    url = f"{protocol}://{host}{request.url.path}"
    if request.url.query:
        url += f"?{request.url.query}"

    is_localhost = "localhost" in host or "127.0.0.1" in host
    if is_localhost and not signature and not settings.is_production:
        logger.warning("Skipping Twilio signature validation for localhost")
        return

    params = dict(await request.form()) if request.method == "POST" else {}

    validator = RequestValidator(auth_token)
    if not validator.validate(url, params, signature):
        logger.warning("Invalid Twilio webhook signature for {path}", path=request.url.path)
        raise HTTPException(status_code=403, detail="Invalid Twilio signature")
