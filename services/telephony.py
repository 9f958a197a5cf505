"""Telephony provider client.

Orchestration code talks to the provider only through `TelephonyClient`,
so it can run against `tests/mocks/fake_telephony.FakeTelephony`. The
production implementation wraps the Twilio REST client; its calls are
blocking, so they run in a worker thread.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import httpx
from loguru import logger
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from config import settings
from flows.twiml import AGENT_STATUS_EVENTS


class TelephonyError(Exception):
    """A provider request (dial, terminate, redirect, download) failed."""


class TelephonyClient(Protocol):
    async def place_call(
        self,
        *,
        to: str,
        from_: str,
        twiml: str,
        status_callback: str,
        timeout: int,
    ) -> str:
        """Place an outbound leg and return its call sid."""
        ...

    async def terminate_call(self, call_sid: str) -> None:
        ...

    async def redirect_call(self, call_sid: str, twiml: str) -> None:
        """Replace the TwiML a live call is executing."""
        ...

    async def fetch_recording(self, recording_url: str) -> bytes:
        ...


class TwilioTelephony:
    """TelephonyClient backed by the Twilio REST API."""

    def __init__(self, account_sid: str | None = None, auth_token: str | None = None):
        self.account_sid = account_sid or settings.twilio_account_sid
        self.auth_token = auth_token or settings.twilio_auth_token
        self._client: TwilioClient | None = None

    def _get_client(self) -> TwilioClient:
        if self._client is None:
            if not self.account_sid or not self.auth_token:
                raise TelephonyError("Twilio not configured")
            self._client = TwilioClient(self.account_sid, self.auth_token)
        return self._client

    async def place_call(self, *, to, from_, twiml, status_callback, timeout) -> str:
        client = self._get_client()
        try:
            call = await asyncio.to_thread(
                client.calls.create,
                to=to,
                from_=from_,
                twiml=twiml,
                timeout=timeout,
                status_callback=status_callback,
                status_callback_event=AGENT_STATUS_EVENTS,
                status_callback_method="POST",
            )
        except TwilioRestException as e:
            raise TelephonyError(f"Dial to {to} failed: {e.msg}") from e
        return call.sid

    async def terminate_call(self, call_sid: str) -> None:
        client = self._get_client()
        try:
            await asyncio.to_thread(client.calls(call_sid).update, status="completed")
        except TwilioRestException as e:
            raise TelephonyError(f"Terminate {call_sid} failed: {e.msg}") from e

    async def redirect_call(self, call_sid: str, twiml: str) -> None:
        client = self._get_client()
        try:
            await asyncio.to_thread(client.calls(call_sid).update, twiml=twiml)
        except TwilioRestException as e:
            raise TelephonyError(f"Redirect {call_sid} failed: {e.msg}") from e

    async def fetch_recording(self, recording_url: str) -> bytes:
        url = recording_url if recording_url.endswith(".mp3") else f"{recording_url}.mp3"
        async with httpx.AsyncClient(timeout=httpx.Timeout(60.0), follow_redirects=True) as http:
            try:
                resp = await http.get(url, auth=(self.account_sid, self.auth_token))
                resp.raise_for_status()
            except httpx.HTTPError as e:
                raise TelephonyError(f"Recording download failed: {e}") from e
        logger.debug("Downloaded recording ({n} bytes)", n=len(resp.content))
        return resp.content
