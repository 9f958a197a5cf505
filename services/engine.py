"""Process-wide wiring of the call-flow engine.

Routes get their collaborators from `get_engine()`. Tests install an engine
built on fakes with `set_engine()`.
"""

from __future__ import annotations

from dataclasses import dataclass

from config import settings
from flows.interpreter import StepInterpreter
from flows.twiml import CallbackUrls
from services.conference import ConferenceOrchestrator
from services.destinations import DestinationResolver
from services.recordings import RecordingService
from services.segments import SegmentStore
from services.telephony import TelephonyClient, TwilioTelephony
from services.transfer import TransferOrchestrator


@dataclass
class Engine:
    urls: CallbackUrls
    store: SegmentStore
    telephony: TelephonyClient
    resolver: DestinationResolver
    conference: ConferenceOrchestrator
    interpreter: StepInterpreter
    transfers: TransferOrchestrator
    recordings: RecordingService


def build_engine(
    *,
    base_url: str | None = None,
    store: SegmentStore | None = None,
    telephony: TelephonyClient | None = None,
    directory=None,
    transcriber=None,
    clock=None,
) -> Engine:
    urls = CallbackUrls(base_url if base_url is not None else settings.base_url)
    store = store or SegmentStore()
    telephony = telephony or TwilioTelephony(settings.twilio_account_sid, settings.twilio_auth_token)
    resolver = DestinationResolver(directory)
    conference = ConferenceOrchestrator(store, telephony, urls, default_caller_id=settings.twilio_phone_number)
    return Engine(
        urls=urls,
        store=store,
        telephony=telephony,
        resolver=resolver,
        conference=conference,
        interpreter=StepInterpreter(urls, conference, resolver, store, clock=clock),
        transfers=TransferOrchestrator(store, telephony, conference, urls, directory),
        recordings=RecordingService(store, telephony, transcriber),
    )


_engine: Engine | None = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def set_engine(engine: Engine | None) -> None:
    global _engine
    _engine = engine
