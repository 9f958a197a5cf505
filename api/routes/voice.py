"""Voice webhook routes.

Every Twilio callback for a call flow lands here:
1. /voice/incoming: a call to a tenant line starts its flow
2. /voice/flow: continuation at a step (menu digits, keypad, round robin retry)
3. /voice/conference, /voice/agent-status: bridge orchestration events
4. /voice/recording, /voice/voicemail, /voice/transcription: call artifacts
5. /voice/outgoing: calls placed from the browser client

Handlers never let an exception reach Twilio: TwiML routes fall back to the
default "unavailable" message and event routes answer an empty response.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from loguru import logger
from twilio.twiml.voice_response import Dial, VoiceResponse

from api.middleware.rate_limit import WEBHOOK_LIMIT, limiter
from api.middleware.twilio import verify_twilio_webhook
from config import settings
from flows.interpreter import CallContext
from flows.twiml import (
    NOT_AVAILABLE_MESSAGE,
    VOICEMAIL_THANKS,
    default_twiml,
    empty_twiml,
    hangup_twiml,
    redirect_twiml,
    ring_twiml,
    say,
)
from lib.phone import normalize_phone_number
from lib.sanitize import mask_phone
from services import call_flows, users
from services.conference import FINAL_LEG_STATUSES
from services.engine import get_engine
from services.segments import TERMINAL_STATUSES, Segment, utcnow

router = APIRouter(dependencies=[Depends(verify_twilio_webhook)])


def _twiml(content: str) -> Response:
    return Response(content=content, media_type="text/xml")


def _int(value, default: int | None = 0) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


async def _owns_call(tenant_id: str, call_sid: str) -> bool:
    """True if the chain of `call_sid` belongs to `tenant_id`."""
    if await get_engine().store.get_segment(call_sid, 0, tenant_id) is not None:
        return True
    logger.warning("[{cs}] Callback for a call outside tenant {t}, ignored", cs=call_sid, t=tenant_id)
    return False


def _context(line, call_sid: str, form: dict, seg: Segment | None) -> CallContext:
    return CallContext(
        tenant_id=line.tenant_id,
        line_id=line.line_id,
        call_sid=seg.original_call_sid if seg else call_sid,
        flow_id=line.flow_id,
        from_number=(seg.from_number if seg else None) or form.get("From"),
        to_number=(seg.to_number if seg else None) or form.get("To") or line.phone_number,
        segment_number=seg.segment_number if seg else 0,
        record_calls=line.record_inbound_calls,
        variables=dict(seg.scratch.variables) if seg else {},
        tags=list(seg.tags) if seg else [],
    )


# ---------------------------------------------------------------------------
# Flow entry and continuation
# ---------------------------------------------------------------------------

@router.post("/voice/incoming/{tenant_id}/{line_id}")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_incoming(request: Request, tenant_id: str, line_id: str):
    """A call to one of the tenant's lines: create segment 0 and start the flow."""
    form = dict(await request.form())
    call_sid = form.get("CallSid", "")
    from_number = form.get("From", "")
    to_number = form.get("To", "")

    try:
        line = await call_flows.get_flow_for_line(line_id)
        if line is None or line.tenant_id != tenant_id:
            logger.warning("[{cs}] Unknown line {line} for tenant {t}", cs=call_sid, line=line_id, t=tenant_id)
            return _twiml(default_twiml())

        engine = get_engine()
        seg = await engine.store.create_call(
            tenant_id,
            call_sid,
            "inbound",
            normalize_phone_number(from_number) or from_number,
            normalize_phone_number(to_number) or to_number,
            status=form.get("CallStatus") or "ringing",
        )
        logger.info(
            "[{cs}] Incoming call from {frm} on line {line} (flow={flow})",
            cs=call_sid, frm=mask_phone(from_number), line=line_id, flow=line.flow_id,
        )

        if not line.flow_id or not line.is_active or not line.steps:
            logger.info("[{cs}] No active flow on line {line}", cs=call_sid, line=line_id)
            return _twiml(default_twiml())

        ctx = _context(line, call_sid, form, seg)
        return _twiml(await engine.interpreter.execute(line.steps, 0, ctx))
    except Exception as e:
        logger.error("[{cs}] Incoming call failed: {err}", cs=call_sid, err=str(e))
        return _twiml(default_twiml())


@router.post("/voice/incoming/{tenant_id}/{line_id}/status")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_incoming_status(request: Request, tenant_id: str, line_id: str):
    """Caller call status: close the active segment when the caller is gone."""
    form = dict(await request.form())
    call_sid = form.get("CallSid", "")
    status = form.get("CallStatus", "")
    logger.info("[{cs}] Caller status {st}", cs=call_sid, st=status)

    try:
        engine = get_engine()
        seg = await engine.store.get_latest_segment(call_sid, tenant_id)
        if seg is None:
            return Response(status_code=200)

        if status in TERMINAL_STATUSES:
            def _close(s: Segment) -> None:
                if s.is_closed:
                    return
                s.status = status
                s.ended_at = utcnow()
                s.duration = s.elapsed_seconds(s.ended_at) if s.answered_at else 0

            await engine.store.mutate(call_sid, seg.segment_number, _close, tenant_id=tenant_id)
            await engine.conference.terminate_pending(call_sid, seg.segment_number, reason="caller hung up")
        elif status == "ringing":
            def _ringing(s: Segment) -> None:
                if not s.was_answered and not s.is_closed:
                    s.status = "ringing"

            await engine.store.mutate(call_sid, seg.segment_number, _ringing, tenant_id=tenant_id)
    except Exception as e:
        logger.error("[{cs}] Status callback failed: {err}", cs=call_sid, err=str(e))
    return Response(status_code=200)


@router.post("/voice/flow/{tenant_id}/{line_id}")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_flow(request: Request, tenant_id: str, line_id: str):
    """Continue a flow at `step` of `branch`, dispatching on `action`."""
    form = dict(await request.form())
    q = request.query_params
    call_sid = form.get("CallSid", "")
    step = _int(q.get("step"), 0)
    action = q.get("action") or None
    branch = q.get("branch") or None
    attempt = _int(q.get("attempt"), 0)
    seq = _int(q.get("seq"), None)

    try:
        line = await call_flows.get_flow_for_line(line_id)
        if line is None or line.tenant_id != tenant_id or not line.flow_id:
            return _twiml(default_twiml())

        if action == "round_robin":
            # the round robin attempt's <Dial action>
            return _twiml(await _after_dial(tenant_id, call_sid, seq))

        engine = get_engine()
        seg = await engine.store.get_latest_segment(call_sid, tenant_id)
        if seg is None:
            logger.warning("[{cs}] No call of tenant {t} to continue", cs=call_sid, t=tenant_id)
            return _twiml(default_twiml())
        ctx = _context(line, call_sid, form, seg)
        twiml = await engine.interpreter.handle_action(
            line.steps, step, ctx, action, form, branch=branch, attempt=attempt, var=q.get("var"),
        )
        return _twiml(twiml)
    except Exception as e:
        logger.error("[{cs}] Flow step {s} failed: {err}", cs=call_sid, s=step, err=str(e))
        return _twiml(default_twiml())


@router.post("/voice/flow/{tenant_id}/{line_id}/dial-status")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_dial_status(request: Request, tenant_id: str, line_id: str):
    """The caller's <Dial> into the conference ended."""
    form = dict(await request.form())
    call_sid = form.get("CallSid", "")
    try:
        return _twiml(await _after_dial(tenant_id, call_sid, _int(request.query_params.get("seq"), None)))
    except Exception as e:
        logger.error("[{cs}] Dial status failed: {err}", cs=call_sid, err=str(e))
        return _twiml(hangup_twiml())


async def _after_dial(tenant_id: str, call_sid: str, seq: int | None) -> str:
    """Hang up an answered call; otherwise claim the failed attempt's decision."""
    engine = get_engine()
    seg = await engine.store.get_latest_segment(call_sid, tenant_id)
    if seg is None:
        return hangup_twiml()
    if seg.scratch.answered_leg is not None or seg.was_answered:
        logger.info("[{cs}] Bridged call finished", cs=call_sid)
        return hangup_twiml()

    decision = await engine.conference.claim_after_dial(call_sid, seg.segment_number, seq)
    if decision is None:
        return hangup_twiml()
    url = engine.conference.decision_url(decision)
    logger.info("[{cs}] Dial ended unanswered, {a}", cs=call_sid, a=decision.action)
    return redirect_twiml(url) if url else hangup_twiml()


# ---------------------------------------------------------------------------
# Conference orchestration
# ---------------------------------------------------------------------------

@router.post("/voice/conference/{tenant_id}/{call_sid}/{segment}")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_conference(request: Request, tenant_id: str, call_sid: str, segment: int):
    form = dict(await request.form())
    try:
        if not await _owns_call(tenant_id, call_sid):
            return _twiml(empty_twiml())
        await get_engine().conference.handle_conference_event(
            call_sid,
            segment,
            form.get("StatusCallbackEvent", ""),
            form.get("CallSid"),
            seq=_int(request.query_params.get("seq"), None),
            conference_sid=form.get("ConferenceSid"),
        )
    except Exception as e:
        logger.error("[{cs}] Conference event failed: {err}", cs=call_sid, err=str(e))
    return _twiml(empty_twiml())


@router.post("/voice/agent-status/{tenant_id}/{call_sid}/{segment}")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_agent_status(request: Request, tenant_id: str, call_sid: str, segment: int):
    form = dict(await request.form())
    leg_sid = form.get("CallSid", "")
    status = form.get("CallStatus", "")
    logger.debug("[{cs}] Agent leg {leg}: {st}", cs=call_sid, leg=leg_sid, st=status)
    try:
        if status in FINAL_LEG_STATUSES and await _owns_call(tenant_id, call_sid):
            await get_engine().conference.leg_ended(
                call_sid, segment, leg_sid, status, seq=_int(request.query_params.get("seq"), None)
            )
    except Exception as e:
        logger.error("[{cs}] Agent status failed: {err}", cs=call_sid, err=str(e))
    return _twiml(empty_twiml())


@router.get("/voice/ring")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_ring(request: Request):
    """Hold audio for a caller waiting in a conference."""
    return _twiml(ring_twiml())


# ---------------------------------------------------------------------------
# Recordings, voicemail, transcription
# ---------------------------------------------------------------------------

@router.post("/voice/recording/{tenant_id}/{call_sid}/{segment}")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_segment_recording(
    request: Request, background: BackgroundTasks, tenant_id: str, call_sid: str, segment: int
):
    """A conference recording for one segment is ready."""
    form = dict(await request.form())
    if form.get("RecordingStatus", "completed") != "completed":
        return Response(status_code=200)
    try:
        if not await _owns_call(tenant_id, call_sid):
            return Response(status_code=200)
        recordings = get_engine().recordings
        seg, audio = await recordings.process_segment_recording(
            call_sid,
            segment,
            form.get("RecordingSid", ""),
            form.get("RecordingUrl", ""),
            _int(form.get("RecordingDuration"), None),
        )
        if seg is not None and audio:
            background.add_task(recordings.transcribe_segment, seg, audio)
    except Exception as e:
        logger.error("[{cs}] Segment recording failed: {err}", cs=call_sid, err=str(e))
    return Response(status_code=200)


@router.post("/voice/recording/{tenant_id}/{call_sid}")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_chain_recording(request: Request, background: BackgroundTasks, tenant_id: str, call_sid: str):
    """A recording spanning the whole chain (voicemail, browser call) is ready."""
    form = dict(await request.form())
    if form.get("RecordingStatus", "completed") != "completed":
        return Response(status_code=200)
    try:
        if not await _owns_call(tenant_id, call_sid):
            return Response(status_code=200)
        recordings = get_engine().recordings
        segments, audio = await recordings.process_chain_recording(
            call_sid,
            form.get("RecordingSid", ""),
            form.get("RecordingUrl", ""),
            _int(form.get("RecordingDuration"), None),
        )
        if segments and audio:
            background.add_task(recordings.transcribe_chain, call_sid, audio)
    except Exception as e:
        logger.error("[{cs}] Recording failed: {err}", cs=call_sid, err=str(e))
    return Response(status_code=200)


@router.post("/voice/voicemail/{tenant_id}/{call_sid}")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_voicemail(request: Request, tenant_id: str, call_sid: str):
    """<Record> finished: note the voicemail on the active segment and say goodbye."""
    form = dict(await request.form())
    response = VoiceResponse()
    say(response, VOICEMAIL_THANKS)
    response.hangup()

    try:
        store = get_engine().store
        seg = await store.get_latest_segment(call_sid, tenant_id)
        if seg is not None and form.get("RecordingUrl"):
            await store.update_call(
                seg.id,
                recording_url=form.get("RecordingUrl"),
                recording_sid=form.get("RecordingSid"),
                recording_duration=_int(form.get("RecordingDuration"), None),
            )
            logger.info("[{cs}] Voicemail recorded ({d}s)", cs=call_sid, d=form.get("RecordingDuration"))
    except Exception as e:
        logger.error("[{cs}] Voicemail callback failed: {err}", cs=call_sid, err=str(e))
    return _twiml(str(response))


@router.post("/voice/transcription/{tenant_id}/{call_sid}")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_transcription(request: Request, tenant_id: str, call_sid: str):
    """Provider transcription of a voicemail (plain text)."""
    form = dict(await request.form())
    try:
        if not await _owns_call(tenant_id, call_sid):
            return Response(status_code=200)
        await get_engine().recordings.store_provider_transcription(
            call_sid, form.get("TranscriptionText"), form.get("TranscriptionStatus", "")
        )
    except Exception as e:
        logger.error("[{cs}] Transcription callback failed: {err}", cs=call_sid, err=str(e))
    return Response(status_code=200)


# ---------------------------------------------------------------------------
# Browser-originated calls
# ---------------------------------------------------------------------------

def parse_client_identity(value: str | None) -> tuple[str, str] | None:
    """'client:<tenant>:<user>' (or without the prefix) → (tenant, user)."""
    if not value:
        return None
    if value.startswith("client:"):
        value = value[len("client:"):]
    tenant_id, sep, user_id = value.partition(":")
    if not sep or not tenant_id or not user_id:
        return None
    return tenant_id, user_id


@router.post("/voice/outgoing")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_outgoing(request: Request):
    """A tenant user dials out from the browser client."""
    form = dict(await request.form())
    call_sid = form.get("CallSid", "")

    try:
        identity = parse_client_identity(form.get("From") or form.get("Caller"))
        if identity is None:
            logger.warning("[{cs}] Outgoing call without a client identity", cs=call_sid)
            return _twiml(hangup_twiml())
        tenant_id, user_id = identity

        to_number = normalize_phone_number(form.get("To"))
        if not to_number:
            response = VoiceResponse()
            say(response, NOT_AVAILABLE_MESSAGE)
            response.hangup()
            return _twiml(str(response))

        caller_id = (
            normalize_phone_number(form.get("CallerId"))
            or await call_flows.get_primary_line_number(tenant_id)
            or settings.twilio_phone_number
        )
        member = await users.find_tenant_user(tenant_id, user_id)

        engine = get_engine()
        await engine.store.create_call(
            tenant_id,
            call_sid,
            "outbound",
            caller_id,
            to_number,
            status="ringing",
            caller_id=str(member["tenant_user_id"]) if member else None,
        )
        logger.info("[{cs}] Outgoing call to {to} from user {u}", cs=call_sid, to=mask_phone(to_number), u=user_id)

        response = VoiceResponse()
        dial = Dial(
            caller_id=caller_id,
            action=engine.urls.outgoing_status(tenant_id),
            method="POST",
            record="record-from-answer-dual",
            recording_status_callback=engine.urls.recording(tenant_id, call_sid),
            recording_status_callback_method="POST",
            recording_status_callback_event="completed",
        )
        dial.number(to_number)
        response.append(dial)
        return _twiml(str(response))
    except Exception as e:
        logger.error("[{cs}] Outgoing call failed: {err}", cs=call_sid, err=str(e))
        return _twiml(default_twiml())


@router.post("/voice/outgoing/status")
@limiter.limit(WEBHOOK_LIMIT)
async def voice_outgoing_status(request: Request):
    """The browser call's <Dial> finished."""
    form = dict(await request.form())
    call_sid = form.get("CallSid", "")
    status = form.get("DialCallStatus") or form.get("CallStatus") or "completed"
    duration = _int(form.get("DialCallDuration"), 0)
    tenant_id = request.query_params.get("tenantId") or None

    try:
        store = get_engine().store
        seg = await store.get_latest_segment(call_sid, tenant_id)
        if seg is not None:
            def _finish(s: Segment) -> None:
                if s.is_closed:
                    return
                now = utcnow()
                s.status = status if status in TERMINAL_STATUSES else "completed"
                s.ended_at = now
                s.duration = duration
                if status == "completed" and duration and s.answered_at is None:
                    s.answered_at = now - timedelta(seconds=duration)

            await store.mutate(call_sid, seg.segment_number, _finish, tenant_id=tenant_id)
            logger.info("[{cs}] Outgoing call {st} ({d}s)", cs=call_sid, st=status, d=duration)
    except Exception as e:
        logger.error("[{cs}] Outgoing status failed: {err}", cs=call_sid, err=str(e))
    return _twiml(hangup_twiml())
