"""Live call transfer.

A transfer hands the caller from the current segment's conference to a new
one: the active segment is closed as `transferred`, segment N+1 is opened,
the caller is redirected into the new conference and the target user is
dialed into it. The two halves are not transactional: if the target cannot
be dialed, the new segment is marked failed and the old one stays
transferred.
"""

from __future__ import annotations

from loguru import logger
from twilio.twiml.voice_response import VoiceResponse

from flows.twiml import TRANSFER_HOLD_MESSAGE, CallbackUrls, add_conference, say
from services.conference import ConferenceOrchestrator
from services.destinations import DialTarget, Identity
from services.segments import (
    CLOSED_STATUSES,
    ResumeToken,
    ScratchState,
    Segment,
    SegmentClosed,
    SegmentStore,
    utcnow,
)
from services.telephony import TelephonyClient, TelephonyError

TRANSFER_DIAL_TIMEOUT = 30


class TransferError(ValueError):
    """A transfer request that cannot be carried out."""


class TransferOrchestrator:
    def __init__(
        self,
        store: SegmentStore,
        telephony: TelephonyClient,
        conference: ConferenceOrchestrator,
        urls: CallbackUrls,
        directory=None,
    ):
        if directory is None:
            from services import users as directory
        self.store = store
        self.telephony = telephony
        self.conference = conference
        self.urls = urls
        self.directory = directory

    async def find_active_segment(self, call_sid: str) -> Segment | None:
        """Active segment of the chain, given the caller's or an agent's leg sid."""
        seg = await self.store.get_latest_segment(call_sid)
        if seg is None:
            by_agent = await self.store.find_by_agent_leg(call_sid)
            if by_agent is not None:
                seg = await self.store.get_latest_segment(by_agent.original_call_sid)
        return seg

    async def transfer(
        self,
        call_sid: str,
        to_user_id: str,
        from_user_id: str | None = None,
        reason: str | None = None,
        tenant_id: str | None = None,
    ) -> tuple[Segment, Segment]:
        """Transfer the live call containing `call_sid` to tenant user `to_user_id`.

        Returns (transferred segment, new segment).
        """
        active = await self.find_active_segment(call_sid)
        if active is None or (tenant_id and active.tenant_id != tenant_id):
            raise TransferError("Call not found")
        if active.status in CLOSED_STATUSES:
            raise TransferError(f"Cannot transfer a call with status {active.status}")

        target_row = await self.directory.get_tenant_user(to_user_id)
        if not target_row or str(target_row["tenant_id"]) != active.tenant_id:
            raise TransferError("Transfer target not found")
        identity = Identity.from_row(target_row)
        target = DialTarget(
            kind="client",
            address=identity.client_identity,
            destination=identity.user_id,
            identity=identity,
        )

        scratch = ScratchState(agent_dialed_from_transfer=True)
        scratch.start_attempt(
            ResumeToken(step_type="transfer", destination_count=1),
            [target],
            caller_id=_line_number(active),
            timeout=TRANSFER_DIAL_TIMEOUT,
            record=True,
        )

        try:
            old, new = await self.store.begin_transfer(
                active,
                to_user_id=identity.tenant_user_id,
                from_user_id=from_user_id,
                reason=reason,
                scratch=scratch,
            )
        except SegmentClosed as e:
            raise TransferError(str(e)) from e

        logger.info(
            "[{cs}] Transferring segment {old} → {new} to user {u}",
            cs=old.original_call_sid, old=old.segment_number, new=new.segment_number, u=identity.user_id,
        )

        try:
            await self.telephony.redirect_call(new.original_call_sid, self.caller_twiml(new))
        except TelephonyError as e:
            logger.warning("[{cs}] Caller redirect failed: {err}", cs=new.original_call_sid, err=str(e))

        placed = await self.conference.place_legs(new)
        if not placed:
            await self.store.update_call(
                new.id,
                status="failed",
                ended_at=utcnow(),
                duration=0,
            )
            try:
                await self.telephony.terminate_call(new.original_call_sid)
            except TelephonyError as e:
                logger.warning(
                    "[{cs}] Could not end call after failed transfer: {err}", cs=new.original_call_sid, err=str(e)
                )
            raise TransferError("Failed to connect to transfer target")
        await self.conference.finish_dialing(new.original_call_sid, new.segment_number, new.scratch.attempt_seq)

        refreshed = await self.store.get_segment(new.original_call_sid, new.segment_number)
        return old, refreshed or new

    def caller_twiml(self, segment: Segment) -> str:
        """Announcement plus join of the new segment's conference."""
        response = VoiceResponse()
        say(response, TRANSFER_HOLD_MESSAGE)
        record = segment.scratch.record
        add_conference(
            response,
            segment.conference_name,
            status_callback=self.urls.conference(
                segment.tenant_id, segment.original_call_sid, segment.segment_number, segment.scratch.attempt_seq
            ),
            wait_url=self.urls.ring(),
            record=record,
            recording_callback=self.urls.recording(
                segment.tenant_id, segment.original_call_sid, segment.segment_number
            ),
        )
        return str(response)


def _line_number(segment: Segment) -> str | None:
    """Our side of the call: the dialed line for inbound, the caller id for outbound."""
    return segment.to_number if segment.direction == "inbound" else segment.from_number
