"""Conference-based bridging of callers and agents.

Dial-type steps never ring a destination directly. The caller is placed
in a per-segment conference (`call_<original>_seg_<n>`) that ends when the
caller leaves, and agents are dialed out to join it once the caller is in.
The first agent leg to join wins the call; every other pending leg is hung
up. When every leg of an attempt has ended unanswered, the attempt fails and
exactly one decision is taken: retry the next round-robin destination,
advance to the next step, or (for a transfer segment) end the call.

Every state transition goes through SegmentStore.mutate, so concurrent
callbacks for the same segment cannot both claim an answer or a failure.
Provider requests (dial, hang up, redirect) are best-effort: failures are
logged and the persisted state stays authoritative.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from flows.models import StepType
from flows.twiml import CallbackUrls, agent_join_twiml, redirect_twiml
from services.destinations import DialTarget
from services.segments import CLOSED_STATUSES, ResumeToken, Segment, SegmentStore, utcnow
from services.telephony import TelephonyClient, TelephonyError

FINAL_LEG_STATUSES = frozenset({"completed", "busy", "no-answer", "failed", "canceled"})


@dataclass(frozen=True)
class AttemptDecision:
    """What to do with the caller after an attempt failed."""

    action: str  # "retry" | "advance" | "terminate"
    tenant_id: str
    call_sid: str
    line_id: str | None = None
    step_index: int | None = None
    branch: str | None = None
    attempt_index: int = 0


def decide_after_failure(segment: Segment) -> AttemptDecision:
    """Pure decision for a failed attempt, from the segment's resume token."""
    resume = segment.scratch.resume
    base = dict(tenant_id=segment.tenant_id, call_sid=segment.original_call_sid)

    if segment.is_transfer_segment:
        return AttemptDecision("terminate", **base)

    if resume.line_id is None or resume.step_index is None:
        # No flow position to return to
        return AttemptDecision("terminate", **base)

    position = dict(line_id=resume.line_id, step_index=resume.step_index, branch=resume.branch)
    if (
        resume.step_type == StepType.ROUND_ROBIN.value
        and resume.attempt_index + 1 < resume.destination_count
    ):
        return AttemptDecision("retry", attempt_index=resume.attempt_index + 1, **base, **position)
    return AttemptDecision("advance", **base, **position)


def _claim_failure(segment: Segment) -> AttemptDecision | None:
    """Flag the attempt failed and claim the decision, once per attempt."""
    sc = segment.scratch
    if sc.failure_handled or not sc.attempt_is_exhausted():
        return None
    sc.attempt_failed = True
    sc.failure_handled = True
    decision = decide_after_failure(segment)
    if decision.action == "terminate":
        segment.status = "failed"
        segment.ended_at = utcnow()
        segment.duration = segment.elapsed_seconds(segment.ended_at)
    return decision


class ConferenceOrchestrator:
    def __init__(
        self,
        store: SegmentStore,
        telephony: TelephonyClient,
        urls: CallbackUrls,
        default_caller_id: str = "",
    ):
        self.store = store
        self.telephony = telephony
        self.urls = urls
        self.default_caller_id = default_caller_id

    # ------------------------------------------------------------------
    # Attempt setup (called by the step interpreter)
    # ------------------------------------------------------------------

    async def prepare_attempt(
        self,
        call_sid: str,
        segment_number: int,
        resume: ResumeToken,
        targets: list[DialTarget],
        caller_id: str | None,
        timeout: int,
        record: bool,
    ) -> Segment | None:
        """Persist a fresh attempt before the caller is bridged.

        Returns the updated segment (its scratch.attempt_seq identifies the
        attempt in callback URLs), or None if the call record is missing.
        """
        def _start(seg: Segment) -> None:
            seg.scratch.start_attempt(resume, targets, caller_id, timeout, record)

        seg, _ = await self.store.mutate(call_sid, segment_number, _start)
        if seg is None:
            logger.error("[{cs}] No call record for segment {n}, cannot bridge", cs=call_sid, n=segment_number)
            return None
        logger.info(
            "[{cs}] Attempt {seq}: {type} step {step} attempt {a} with {n} target(s)",
            cs=call_sid, seq=seg.scratch.attempt_seq, type=resume.step_type,
            step=resume.step_index, a=resume.attempt_index, n=len(targets),
        )
        return seg

    # ------------------------------------------------------------------
    # Conference events
    # ------------------------------------------------------------------

    async def handle_conference_event(
        self,
        call_sid: str,
        segment_number: int,
        event: str,
        participant_sid: str | None,
        seq: int | None = None,
        conference_sid: str | None = None,
    ) -> None:
        is_caller = participant_sid == call_sid
        logger.info(
            "[{cs}] Conference event {ev} seg={n} participant={p} caller={c}",
            cs=call_sid, ev=event, n=segment_number, p=participant_sid, c=is_caller,
        )

        if event == "participant-join":
            if is_caller:
                await self.caller_joined(call_sid, segment_number, seq, conference_sid)
            elif participant_sid:
                await self.agent_answered(call_sid, segment_number, participant_sid, seq)
        elif event == "participant-leave":
            if is_caller:
                await self.terminate_pending(call_sid, segment_number, seq, reason="caller left")
            elif participant_sid:
                await self.agent_left(call_sid, segment_number, participant_sid)
        elif event == "conference-end":
            await self.terminate_pending(call_sid, segment_number, seq, reason="conference ended")

    async def caller_joined(
        self,
        call_sid: str,
        segment_number: int,
        seq: int | None,
        conference_sid: str | None,
    ) -> None:
        """Record the conference and dial the attempt's agents, once."""
        def _join(seg: Segment) -> bool:
            sc = seg.scratch
            if seq is not None and seq != sc.attempt_seq:
                return False
            if conference_sid:
                seg.conference_sid = conference_sid
            if sc.dialed or sc.agent_dialed_from_transfer:
                return False
            sc.dialed = True
            return True

        seg, should_dial = await self.store.mutate(call_sid, segment_number, _join)
        if seg is None or not should_dial:
            logger.debug("[{cs}] Caller joined, no dial needed", cs=call_sid)
            return
        await self.dial_agents(seg)

    async def dial_agents(self, seg: Segment) -> None:
        placed = await self.place_legs(seg)
        if not placed:
            logger.warning("[{cs}] No agent legs could be placed", cs=seg.original_call_sid)
        await self.finish_dialing(seg.original_call_sid, seg.segment_number, seg.scratch.attempt_seq)

    async def place_legs(self, seg: Segment) -> list[str]:
        """Place one outbound leg per dial target and register each as pending."""
        sc = seg.scratch
        seq = sc.attempt_seq
        placed = []
        join_twiml = agent_join_twiml(
            seg.conference_name,
            status_callback=self.urls.conference(seg.tenant_id, seg.original_call_sid, seg.segment_number, seq),
        )
        status_callback = self.urls.agent_status(
            seg.tenant_id,
            seg.original_call_sid,
            seg.segment_number,
            line_id=sc.resume.line_id,
            step=sc.resume.step_index,
            attempt=sc.resume.attempt_index,
            seq=seq,
        )

        for target in sc.dial_targets():
            if target.kind == "client":
                to = self.urls.client_address(target.address)
                from_ = seg.from_number or sc.caller_id or self.default_caller_id
            else:
                to = target.address
                from_ = sc.caller_id or self.default_caller_id
            try:
                leg_sid = await self.telephony.place_call(
                    to=to,
                    from_=from_,
                    twiml=join_twiml,
                    status_callback=status_callback,
                    timeout=sc.dial_timeout,
                )
            except TelephonyError as e:
                logger.error("[{cs}] Dial failed: {err}", cs=seg.original_call_sid, err=str(e))
                continue

            placed.append(leg_sid)
            _, terminate_now = await self.store.mutate(
                seg.original_call_sid,
                seg.segment_number,
                lambda s, leg=leg_sid, t=target: _register_leg(s, seq, leg, t),
            )
            if terminate_now:
                await self._terminate(leg_sid, seg.original_call_sid)

        logger.info("[{cs}] Placed {n} agent leg(s)", cs=seg.original_call_sid, n=len(placed))
        return placed

    async def finish_dialing(self, call_sid: str, segment_number: int, seq: int) -> None:
        """Mark dialing complete; legs that already ended may have exhausted the attempt."""
        def _finish(seg: Segment) -> AttemptDecision | None:
            if seg.scratch.attempt_seq != seq:
                return None
            seg.scratch.dial_complete = True
            return _claim_failure(seg)

        seg, decision = await self.store.mutate(call_sid, segment_number, _finish)
        if seg is not None and decision is not None:
            await self.apply_decision(decision)

    async def agent_answered(
        self,
        call_sid: str,
        segment_number: int,
        leg_sid: str,
        seq: int | None = None,
    ) -> None:
        """First agent leg to join wins; every other pending leg is hung up."""
        def _answer(seg: Segment) -> list[str]:
            sc = seg.scratch
            if seq is not None and seq != sc.attempt_seq:
                return []
            if sc.answered_leg is not None or seg.status in CLOSED_STATUSES:
                return []
            sc.answered_leg = leg_sid
            losers = [leg for leg in sc.pending_legs if leg != leg_sid]
            sc.pending_legs = []
            seg.status = "in-progress"
            seg.answered_at = seg.answered_at or utcnow()
            identity = sc.identity_for_leg(leg_sid)
            if identity:
                seg.answered_by = identity.tenant_user_id
            return losers

        seg, losers = await self.store.mutate(call_sid, segment_number, _answer)
        if seg is None:
            return
        if seg.scratch.answered_leg == leg_sid:
            logger.info(
                "[{cs}] Agent leg {leg} answered (user={u})",
                cs=call_sid, leg=leg_sid, u=seg.answered_by,
            )
        for leg in losers or []:
            await self._terminate(leg, call_sid)

    async def agent_left(self, call_sid: str, segment_number: int, leg_sid: str) -> None:
        """The answering agent hung up: end the caller's call unless it moved on."""
        seg = await self.store.get_segment(call_sid, segment_number)
        if seg is None or seg.status == "transferred":
            return
        if seg.scratch.answered_leg != leg_sid:
            return
        logger.info("[{cs}] Agent left, ending caller call", cs=call_sid)
        await self._terminate(seg.original_call_sid, call_sid)

    async def terminate_pending(
        self,
        call_sid: str,
        segment_number: int,
        seq: int | None = None,
        reason: str = "",
    ) -> list[str]:
        """Hang up every still-ringing leg and close the attempt."""
        def _clear(seg: Segment) -> list[str]:
            sc = seg.scratch
            if seq is not None and seq != sc.attempt_seq:
                return []
            legs = list(sc.pending_legs)
            sc.pending_legs = []
            # nobody is left to act on a failure of this attempt
            sc.failure_handled = True
            return legs

        seg, legs = await self.store.mutate(call_sid, segment_number, _clear)
        if legs:
            logger.info("[{cs}] Terminating {n} pending leg(s): {why}", cs=call_sid, n=len(legs), why=reason)
        for leg in legs or []:
            await self._terminate(leg, call_sid)
        return legs or []

    # ------------------------------------------------------------------
    # Agent leg status
    # ------------------------------------------------------------------

    async def leg_ended(
        self,
        call_sid: str,
        segment_number: int,
        leg_sid: str,
        status: str,
        seq: int | None = None,
    ) -> AttemptDecision | None:
        """Record a final status for an agent leg; decide if the attempt failed.

        Replays of the same event are no-ops. Returns the decision when this
        event was the one that exhausted the attempt.
        """
        if status not in FINAL_LEG_STATUSES:
            return None

        def _ended(seg: Segment) -> AttemptDecision | None:
            sc = seg.scratch
            if seq is not None and seq != sc.attempt_seq:
                return None
            if leg_sid in sc.ended_legs:
                return None
            sc.ended_legs.append(leg_sid)
            if leg_sid in sc.pending_legs:
                sc.pending_legs.remove(leg_sid)
            return _claim_failure(seg)

        seg, decision = await self.store.mutate(call_sid, segment_number, _ended)
        if seg is None:
            return None
        logger.info(
            "[{cs}] Agent leg {leg} ended ({st}), pending={n}",
            cs=call_sid, leg=leg_sid, st=status, n=len(seg.scratch.pending_legs),
        )
        if decision is not None:
            await self.apply_decision(decision)
        return decision

    async def claim_after_dial(self, call_sid: str, segment_number: int, seq: int | None = None) -> AttemptDecision | None:
        """The caller's <Dial> ended without an answer: claim the decision if still open.

        Any legs still ringing are hung up first, since their conference is gone.
        """
        def _claim(seg: Segment) -> tuple[list[str], AttemptDecision | None]:
            sc = seg.scratch
            if seq is not None and seq != sc.attempt_seq:
                return [], None
            if sc.answered_leg is not None or sc.failure_handled:
                return [], None
            legs = list(sc.pending_legs)
            sc.pending_legs = []
            sc.dial_complete = True
            return legs, _claim_failure(seg)

        seg, result = await self.store.mutate(call_sid, segment_number, _claim)
        if seg is None or result is None:
            return None
        legs, decision = result
        for leg in legs:
            await self._terminate(leg, call_sid)
        return decision

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def decision_url(self, decision: AttemptDecision) -> str | None:
        if decision.action == "retry":
            return self.urls.flow(
                decision.tenant_id,
                decision.line_id,
                decision.step_index,
                action="round_robin_redirect",
                branch=decision.branch,
                attempt=decision.attempt_index,
            )
        if decision.action == "advance":
            return self.urls.flow(
                decision.tenant_id,
                decision.line_id,
                decision.step_index + 1,
                branch=decision.branch,
            )
        return None

    async def apply_decision(self, decision: AttemptDecision) -> None:
        """Move the live caller on: redirect into the next attempt or step, or hang up."""
        logger.info(
            "[{cs}] Attempt failed, decision={a} step={s} attempt={n}",
            cs=decision.call_sid, a=decision.action, s=decision.step_index, n=decision.attempt_index,
        )
        if decision.action == "terminate":
            await self._terminate(decision.call_sid, decision.call_sid)
            return
        url = self.decision_url(decision)
        try:
            await self.telephony.redirect_call(decision.call_sid, redirect_twiml(url))
        except TelephonyError as e:
            logger.warning("[{cs}] Redirect failed: {err}", cs=decision.call_sid, err=str(e))

    async def _terminate(self, leg_sid: str, call_sid: str) -> None:
        try:
            await self.telephony.terminate_call(leg_sid)
        except TelephonyError as e:
            logger.warning("[{cs}] Could not terminate {leg}: {err}", cs=call_sid, leg=leg_sid, err=str(e))


def _register_leg(seg: Segment, seq: int, leg_sid: str, target: DialTarget) -> bool:
    """Record a placed leg. Returns True if the leg lost before it was registered."""
    sc = seg.scratch
    if sc.attempt_seq != seq:
        return True
    sc.leg_identities[leg_sid] = target.to_dict()
    if sc.answered_leg == leg_sid:
        # joined before we got here
        if seg.answered_by is None and target.identity:
            seg.answered_by = target.identity.tenant_user_id
        return False
    if sc.answered_leg is not None:
        return leg_sid not in sc.ended_legs
    if leg_sid not in sc.ended_legs:
        sc.pending_legs.append(leg_sid)
    return False
