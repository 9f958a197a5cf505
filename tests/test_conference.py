"""Tests for conference bridging: first-answer-wins, attempt failure and retries."""

import asyncio

import pytest

from flows.interpreter import CallContext
from services.conference import AttemptDecision, decide_after_failure
from services.destinations import DialTarget, Identity
from services.segments import ResumeToken
from tests.helpers.factories import (
    ALICE,
    BOB,
    CALLER,
    CAROL,
    FLOW,
    LINE,
    LINE_NUMBER,
    TENANT,
    client,
    step,
    steps,
)

CALL_SID = "CA200"


def _target(user_id: str, tenant_user_id: str) -> DialTarget:
    identity = Identity(TENANT, user_id, tenant_user_id)
    return DialTarget("client", identity.client_identity, user_id, identity)


@pytest.fixture
def call(store):
    return store.seed(TENANT, CALL_SID, from_number=CALLER, to_number=LINE_NUMBER)


async def _start_simulcall(engine, targets, step_index=1):
    seg = await engine.conference.prepare_attempt(
        CALL_SID,
        0,
        ResumeToken(
            flow_id=FLOW, line_id=LINE, step_index=step_index,
            step_type="simulcall", destination_count=len(targets),
        ),
        targets,
        LINE_NUMBER,
        30,
        False,
    )
    return seg.scratch.attempt_seq


async def _caller_joins(engine, seq, segment=0):
    await engine.conference.handle_conference_event(
        CALL_SID, segment, "participant-join", CALL_SID, seq=seq, conference_sid="CF1"
    )


class TestDecideAfterFailure:
    def test_round_robin_with_destinations_left_retries(self, call):
        call.scratch.resume = ResumeToken(line_id=LINE, step_index=2, step_type="round_robin",
                                          attempt_index=0, destination_count=3)
        decision = decide_after_failure(call)
        assert decision.action == "retry"
        assert decision.attempt_index == 1

    def test_last_round_robin_destination_advances(self, call):
        call.scratch.resume = ResumeToken(line_id=LINE, step_index=2, step_type="round_robin",
                                          attempt_index=2, destination_count=3)
        assert decide_after_failure(call).action == "advance"

    def test_dial_advances(self, call):
        call.scratch.resume = ResumeToken(line_id=LINE, step_index=0, step_type="dial", destination_count=1)
        assert decide_after_failure(call).action == "advance"

    def test_transfer_segment_terminates(self, store):
        seg = store.seed(TENANT, f"{CALL_SID}_transfer_1", segment_number=1)
        seg.scratch.resume = ResumeToken(line_id=LINE, step_index=0, step_type="dial")
        assert decide_after_failure(seg).action == "terminate"

    def test_no_flow_position_terminates(self, call):
        assert decide_after_failure(call).action == "terminate"


class TestCallerJoin:
    @pytest.mark.asyncio
    async def test_agents_dialed_once(self, engine, telephony, store, call):
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice"), _target(BOB, "tu-bob")])
        await _caller_joins(engine, seq)
        await _caller_joins(engine, seq)

        assert [c.to for c in telephony.placed] == [client(ALICE), client(BOB)]
        assert all(c.from_ == CALLER for c in telephony.placed)
        assert "call_CA200_seg_0" in telephony.placed[0].twiml
        assert f"seq={seq}" in telephony.placed[0].status_callback

        seg = await store.get_segment(CALL_SID, 0)
        assert seg.conference_sid == "CF1"
        assert seg.scratch.pending_legs == ["CAleg1", "CAleg2"]
        assert seg.scratch.dial_complete

    @pytest.mark.asyncio
    async def test_phone_targets_use_caller_id(self, engine, telephony, call):
        target = DialTarget("phone", "+17135551234", "713-555-1234")
        seq = await _start_simulcall(engine, [target])
        await _caller_joins(engine, seq)
        assert telephony.placed[0].to == "+17135551234"
        assert telephony.placed[0].from_ == LINE_NUMBER

    @pytest.mark.asyncio
    async def test_join_from_old_attempt_is_ignored(self, engine, telephony, call):
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice")])
        await _caller_joins(engine, seq - 1)
        assert telephony.placed == []

    @pytest.mark.asyncio
    async def test_every_dial_failing_fails_the_attempt(self, engine, telephony, call):
        telephony.unreachable = {client(ALICE), client(BOB)}
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice"), _target(BOB, "tu-bob")])
        await _caller_joins(engine, seq)

        assert len(telephony.redirects) == 1
        sid, twiml = telephony.redirects[0]
        assert sid == CALL_SID
        assert "step=2" in twiml


class TestFirstAnswerWins:
    @pytest.mark.asyncio
    async def test_concurrent_answers_terminate_exactly_one_loser(self, engine, telephony, store, call):
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice"), _target(BOB, "tu-bob")])
        await _caller_joins(engine, seq)

        await asyncio.gather(
            engine.conference.handle_conference_event(CALL_SID, 0, "participant-join", "CAleg1", seq=seq),
            engine.conference.handle_conference_event(CALL_SID, 0, "participant-join", "CAleg2", seq=seq),
        )

        seg = await store.get_segment(CALL_SID, 0)
        winner = seg.scratch.answered_leg
        assert winner in ("CAleg1", "CAleg2")
        loser = "CAleg2" if winner == "CAleg1" else "CAleg1"
        assert telephony.terminated == [loser]
        assert seg.answered_by == ("tu-alice" if winner == "CAleg1" else "tu-bob")
        assert seg.status == "in-progress"
        assert seg.answered_at is not None
        assert seg.scratch.pending_legs == []
        assert store.conflicts >= 1

    @pytest.mark.asyncio
    async def test_late_answer_is_ignored(self, engine, telephony, store, call):
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice"), _target(BOB, "tu-bob")])
        await _caller_joins(engine, seq)
        await engine.conference.agent_answered(CALL_SID, 0, "CAleg1", seq)
        await engine.conference.agent_answered(CALL_SID, 0, "CAleg2", seq)

        seg = await store.get_segment(CALL_SID, 0)
        assert seg.scratch.answered_leg == "CAleg1"
        assert seg.answered_by == "tu-alice"
        assert telephony.terminated == ["CAleg2"]

    @pytest.mark.asyncio
    async def test_loser_ending_does_not_fail_answered_attempt(self, engine, telephony, call):
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice"), _target(BOB, "tu-bob")])
        await _caller_joins(engine, seq)
        await engine.conference.agent_answered(CALL_SID, 0, "CAleg1", seq)

        decision = await engine.conference.leg_ended(CALL_SID, 0, "CAleg2", "canceled", seq)
        assert decision is None
        assert telephony.redirects == []

    @pytest.mark.asyncio
    async def test_answering_agent_leaving_ends_the_call(self, engine, telephony, call):
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice")])
        await _caller_joins(engine, seq)
        await engine.conference.agent_answered(CALL_SID, 0, "CAleg1", seq)

        await engine.conference.handle_conference_event(CALL_SID, 0, "participant-leave", "CAleg1", seq=seq)
        assert telephony.terminated == [CALL_SID]


class TestAttemptFailure:
    @pytest.mark.asyncio
    async def test_all_legs_unanswered_advances_once(self, engine, telephony, call):
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice"), _target(BOB, "tu-bob")])
        await _caller_joins(engine, seq)

        assert await engine.conference.leg_ended(CALL_SID, 0, "CAleg1", "no-answer", seq) is None
        decision = await engine.conference.leg_ended(CALL_SID, 0, "CAleg2", "busy", seq)
        assert decision == AttemptDecision("advance", TENANT, CALL_SID, LINE, 1, None, 0)
        assert len(telephony.redirects) == 1

        # replayed and late events do nothing
        assert await engine.conference.leg_ended(CALL_SID, 0, "CAleg2", "busy", seq) is None
        assert await engine.conference.claim_after_dial(CALL_SID, 0, seq) is None
        assert len(telephony.redirects) == 1

    @pytest.mark.asyncio
    async def test_dial_status_claims_when_legs_still_ringing(self, engine, telephony, call):
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice"), _target(BOB, "tu-bob")])
        await _caller_joins(engine, seq)

        decision = await engine.conference.claim_after_dial(CALL_SID, 0, seq)
        assert decision.action == "advance"
        assert sorted(telephony.terminated) == ["CAleg1", "CAleg2"]
        # the redirect is returned to the caller's <Dial action>, not pushed
        assert telephony.redirects == []

        assert await engine.conference.leg_ended(CALL_SID, 0, "CAleg1", "canceled", seq) is None
        assert telephony.redirects == []

    @pytest.mark.asyncio
    async def test_caller_hangup_closes_the_attempt(self, engine, telephony, call):
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice"), _target(BOB, "tu-bob")])
        await _caller_joins(engine, seq)

        await engine.conference.handle_conference_event(CALL_SID, 0, "participant-leave", CALL_SID, seq=seq)
        assert sorted(telephony.terminated) == ["CAleg1", "CAleg2"]

        assert await engine.conference.leg_ended(CALL_SID, 0, "CAleg1", "canceled", seq) is None
        assert await engine.conference.leg_ended(CALL_SID, 0, "CAleg2", "canceled", seq) is None
        assert telephony.redirects == []

    @pytest.mark.asyncio
    async def test_stale_leg_event_is_ignored(self, engine, telephony, call):
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice")])
        await _caller_joins(engine, seq)
        await _start_simulcall(engine, [_target(BOB, "tu-bob")])

        assert await engine.conference.leg_ended(CALL_SID, 0, "CAleg1", "no-answer", seq) is None
        assert telephony.redirects == []

    @pytest.mark.asyncio
    async def test_non_final_status_is_ignored(self, engine, call):
        seq = await _start_simulcall(engine, [_target(ALICE, "tu-alice")])
        await _caller_joins(engine, seq)
        assert await engine.conference.leg_ended(CALL_SID, 0, "CAleg1", "ringing", seq) is None


class TestRoundRobin:
    @pytest.mark.asyncio
    async def test_a_and_b_fail_then_c_answers(self, engine, telephony, store, call):
        flow = steps(step("rr", "round_robin", destinations=[ALICE, "bob@example.com", CAROL]))
        ctx = CallContext(
            tenant_id=TENANT, line_id=LINE, call_sid=CALL_SID, flow_id=FLOW,
            from_number=CALLER, to_number=LINE_NUMBER,
        )

        await engine.interpreter.execute(flow, 0, ctx)
        await _caller_joins(engine, 1)
        await engine.conference.leg_ended(CALL_SID, 0, "CAleg1", "no-answer", 1)
        assert "action=round_robin_redirect" in telephony.redirects[-1][1]
        assert "attempt=1" in telephony.redirects[-1][1]

        await engine.interpreter.handle_action(flow, 0, ctx, "round_robin_redirect", {}, attempt=1)
        await _caller_joins(engine, 2)
        await engine.conference.leg_ended(CALL_SID, 0, "CAleg2", "busy", 2)
        assert "attempt=2" in telephony.redirects[-1][1]

        await engine.interpreter.handle_action(flow, 0, ctx, "round_robin_redirect", {}, attempt=2)
        await _caller_joins(engine, 3)
        # a late answer from the first attempt must not win
        await engine.conference.agent_answered(CALL_SID, 0, "CAleg1", 1)
        await engine.conference.agent_answered(CALL_SID, 0, "CAleg3", 3)

        assert [c.to for c in telephony.placed] == [client(ALICE), client(BOB), client(CAROL)]
        assert len(telephony.redirects) == 2
        seg = await store.get_segment(CALL_SID, 0)
        assert seg.scratch.answered_leg == "CAleg3"
        assert seg.answered_by == "tu-carol"
        assert seg.scratch.attempt_seq == 3

    @pytest.mark.asyncio
    async def test_last_destination_failing_advances(self, engine, telephony, call):
        flow = steps(step("rr", "round_robin", destinations=[ALICE, BOB]), step("h", "hangup"))
        ctx = CallContext(tenant_id=TENANT, line_id=LINE, call_sid=CALL_SID, flow_id=FLOW)

        await engine.interpreter.handle_action(flow, 0, ctx, "round_robin_redirect", {}, attempt=1)
        await _caller_joins(engine, 1)
        await engine.conference.leg_ended(CALL_SID, 0, "CAleg1", "no-answer", 1)

        twiml = telephony.redirects[-1][1]
        assert "step=1" in twiml
        assert "round_robin_redirect" not in twiml
