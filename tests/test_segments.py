"""Tests for segment records, scratch state and compare-and-swap mutation."""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from services.destinations import DialTarget, Identity
from services.segments import (
    MAX_CAS_RETRIES,
    SCRATCH_SCHEMA_VERSION,
    ConcurrentUpdateError,
    ResumeToken,
    ScratchState,
    Segment,
    SegmentStore,
    utcnow,
)
from tests.helpers.factories import ALICE, OTHER_TENANT, TENANT
from tests.mocks.fake_directory import FakeBuyers


def _row(**extra):
    row = {
        "id": "0b7d0c8e-5f5a-4a3c-9e3b-1f2d3c4b5a69",
        "tenant_id": TENANT,
        "call_sid": "CA1",
        "original_call_sid": "CA1",
        "segment_number": 0,
        "direction": "inbound",
        "status": "in-progress",
        "revision": 3,
        "tags": json.dumps([{"name": "vip", "value": None}]),
        "scratch": json.dumps({"schema_version": SCRATCH_SCHEMA_VERSION, "attempt_seq": 2,
                               "resume": {"line_id": "l1", "step_index": 4}}),
    }
    row.update(extra)
    return row


class TestScratchState:
    def test_from_row_parses_json_columns(self):
        seg = Segment.from_row(_row())
        assert seg.tags == [{"name": "vip", "value": None}]
        assert seg.scratch.attempt_seq == 2
        assert seg.scratch.resume.step_index == 4

    def test_unknown_keys_are_ignored(self):
        seg = Segment.from_row(_row(unknown_column=1, scratch={"attempt_seq": 1, "future_field": True}))
        assert seg.scratch.attempt_seq == 1

    def test_other_schema_version_starts_fresh(self):
        scratch = ScratchState.from_dict({"schema_version": 99, "attempt_seq": 7})
        assert scratch.attempt_seq == 0

    def test_start_attempt_resets_attempt_fields(self):
        scratch = ScratchState(attempt_seq=4, pending_legs=["CAx"], answered_leg="CAy", failure_handled=True)
        target = DialTarget("phone", "+17135551234", "713-555-1234")
        scratch.start_attempt(ResumeToken(step_index=1), [target], "+15550001000", 20, True)
        assert scratch.attempt_seq == 5
        assert scratch.pending_legs == []
        assert scratch.answered_leg is None
        assert not scratch.failure_handled
        assert scratch.dial_targets() == [target]

    def test_dict_round_trip(self):
        scratch = ScratchState(variables={"acct": "1234"}, resume=ResumeToken(branch="0.o1"))
        assert ScratchState.from_dict(json.loads(json.dumps(scratch.to_dict()))) == scratch

    def test_identity_for_single_target_leg(self):
        identity = Identity(TENANT, ALICE, "tu-alice")
        target = DialTarget("client", identity.client_identity, ALICE, identity)
        scratch = ScratchState(targets=[target.to_dict()], leg_identities={"CAleg1": target.to_dict()})
        assert scratch.identity_for_leg("CAleg1") == identity
        assert scratch.identity_for_leg("CAother") is None


class TestSegment:
    def test_elapsed_uses_answer_time(self):
        now = utcnow()
        seg = Segment.from_row(_row(started_at=now - timedelta(seconds=90), answered_at=now - timedelta(seconds=30)))
        assert seg.elapsed_seconds(now) == 30

    def test_closed_and_answered(self):
        assert Segment.from_row(_row(status="transferred")).is_closed
        assert Segment.from_row(_row(status="in-progress")).was_answered
        assert not Segment.from_row(_row(status="ringing")).was_answered

    def test_to_json_omits_scratch(self):
        data = Segment.from_row(_row(started_at=utcnow())).to_json()
        assert "scratch" not in data
        assert isinstance(data["started_at"], str)


class TestSqlStore:
    @pytest.mark.asyncio
    async def test_update_rejects_unknown_columns(self):
        with pytest.raises(ValueError):
            await SegmentStore(buyers=FakeBuyers()).update_call("id", scratch="{}")

    @pytest.mark.asyncio
    @patch("services.segments.query_one", new_callable=AsyncMock)
    async def test_update_builds_parameters(self, mock_query):
        mock_query.return_value = _row(recording_sid="RE1")
        seg = await SegmentStore(buyers=FakeBuyers()).update_call("seg-1", recording_sid="RE1", recording_duration=12)
        sql, *args = mock_query.call_args.args
        assert "recording_sid = $1" in sql
        assert "recording_duration = $2" in sql
        assert "WHERE id = $3" in sql
        assert args == ["RE1", 12, "seg-1"]
        assert seg.recording_sid == "RE1"

    @pytest.mark.asyncio
    @patch("services.segments.query_one", new_callable=AsyncMock)
    async def test_create_call_replay_returns_existing(self, mock_query):
        mock_query.side_effect = [None, _row()]
        seg = await SegmentStore(buyers=FakeBuyers()).create_call(TENANT, "CA1", "inbound", "+1", "+2", "ringing")
        assert seg.call_sid == "CA1"
        assert mock_query.call_count == 2

    @pytest.mark.asyncio
    async def test_mutate_gives_up_after_retries(self):
        store = SegmentStore(buyers=FakeBuyers())
        with patch.object(store, "_fetch_for_update", AsyncMock(return_value=Segment.from_row(_row()))), \
                patch.object(store, "_write_if_revision", AsyncMock(return_value=None)) as write:
            with pytest.raises(ConcurrentUpdateError):
                await store.mutate("CA1", 0, lambda s: setattr(s, "status", "completed"))
        assert write.call_count == MAX_CAS_RETRIES

    @pytest.mark.asyncio
    @patch("services.segments.query_one", new_callable=AsyncMock)
    async def test_write_checks_revision(self, mock_query):
        mock_query.return_value = None
        seg = Segment.from_row(_row())
        assert await SegmentStore(buyers=FakeBuyers())._write_if_revision(seg, 3) is None
        sql, *args = mock_query.call_args.args
        assert "revision = $2" in sql
        assert args[:2] == [seg.id, 3]

    @pytest.mark.asyncio
    @patch("services.segments.query_one", new_callable=AsyncMock)
    async def test_latest_segment_scoped_to_tenant(self, mock_query):
        mock_query.return_value = None
        assert await SegmentStore(buyers=FakeBuyers()).get_latest_segment("CA1_transfer_2", OTHER_TENANT) is None
        sql, *args = mock_query.call_args.args
        assert "tenant_id = $2" in sql
        assert sql.index("tenant_id") < sql.index("ORDER BY")
        assert args == ["CA1", OTHER_TENANT]


class TestMutate:
    @pytest.mark.asyncio
    async def test_unchanged_segment_is_not_written(self, store):
        store.seed(TENANT, "CA1")
        seg, result = await store.mutate("CA1", 0, lambda s: "looked")
        assert result == "looked"
        assert seg.revision == 0

    @pytest.mark.asyncio
    async def test_missing_segment(self, store):
        assert await store.mutate("CAnope", 0, lambda s: None) == (None, None)

    @pytest.mark.asyncio
    async def test_concurrent_mutations_all_apply(self, store):
        store.seed(TENANT, "CA1")

        def _tag(name):
            def fn(seg):
                seg.tags.append({"name": name, "value": None})
            return fn

        await asyncio.gather(*(store.mutate("CA1", 0, _tag(n)) for n in ("a", "b", "c")))
        seg = await store.get_segment("CA1", 0)
        assert sorted(t["name"] for t in seg.tags) == ["a", "b", "c"]
        assert seg.revision == 3
        assert store.conflicts > 0

    @pytest.mark.asyncio
    async def test_transfer_leg_sid_addresses_its_chain(self, store):
        store.seed(TENANT, "CA1")
        store.seed(TENANT, "CA1_transfer_1", segment_number=1, status="ringing")
        seg, _ = await store.mutate("CA1_transfer_1", 1, lambda s: setattr(s, "status", "in-progress"))
        assert seg.call_sid == "CA1_transfer_1"
        assert (await store.get_latest_segment("CA1")).segment_number == 1

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_mutate(self, store):
        store.seed(TENANT, "CA1")
        seg, result = await store.mutate(
            "CA1", 0, lambda s: setattr(s, "status", "completed"), tenant_id=OTHER_TENANT
        )
        assert seg is None and result is None
        assert store.rows["CA1"].status == "in-progress"
        assert store.rows["CA1"].revision == 0

    @pytest.mark.asyncio
    async def test_reads_scoped_to_tenant(self, store):
        store.seed(TENANT, "CA1")
        assert await store.get_latest_segment("CA1", OTHER_TENANT) is None
        assert await store.get_segment("CA1", 0, OTHER_TENANT) is None
        assert await store.get_call_chain("CA1", OTHER_TENANT) == []
        assert (await store.get_latest_segment("CA1", TENANT)).tenant_id == TENANT
