"""SegmentStore backed by a dict, with the same compare-and-swap semantics."""

from __future__ import annotations

import asyncio
import copy
import uuid

from flows.twiml import conference_name, original_call_sid, transfer_call_sid
from services.segments import (
    CLOSED_STATUSES,
    _UPDATABLE_COLUMNS,
    ScratchState,
    Segment,
    SegmentClosed,
    SegmentStore,
    utcnow,
)
from tests.mocks.fake_directory import FakeBuyers


class InMemorySegmentStore(SegmentStore):
    """Keeps segments keyed by call sid.

    `_fetch_for_update` yields to the event loop so concurrent `mutate`
    calls interleave and exercise the revision check.
    """

    def __init__(self, buyers=None):
        super().__init__(buyers=buyers or FakeBuyers())
        self.rows: dict[str, Segment] = {}
        self.conflicts = 0

    def add(self, segment: Segment) -> Segment:
        self.rows[segment.call_sid] = copy.deepcopy(segment)
        return segment

    def seed(
        self,
        tenant_id: str,
        call_sid: str,
        *,
        status: str = "in-progress",
        segment_number: int = 0,
        **fields,
    ) -> Segment:
        """Insert a segment directly (segment 0 unless told otherwise)."""
        original = original_call_sid(call_sid)
        segment = Segment(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            call_sid=call_sid,
            original_call_sid=original,
            segment_number=segment_number,
            direction=fields.pop("direction", "inbound"),
            status=status,
            started_at=fields.pop("started_at", utcnow()),
            conference_name=conference_name(original, segment_number),
            **fields,
        )
        return self.add(segment)

    def _copy(self, segment: Segment | None) -> Segment | None:
        return copy.deepcopy(segment) if segment else None

    def _chain(self, call_sid: str, tenant_id: str | None = None) -> list[Segment]:
        original = original_call_sid(call_sid)
        rows = [
            s for s in self.rows.values()
            if s.original_call_sid == original and tenant_id in (None, s.tenant_id)
        ]
        return sorted(rows, key=lambda s: s.segment_number)

    # ---- reads ----------------------------------------------------------

    async def get_segment(self, call_sid, segment_number, tenant_id=None):
        for segment in self._chain(call_sid, tenant_id):
            if segment.segment_number == segment_number:
                return self._copy(segment)
        return None

    async def get_by_call_sid(self, call_sid):
        return self._copy(self.rows.get(call_sid))

    async def get_by_id(self, tenant_id, segment_id):
        for segment in self.rows.values():
            if segment.id == segment_id and segment.tenant_id == tenant_id:
                return self._copy(segment)
        return None

    async def get_call_chain(self, call_sid, tenant_id=None):
        return [self._copy(s) for s in self._chain(call_sid, tenant_id)]

    async def get_latest_segment(self, call_sid, tenant_id=None):
        live = [s for s in self._chain(call_sid, tenant_id) if s.status != "transferred"]
        return self._copy(live[-1]) if live else None

    async def find_by_agent_leg(self, leg_sid):
        matches = [
            s for s in self.rows.values()
            if leg_sid in s.scratch.leg_identities or s.scratch.answered_leg == leg_sid
        ]
        matches.sort(key=lambda s: s.segment_number)
        return self._copy(matches[-1]) if matches else None

    async def list_chain_sids(self, tenant_id):
        seen = []
        for segment in self.rows.values():
            if segment.tenant_id == tenant_id and segment.original_call_sid not in seen:
                seen.append(segment.original_call_sid)
        return seen

    async def list_calls(self, tenant_id, limit=50, offset=0):
        rows = [s for s in self.rows.values() if s.tenant_id == tenant_id and s.segment_number == 0]
        return [self._copy(s) for s in rows[offset:offset + limit]]

    # ---- writes ---------------------------------------------------------

    async def create_call(self, tenant_id, call_sid, direction, from_number, to_number, status, caller_id=None):
        if call_sid in self.rows:
            return self._copy(self.rows[call_sid])
        buyer_phone = from_number if direction == "inbound" else to_number
        buyer_id = await self.buyers.find_buyer_by_phone(tenant_id, buyer_phone)
        return self._copy(self.seed(
            tenant_id,
            call_sid,
            status=status,
            direction=direction,
            from_number=from_number,
            to_number=to_number,
            buyer_id=buyer_id,
            caller_id=caller_id,
        ))

    async def update_call(self, segment_id, **data):
        for key in data:
            if key not in _UPDATABLE_COLUMNS:
                raise ValueError(f"Column {key} cannot be updated")
        if not data:
            return None
        for segment in self.rows.values():
            if segment.id == segment_id:
                for key, value in data.items():
                    setattr(segment, key, value)
                segment.revision += 1
                return self._copy(segment)
        return None

    async def begin_transfer(self, active, *, to_user_id, from_user_id, reason, scratch: ScratchState):
        locked = self.rows.get(active.call_sid)
        if locked is None or locked.status in CLOSED_STATUSES:
            raise SegmentClosed(f"Call is no longer active (status={locked and locked.status})")
        now = utcnow()
        number = max(s.segment_number for s in self._chain(active.call_sid)) + 1

        locked.duration = locked.elapsed_seconds(now)
        locked.status = "transferred"
        locked.ended_at = now
        locked.transferred_to_user_id = to_user_id
        locked.transferred_from_user_id = from_user_id
        locked.transfer_reason = reason
        locked.transferred_at = now
        locked.revision += 1

        new = self.seed(
            active.tenant_id,
            transfer_call_sid(active.original_call_sid, number),
            status="ringing",
            segment_number=number,
            direction=active.direction,
            from_number=active.from_number,
            to_number=active.to_number,
            started_at=now,
            buyer_id=active.buyer_id,
            transferred_from_user_id=from_user_id,
            transferred_to_user_id=to_user_id,
            transfer_reason=reason,
            transferred_at=now,
            scratch=copy.deepcopy(scratch),
        )
        return self._copy(locked), self._copy(new)

    # ---- primitives -----------------------------------------------------

    async def _fetch_for_update(self, call_sid, segment_number):
        segment = await self.get_segment(call_sid, segment_number)
        await asyncio.sleep(0)
        return segment

    async def _write_if_revision(self, segment, expected_revision):
        stored = self.rows.get(segment.call_sid)
        if stored is None or stored.revision != expected_revision:
            self.conflicts += 1
            return None
        written = copy.deepcopy(segment)
        written.revision = expected_revision + 1
        self.rows[segment.call_sid] = written
        return self._copy(written)
