"""Call segment store.

A call chain is every `phone_calls` row sharing an `original_call_sid`.
Segment 0 is the original call; each live transfer adds segment N+1 with
call sid `<original>_transfer_<N>`.

Concurrent provider callbacks for the same segment (several agent legs of
one simulcall, a caller hangup racing an agent answer) are serialized with
optimistic concurrency: `mutate` applies a mutator to a private copy of
the row and writes it back only if `revision` is unchanged, retrying on
conflict. Mutators must be pure functions of the segment they are given.
"""

from __future__ import annotations

import copy
import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from loguru import logger

from db import query_many, query_one, transaction
from flows.twiml import conference_name, original_call_sid, transfer_call_sid
from services.destinations import DialTarget, Identity

SCRATCH_SCHEMA_VERSION = 1
MAX_CAS_RETRIES = 5

TERMINAL_STATUSES = frozenset({"completed", "busy", "no-answer", "failed", "canceled"})
CLOSED_STATUSES = TERMINAL_STATUSES | {"transferred"}
ANSWERED_STATUSES = frozenset({"in-progress", "completed"})

R = TypeVar("R")


class ConcurrentUpdateError(RuntimeError):
    """A segment kept changing underneath a mutation."""


class SegmentClosed(ValueError):
    """The segment already ended or was transferred."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Scratch state
# ---------------------------------------------------------------------------

@dataclass
class ResumeToken:
    """Where the flow continues once the current attempt resolves."""

    flow_id: str | None = None
    line_id: str | None = None
    step_index: int | None = None
    branch: str | None = None
    attempt_index: int = 0
    step_type: str | None = None
    destination_count: int = 0


@dataclass
class ScratchState:
    """Per-segment orchestration state, stored as JSONB in `phone_calls.scratch`."""

    schema_version: int = SCRATCH_SCHEMA_VERSION
    resume: ResumeToken = field(default_factory=ResumeToken)

    # current attempt; attempt_seq grows by one per bridge attempt and is
    # echoed back in callback URLs so late events from older attempts are ignored
    attempt_seq: int = 0
    targets: list[dict] = field(default_factory=list)
    caller_id: str | None = None
    dial_timeout: int = 30
    record: bool = False
    dialed: bool = False
    dial_complete: bool = False

    # agent legs
    pending_legs: list[str] = field(default_factory=list)
    leg_identities: dict[str, dict] = field(default_factory=dict)
    ended_legs: list[str] = field(default_factory=list)
    answered_leg: str | None = None

    # attempt outcome
    attempt_failed: bool = False
    failure_handled: bool = False

    agent_dialed_from_transfer: bool = False
    variables: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ScratchState":
        data = dict(data or {})
        version = data.get("schema_version", SCRATCH_SCHEMA_VERSION)
        if version != SCRATCH_SCHEMA_VERSION:
            logger.warning("Scratch state schema {v} not understood, starting fresh", v=version)
            return cls()
        known = {f.name for f in fields(cls)}
        resume = ResumeToken(**{
            k: v for k, v in (data.pop("resume", None) or {}).items()
            if k in ResumeToken.__dataclass_fields__
        })
        return cls(resume=resume, **{k: v for k, v in data.items() if k in known and k != "resume"})

    def start_attempt(
        self,
        resume: ResumeToken,
        targets: list[DialTarget],
        caller_id: str | None,
        timeout: int,
        record: bool,
    ) -> None:
        """Reset every per-attempt field for a fresh bridge attempt."""
        self.attempt_seq += 1
        self.resume = resume
        self.targets = [t.to_dict() for t in targets]
        self.caller_id = caller_id
        self.dial_timeout = timeout
        self.record = record
        self.dialed = False
        self.dial_complete = False
        self.pending_legs = []
        self.leg_identities = {}
        self.ended_legs = []
        self.answered_leg = None
        self.attempt_failed = False
        self.failure_handled = False

    def dial_targets(self) -> list[DialTarget]:
        return [DialTarget.from_dict(t) for t in self.targets]

    def target_for_leg(self, leg_sid: str) -> DialTarget | None:
        data = self.leg_identities.get(leg_sid)
        return DialTarget.from_dict(data) if data else None

    def identity_for_leg(self, leg_sid: str) -> Identity | None:
        target = self.target_for_leg(leg_sid)
        if target and target.identity:
            return target.identity
        # single-target attempts attribute directly
        targets = self.dial_targets()
        if len(targets) == 1 and leg_sid in self.leg_identities:
            return targets[0].identity
        return None

    def attempt_is_exhausted(self) -> bool:
        """Every placed leg ended without anyone answering."""
        return self.dial_complete and not self.pending_legs and self.answered_leg is None


# ---------------------------------------------------------------------------
# Segment
# ---------------------------------------------------------------------------

# Columns written by `mutate`; everything else goes through `update_call`.
_MUTABLE_COLUMNS = (
    "status", "answered_at", "answered_by", "ended_at", "duration",
    "conference_name", "conference_sid",
)

_UPDATABLE_COLUMNS = frozenset({
    "status", "answered_at", "answered_by", "ended_at", "duration",
    "conference_name", "conference_sid", "recording_url", "recording_sid",
    "recording_duration", "transcription", "transcription_status", "chain_transcription", "buyer_id",
    "transferred_to_user_id", "transferred_from_user_id", "transfer_reason",
    "transferred_at",
})


@dataclass
class Segment:
    id: str
    tenant_id: str
    call_sid: str
    original_call_sid: str
    segment_number: int
    direction: str
    status: str
    from_number: str | None = None
    to_number: str | None = None
    started_at: datetime | None = None
    answered_at: datetime | None = None
    ended_at: datetime | None = None
    duration: int | None = None
    conference_name: str | None = None
    conference_sid: str | None = None
    recording_url: str | None = None
    recording_sid: str | None = None
    recording_duration: int | None = None
    transcription: str | None = None
    transcription_status: str | None = None
    chain_transcription: str | None = None
    buyer_id: str | None = None
    caller_id: str | None = None
    answered_by: str | None = None
    transferred_from_user_id: str | None = None
    transferred_to_user_id: str | None = None
    transfer_reason: str | None = None
    transferred_at: datetime | None = None
    tags: list[dict] = field(default_factory=list)
    scratch: ScratchState = field(default_factory=ScratchState)
    revision: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "Segment":
        data = dict(row)
        for key in ("id", "tenant_id", "buyer_id", "caller_id", "answered_by",
                    "transferred_from_user_id", "transferred_to_user_id"):
            if data.get(key) is not None:
                data[key] = str(data[key])
        data["tags"] = _load_json(data.get("tags"), [])
        data["scratch"] = ScratchState.from_dict(_load_json(data.get("scratch"), {}))
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    @property
    def was_answered(self) -> bool:
        return self.status in ANSWERED_STATUSES or self.answered_at is not None

    @property
    def is_transfer_segment(self) -> bool:
        return self.segment_number > 0

    def elapsed_seconds(self, now: datetime | None = None) -> int:
        """Seconds since answer (or since start if never answered)."""
        start = self.answered_at or self.started_at
        if start is None:
            return 0
        return max(0, int(((now or utcnow()) - start).total_seconds()))

    def to_json(self) -> dict:
        data = asdict(self)
        data.pop("scratch")
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


def _load_json(value: Any, default):
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

def _tenant_clause(args: list, tenant_id: str | None) -> str:
    """Scope a query to one tenant when `tenant_id` is given (appends to `args`)."""
    if tenant_id is None:
        return ""
    args.append(tenant_id)
    return f" AND tenant_id = ${len(args)}"


class SegmentStore:
    """asyncpg-backed segment persistence.

    `buyers` provides `find_buyer_by_phone(tenant_id, phone)`; defaults to
    services.buyers.
    """

    def __init__(self, buyers=None):
        if buyers is None:
            from services import buyers
        self.buyers = buyers

    # ---- reads ----------------------------------------------------------

    async def get_segment(
        self, call_sid: str, segment_number: int, tenant_id: str | None = None
    ) -> Segment | None:
        args = [original_call_sid(call_sid), segment_number]
        row = await query_one(
            "SELECT * FROM phone_calls WHERE original_call_sid = $1 AND segment_number = $2"
            + _tenant_clause(args, tenant_id),
            *args,
        )
        return Segment.from_row(row) if row else None

    async def get_by_call_sid(self, call_sid: str) -> Segment | None:
        row = await query_one("SELECT * FROM phone_calls WHERE call_sid = $1", call_sid)
        return Segment.from_row(row) if row else None

    async def get_by_id(self, tenant_id: str, segment_id: str) -> Segment | None:
        row = await query_one(
            "SELECT * FROM phone_calls WHERE id = $1 AND tenant_id = $2",
            segment_id,
            tenant_id,
        )
        return Segment.from_row(row) if row else None

    async def get_call_chain(self, call_sid: str, tenant_id: str | None = None) -> list[Segment]:
        args = [original_call_sid(call_sid)]
        rows = await query_many(
            "SELECT * FROM phone_calls WHERE original_call_sid = $1"
            + _tenant_clause(args, tenant_id)
            + " ORDER BY segment_number",
            *args,
        )
        return [Segment.from_row(r) for r in rows]

    async def get_latest_segment(self, call_sid: str, tenant_id: str | None = None) -> Segment | None:
        """The newest segment of the chain that was not handed off by a transfer."""
        args = [original_call_sid(call_sid)]
        row = await query_one(
            "SELECT * FROM phone_calls WHERE original_call_sid = $1 AND status <> 'transferred'"
            + _tenant_clause(args, tenant_id)
            + " ORDER BY segment_number DESC LIMIT 1",
            *args,
        )
        return Segment.from_row(row) if row else None

    async def find_by_agent_leg(self, leg_sid: str) -> Segment | None:
        """Find the segment an outbound agent leg was dialed for."""
        row = await query_one(
            """SELECT * FROM phone_calls
               WHERE scratch -> 'leg_identities' ? $1 OR scratch ->> 'answered_leg' = $1
               ORDER BY segment_number DESC LIMIT 1""",
            leg_sid,
        )
        return Segment.from_row(row) if row else None

    async def list_chain_sids(self, tenant_id: str) -> list[str]:
        rows = await query_many(
            "SELECT DISTINCT original_call_sid FROM phone_calls WHERE tenant_id = $1",
            tenant_id,
        )
        return [r["original_call_sid"] for r in rows]

    async def list_calls(self, tenant_id: str, limit: int = 50, offset: int = 0) -> list[Segment]:
        rows = await query_many(
            """SELECT * FROM phone_calls WHERE tenant_id = $1 AND segment_number = 0
               ORDER BY started_at DESC LIMIT $2 OFFSET $3""",
            tenant_id,
            limit,
            offset,
        )
        return [Segment.from_row(r) for r in rows]

    # ---- writes ---------------------------------------------------------

    async def create_call(
        self,
        tenant_id: str,
        call_sid: str,
        direction: str,
        from_number: str | None,
        to_number: str | None,
        status: str,
        caller_id: str | None = None,
    ) -> Segment:
        """Create segment 0 for a call. Replayed webhooks return the existing row."""
        buyer_phone = from_number if direction == "inbound" else to_number
        buyer_id = await self.buyers.find_buyer_by_phone(tenant_id, buyer_phone)

        row = await query_one(
            """INSERT INTO phone_calls (tenant_id, call_sid, original_call_sid, segment_number,
                 direction, status, from_number, to_number, started_at, buyer_id, caller_id,
                 conference_name)
               VALUES ($1, $2, $2, 0, $3, $4, $5, $6, $7, $8, $9, $10)
               ON CONFLICT (call_sid) DO NOTHING
               RETURNING *""",
            tenant_id,
            call_sid,
            direction,
            status,
            from_number,
            to_number,
            utcnow(),
            buyer_id,
            caller_id,
            conference_name(call_sid, 0),
        )
        if row is None:
            existing = await self.get_by_call_sid(call_sid)
            logger.debug("[{cs}] Call record already exists", cs=call_sid)
            return existing
        logger.info("[{cs}] Created {dir} call record", cs=call_sid, dir=direction)
        return Segment.from_row(row)

    async def update_call(self, segment_id: str, **data) -> Segment | None:
        """Update plain columns of one segment (recording, transcription, ...)."""
        sets = []
        values = []
        for key, value in data.items():
            if key not in _UPDATABLE_COLUMNS:
                raise ValueError(f"Column {key} cannot be updated")
            values.append(value)
            sets.append(f"{key} = ${len(values)}")
        if not sets:
            return None
        values.append(segment_id)
        row = await query_one(
            f"UPDATE phone_calls SET {', '.join(sets)}, revision = revision + 1 "
            f"WHERE id = ${len(values)} RETURNING *",
            *values,
        )
        return Segment.from_row(row) if row else None

    async def mutate(
        self,
        call_sid: str,
        segment_number: int,
        fn: Callable[[Segment], R],
        tenant_id: str | None = None,
    ) -> tuple[Segment | None, R | None]:
        """Atomically read-modify-write one segment.

        `fn` receives a private copy and mutates it in place; its return value
        is passed back. If the copy is unchanged nothing is written. Returns
        (None, None) when the segment does not exist, or belongs to another
        tenant than `tenant_id`.
        """
        for attempt in range(MAX_CAS_RETRIES):
            current = await self._fetch_for_update(call_sid, segment_number)
            if current is None:
                return None, None
            if tenant_id is not None and current.tenant_id != tenant_id:
                logger.warning("[{cs}] Segment belongs to another tenant, not updating", cs=call_sid)
                return None, None
            working = copy.deepcopy(current)
            result = fn(working)
            if working == current:
                return current, result
            written = await self._write_if_revision(working, current.revision)
            if written is not None:
                return written, result
            logger.debug(
                "[{cs}] Segment {n} changed concurrently, retry {a}",
                cs=call_sid, n=segment_number, a=attempt + 1,
            )
        raise ConcurrentUpdateError(f"Segment {call_sid}/{segment_number} kept changing")

    async def begin_transfer(
        self,
        active: Segment,
        *,
        to_user_id: str,
        from_user_id: str | None,
        reason: str | None,
        scratch: ScratchState,
    ) -> tuple[Segment, Segment]:
        """Close `active` as transferred and open the next segment, in one transaction."""
        now = utcnow()
        async with transaction() as conn:
            locked = await conn.fetchrow(
                "SELECT * FROM phone_calls WHERE id = $1 FOR UPDATE", active.id
            )
            if locked is None or locked["status"] in CLOSED_STATUSES:
                raise SegmentClosed(f"Call is no longer active (status={locked and locked['status']})")
            locked_segment = Segment.from_row(dict(locked))

            max_row = await conn.fetchrow(
                "SELECT MAX(segment_number) AS n FROM phone_calls WHERE original_call_sid = $1",
                active.original_call_sid,
            )
            number = (max_row["n"] or 0) + 1

            old = await conn.fetchrow(
                """UPDATE phone_calls SET status = 'transferred', ended_at = $2, duration = $3,
                     transferred_to_user_id = $4, transferred_from_user_id = $5,
                     transfer_reason = $6, transferred_at = $2, revision = revision + 1
                   WHERE id = $1 RETURNING *""",
                active.id,
                now,
                locked_segment.elapsed_seconds(now),
                to_user_id,
                from_user_id,
                reason,
            )
            new = await conn.fetchrow(
                """INSERT INTO phone_calls (tenant_id, call_sid, original_call_sid, segment_number,
                     direction, status, from_number, to_number, started_at, buyer_id,
                     conference_name, transferred_from_user_id, transferred_to_user_id,
                     transfer_reason, transferred_at, scratch)
                   VALUES ($1, $2, $3, $4, $5, 'ringing', $6, $7, $8, $9, $10, $11, $12, $13, $8, $14)
                   RETURNING *""",
                active.tenant_id,
                transfer_call_sid(active.original_call_sid, number),
                active.original_call_sid,
                number,
                active.direction,
                active.from_number,
                active.to_number,
                now,
                active.buyer_id,
                conference_name(active.original_call_sid, number),
                from_user_id,
                to_user_id,
                reason,
                json.dumps(scratch.to_dict()),
            )
        logger.info(
            "[{cs}] Segment {old} transferred, opened segment {new}",
            cs=active.original_call_sid, old=active.segment_number, new=number,
        )
        return Segment.from_row(dict(old)), Segment.from_row(dict(new))

    # ---- primitives -----------------------------------------------------

    async def _fetch_for_update(self, call_sid: str, segment_number: int) -> Segment | None:
        return await self.get_segment(call_sid, segment_number)

    async def _write_if_revision(self, segment: Segment, expected_revision: int) -> Segment | None:
        """Compare-and-swap write of the mutable columns. None on conflict."""
        values = [getattr(segment, col) for col in _MUTABLE_COLUMNS]
        sets = ", ".join(f"{col} = ${i + 3}" for i, col in enumerate(_MUTABLE_COLUMNS))
        n = len(_MUTABLE_COLUMNS) + 3
        row = await query_one(
            f"""UPDATE phone_calls SET {sets}, tags = ${n}, scratch = ${n + 1},
                  revision = revision + 1
                WHERE id = $1 AND revision = $2
                RETURNING *""",
            segment.id,
            expected_revision,
            *values,
            json.dumps(segment.tags),
            json.dumps(segment.scratch.to_dict()),
        )
        return Segment.from_row(row) if row else None
