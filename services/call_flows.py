"""Call flow service: CRUD, line assignment and runtime lookup.

Every create/update validates the step tree and pre-synthesizes its text
prompts before anything is written.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from loguru import logger

from db import execute, query_many, query_one
from flows.audio import ensure_audio_cached
from flows.models import Step, dump_steps, parse_steps
from flows.validator import validate


class FlowInUseError(Exception):
    """A flow cannot be deleted while phone lines use it."""

    def __init__(self, flow_id: str, line_count: int):
        self.flow_id = flow_id
        self.line_count = line_count
        super().__init__(f"Call flow is assigned to {line_count} phone line(s); unassign it first")


@dataclass
class LineFlow:
    """A phone line together with the flow it runs."""

    line_id: str
    tenant_id: str
    phone_number: str
    flow_id: str | None = None
    flow_name: str | None = None
    is_active: bool = False
    record_inbound_calls: bool = False
    steps: list[Step] = field(default_factory=list)


def _flow_out(row: dict | None) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    steps = data.get("steps")
    if isinstance(steps, str):
        steps = json.loads(steps)
    data["steps"] = steps or []
    for key in ("id", "tenant_id"):
        if data.get(key) is not None:
            data[key] = str(data[key])
    return data


async def prepare_steps(raw_steps: list, synthesize=None) -> list[Step]:
    """Parse, validate and pre-synthesize a step tree."""
    steps = parse_steps(raw_steps)
    validate(steps)
    if synthesize is None:
        from services.speech import synthesize_speech as synthesize
    await ensure_audio_cached(steps, synthesize)
    return steps


async def list_flows(tenant_id: str) -> list[dict]:
    rows = await query_many(
        """SELECT f.*, (SELECT COUNT(*) FROM phone_lines l WHERE l.call_flow_id = f.id) AS line_count
           FROM call_flows f WHERE f.tenant_id = $1 ORDER BY f.created_at DESC""",
        tenant_id,
    )
    return [_flow_out(r) for r in rows]


async def get_flow(tenant_id: str, flow_id: str) -> dict | None:
    row = await query_one(
        "SELECT * FROM call_flows WHERE id = $1 AND tenant_id = $2",
        flow_id,
        tenant_id,
    )
    return _flow_out(row)


async def create_flow(tenant_id: str, data: dict, synthesize=None) -> dict:
    steps = await prepare_steps(data.get("steps") or [], synthesize)
    row = await query_one(
        """INSERT INTO call_flows (tenant_id, name, description, is_active, record_inbound_calls, steps)
           VALUES ($1, $2, $3, $4, $5, $6)
           RETURNING *""",
        tenant_id,
        data["name"],
        data.get("description"),
        data.get("is_active", True),
        data.get("record_inbound_calls", False),
        json.dumps(dump_steps(steps)),
    )
    logger.info("Created call flow {id} ({name}) with {n} step(s)", id=row["id"], name=data["name"], n=len(steps))
    return _flow_out(row)


async def update_flow(tenant_id: str, flow_id: str, data: dict, synthesize=None) -> dict | None:
    existing = await get_flow(tenant_id, flow_id)
    if existing is None:
        return None

    sets = []
    values = []
    for col in ("name", "description", "is_active", "record_inbound_calls"):
        if col in data:
            values.append(data[col])
            sets.append(f"{col} = ${len(values)}")
    if "steps" in data and data["steps"] is not None:
        steps = await prepare_steps(data["steps"], synthesize)
        values.append(json.dumps(dump_steps(steps)))
        sets.append(f"steps = ${len(values)}")

    if not sets:
        return existing

    sets.append("updated_at = NOW()")
    values.extend([flow_id, tenant_id])
    row = await query_one(
        f"UPDATE call_flows SET {', '.join(sets)} "
        f"WHERE id = ${len(values) - 1} AND tenant_id = ${len(values)} RETURNING *",
        *values,
    )
    logger.info("Updated call flow {id}", id=flow_id)
    return _flow_out(row)


async def delete_flow(tenant_id: str, flow_id: str) -> None:
    if await get_flow(tenant_id, flow_id) is None:
        raise LookupError("Call flow not found")
    row = await query_one(
        "SELECT COUNT(*) AS n FROM phone_lines WHERE call_flow_id = $1",
        flow_id,
    )
    if row and row["n"]:
        raise FlowInUseError(flow_id, row["n"])
    await execute("DELETE FROM call_flows WHERE id = $1 AND tenant_id = $2", flow_id, tenant_id)
    logger.info("Deleted call flow {id}", id=flow_id)


async def duplicate_flow(tenant_id: str, flow_id: str) -> dict:
    """Copy a flow as an inactive '<name> (Copy)'."""
    source = await get_flow(tenant_id, flow_id)
    if source is None:
        raise LookupError("Call flow not found")
    row = await query_one(
        """INSERT INTO call_flows (tenant_id, name, description, is_active, record_inbound_calls, steps)
           VALUES ($1, $2, $3, false, $4, $5)
           RETURNING *""",
        tenant_id,
        f"{source['name']} (Copy)",
        source.get("description"),
        source.get("record_inbound_calls", False),
        json.dumps(source["steps"]),
    )
    logger.info("Duplicated call flow {src} as {id}", src=flow_id, id=row["id"])
    return _flow_out(row)


async def assign_to_line(tenant_id: str, line_id: str, flow_id: str | None) -> dict:
    """Point a phone line at a flow, or unassign it with flow_id=None."""
    if flow_id is not None and await get_flow(tenant_id, flow_id) is None:
        raise LookupError("Call flow not found")
    row = await query_one(
        "UPDATE phone_lines SET call_flow_id = $1 WHERE id = $2 AND tenant_id = $3 RETURNING *",
        flow_id,
        line_id,
        tenant_id,
    )
    if row is None:
        raise LookupError("Phone line not found")
    logger.info("Line {line} now runs flow {flow}", line=line_id, flow=flow_id)
    return {k: (str(v) if k in ("id", "tenant_id", "call_flow_id") and v is not None else v) for k, v in row.items()}


async def get_flow_for_line(line_id: str) -> LineFlow | None:
    """The line and the flow it runs (steps parsed). None for an unknown line."""
    row = await query_one(
        """SELECT l.id AS line_id, l.tenant_id, l.phone_number, f.id AS flow_id,
                  f.name AS flow_name, f.is_active, f.record_inbound_calls, f.steps
           FROM phone_lines l LEFT JOIN call_flows f ON f.id = l.call_flow_id
           WHERE l.id = $1 AND l.is_active""",
        line_id,
    )
    if row is None:
        return None
    steps = row.get("steps")
    if isinstance(steps, str):
        steps = json.loads(steps)
    return LineFlow(
        line_id=str(row["line_id"]),
        tenant_id=str(row["tenant_id"]),
        phone_number=row["phone_number"],
        flow_id=str(row["flow_id"]) if row.get("flow_id") else None,
        flow_name=row.get("flow_name"),
        is_active=bool(row.get("is_active")),
        record_inbound_calls=bool(row.get("record_inbound_calls")),
        steps=parse_steps(steps),
    )


async def get_primary_line_number(tenant_id: str) -> str | None:
    row = await query_one(
        """SELECT phone_number FROM phone_lines
           WHERE tenant_id = $1 AND is_active
           ORDER BY is_primary DESC, phone_number LIMIT 1""",
        tenant_id,
    )
    return row["phone_number"] if row else None
