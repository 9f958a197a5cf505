"""Call flow management API."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.middleware.auth import AuthContext, require_tenant
from api.middleware.rate_limit import API_LIMIT, WRITE_LIMIT, limiter
from api.validators.schemas import (
    AssignCallFlowRequest,
    CreateCallFlowRequest,
    UpdateCallFlowRequest,
    ValidateStepsRequest,
)
from flows.validator import validate
from services import call_flows

router = APIRouter(prefix="/api/tenants/{tenant_id}")


@router.get("/call-flows")
@limiter.limit(API_LIMIT)
async def list_call_flows(request: Request, tenant_id: str, auth: AuthContext = Depends(require_tenant)):
    return {"callFlows": await call_flows.list_flows(tenant_id)}


@router.get("/call-flows/{flow_id}")
@limiter.limit(API_LIMIT)
async def get_call_flow(request: Request, tenant_id: str, flow_id: str, auth: AuthContext = Depends(require_tenant)):
    flow = await call_flows.get_flow(tenant_id, flow_id)
    if flow is None:
        raise LookupError("Call flow not found")
    return flow


@router.post("/call-flows", status_code=201)
@limiter.limit(WRITE_LIMIT)
async def create_call_flow(
    request: Request,
    tenant_id: str,
    body: CreateCallFlowRequest,
    auth: AuthContext = Depends(require_tenant),
):
    data = body.model_dump(exclude={"steps"})
    data["steps"] = body.steps
    return await call_flows.create_flow(tenant_id, data)


@router.put("/call-flows/{flow_id}")
@limiter.limit(WRITE_LIMIT)
async def update_call_flow(
    request: Request,
    tenant_id: str,
    flow_id: str,
    body: UpdateCallFlowRequest,
    auth: AuthContext = Depends(require_tenant),
):
    data = body.model_dump(exclude_unset=True, exclude={"steps"})
    if "steps" in body.model_fields_set:
        data["steps"] = body.steps
    flow = await call_flows.update_flow(tenant_id, flow_id, data)
    if flow is None:
        raise LookupError("Call flow not found")
    return flow


@router.delete("/call-flows/{flow_id}", status_code=204)
@limiter.limit(WRITE_LIMIT)
async def delete_call_flow(request: Request, tenant_id: str, flow_id: str, auth: AuthContext = Depends(require_tenant)):
    await call_flows.delete_flow(tenant_id, flow_id)
    return Response(status_code=204)


@router.post("/call-flows/{flow_id}/duplicate", status_code=201)
@limiter.limit(WRITE_LIMIT)
async def duplicate_call_flow(
    request: Request, tenant_id: str, flow_id: str, auth: AuthContext = Depends(require_tenant)
):
    return await call_flows.duplicate_flow(tenant_id, flow_id)


@router.post("/call-flows/validate")
@limiter.limit(API_LIMIT)
async def validate_call_flow(
    request: Request, tenant_id: str, body: ValidateStepsRequest, auth: AuthContext = Depends(require_tenant)
):
    """Check a step tree without saving it (400 with the first problem found)."""
    validate(body.steps)
    return {"valid": True}


@router.put("/phone-lines/{line_id}/call-flow")
@limiter.limit(WRITE_LIMIT)
async def assign_call_flow(
    request: Request,
    tenant_id: str,
    line_id: str,
    body: AssignCallFlowRequest,
    auth: AuthContext = Depends(require_tenant),
):
    return await call_flows.assign_to_line(tenant_id, line_id, body.call_flow_id)


@router.delete("/phone-lines/{line_id}/call-flow")
@limiter.limit(WRITE_LIMIT)
async def unassign_call_flow(request: Request, tenant_id: str, line_id: str, auth: AuthContext = Depends(require_tenant)):
    return await call_flows.assign_to_line(tenant_id, line_id, None)
