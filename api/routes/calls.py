"""Call chain API: read chains, transfer live calls, re-segment transcripts."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from loguru import logger

from api.middleware.auth import AuthContext, require_tenant
from api.middleware.rate_limit import API_LIMIT, WRITE_LIMIT, limiter
from api.validators.schemas import TransferCallRequest
from services.engine import get_engine
from services.telephony import TelephonyError
from services.transcripts import resegment_chain, resegment_tenant

router = APIRouter(prefix="/api/tenants/{tenant_id}/calls")


async def _chain_or_404(tenant_id: str, call_sid: str):
    chain = await get_engine().store.get_call_chain(call_sid)
    if not chain or chain[0].tenant_id != tenant_id:
        raise LookupError("Call not found")
    return chain


@router.get("")
@limiter.limit(API_LIMIT)
async def list_calls(
    request: Request,
    tenant_id: str,
    limit: int = 50,
    offset: int = 0,
    auth: AuthContext = Depends(require_tenant),
):
    calls = await get_engine().store.list_calls(tenant_id, min(max(limit, 1), 200), max(offset, 0))
    return {"calls": [c.to_json() for c in calls]}


@router.get("/{call_sid}")
@limiter.limit(API_LIMIT)
async def get_call_chain(request: Request, tenant_id: str, call_sid: str, auth: AuthContext = Depends(require_tenant)):
    """Every segment of the chain containing `call_sid`, oldest first."""
    chain = await _chain_or_404(tenant_id, call_sid)
    return {
        "originalCallSid": chain[0].original_call_sid,
        "segments": [s.to_json() for s in chain],
    }


@router.post("/{call_sid}/transfer")
@limiter.limit(WRITE_LIMIT)
async def transfer_call(
    request: Request,
    tenant_id: str,
    call_sid: str,
    body: TransferCallRequest,
    auth: AuthContext = Depends(require_tenant),
):
    """Hand the live call over to another tenant user."""
    old, new = await get_engine().transfers.transfer(
        call_sid,
        body.to_user_id,
        from_user_id=auth.tenant_user_id,
        reason=body.reason,
        tenant_id=tenant_id,
    )
    return {"success": True, "previousSegment": old.to_json(), "segment": new.to_json()}


@router.post("/{call_sid}/end")
@limiter.limit(WRITE_LIMIT)
async def end_call(request: Request, tenant_id: str, call_sid: str, auth: AuthContext = Depends(require_tenant)):
    chain = await _chain_or_404(tenant_id, call_sid)
    try:
        await get_engine().telephony.terminate_call(chain[0].original_call_sid)
    except TelephonyError as e:
        logger.error("Failed to end call {sid}: {err}", sid=call_sid, err=str(e))
        raise ValueError("Could not end the call") from e
    return {"success": True}


@router.post("/{call_sid}/resegment")
@limiter.limit(WRITE_LIMIT)
async def resegment_call(request: Request, tenant_id: str, call_sid: str, auth: AuthContext = Depends(require_tenant)):
    """Re-split the chain's transcript across its segments."""
    await _chain_or_404(tenant_id, call_sid)
    count = await resegment_chain(get_engine().store, call_sid)
    return {"segments": count}


@router.post("/resegment/all")
@limiter.limit(WRITE_LIMIT)
async def resegment_all(request: Request, tenant_id: str, auth: AuthContext = Depends(require_tenant)):
    return await resegment_tenant(get_engine().store, tenant_id)
