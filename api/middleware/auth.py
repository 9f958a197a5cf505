"""Authentication for the management API.

Two tiers, implemented as FastAPI Depends() callables:
1. Service API key (x-api-key), constant-time compared; acts for any tenant
2. User JWT Bearer token carrying the user's tenant
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, Request
from loguru import logger

from config import settings

if settings.is_production and settings.jwt_secret == "callflow-secret-change-me":
    raise RuntimeError("JWT_SECRET environment variable is required in production")


@dataclass
class AuthContext:
    """Authentication context attached to each request."""
    is_service: bool = False
    user_id: str = ""
    tenant_id: str | None = None
    tenant_user_id: str | None = None


def create_token(user_id: str, tenant_id: str, tenant_user_id: str | None = None) -> str:
    """Issue a user token (used by the platform's login flow and by tests)."""
    payload = {"sub": user_id, "tenantId": tenant_id}
    if tenant_user_id:
        payload["tenantUserId"] = tenant_user_id
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


async def require_auth(request: Request) -> AuthContext:
    """API key → JWT.

    Usage: auth = Depends(require_auth)
    """
    # 1. Service API key
    api_key = request.headers.get("x-api-key", "")
    if api_key and settings.api_key and hmac.compare_digest(api_key.encode(), settings.api_key.encode()):
        return AuthContext(is_service=True, user_id="service")

    # 2. User JWT Bearer token
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]
        try:
            decoded = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            logger.debug("Rejected token: {err}", err=str(e))
            raise HTTPException(status_code=401, detail="Invalid token") from e
        return AuthContext(
            user_id=decoded.get("sub", ""),
            tenant_id=decoded.get("tenantId"),
            tenant_user_id=decoded.get("tenantUserId"),
        )

    raise HTTPException(status_code=401, detail="Authentication required")


async def require_tenant(tenant_id: str, auth: AuthContext = Depends(require_auth)) -> AuthContext:
    """Require access to the `{tenant_id}` path parameter's tenant."""
    if not auth.is_service and auth.tenant_id != tenant_id:
        raise HTTPException(status_code=403, detail="Access denied to this tenant")
    return auth
