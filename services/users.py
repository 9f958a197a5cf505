"""Tenant user directory lookups.

Users and tenant memberships are owned by the platform; this service only
reads them to turn a destination or transfer target into a dialable
browser-client identity.
"""

from __future__ import annotations

from db import query_one

_SELECT = """SELECT tu.id AS tenant_user_id, tu.tenant_id, tu.user_id, u.email,
                    u.first_name, u.last_name
             FROM tenant_users tu JOIN users u ON u.id = tu.user_id"""


async def find_tenant_user(tenant_id: str, user_id: str) -> dict | None:
    """Find an active tenant membership by platform user id."""
    return await query_one(
        f"{_SELECT} WHERE tu.tenant_id = $1 AND tu.user_id = $2 AND tu.is_active",
        tenant_id,
        user_id,
    )


async def find_tenant_user_by_email(tenant_id: str, email: str) -> dict | None:
    """Find an active tenant membership by (case-insensitive) email."""
    return await query_one(
        f"{_SELECT} WHERE tu.tenant_id = $1 AND lower(u.email) = lower($2) AND tu.is_active",
        tenant_id,
        email.strip(),
    )


async def get_tenant_user(tenant_user_id: str) -> dict | None:
    """Get a tenant membership by its own id (used for transfer targets)."""
    return await query_one(f"{_SELECT} WHERE tu.id = $1 AND tu.is_active", tenant_user_id)
