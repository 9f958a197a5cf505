"""Tenant user directory and buyer lookup backed by dicts."""

from __future__ import annotations


class FakeDirectory:
    """Stands in for services.users.

    `add(tenant_id, user_id, email, tenant_user_id)` registers an active
    membership.
    """

    def __init__(self):
        self.members: list[dict] = []

    def add(self, tenant_id: str, user_id: str, email: str, tenant_user_id: str, **extra) -> dict:
        row = {
            "tenant_user_id": tenant_user_id,
            "tenant_id": tenant_id,
            "user_id": user_id,
            "email": email,
            "first_name": extra.get("first_name"),
            "last_name": extra.get("last_name"),
        }
        self.members.append(row)
        return row

    async def find_tenant_user(self, tenant_id: str, user_id: str) -> dict | None:
        for row in self.members:
            if row["tenant_id"] == tenant_id and row["user_id"] == user_id:
                return row
        return None

    async def find_tenant_user_by_email(self, tenant_id: str, email: str) -> dict | None:
        for row in self.members:
            if row["tenant_id"] == tenant_id and row["email"].lower() == email.strip().lower():
                return row
        return None

    async def get_tenant_user(self, tenant_user_id: str) -> dict | None:
        for row in self.members:
            if row["tenant_user_id"] == tenant_user_id:
                return row
        return None


class FakeBuyers:
    """Stands in for services.buyers."""

    def __init__(self, by_phone: dict[str, str] | None = None):
        self.by_phone = by_phone or {}

    async def find_buyer_by_phone(self, tenant_id: str, phone: str | None) -> str | None:
        return self.by_phone.get(phone or "")
