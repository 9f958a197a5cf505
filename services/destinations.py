"""Dial destination classification and resolution.

A destination string from a flow is a platform user id (UUID), a user's
email, or a phone number. `classify` is pure; `DestinationResolver.resolve`
does the directory lookup and returns the address to dial together with
the identity an answer on that leg is attributed to. Both dial time and
answer time go through the same resolver: the identity resolved for a leg
is stored with the leg and read back when the leg answers.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from enum import Enum

from loguru import logger

from lib.phone import normalize_phone_number
from lib.sanitize import mask_destination

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


class DestinationKind(str, Enum):
    USER_ID = "user_id"
    EMAIL = "email"
    PHONE = "phone"


class DestinationUnresolvable(LookupError):
    """A user id or email that does not map to an active tenant user."""


@dataclass(frozen=True)
class Destination:
    raw: str
    kind: DestinationKind


@dataclass(frozen=True)
class Identity:
    """The (tenant, user) pair an answering party is attributed to."""

    tenant_id: str
    user_id: str
    tenant_user_id: str

    @property
    def client_identity(self) -> str:
        return f"{self.tenant_id}:{self.user_id}"

    @classmethod
    def from_row(cls, row: dict) -> "Identity":
        return cls(
            tenant_id=str(row["tenant_id"]),
            user_id=str(row["user_id"]),
            tenant_user_id=str(row["tenant_user_id"]),
        )


@dataclass(frozen=True)
class DialTarget:
    """Where to place an outbound leg."""

    kind: str  # "client" | "phone"
    address: str
    destination: str
    identity: Identity | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DialTarget":
        ident = data.get("identity")
        return cls(
            kind=data["kind"],
            address=data["address"],
            destination=data.get("destination", data["address"]),
            identity=Identity(**ident) if ident else None,
        )


def classify(destination: str) -> Destination:
    """Tag a destination string. Pure; no lookups."""
    value = (destination or "").strip()
    if UUID_RE.match(value):
        return Destination(value, DestinationKind.USER_ID)
    if "@" in value:
        return Destination(value, DestinationKind.EMAIL)
    return Destination(value, DestinationKind.PHONE)


class DestinationResolver:
    """Resolves destinations against a tenant user directory.

    `directory` provides `find_tenant_user(tenant_id, user_id)` and
    `find_tenant_user_by_email(tenant_id, email)`; defaults to services.users.
    """

    def __init__(self, directory=None):
        if directory is None:
            from services import users as directory
        self.directory = directory

    async def resolve(self, destination: str, tenant_id: str) -> DialTarget:
        dest = classify(destination)

        if dest.kind == DestinationKind.PHONE:
            number = normalize_phone_number(dest.raw)
            if not number:
                raise DestinationUnresolvable(f"Not a dialable phone number: {mask_destination(dest.raw)}")
            return DialTarget(kind="phone", address=number, destination=dest.raw)

        if dest.kind == DestinationKind.USER_ID:
            row = await self.directory.find_tenant_user(tenant_id, dest.raw)
        else:
            row = await self.directory.find_tenant_user_by_email(tenant_id, dest.raw)

        if not row:
            logger.warning(
                "Destination {d} not found in tenant {t}",
                d=mask_destination(dest.raw),
                t=tenant_id,
            )
            raise DestinationUnresolvable(f"No active user for destination {mask_destination(dest.raw)}")

        identity = Identity.from_row(row)
        return DialTarget(
            kind="client",
            address=identity.client_identity,
            destination=dest.raw,
            identity=identity,
        )

    async def resolve_many(self, destinations: list[str], tenant_id: str) -> list[DialTarget]:
        """Resolve every destination, dropping the ones that cannot be resolved."""
        targets = []
        for destination in destinations:
            try:
                targets.append(await self.resolve(destination, tenant_id))
            except DestinationUnresolvable as e:
                logger.warning("Skipping destination: {err}", err=str(e))
        return targets
