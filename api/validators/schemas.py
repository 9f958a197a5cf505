"""Pydantic request validation schemas.

Request bodies are camelCase JSON, like the flow definitions they carry.
FastAPI validates them before a handler runs; a malformed step config is a
422 before any validation of the tree itself.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from flows.models import Step


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Call flow schemas
# ---------------------------------------------------------------------------

class CreateCallFlowRequest(_Request):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    is_active: bool = True
    record_inbound_calls: bool = False
    steps: list[Step] = Field(default_factory=list)


class UpdateCallFlowRequest(_Request):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    is_active: Optional[bool] = None
    record_inbound_calls: Optional[bool] = None
    steps: Optional[list[Step]] = None


class ValidateStepsRequest(_Request):
    steps: list[Step]


class AssignCallFlowRequest(_Request):
    call_flow_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Call schemas
# ---------------------------------------------------------------------------

class TransferCallRequest(_Request):
    to_user_id: str = Field(min_length=1)
    reason: Optional[str] = Field(default=None, max_length=500)
