# leadflow/transport/schemas.py
"""
Pydantic request/response models for the HTTP surface.

Wire format is camelCase (``leadId``, ``assignedCloser``); the service
layer works in snake_case and these models translate at the edge.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# RPC requests
# ---------------------------------------------------------------------------

class LeadIdRequest(CamelModel):
    """``{"leadId": ...}``. Presence is checked by the service (invalid-argument)."""

    lead_id: Optional[str] = None


class TeamIdRequest(CamelModel):
    team_id: Optional[str] = None


# ---------------------------------------------------------------------------
# RPC responses
# ---------------------------------------------------------------------------

class CloserRef(CamelModel):
    uid: str
    name: str


class AssignResponse(CamelModel):
    success: bool = True
    message: str = ""
    assigned_closer: CloserRef


class AcceptJobResponse(CamelModel):
    success: bool = True
    message: str = ""
    already_accepted: bool = False
    accepted_at: Optional[str] = None


class CloserStats(CamelModel):
    uid: str
    name: str
    status: str
    lineup_order: int
    assigned_leads: int


class TeamStatsResponse(CamelModel):
    team_id: str
    total_leads: int
    leads_by_status: dict[str, int] = Field(default_factory=dict)
    closers: list[CloserStats] = Field(default_factory=list)
    on_duty_closers: int
    timestamp: str


class ErrorBody(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorBody


# ---------------------------------------------------------------------------
# Trigger webhooks
# ---------------------------------------------------------------------------

class LeadCreatedTrigger(BaseModel):
    """Document snapshot of a newly written lead."""

    lead: dict[str, Any]


class DocumentChangeTrigger(BaseModel):
    """Before/after snapshots of an updated lead or closer document."""

    before: dict[str, Any]
    after: dict[str, Any]


class TriggerAck(BaseModel):
    status: str = "done"
