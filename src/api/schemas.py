"""API-facing Pydantic models."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from calls.schemas import CamelModel


class HealthResponse(CamelModel):
    status: str = "ok"
    timestamp: datetime


class OutboundCallRequest(CamelModel):
    phone_number: str = Field(min_length=1, description="Number to dial; normalized to E.164.")
    initial_context: str | None = Field(
        default=None, description="Extra system instruction for this call."
    )
    room_name: str | None = None
    voice: str | None = None


class OutboundCallResponse(CamelModel):
    success: bool = True
    call_id: str
    room_name: str


class InboundCallRequest(CamelModel):
    room_name: str = Field(min_length=1)
    caller_identity: str | None = None
    sip_participant_identity: str | None = None
    caller_id: str | None = None


class InboundCallResponse(CamelModel):
    success: bool = True
    call_id: str
    room_name: str
    bot_identity: str


class EndCallResponse(CamelModel):
    success: bool = True
    message: str


class WebhookAckResponse(CamelModel):
    message: str
