"""FastAPI routes for creating, inspecting and ending calls."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_call_manager
from api.schemas import (
    EndCallResponse,
    HealthResponse,
    InboundCallRequest,
    InboundCallResponse,
    OutboundCallRequest,
    OutboundCallResponse,
)
from calls.errors import CallError
from calls.manager import CallManager
from calls.schemas import CallSnapshot

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/calls", tags=["calls"])
health_router = APIRouter(tags=["health"])


def _http_error(exc: CallError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


@health_router.get("/health", response_model=HealthResponse, response_model_by_alias=True)
async def health() -> HealthResponse:
    return HealthResponse(timestamp=datetime.now(timezone.utc))


@router.post("/outbound", response_model=OutboundCallResponse, response_model_by_alias=True)
async def create_outbound_call(
    body: OutboundCallRequest,
    manager: CallManager = Depends(get_call_manager),
) -> OutboundCallResponse:
    try:
        session = await manager.create_outbound(
            body.phone_number,
            initial_context=body.initial_context,
            room_name=body.room_name,
            voice=body.voice,
        )
    except CallError as exc:
        LOGGER.error("Error initiating outbound call to %s: %s", body.phone_number, exc.detail)
        raise _http_error(exc) from exc

    return OutboundCallResponse(call_id=session.call_id, room_name=session.room_name)


@router.post("/inbound", response_model=InboundCallResponse, response_model_by_alias=True)
async def create_inbound_call(
    body: InboundCallRequest,
    manager: CallManager = Depends(get_call_manager),
) -> InboundCallResponse:
    try:
        session = await manager.create_inbound(
            body.room_name,
            caller_identity=body.caller_identity or body.sip_participant_identity,
            caller_id=body.caller_id,
        )
    except CallError as exc:
        LOGGER.error("Error handling inbound call for room %s: %s", body.room_name, exc.detail)
        raise _http_error(exc) from exc

    return InboundCallResponse(
        call_id=session.call_id,
        room_name=session.room_name,
        bot_identity=session.bot_identity,
    )


@router.get("", response_model=list[CallSnapshot], response_model_by_alias=True)
async def list_calls(manager: CallManager = Depends(get_call_manager)) -> list[CallSnapshot]:
    return manager.list_active()


@router.get("/{call_id}", response_model=CallSnapshot, response_model_by_alias=True)
async def get_call(call_id: str, manager: CallManager = Depends(get_call_manager)) -> CallSnapshot:
    try:
        return manager.snapshot(call_id)
    except CallError as exc:
        raise _http_error(exc) from exc


@router.post("/{call_id}/end", response_model=EndCallResponse, response_model_by_alias=True)
async def end_call(call_id: str, manager: CallManager = Depends(get_call_manager)) -> EndCallResponse:
    if not manager.end(call_id):
        raise HTTPException(status_code=404, detail="Call not found or already ended")
    return EndCallResponse(message="Call ended successfully")
