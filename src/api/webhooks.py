"""LiveKit webhook receiver for inbound SIP calls."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException

from api.dependencies import get_call_manager
from api.schemas import InboundCallResponse, WebhookAckResponse
from calls.errors import CallError
from calls.manager import CallManager
from telephony.webhooks import WebhookPayloadError, parse_inbound_webhook

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/livekit", tags=["livekit"])


@router.post(
    "/sip-call",
    response_model=InboundCallResponse | WebhookAckResponse,
    response_model_by_alias=True,
)
async def livekit_sip_call(
    payload: dict[str, Any] = Body(...),
    manager: CallManager = Depends(get_call_manager),
) -> InboundCallResponse | WebhookAckResponse:
    LOGGER.info("Received LiveKit webhook: event=%s", payload.get("event"))
    try:
        request = parse_inbound_webhook(payload)
    except WebhookPayloadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if request is None:
        return WebhookAckResponse(message="Webhook received, but event not handled.")

    existing = manager.find_by_room(request.room_name)
    if existing is not None:
        # Rooms we created ourselves (outbound calls) also report `room_started`.
        LOGGER.info("Room %s already belongs to call %s; ignoring webhook", request.room_name, existing.call_id)
        return WebhookAckResponse(message=f"Room {request.room_name} already has an active call.")

    try:
        session = await manager.create_inbound(
            request.room_name,
            caller_identity=request.caller_identity,
            caller_id=request.caller_id,
        )
    except CallError as exc:
        LOGGER.error("Error handling inbound SIP webhook for room %s: %s", request.room_name, exc.detail)
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    return InboundCallResponse(
        call_id=session.call_id,
        room_name=session.room_name,
        bot_identity=session.bot_identity,
    )
