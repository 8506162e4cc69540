"""Interpretation of LiveKit webhook payloads for inbound SIP calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

LOGGER = logging.getLogger(__name__)


class WebhookPayloadError(ValueError):
    """A qualifying webhook was missing data required to start a call."""


@dataclass(frozen=True)
class InboundCallRequest:
    room_name: str
    caller_identity: str | None = None
    caller_id: str | None = None


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def is_inbound_sip_event(payload: dict[str, Any]) -> bool:
    """True for `room_started` events and for payloads carrying both SIP and room data."""

    if payload.get("event") == "room_started":
        return True
    return bool(payload.get("sip")) and bool(payload.get("room"))


def parse_inbound_webhook(payload: dict[str, Any]) -> InboundCallRequest | None:
    """Map a LiveKit webhook to an inbound call request.

    Returns None for events that do not announce an inbound call. Raises
    `WebhookPayloadError` when the event qualifies but carries no room name.
    """

    if not is_inbound_sip_event(payload):
        LOGGER.warning("Received unhandled LiveKit event type: %s", payload.get("event"))
        return None

    room = _section(payload, "room")
    sip = _section(payload, "sip")
    participant = _section(payload, "participant")

    room_name = room.get("name")
    if not room_name:
        LOGGER.error("Webhook received but room name is missing in payload.")
        raise WebhookPayloadError("Room name is missing in webhook payload.")

    caller_identity = participant.get("identity") or sip.get("participant_identity")
    caller_id = sip.get("from_display_name") or sip.get("from")
    LOGGER.info(
        "Inbound SIP call for room %s (participant %s, caller %s)",
        room_name,
        caller_identity,
        caller_id,
    )
    return InboundCallRequest(
        room_name=str(room_name),
        caller_identity=caller_identity,
        caller_id=caller_id,
    )
