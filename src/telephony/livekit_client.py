"""LiveKit server API wrapper: rooms, access tokens and SIP dialing."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

from livekit import api

from calls.errors import InvalidPhoneNumberError, TransportConnectionError
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

_PROVIDER_ERRORS = (api.TwirpError, OSError, asyncio.TimeoutError)


def format_phone_number(phone_number: str) -> str:
    """Normalize a phone number to E.164 (`+` followed by digits).

    Numbers without a leading `+` that have exactly ten digits are treated as
    US/Canada numbers and get the `1` country code.
    """

    raw = (phone_number or "").strip()
    digits = re.sub(r"\D", "", raw)
    if not digits:
        raise InvalidPhoneNumberError(f"Phone number has no digits: {phone_number!r}")

    if not raw.startswith("+"):
        if len(digits) == 10:
            digits = f"1{digits}"
        return f"+{digits}"

    return "+" + digits


def _http_url(url: str) -> str:
    if url.startswith("wss://"):
        return "https://" + url.removeprefix("wss://")
    if url.startswith("ws://"):
        return "http://" + url.removeprefix("ws://")
    return url


@dataclass(frozen=True)
class OutboundDialResult:
    room_name: str
    phone_number: str
    participant_identity: str
    sip_call_id: str | None = None


class LiveKitRoomService:
    """Server-side operations against the LiveKit API.

    A fresh API client is created per operation; calls are infrequent
    compared to media traffic and this keeps the service loop-agnostic.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        if not settings.livekit_url or not settings.livekit_api_key or not settings.livekit_api_secret:
            raise ValueError("LIVEKIT_URL, LIVEKIT_API_KEY and LIVEKIT_API_SECRET must be configured.")

        self._settings = settings
        self.url = settings.livekit_url
        self._api_key = settings.livekit_api_key
        self._api_secret = settings.livekit_api_secret

    def _client(self) -> api.LiveKitAPI:
        return api.LiveKitAPI(
            url=_http_url(self.url),
            api_key=self._api_key,
            api_secret=self._api_secret,
        )

    async def create_or_get_room(self, room_name: str) -> Any:
        LOGGER.info("Creating or getting room: %s", room_name)
        lkapi = self._client()
        try:
            existing = await lkapi.room.list_rooms(api.ListRoomsRequest(names=[room_name]))
            if existing.rooms:
                LOGGER.info("Room %s already exists", room_name)
                return existing.rooms[0]

            LOGGER.info("Room %s doesn't exist, creating new room", room_name)
            return await lkapi.room.create_room(
                api.CreateRoomRequest(
                    name=room_name,
                    empty_timeout=self._settings.room_empty_timeout_seconds,
                    max_participants=self._settings.room_max_participants,
                )
            )
        except _PROVIDER_ERRORS as exc:
            LOGGER.error("Error creating/getting room %s: %s", room_name, exc)
            raise TransportConnectionError(f"Could not provision room {room_name}: {exc}") from exc
        finally:
            await lkapi.aclose()

    def generate_token(self, room_name: str, identity: str, *, is_bot: bool = False) -> str:
        LOGGER.info("Generating token for %s in room %s", identity, room_name)
        token = (
            api.AccessToken(self._api_key, self._api_secret)
            .with_identity(identity)
            .with_name(identity)
            .with_grants(
                api.VideoGrants(
                    room_join=True,
                    room=room_name,
                    can_publish=True,
                    can_subscribe=True,
                )
            )
        )
        if is_bot:
            token = token.with_metadata(json.dumps({"type": "bot"}))
        try:
            return token.to_jwt()
        except ValueError as exc:
            raise TransportConnectionError(f"Could not issue access token: {exc}") from exc

    async def place_outbound_call(self, room_name: str, phone_number: str) -> OutboundDialResult:
        trunk_id = self._settings.livekit_sip_trunk_id
        if not trunk_id:
            raise TransportConnectionError(
                "LIVEKIT_SIP_TRUNK_ID is not set. Please create an outbound trunk first."
            )

        formatted = format_phone_number(phone_number)
        participant_identity = f"sip_{int(time.time() * 1000)}"
        LOGGER.info("Placing outbound call to %s in room %s", formatted, room_name)

        lkapi = self._client()
        try:
            info = await lkapi.sip.create_sip_participant(
                api.CreateSIPParticipantRequest(
                    sip_trunk_id=trunk_id,
                    sip_call_to=formatted,
                    room_name=room_name,
                    participant_identity=participant_identity,
                    participant_name=f"Phone Call {formatted}",
                    play_dialtone=True,
                    wait_until_answered=False,
                )
            )
        except _PROVIDER_ERRORS as exc:
            LOGGER.error("Error placing outbound call to %s: %s", formatted, exc)
            raise TransportConnectionError(f"SIP call to {formatted} failed: {exc}") from exc
        finally:
            await lkapi.aclose()

        return OutboundDialResult(
            room_name=room_name,
            phone_number=formatted,
            participant_identity=participant_identity,
            sip_call_id=getattr(info, "sip_call_id", None) or None,
        )

    async def remove_participant(self, room_name: str, identity: str) -> None:
        LOGGER.info("Disconnecting participant %s from room %s", identity, room_name)
        lkapi = self._client()
        try:
            await lkapi.room.remove_participant(
                api.RoomParticipantIdentity(room=room_name, identity=identity)
            )
        except _PROVIDER_ERRORS as exc:
            LOGGER.error("Error disconnecting participant %s: %s", identity, exc)
            raise TransportConnectionError(
                f"Could not remove {identity} from room {room_name}: {exc}"
            ) from exc
        finally:
            await lkapi.aclose()

    async def delete_room(self, room_name: str) -> None:
        LOGGER.info("Ending room: %s", room_name)
        lkapi = self._client()
        try:
            await lkapi.room.delete_room(api.DeleteRoomRequest(room=room_name))
        finally:
            await lkapi.aclose()
