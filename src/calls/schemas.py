"""Pydantic views of call state shared with the API layer."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CallSnapshot(CamelModel):
    """Point-in-time, read-only view of one call session."""

    id: str
    type: str
    status: str
    room_name: str
    bot_identity: str
    start_time: datetime
    end_time: datetime | None = None
    duration: float
    counterparty: str
    caller_identity: str | None = None
    phone_number: str | None = None
    last_transcript: str | None = None
    last_transcript_time: datetime | None = None
    end_reason: str | None = None
