"""Per-call conversation history handed to the language model."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

LOGGER = logging.getLogger(__name__)

Role = Literal["system", "user", "assistant"]


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


@dataclass(frozen=True)
class Turn:
    """One message in the conversation history."""

    role: Role
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class ConversationContext:
    """Append-only message history for a single call.

    The context is owned by exactly one call session. Turns are never
    reordered or removed; the only way to drop them is `release()`, which
    destroys the whole history.
    """

    def __init__(self) -> None:
        self.call_id: str | None = None
        self.metadata: dict[str, Any] = {}
        self._turns: list[Turn] | None = None

    @property
    def initialized(self) -> bool:
        return self._turns is not None

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns or ())

    def initialize(
        self,
        call_id: str,
        system_prompt: str,
        metadata: dict[str, Any] | None = None,
    ) -> list[Turn]:
        if self._turns is not None and self.call_id == call_id:
            LOGGER.warning(
                "Conversation for call %s initialized twice; resetting history (%d turns dropped)",
                call_id,
                len(self._turns),
            )
        LOGGER.info("Initializing conversation for call %s", call_id)
        self.call_id = call_id
        self.metadata = dict(metadata or {})
        self._turns = [Turn(role="system", content=system_prompt)]
        return list(self._turns)

    def append_system(self, content: str) -> list[Turn]:
        LOGGER.info("Added system message to call %s: %r", self.call_id, _preview(content))
        return self._append("system", content)

    def append_user(self, content: str) -> list[Turn]:
        return self._append("user", content)

    def append_assistant(self, content: str) -> list[Turn]:
        return self._append("assistant", content)

    def render(self) -> list[dict[str, str]]:
        """Return the history in the shape expected by chat completion APIs."""

        return [turn.as_message() for turn in self._require_turns()]

    def release(self) -> None:
        if self._turns is not None:
            LOGGER.info("Ending conversation for call %s", self.call_id)
        self._turns = None

    def __len__(self) -> int:
        return len(self._turns or ())

    def _append(self, role: Role, content: str) -> list[Turn]:
        turns = self._require_turns()
        turns.append(Turn(role=role, content=content))
        return list(turns)

    def _require_turns(self) -> list[Turn]:
        if self._turns is None:
            raise RuntimeError("Conversation context is not initialized or was released.")
        return self._turns
