"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:  # pragma: no cover
    from calls.manager import CallManager


@lru_cache(maxsize=1)
def _manager_factory() -> CallManager:
    # Lazy import to avoid importing provider SDKs at module import time.
    from calls.manager import CallManager

    return CallManager.from_settings()


def get_call_manager(request: Request) -> CallManager:
    manager = getattr(request.app.state, "call_manager", None)
    if manager is not None:
        return manager
    return _manager_factory()
