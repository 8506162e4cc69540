"""Domain-specific exceptions for call orchestration.

These exceptions are safe to import from API layers without pulling in any
provider SDKs.
"""

from __future__ import annotations


class CallError(Exception):
    status_code: int = 500
    default_detail: str = "Call error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class TransportConnectionError(CallError):
    status_code = 502
    default_detail = "Transport endpoint unreachable or credentials rejected."


class ChannelNotReadyError(CallError):
    status_code = 409
    default_detail = "Transcription channel is not open."


class SynthesisError(CallError):
    status_code = 503
    default_detail = "Speech synthesis failed."


class CompletionError(CallError):
    status_code = 503
    default_detail = "Language model completion failed."


class SetupTimeoutError(CallError):
    status_code = 504
    default_detail = "Call did not become active in time."


class CallNotFoundError(CallError):
    status_code = 404
    default_detail = "Call not found."


class InvalidPhoneNumberError(CallError):
    status_code = 400
    default_detail = "Phone number is invalid."
