"""Data types for the call logging subsystem."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class CallRecord:
    """Immutable record of one finished stub call.

    Attributes:
        timestamp_ns: Wall-clock time the call started (nanoseconds since epoch).
        method: Fully qualified RPC method name.
        url: Target URL of the exchange.
        outcome: ``"ok"``, ``"status_error"``, ``"transport_error"``,
            ``"credential_error"``, ``"decode_error"`` or ``"cancelled"``.
        status_code: Status code name (``"OK"``, ``"INVALID_ARGUMENT"``, ...).
        request_bytes: Size of the serialized request.
        response_bytes: Size of the response body (0 when none was read).
        duration_ms: Time from invocation to callback (milliseconds).
    """

    timestamp_ns: int
    method: str
    url: str
    outcome: str
    status_code: str
    request_bytes: int
    response_bytes: int
    duration_ms: float
