"""Exception hierarchy for rpc-fallback.

All exceptions derive from FallbackError, enabling broad catch patterns
at the application boundary while allowing fine-grained handling internally.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import grpc

if TYPE_CHECKING:
    from rpc_fallback.status import StatusEnvelope


class FallbackError(Exception):
    """Base exception for all rpc-fallback errors."""


class ConfigValidationError(FallbackError):
    """Configuration field validation failed.

    Raised when stub options attempt to override client-level fields or
    carry values outside their allowed range.
    """


class DescriptorError(FallbackError):
    """A JSON service descriptor cannot be turned into protobuf descriptors.

    Raised for malformed entries, unresolvable type references, or
    definitions the protobuf runtime rejects.
    """


class EncodingError(FallbackError):
    """A request object does not fit its message type.

    Raised synchronously by a stub method, before any exchange is started.
    """


class DecodeError(FallbackError):
    """Bytes are not a valid encoding of the expected message type."""


class TransportError(FallbackError):
    """The request/response exchange failed.

    Delivered through the call callback when the transport raises, or when
    a non-ok response body cannot be decoded as a status message.
    """


class CredentialError(FallbackError):
    """The credential provider could not produce request headers."""


def status_code_for(code: int) -> grpc.StatusCode:
    """Map a numeric status code onto ``grpc.StatusCode``.

    Args:
        code: Integer code from a ``google.rpc.Status`` message.

    Returns:
        The matching ``grpc.StatusCode``, or ``UNKNOWN`` for codes outside
        the canonical range.
    """
    for status_code in grpc.StatusCode:
        if status_code.value[0] == code:
            return status_code
    return grpc.StatusCode.UNKNOWN


class GoogleError(FallbackError):
    """A failed call whose response body decoded as a status envelope.

    ``str(error)`` is the compact JSON text of ``{code, message, details}``.

    Args:
        status: The decoded status envelope.
    """

    def __init__(self, status: StatusEnvelope) -> None:
        super().__init__(status.to_json())
        self.status = status

    @property
    def code(self) -> int:
        return self.status.code

    @property
    def details(self) -> tuple[dict[str, Any], ...]:
        return self.status.details

    @property
    def status_code(self) -> grpc.StatusCode:
        """The ``grpc.StatusCode`` matching :attr:`code`."""
        return status_code_for(self.status.code)


class CallCancelledError(GoogleError):
    """The call was cancelled through its handle.

    Delivered exactly once through the callback of a cancelled call.
    """

    def __init__(self, method: str = "") -> None:
        from rpc_fallback.status import StatusEnvelope

        suffix = f": {method}" if method else ""
        super().__init__(
            StatusEnvelope(
                code=grpc.StatusCode.CANCELLED.value[0],
                message=f"The call was cancelled{suffix}",
                details=(),
            )
        )
