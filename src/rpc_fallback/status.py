"""Decoder for the error envelope carried by failed exchanges.

A non-ok response body is always a serialized ``google.rpc.Status``,
whatever service produced it, so the decoder is built once from the
well-known type shipped with ``googleapis-common-protos`` and never from a
service descriptor.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any

from google.protobuf.message import DecodeError as ProtobufDecodeError
from google.rpc import status_pb2

from rpc_fallback.exceptions import DecodeError


@dataclass(frozen=True, slots=True)
class StatusEnvelope:
    """Decoded ``google.rpc.Status`` payload.

    Attributes:
        code: Canonical status code (``google.rpc.Code``).
        message: Developer-facing error message.
        details: Ordered typed detail entries, each
            ``{"type_url": str, "value": <base64 str>}``.
    """

    code: int
    message: str
    details: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": [dict(detail) for detail in self.details],
        }

    def to_json(self) -> str:
        """Serialize as compact JSON with keys in ``code, message, details`` order.

        Non-ASCII text is emitted verbatim, not as ``\\u`` escapes.
        """
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


class StatusDecoder:
    """Decodes raw bytes into a :class:`StatusEnvelope`."""

    def __init__(self) -> None:
        self._status_class = status_pb2.Status

    def decode(self, raw: bytes) -> StatusEnvelope:
        """Decode *raw* as a ``google.rpc.Status``.

        Args:
            raw: Response body of a failed exchange.

        Returns:
            The decoded envelope.

        Raises:
            DecodeError: If *raw* is not a valid status encoding.
        """
        try:
            status = self._status_class.FromString(bytes(raw))
        except ProtobufDecodeError as exc:
            raise DecodeError(f"Response body is not a valid google.rpc.Status: {exc}") from exc

        details = tuple(
            {
                "type_url": detail.type_url,
                "value": base64.b64encode(detail.value).decode("ascii"),
            }
            for detail in status.details
        )
        return StatusEnvelope(code=status.code, message=status.message, details=details)

    def encode(self, envelope: StatusEnvelope) -> bytes:
        """Serialize *envelope* back to ``google.rpc.Status`` wire bytes.

        Used by test servers and fake transports to produce error bodies.
        """
        status = self._status_class(code=envelope.code, message=envelope.message)
        for detail in envelope.details:
            entry = status.details.add()
            entry.type_url = detail["type_url"]
            entry.value = base64.b64decode(detail["value"])
        result: bytes = status.SerializeToString()
        return result
