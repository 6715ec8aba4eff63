"""rpc-fallback: call protobuf RPC services over plain HTTP request/response.

Builds callable service stubs from protobuf service descriptors. Each stub
method serializes its request, POSTs it over an ordinary HTTP exchange and
decodes the reply, emulating a unary RPC call surface where no native RPC
transport is available.
"""

from __future__ import annotations

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("rpc-fallback")
except PackageNotFoundError:
    __version__ = "0.0.0"

from rpc_fallback import routing_header
from rpc_fallback.auth import ApiKeyCredentials, CredentialProvider, StaticHeaderCredentials
from rpc_fallback.call import AbortController, AbortSignal, CallHandle, CallState
from rpc_fallback.client import FallbackClient
from rpc_fallback.config import FallbackClientConfig, resolve_stub_options
from rpc_fallback.exceptions import (
    CallCancelledError,
    ConfigValidationError,
    CredentialError,
    DecodeError,
    DescriptorError,
    EncodingError,
    FallbackError,
    GoogleError,
    TransportError,
)
from rpc_fallback.proto import load_proto
from rpc_fallback.status import StatusDecoder, StatusEnvelope
from rpc_fallback.stub import Stub, call_unary

__all__ = [
    "AbortController",
    "AbortSignal",
    "ApiKeyCredentials",
    "CallCancelledError",
    "CallHandle",
    "CallState",
    "ConfigValidationError",
    "CredentialError",
    "CredentialProvider",
    "DecodeError",
    "DescriptorError",
    "EncodingError",
    "FallbackClient",
    "FallbackClientConfig",
    "FallbackError",
    "GoogleError",
    "StaticHeaderCredentials",
    "StatusDecoder",
    "StatusEnvelope",
    "Stub",
    "TransportError",
    "__version__",
    "call_unary",
    "load_proto",
    "resolve_stub_options",
    "routing_header",
]
