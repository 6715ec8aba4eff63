"""Descriptor-driven service stubs.

A :class:`Stub` holds one invoker per RPC method of a service. Every invoker
is the same generic routine, bound to one :class:`~rpc_fallback.proto.Method`
at stub construction, and follows a fixed 4-argument calling convention::

    handle = stub.echo(request, metadata, call_options, callback)

The invoker serializes the request synchronously (raising ``EncodingError``
before any exchange), schedules the exchange on the running event loop and
returns a :class:`~rpc_fallback.call.CallHandle` at once. The callback
receives ``(None, response)`` on success or ``(error,)`` on failure, exactly
once.

Besides its methods a stub carries four housekeeping attributes:
``service``, ``options``, ``auth`` and ``endpoint``.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import grpc

import rpc_fallback
from rpc_fallback.auth import resolve_request_headers
from rpc_fallback.call import CallHandle, CallState
from rpc_fallback.exceptions import (
    CallCancelledError,
    CredentialError,
    DecodeError,
    FallbackError,
    GoogleError,
    TransportError,
)
from rpc_fallback.logging.types import CallRecord
from rpc_fallback.routing_header import ROUTING_HEADER_NAME, from_params

if TYPE_CHECKING:
    from collections.abc import Callable

    from rpc_fallback.call import AbortController
    from rpc_fallback.config import FallbackClientConfig
    from rpc_fallback.logging.logger import CallLogger
    from rpc_fallback.proto import Method, Service
    from rpc_fallback.status import StatusDecoder

logger = logging.getLogger("rpc_fallback")

CONTENT_TYPE = "application/x-protobuf"

_HOUSEKEEPING = frozenset({"service", "options", "auth", "endpoint"})

_OUTCOME_CODES: dict[str, grpc.StatusCode] = {
    "ok": grpc.StatusCode.OK,
    "credential_error": grpc.StatusCode.UNAUTHENTICATED,
    "transport_error": grpc.StatusCode.UNAVAILABLE,
    "decode_error": grpc.StatusCode.INTERNAL,
    "cancelled": grpc.StatusCode.CANCELLED,
}


def method_attribute_name(rpc_name: str) -> str:
    """snake_case attribute name for an RPC method (``PagedExpand`` -> ``paged_expand``)."""
    name = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", rpc_name)
    name = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name).lower()
    if name in _HOUSEKEEPING:
        name += "_"
    return name


def api_client_header() -> str:
    return f"gl-python/{platform.python_version()} rpc-fallback/{rpc_fallback.__version__}"


def endpoint_url(options: FallbackClientConfig, method: Method) -> str:
    """``{protocol}://{service_path}:{port}/{prefix}/{service}/{method}``."""
    prefix = options.fallback_path_prefix.strip("/")
    return f"{options.base_url}/{prefix}/{method.service.full_name}/{method.name}"


@dataclass(frozen=True)
class CallContext:
    """Collaborators shared by every invoker of one stub."""

    options: FallbackClientConfig
    auth: Any
    transport: Any
    abort_controller_factory: Callable[[], AbortController]
    status_decoder: StatusDecoder
    call_logger: CallLogger


def _section(container: Any, key: str) -> Any:
    if container is None:
        return None
    if isinstance(container, Mapping):
        return container.get(key)
    return getattr(container, key, None)


async def build_headers(auth: Any, metadata: Any, call_options: Any) -> dict[str, str]:
    """Assemble outgoing headers for one call.

    Order of precedence, lowest first: credential headers, fixed protocol
    headers, ``call_options["other_args"]["headers"]`` (or ``otherArgs``),
    ``metadata["headers"]``, then the routing header built from
    ``metadata["routing_params"]`` (or ``call_options["routing_params"]``).

    Raises:
        CredentialError: If the credential provider fails.
    """
    headers = await resolve_request_headers(auth)
    headers["Content-Type"] = CONTENT_TYPE
    headers["x-goog-api-client"] = api_client_header()

    other_args = _section(call_options, "other_args") or _section(call_options, "otherArgs")
    for extra in (_section(other_args, "headers"), _section(metadata, "headers")):
        if extra:
            headers.update({str(k): str(v) for k, v in extra.items()})

    routing_params = _section(metadata, "routing_params") or _section(call_options, "routing_params")
    if routing_params:
        headers[ROUTING_HEADER_NAME] = from_params(routing_params)
    return headers


class _Exchange:
    """State of one invocation between scheduling and callback."""

    def __init__(self, context: CallContext, method: Method, url: str, payload: bytes, handle: CallHandle) -> None:
        self.context = context
        self.method = method
        self.url = url
        self.payload = payload
        self.handle = handle
        self.started_ns = time.time_ns()
        self.started = time.perf_counter()
        self.response_bytes = 0

    async def run(self, metadata: Any, call_options: Any) -> None:
        try:
            headers = await build_headers(self.context.auth, metadata, call_options)
        except CredentialError as exc:
            self.finish(exc, "credential_error")
            return

        try:
            response = await self.context.transport(
                self.url,
                method="POST",
                headers=headers,
                body=self.payload,
                cancellation_signal=self.handle.signal,
            )
            body = await response.read_body()
        except CallCancelledError as exc:
            self.finish(exc, "cancelled")
            return
        except FallbackError as exc:
            self.finish(exc, "transport_error")
            return
        except Exception as exc:
            error = TransportError(f"Exchange with {self.url} failed: {exc}")
            error.__cause__ = exc
            self.finish(error, "transport_error")
            return

        self.response_bytes = len(body)
        if response.ok:
            try:
                message = self.method.response_type.decode(body)
            except DecodeError as exc:
                self.finish(exc, "decode_error")
                return
            self.finish(None, "ok", message)
            return

        http_status = getattr(response, "status_code", "?")
        try:
            envelope = self.context.status_decoder.decode(body)
        except DecodeError as exc:
            error = TransportError(
                f"Request to {self.url} failed with HTTP {http_status} and an undecodable error body"
            )
            error.__cause__ = exc
            self.finish(error, "transport_error")
            return
        if envelope.code == grpc.StatusCode.OK.value[0]:
            # An OK status cannot describe a failed exchange.
            self.finish(
                TransportError(
                    f"Request to {self.url} failed with HTTP {http_status} and no error status"
                ),
                "transport_error",
            )
            return
        self.finish(GoogleError(envelope), "status_error")

    def finish(self, error: BaseException | None, outcome: str, response: Any = None) -> None:
        if self.handle.done:
            return
        try:
            self.handle.complete(error, response)
        finally:
            self.record(outcome, error)

    def record(self, outcome: str, error: BaseException | None = None) -> None:
        if isinstance(error, GoogleError) and outcome == "status_error":
            status_name = error.status_code.name
        else:
            status_name = _OUTCOME_CODES.get(outcome, grpc.StatusCode.UNKNOWN).name
        self.context.call_logger.log_call(
            CallRecord(
                timestamp_ns=self.started_ns,
                method=self.method.full_name,
                url=self.url,
                outcome=outcome,
                status_code=status_name,
                request_bytes=len(self.payload),
                response_bytes=self.response_bytes,
                duration_ms=(time.perf_counter() - self.started) * 1000.0,
            )
        )

    def on_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            if self.handle.state is CallState.CANCELLED:
                self.record("cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Callback for %s raised", self.method.full_name, exc_info=exc)


def make_invoker(method: Method, context: CallContext) -> Callable[[Any, Any, Any, Any], CallHandle]:
    """Bind the generic invocation routine to *method*.

    Returns:
        A function of exactly four parameters
        ``(request, metadata, call_options, callback)``.
    """
    url = endpoint_url(context.options, method)

    def invoke(request: Any, metadata: Any, call_options: Any, callback: Any) -> CallHandle:
        payload = method.request_type.encode(request)
        loop = asyncio.get_running_loop()
        handle = CallHandle(context.abort_controller_factory(), callback, method.full_name)
        exchange = _Exchange(context, method, url, payload, handle)
        task = loop.create_task(exchange.run(metadata, call_options))
        task.add_done_callback(exchange.on_task_done)
        handle.attach(task)
        return handle

    invoke.__name__ = method_attribute_name(method.name)
    invoke.__qualname__ = f"{method.service.name}.{invoke.__name__}"
    invoke.__doc__ = (
        f"Call {method.full_name} "
        f"({method.request_type.full_name} -> {method.response_type.full_name})."
    )
    return invoke


class Stub:
    """Client object with one invoker attribute per RPC method.

    ``vars(stub)`` holds the invokers plus exactly four housekeeping
    members: ``service``, ``options``, ``auth`` and ``endpoint``.

    Args:
        service: Service whose methods are bound.
        context: Shared collaborators captured by each invoker.
    """

    def __init__(self, service: Service, context: CallContext) -> None:
        self.service = service
        self.options = context.options
        self.auth = context.auth
        self.endpoint = context.options.base_url
        for rpc_name, method in service.methods.items():
            if method.request_stream or method.response_stream:
                logger.debug("Binding streaming method %s with unary semantics", method.full_name)
            setattr(self, method_attribute_name(rpc_name), make_invoker(method, context))

    def __getitem__(self, rpc_name: str) -> Callable[[Any, Any, Any, Any], CallHandle]:
        """Invoker for the RPC declared as *rpc_name* (e.g. ``stub["PagedExpand"]``)."""
        if rpc_name not in self.service.methods:
            raise KeyError(f"{self.service.full_name} has no method {rpc_name!r}")
        return getattr(self, method_attribute_name(rpc_name))  # type: ignore[no-any-return]

    def __repr__(self) -> str:
        return f"Stub({self.service.full_name!r}, endpoint={self.endpoint!r})"


async def call_unary(
    invoker: Callable[[Any, Any, Any, Any], CallHandle],
    request: Any,
    metadata: Any = None,
    call_options: Any = None,
) -> Any:
    """Await one call through *invoker* instead of passing a callback.

    Cancelling the awaiting task cancels the call.

    Returns:
        The decoded response message.

    Raises:
        EncodingError: If the request does not fit the method's type.
        FallbackError: Whatever error the callback received.
    """
    future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

    def callback(error: BaseException | None, response: Any = None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(response)

    handle = invoker(request, metadata or {}, call_options or {}, callback)
    try:
        return await future
    except asyncio.CancelledError:
        handle.cancel()
        raise
