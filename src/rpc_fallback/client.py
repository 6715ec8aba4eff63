"""Fallback client: loads descriptors and creates service stubs.

Orchestrates stub construction::

    descriptor JSON -> load_proto() -> Root -> lookup_service() -> create_stub() -> Stub

Transport, credentials and the abort-controller factory are injected here
and shared, read-only, by every stub the client creates.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from rpc_fallback.auth import ApiKeyCredentials
from rpc_fallback.call import AbortController
from rpc_fallback.config import FallbackClientConfig, apply_options, resolve_stub_options
from rpc_fallback.exceptions import CredentialError
from rpc_fallback.logging.logger import CallLogger
from rpc_fallback.proto import load_proto
from rpc_fallback.status import StatusDecoder
from rpc_fallback.stub import CallContext, Stub
from rpc_fallback.transport import build_transport

if TYPE_CHECKING:
    from collections.abc import Callable

    from rpc_fallback.proto import Root, Service

logger = logging.getLogger("rpc_fallback")


class FallbackClient:
    """Creates stubs that emulate unary RPCs over plain HTTP exchanges.

    Args:
        auth: Credential provider (anything with ``get_request_headers()``).
            When omitted and ``api_key`` is configured, an
            :class:`~rpc_fallback.auth.ApiKeyCredentials` is used.
        transport: Async transport callable. When omitted the transport
            named by ``config.transport_type`` is built from the registry.
        config: Base configuration. Built from the environment when omitted.
        abort_controller_factory: Creates one cancellation primitive per call.
        **options: Config overrides (``protocol``, ``port``, ...) applied on
            top of *config*. Unknown keys are kept as extras.
    """

    def __init__(
        self,
        auth: Any = None,
        transport: Any = None,
        config: FallbackClientConfig | None = None,
        abort_controller_factory: Callable[[], AbortController] = AbortController,
        **options: Any,
    ) -> None:
        base = config if config is not None else FallbackClientConfig()
        self.config = apply_options(base, options) if options else base

        if auth is None and self.config.api_key:
            auth = ApiKeyCredentials(self.config.api_key, self.config.api_key_header)
        self.auth = auth

        self._owns_transport = transport is None
        self.transport = transport if transport is not None else build_transport(self.config)
        self._abort_controller_factory = abort_controller_factory
        self._status_decoder = StatusDecoder()
        self.call_logger = CallLogger(self.config)

    def load_proto(self, descriptor: Mapping[str, Any] | str | bytes) -> Root:
        """Load a protobuf.js JSON descriptor into a navigable root."""
        return load_proto(descriptor)

    async def create_stub(
        self,
        service: Service,
        options: Mapping[str, Any] | None = None,
    ) -> Stub:
        """Create a stub for *service*.

        Args:
            service: Service from a loaded root.
            options: Endpoint options (``service_path``/``servicePath``,
                ``port``, ``protocol``) plus any extra keys, which are kept
                without validation.

        Returns:
            A stub with one 4-argument invoker per RPC method.

        Raises:
            ConfigValidationError: If options override client-level fields
                or hold invalid endpoint values.
            CredentialError: If credential warm-up fails.
        """
        stub_options = resolve_stub_options(self.config, options)

        prepare = getattr(self.auth, "prepare", None)
        if prepare is not None:
            try:
                result = prepare()
                if inspect.isawaitable(result):
                    await result
            except CredentialError:
                raise
            except Exception as exc:
                raise CredentialError(f"Credential warm-up failed: {exc}") from exc

        context = CallContext(
            options=stub_options,
            auth=self.auth,
            transport=self.transport,
            abort_controller_factory=self._abort_controller_factory,
            status_decoder=self._status_decoder,
            call_logger=self.call_logger,
        )
        stub = Stub(service, context)
        logger.debug(
            "Created stub for %s at %s (%d methods)",
            service.full_name,
            stub.endpoint,
            len(service.methods),
        )
        return stub

    async def close(self) -> None:
        """Release the transport if the client built it."""
        if self._owns_transport and hasattr(self.transport, "aclose"):
            await self.transport.aclose()

    async def __aenter__(self) -> FallbackClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
