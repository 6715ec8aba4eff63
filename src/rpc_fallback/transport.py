"""Request/response transports with entry-point auto-discovery.

A transport is any async callable::

    await transport(url, method="POST", headers={...}, body=b"...",
                    cancellation_signal=signal) -> TransportResponse

where the response exposes ``ok`` and an async ``read_body()``. Transports
are injected into :class:`~rpc_fallback.client.FallbackClient`; when none is
given the client builds the one named by ``transport_type`` from the
registry.

Built-in transports are registered at module import time via the
``@register_transport`` decorator. Third-party transports from other
packages are discovered lazily on the first :meth:`TransportRegistry.get`
call via the ``rpc_fallback.transports`` entry-point group.
"""

from __future__ import annotations

import asyncio
import importlib.metadata
import logging
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

import httpx

from rpc_fallback.exceptions import CallCancelledError, TransportError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from rpc_fallback.call import AbortSignal
    from rpc_fallback.config import FallbackClientConfig

logger = logging.getLogger("rpc_fallback")

_ENTRY_POINT_GROUP = "rpc_fallback.transports"


@runtime_checkable
class TransportResponse(Protocol):
    """Response of one exchange."""

    ok: bool
    status_code: int

    async def read_body(self) -> bytes: ...


@runtime_checkable
class Transport(Protocol):
    """Performs one request/response exchange."""

    async def __call__(
        self,
        url: str,
        *,
        method: str,
        headers: Mapping[str, str],
        body: bytes,
        cancellation_signal: AbortSignal | None = None,
    ) -> TransportResponse: ...


class TransportRegistry:
    """Registry for transport classes.

    Discovery chain:

    1. Built-in transports registered via ``@register_transport`` decorator
    2. Third-party transports discovered via ``rpc_fallback.transports``
       entry points (loaded lazily on first ``get()`` call)
    """

    _registry: ClassVar[dict[str, type]] = {}
    _entry_points_loaded: ClassVar[bool] = False

    @classmethod
    def register(cls, name: str) -> Callable[[type], type]:
        """Decorator to register a transport class under a string key.

        Example::

            @TransportRegistry.register("aiohttp")
            class AiohttpTransport:
                ...
        """

        def decorator(transport_cls: type) -> type:
            cls._registry[name] = transport_cls
            return transport_cls

        return decorator

    @classmethod
    def get(cls, name: str) -> type:
        """Look up a transport class by name.

        Raises:
            KeyError: If *name* is not found after loading entry points.
        """
        if name in cls._registry:
            return cls._registry[name]

        if not cls._entry_points_loaded:
            cls._load_entry_points()
            if name in cls._registry:
                return cls._registry[name]

        available = ", ".join(sorted(cls._registry.keys())) or "(none)"
        raise KeyError(f"Unknown transport: {name!r}. Available: {available}")

    @classmethod
    def list_available(cls) -> list[str]:
        if not cls._entry_points_loaded:
            cls._load_entry_points()
        return sorted(cls._registry.keys())

    @classmethod
    def _load_entry_points(cls) -> None:
        cls._entry_points_loaded = True
        try:
            eps = importlib.metadata.entry_points(group=_ENTRY_POINT_GROUP)
        except Exception:  # Intentional: must not crash on broken metadata
            logger.warning("Failed to load entry points for %s", _ENTRY_POINT_GROUP, exc_info=True)
            return

        for ep in eps:
            if ep.name in cls._registry:
                continue
            try:
                cls._registry[ep.name] = ep.load()
                logger.debug("Loaded transport %r from entry point", ep.name)
            except Exception:  # Intentional: one bad plugin must not block others
                logger.warning(
                    "Failed to load transport entry point %r: %s",
                    ep.name,
                    ep.value,
                    exc_info=True,
                )

    @classmethod
    def _reset(cls) -> None:
        """Reset registry state. **Test-only**."""
        cls._registry.clear()
        cls._entry_points_loaded = False


register_transport = TransportRegistry.register


class HttpxResponse:
    """:class:`TransportResponse` over an ``httpx.Response``."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self.status_code = response.status_code
        self.ok = response.is_success

    async def read_body(self) -> bytes:
        return await self._response.aread()


@register_transport("httpx")
class HttpxTransport:
    """Transport on ``httpx.AsyncClient``.

    The request races the abort signal: when the signal fires first the
    request task is cancelled and :class:`CallCancelledError` is raised.

    Args:
        config: Client configuration providing ``http_timeout_s``.
        client: Optional pre-built client; it is not closed by
            :meth:`aclose` when supplied by the caller.
    """

    def __init__(
        self,
        config: FallbackClientConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        timeout = config.http_timeout_s if config is not None else 60.0
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __call__(
        self,
        url: str,
        *,
        method: str,
        headers: Mapping[str, str],
        body: bytes,
        cancellation_signal: AbortSignal | None = None,
    ) -> HttpxResponse:
        if cancellation_signal is None:
            return HttpxResponse(await self._send(method, url, headers, body))
        if cancellation_signal.aborted:
            raise CallCancelledError()

        request_task = asyncio.ensure_future(self._send(method, url, headers, body))
        abort_task = asyncio.ensure_future(cancellation_signal.wait())
        aborted = False
        try:
            await asyncio.wait({request_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abort_task.cancel()
            if not request_task.done():
                aborted = True
                request_task.cancel()
        if aborted:
            logger.debug("HTTP request to %s aborted", url)
            raise CallCancelledError()
        return HttpxResponse(request_task.result())

    async def _send(self, method: str, url: str, headers: Mapping[str, str], body: bytes) -> httpx.Response:
        try:
            return await self._client.request(method, url, headers=dict(headers), content=body)
        except httpx.HTTPError as exc:
            raise TransportError(f"HTTP request to {url} failed: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_transport(config: FallbackClientConfig) -> Any:
    """Instantiate the transport named by ``config.transport_type``."""
    transport_cls = TransportRegistry.get(config.transport_type)
    return transport_cls(config)
