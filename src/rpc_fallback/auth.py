"""Credential providers.

A credential provider supplies the headers that authenticate each request.
Any object with a ``get_request_headers()`` method works; the method may
return a mapping or an awaitable resolving to one. The classes here cover
fixed headers and API keys.
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Mapping
from typing import Any

from rpc_fallback.exceptions import CredentialError


class CredentialProvider(ABC):
    """Abstract base for credential providers."""

    @abstractmethod
    def get_request_headers(self) -> Mapping[str, str] | Awaitable[Mapping[str, str]]:
        """Return the authentication headers for one request."""

    async def prepare(self) -> None:
        """Warm up before the first call (token fetch, key lookup).

        Awaited once by ``create_stub``. The default does nothing.
        """


class StaticHeaderCredentials(CredentialProvider):
    """Sends the same headers on every request.

    Args:
        headers: Header names and values, e.g. ``{"Authorization": "Bearer ..."}``.
    """

    def __init__(self, headers: Mapping[str, str]) -> None:
        self._headers = dict(headers)

    def get_request_headers(self) -> Mapping[str, str]:
        return dict(self._headers)


class ApiKeyCredentials(StaticHeaderCredentials):
    """Sends an API key in a single header.

    Args:
        api_key: The key. Must be non-empty.
        header: Header name carrying the key.
    """

    def __init__(self, api_key: str, header: str = "x-goog-api-key") -> None:
        if not api_key:
            raise CredentialError("api_key must not be empty")
        super().__init__({header: api_key})


async def resolve_request_headers(provider: Any) -> dict[str, str]:
    """Collect headers from *provider*, awaiting them if needed.

    Args:
        provider: A credential provider, or ``None`` for no credentials.

    Returns:
        A fresh, mutable header dict.

    Raises:
        CredentialError: If the provider raises or returns something that
            is not a mapping.
    """
    if provider is None:
        return {}
    try:
        headers = provider.get_request_headers()
        if inspect.isawaitable(headers):
            headers = await headers
    except CredentialError:
        raise
    except Exception as exc:
        raise CredentialError(f"Failed to get request headers: {exc}") from exc
    if headers is None:
        return {}
    if not isinstance(headers, Mapping):
        raise CredentialError(
            f"Credential provider returned {type(headers).__name__}, expected a mapping"
        )
    return {str(key): str(value) for key, value in headers.items()}
