"""Configuration system for rpc-fallback.

Uses pydantic-settings for declarative, layered configuration:
init kwargs -> environment variables (RPC_FALLBACK_*) -> .env file -> field defaults.

Per-stub endpoint options are applied via resolve_stub_options() which
creates a new config instance without mutating the client defaults.
Client-level fields are protected from per-stub override. Keys the config
does not know are kept as extras and never rejected.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from rpc_fallback.exceptions import ConfigValidationError

# Fields that can be overridden per stub via create_stub(options=...).
_PER_STUB_FIELDS: frozenset[str] = frozenset(
    {
        "service_path",
        "port",
        "protocol",
    }
)

# camelCase spellings accepted for endpoint options.
_OPTION_ALIASES: dict[str, str] = {
    "servicePath": "service_path",
    "apiEndpoint": "service_path",
    "api_endpoint": "service_path",
}

_PROTOCOLS: frozenset[str] = frozenset({"http", "https"})

# All known config field names (populated after class definition).
_ALL_FIELDS: frozenset[str] = frozenset()


class FallbackClientConfig(BaseSettings):
    """Configuration for a fallback client and the stubs it creates.

    Resolution order: init kwargs -> env vars (RPC_FALLBACK_*) -> .env file -> defaults.

    Fields are divided into two groups:
    - **Endpoint**: service path, port, protocol. Overridable per stub.
    - **Client**: transport, credentials, URL layout, logging. Fixed for
      the lifetime of the client.

    Unknown keys are accepted and kept in ``model_extra``.
    """

    model_config = SettingsConfigDict(
        env_prefix="RPC_FALLBACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow",
    )

    # --- Endpoint (per-stub overridable) ---

    service_path: str = Field(
        default="localhost",
        description="Host name of the API service",
    )
    port: int = Field(
        default=443,
        description="TCP port of the API service",
    )
    protocol: str = Field(
        default="https",
        description="URL scheme: 'http' or 'https'",
    )

    # --- Client (NOT per-stub overridable) ---

    fallback_path_prefix: str = Field(
        default="$rpc",
        description="Path segment preceding '<service>/<method>' in request URLs",
    )
    transport_type: str = Field(
        default="httpx",
        description="Registered transport identifier",
    )
    http_timeout_s: float = Field(
        default=60.0,
        description="Socket timeout for the built-in HTTP transport, in seconds",
    )
    api_key: str = Field(
        default="",
        description="API key sent on every request (empty = no API key header)",
    )
    api_key_header: str = Field(
        default="x-goog-api-key",
        description="Header name for the API key",
    )

    # --- Logging ---

    log_level: str = Field(
        default="summary",
        description="Per-call logging verbosity: 'none', 'summary', 'full'",
    )
    diagnostic_mode: bool = Field(
        default=False,
        description="Store all call records in memory for analysis",
    )

    @property
    def base_url(self) -> str:
        """``protocol://service_path:port`` for this endpoint."""
        return f"{self.protocol}://{self.service_path}:{self.port}"


# Populate _ALL_FIELDS now that the class is defined.
_ALL_FIELDS = frozenset(FallbackClientConfig.model_fields.keys())


def _canonical_key(key: str) -> str:
    return _OPTION_ALIASES.get(key, key)


def validate_stub_options(options: Mapping[str, Any]) -> None:
    """Reject stub options that try to change client-level fields.

    Keys that are not config fields at all pass through untouched.

    Args:
        options: Options given to ``create_stub``.

    Raises:
        ConfigValidationError: If a client-level field is present.
    """
    for key in options:
        field_name = _canonical_key(key)
        if field_name in _ALL_FIELDS and field_name not in _PER_STUB_FIELDS:
            raise ConfigValidationError(
                f"Field '{field_name}' is a client field and cannot be "
                f"overridden per stub"
            )


def _check_endpoint(config: FallbackClientConfig) -> None:
    if config.protocol not in _PROTOCOLS:
        raise ConfigValidationError(
            f"Unsupported protocol {config.protocol!r}; expected one of "
            f"{sorted(_PROTOCOLS)}"
        )
    if not 0 < config.port < 65536:
        raise ConfigValidationError(f"Port out of range: {config.port}")
    if not config.service_path:
        raise ConfigValidationError("service_path must not be empty")


def resolve_stub_options(
    defaults: FallbackClientConfig,
    options: Mapping[str, Any] | None,
) -> FallbackClientConfig:
    """Create a new config merging client defaults with per-stub options.

    Args:
        defaults: The client configuration.
        options: Per-stub options, snake_case or camelCase
            (``servicePath``, ``apiEndpoint``). Unknown keys are kept as
            extras on the returned config.

    Returns:
        A new FallbackClientConfig with the options applied, or *defaults*
        itself when there is nothing to apply.

    Raises:
        ConfigValidationError: If a client-level field is overridden or an
            endpoint value is invalid.
    """
    if not options:
        _check_endpoint(defaults)
        return defaults

    validate_stub_options(options)

    resolved = apply_options(defaults, options)
    _check_endpoint(resolved)
    return resolved


def apply_options(
    defaults: FallbackClientConfig,
    options: Mapping[str, Any],
) -> FallbackClientConfig:
    """Return a new config with *options* applied over *defaults*.

    No per-stub restriction is enforced here; ``FallbackClient`` uses this
    for its own constructor options.

    Raises:
        ConfigValidationError: If a value fails type validation.
    """
    overrides = {_canonical_key(key): value for key, value in options.items()}

    # model_validate on a merged dict runs full coercion ("443" -> 443).
    # model_copy(update=...) would skip validation.
    merged = defaults.model_dump()
    merged.update(overrides)
    try:
        return FallbackClientConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigValidationError(f"Invalid options: {exc}") from exc
