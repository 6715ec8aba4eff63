"""Routing header builder.

Request routing metadata travels in a single ``x-goog-request-params``
header whose value is a flat ``key=value`` list joined with ``&``.
"""

from __future__ import annotations

from collections.abc import Mapping

ROUTING_HEADER_NAME = "x-goog-request-params"


def from_params(params: Mapping[str, str]) -> str:
    """Build a routing header value from *params*.

    Pairs keep the mapping's insertion order and values are used verbatim,
    without percent-encoding.

    Args:
        params: Flat mapping of routing parameter names to values.

    Returns:
        The header value, e.g. ``"a=1&b=2"``. Empty for an empty mapping.

    Example::

        >>> from_params({"abc": "def"})
        'abc=def'
    """
    return "&".join(f"{key}={value}" for key, value in params.items())
