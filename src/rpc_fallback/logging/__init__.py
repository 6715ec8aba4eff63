"""Call logging subsystem for rpc-fallback."""

from rpc_fallback.logging.logger import CallLogger
from rpc_fallback.logging.types import CallRecord

__all__ = [
    "CallLogger",
    "CallRecord",
]
