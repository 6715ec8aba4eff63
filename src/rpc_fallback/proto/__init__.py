"""Type registry for rpc-fallback.

Loads protobuf.js JSON descriptors into a private protobuf descriptor pool
and exposes services, methods and message codecs::

    from rpc_fallback.proto import load_proto

    root = load_proto(descriptor_json)
    echo = root.lookup_service("Echo")
"""

from rpc_fallback.proto.loader import build_pool
from rpc_fallback.proto.root import Enum, Method, Namespace, Root, Service, Type, load_proto

__all__ = [
    "Enum",
    "Method",
    "Namespace",
    "Root",
    "Service",
    "Type",
    "build_pool",
    "load_proto",
]
