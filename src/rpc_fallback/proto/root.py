"""Navigable type registry over a loaded descriptor pool.

``Root`` mirrors the namespace tree of the JSON descriptor and resolves
services and message types by full or short name. Message types expose the
codecs the call invoker uses: ``encode()`` for requests and ``decode()`` for
responses.
"""

from __future__ import annotations

import base64
from collections.abc import Mapping
from typing import Any

from google.protobuf import json_format, message_factory
from google.protobuf.descriptor import Descriptor, FieldDescriptor, ServiceDescriptor
from google.protobuf.message import DecodeError as ProtobufDecodeError
from google.protobuf.message import EncodeError as ProtobufEncodeError
from google.protobuf.message import Message

from rpc_fallback.exceptions import DecodeError, EncodingError
from rpc_fallback.proto.loader import (
    ENUM,
    MESSAGE,
    NAMESPACE,
    SERVICE,
    LoadedDescriptors,
    build_pool,
)


_RAW_BYTES = (bytes, bytearray, memoryview)


def _bytes_to_base64(value: Any, field: FieldDescriptor) -> Any:
    wraps_bytes = field.message_type is not None and field.message_type.full_name == "google.protobuf.BytesValue"
    if (field.type == FieldDescriptor.TYPE_BYTES or wraps_bytes) and isinstance(value, _RAW_BYTES):
        return base64.b64encode(bytes(value)).decode("ascii")
    if field.message_type is not None and isinstance(value, Mapping):
        return _with_base64_bytes(value, field.message_type)
    return value


def _with_base64_bytes(obj: Mapping[str, Any], descriptor: Descriptor) -> dict[str, Any]:
    """Copy of *obj* with raw ``bytes`` values of bytes fields base64-encoded.

    ``json_format.ParseDict`` only accepts base64 text for bytes fields;
    base64 strings given by the caller pass through unchanged.
    """
    result = dict(obj)
    if descriptor.full_name == "google.protobuf.Any":
        return result
    for key, value in obj.items():
        field = descriptor.fields_by_name.get(key)
        if field is None:
            field = next((f for f in descriptor.fields if f.json_name == key), None)
        if field is None or value is None:
            continue
        if field.message_type is not None and field.message_type.GetOptions().map_entry:
            value_field = field.message_type.fields_by_name["value"]
            if isinstance(value, Mapping):
                result[key] = {k: _bytes_to_base64(v, value_field) for k, v in value.items()}
        elif isinstance(value, (list, tuple)):
            result[key] = [_bytes_to_base64(item, field) for item in value]
        else:
            result[key] = _bytes_to_base64(value, field)
    return result


class Type:
    """A message type with encode/decode codecs.

    Args:
        descriptor: Message descriptor from the root's pool.
        loaded: The pool the descriptor belongs to, used to resolve
            ``google.protobuf.Any`` payloads in JSON conversion.
    """

    def __init__(self, descriptor: Descriptor, loaded: LoadedDescriptors) -> None:
        self.descriptor = descriptor
        self.name = descriptor.name
        self.full_name = descriptor.full_name
        self.message_class: type[Message] = message_factory.GetMessageClass(descriptor)
        self._pool = loaded.pool

    @property
    def fields(self) -> list[str]:
        return [f.name for f in self.descriptor.fields]

    def create(self, **fields: Any) -> Message:
        """Instantiate the message class with keyword field values."""
        try:
            return self.message_class(**fields)
        except (TypeError, ValueError) as exc:
            raise EncodingError(f"Cannot create {self.full_name}: {exc}") from exc

    def from_object(self, obj: Mapping[str, Any]) -> Message:
        """Build a message from a plain mapping.

        Field names may be given as declared or in lowerCamelCase. Unknown
        fields and values of the wrong type are rejected.

        Raises:
            EncodingError: If *obj* does not fit the message type.
        """
        if not isinstance(obj, Mapping):
            raise EncodingError(
                f"Cannot encode {type(obj).__name__} as {self.full_name}: expected a mapping"
            )
        message = self.message_class()
        try:
            json_format.ParseDict(
                _with_base64_bytes(obj, self.descriptor), message, descriptor_pool=self._pool
            )
        except (json_format.ParseError, TypeError, ValueError) as exc:
            raise EncodingError(f"Cannot encode object as {self.full_name}: {exc}") from exc
        return message

    def to_object(self, message: Message) -> dict[str, Any]:
        """Convert *message* to a plain dict keyed by declared field names."""
        return json_format.MessageToDict(
            message,
            preserving_proto_field_name=True,
            descriptor_pool=self._pool,
        )

    def encode(self, obj: Mapping[str, Any] | Message) -> bytes:
        """Serialize a mapping or message instance to wire bytes.

        Raises:
            EncodingError: If *obj* does not fit the message type.
        """
        if isinstance(obj, Message):
            if obj.DESCRIPTOR.full_name != self.full_name:
                raise EncodingError(
                    f"Expected {self.full_name}, got {obj.DESCRIPTOR.full_name}"
                )
            message = obj
        else:
            message = self.from_object(obj)
        try:
            data: bytes = message.SerializeToString()
        except ProtobufEncodeError as exc:
            raise EncodingError(f"Cannot serialize {self.full_name}: {exc}") from exc
        return data

    def decode(self, data: bytes) -> Message:
        """Parse wire bytes into a message instance.

        Raises:
            DecodeError: If *data* is not a valid encoding of this type.
        """
        try:
            return self.message_class.FromString(bytes(data))
        except ProtobufDecodeError as exc:
            raise DecodeError(f"Cannot decode {self.full_name}: {exc}") from exc

    def __repr__(self) -> str:
        return f"Type({self.full_name!r})"


class Enum:
    """An enum type: ``values`` maps value names to numbers."""

    def __init__(self, full_name: str, values: Mapping[str, int]) -> None:
        self.full_name = full_name
        self.name = full_name.rsplit(".", 1)[-1]
        self.values = dict(values)

    def __repr__(self) -> str:
        return f"Enum({self.full_name!r})"


class Method:
    """One RPC method of a service."""

    def __init__(
        self,
        name: str,
        service: Service,
        request_type: Type,
        response_type: Type,
        request_stream: bool = False,
        response_stream: bool = False,
    ) -> None:
        self.name = name
        self.service = service
        self.full_name = f"{service.full_name}.{name}"
        self.request_type = request_type
        self.response_type = response_type
        self.request_stream = request_stream
        self.response_stream = response_stream

    def __repr__(self) -> str:
        return f"Method({self.full_name!r})"


class Service:
    """A service: ordered mapping of method name to :class:`Method`."""

    def __init__(self, descriptor: ServiceDescriptor, root: Root) -> None:
        self.descriptor = descriptor
        self.name = descriptor.name
        self.full_name = descriptor.full_name
        self.methods: dict[str, Method] = {}
        for method in descriptor.methods:
            self.methods[method.name] = Method(
                method.name,
                self,
                root._type_for(method.input_type),
                root._type_for(method.output_type),
                request_stream=method.client_streaming,
                response_stream=method.server_streaming,
            )

    def __repr__(self) -> str:
        return f"Service({self.full_name!r})"


class Namespace:
    """A package level of the tree; ``nested`` maps child names to entities."""

    def __init__(self, full_name: str) -> None:
        self.full_name = full_name
        self.name = full_name.rsplit(".", 1)[-1]
        self.nested: dict[str, Any] | None = None

    def _add_child(self, name: str, child: Any) -> None:
        if self.nested is None:
            self.nested = {}
        self.nested[name] = child

    def __repr__(self) -> str:
        return f"Namespace({self.full_name!r})"


class Root(Namespace):
    """Root of a loaded descriptor tree.

    ``nested`` is ``None`` for an empty descriptor.
    """

    def __init__(self, loaded: LoadedDescriptors) -> None:
        super().__init__("")
        self._loaded = loaded
        self._objects: dict[str, Any] = {}
        self._external_types: dict[str, Type] = {}

        for full_name, symbol in loaded.symbols.items():
            if symbol.kind == NAMESPACE:
                entity: Any = Namespace(full_name)
            elif symbol.kind == MESSAGE:
                entity = Type(loaded.pool.FindMessageTypeByName(full_name), loaded)
            elif symbol.kind == ENUM:
                entity = Enum(full_name, symbol.spec.get("values") or {})
            else:
                continue  # services are built once every type exists
            self._register(full_name, entity)

        for full_name, symbol in loaded.symbols.items():
            if symbol.kind == SERVICE:
                service = Service(loaded.pool.FindServiceByName(full_name), self)
                self._register(full_name, service)

        # Restore declaration order, which service registration disturbed.
        self._objects = {name: self._objects[name] for name in loaded.symbols}

    @property
    def pool(self) -> Any:
        return self._loaded.pool

    def _type_for(self, descriptor: Descriptor) -> Type:
        # Well-known types pulled in as dependencies are not part of the tree.
        entity = self._objects.get(descriptor.full_name)
        if isinstance(entity, Type):
            return entity
        if descriptor.full_name not in self._external_types:
            self._external_types[descriptor.full_name] = Type(descriptor, self._loaded)
        return self._external_types[descriptor.full_name]

    def _register(self, full_name: str, entity: Any) -> None:
        self._objects[full_name] = entity
        parent_name, _, name = full_name.rpartition(".")
        parent = self._objects.get(parent_name, self) if parent_name else self
        if isinstance(parent, Namespace):
            parent._add_child(name, entity)

    def lookup(self, name: str) -> Any:
        """Find an entity by full name (leading dot optional) or short name.

        Short names match the first declared entity whose full name ends
        with ``.<name>``.

        Raises:
            KeyError: If nothing matches.
        """
        key = name.lstrip(".")
        if key in self._objects:
            return self._objects[key]
        suffix = f".{key}"
        for full_name, entity in self._objects.items():
            if full_name.endswith(suffix):
                return entity
        raise KeyError(f"No such entity: {name!r}")

    def _lookup_kind(self, name: str, kind: type, label: str) -> Any:
        key = name.lstrip(".")
        if isinstance(self._objects.get(key), kind):
            return self._objects[key]
        suffix = f".{key}"
        for full_name, entity in self._objects.items():
            if full_name.endswith(suffix) and isinstance(entity, kind):
                return entity
        raise KeyError(f"No such {label}: {name!r}")

    def lookup_type(self, name: str) -> Type:
        return self._lookup_kind(name, Type, "type")  # type: ignore[no-any-return]

    def lookup_enum(self, name: str) -> Enum:
        return self._lookup_kind(name, Enum, "enum")  # type: ignore[no-any-return]

    def lookup_service(self, name: str) -> Service:
        return self._lookup_kind(name, Service, "service")  # type: ignore[no-any-return]

    def __repr__(self) -> str:
        return f"Root({len(self._objects)} entities)"


def load_proto(descriptor: Mapping[str, Any] | str | bytes) -> Root:
    """Load a protobuf.js JSON descriptor into a :class:`Root`.

    ``load_proto({})`` returns an empty root whose ``nested`` is ``None``.

    Raises:
        DescriptorError: If the descriptor cannot be loaded.
    """
    return Root(build_pool(descriptor))
