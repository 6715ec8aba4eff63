"""Conversion of JSON service descriptors into protobuf descriptors.

The input is the namespace tree produced by protobuf.js ``Root.toJSON()``::

    {"nested": {"pkg": {"nested": {
        "Echo": {"methods": {"Echo": {"requestType": "EchoRequest",
                                      "responseType": "EchoResponse"}}},
        "EchoRequest": {"fields": {"content": {"type": "string", "id": 1}}},
        "Severity": {"values": {"UNNECESSARY": 0, "NECESSARY": 1}}}}}}

Namespaces become packages, and every package becomes one
``FileDescriptorProto`` added to a private ``DescriptorPool``. Type
references follow protobuf scoping rules; references to types absent from
the JSON are resolved against the well-known types of the default pool and
copied in as file dependencies.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from google.protobuf import (  # noqa: F401  (registers well-known types in the default pool)
    any_pb2,
    descriptor_pb2,
    descriptor_pool,
    duration_pb2,
    empty_pb2,
    field_mask_pb2,
    struct_pb2,
    timestamp_pb2,
    wrappers_pb2,
)
from google.rpc import code_pb2, error_details_pb2, status_pb2  # noqa: F401

from rpc_fallback.exceptions import DescriptorError

logger = logging.getLogger("rpc_fallback")

_FDP = descriptor_pb2.FieldDescriptorProto

_SCALAR_TYPES: dict[str, int] = {
    "double": _FDP.TYPE_DOUBLE,
    "float": _FDP.TYPE_FLOAT,
    "int32": _FDP.TYPE_INT32,
    "int64": _FDP.TYPE_INT64,
    "uint32": _FDP.TYPE_UINT32,
    "uint64": _FDP.TYPE_UINT64,
    "sint32": _FDP.TYPE_SINT32,
    "sint64": _FDP.TYPE_SINT64,
    "fixed32": _FDP.TYPE_FIXED32,
    "fixed64": _FDP.TYPE_FIXED64,
    "sfixed32": _FDP.TYPE_SFIXED32,
    "sfixed64": _FDP.TYPE_SFIXED64,
    "bool": _FDP.TYPE_BOOL,
    "string": _FDP.TYPE_STRING,
    "bytes": _FDP.TYPE_BYTES,
}

MESSAGE = "message"
ENUM = "enum"
SERVICE = "service"
NAMESPACE = "namespace"


@dataclass
class Symbol:
    """One named entity of the descriptor tree."""

    kind: str
    full_name: str
    package: str
    spec: Mapping[str, Any]
    parent: str = ""


@dataclass
class LoadedDescriptors:
    """Result of :func:`build_pool`."""

    pool: descriptor_pool.DescriptorPool
    symbols: dict[str, Symbol] = field(default_factory=dict)


def parse_descriptor(descriptor: Mapping[str, Any] | str | bytes) -> Mapping[str, Any]:
    """Accept a descriptor as a mapping or JSON text and return the mapping."""
    if isinstance(descriptor, (str, bytes)):
        try:
            descriptor = json.loads(descriptor)
        except ValueError as exc:
            raise DescriptorError(f"Descriptor is not valid JSON: {exc}") from exc
    if not isinstance(descriptor, Mapping):
        raise DescriptorError(
            f"Descriptor must be a JSON object, got {type(descriptor).__name__}"
        )
    return descriptor


def _join(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


def _classify(spec: Mapping[str, Any]) -> str:
    if "fields" in spec:
        return MESSAGE
    if "values" in spec:
        return ENUM
    if "methods" in spec:
        return SERVICE
    return NAMESPACE


def index_symbols(descriptor: Mapping[str, Any]) -> dict[str, Symbol]:
    """Walk the namespace tree and index every entity by full name.

    Insertion order is declaration order (depth first).
    """
    symbols: dict[str, Symbol] = {}

    def walk(nested: Mapping[str, Any], prefix: str, package: str, parent: str) -> None:
        for name, spec in nested.items():
            if not isinstance(spec, Mapping):
                raise DescriptorError(f"Entry {_join(prefix, name)!r} must be an object")
            full_name = _join(prefix, name)
            kind = _classify(spec)
            if kind == NAMESPACE and parent:
                raise DescriptorError(f"Unsupported namespace {full_name!r} inside a message")
            symbols[full_name] = Symbol(kind, full_name, package, spec, parent)
            children = spec.get("nested") or {}
            if kind == NAMESPACE:
                walk(children, full_name, full_name, "")
            elif kind == MESSAGE:
                walk(children, full_name, package, full_name)

    walk(descriptor.get("nested") or {}, "", "", "")
    return symbols


class _FileBuilder:
    """Builds one ``FileDescriptorProto`` for a package."""

    def __init__(self, package: str, symbols: dict[str, Symbol], proto2: bool) -> None:
        self.package = package
        self.symbols = symbols
        self.proto2 = proto2
        self.dependencies: set[str] = set()
        self.external_files: dict[str, Any] = {}
        self.file_proto = descriptor_pb2.FileDescriptorProto(
            name=file_name_for(package),
            package=package,
            syntax="proto2" if proto2 else "proto3",
        )

    # --- type resolution ---

    def resolve(self, ref: str, scope: str) -> tuple[str, str]:
        """Resolve *ref* as seen from *scope* to ``(full_name, kind)``."""
        if ref.startswith("."):
            candidates = [ref[1:]]
        else:
            parts = scope.split(".") if scope else []
            candidates = [_join(".".join(parts[:i]), ref) for i in range(len(parts), -1, -1)]

        for candidate in candidates:
            symbol = self.symbols.get(candidate)
            if symbol is not None and symbol.kind in (MESSAGE, ENUM):
                if symbol.package != self.package:
                    self.dependencies.add(file_name_for(symbol.package))
                return candidate, symbol.kind

        default_pool = descriptor_pool.Default()
        for candidate in candidates:
            for kind, finder in (
                (MESSAGE, default_pool.FindMessageTypeByName),
                (ENUM, default_pool.FindEnumTypeByName),
            ):
                try:
                    found = finder(candidate)
                except KeyError:
                    continue
                self.external_files[found.file.name] = found.file
                self.dependencies.add(found.file.name)
                return candidate, kind

        raise DescriptorError(f"Unresolved type {ref!r} referenced from {scope or '<root>'}")

    # --- builders ---

    def add(self, symbol: Symbol) -> None:
        name = symbol.full_name.rsplit(".", 1)[-1]
        if symbol.kind == MESSAGE:
            self.file_proto.message_type.append(self._message(name, symbol))
        elif symbol.kind == ENUM:
            self.file_proto.enum_type.append(self._enum(name, symbol.spec))
        elif symbol.kind == SERVICE:
            self.file_proto.service.append(self._service(name, symbol))

    def _message(self, name: str, symbol: Symbol) -> descriptor_pb2.DescriptorProto:
        spec = symbol.spec
        message = descriptor_pb2.DescriptorProto(name=name)

        for child in self.symbols.values():
            if child.parent != symbol.full_name:
                continue
            child_name = child.full_name.rsplit(".", 1)[-1]
            if child.kind == MESSAGE:
                message.nested_type.append(self._message(child_name, child))
            elif child.kind == ENUM:
                message.enum_type.append(self._enum(child_name, child.spec))

        oneof_index = self._oneofs(message, spec)

        for field_name, field_spec in (spec.get("fields") or {}).items():
            message.field.append(
                self._field(message, symbol.full_name, field_name, field_spec, oneof_index)
            )
        return message

    def _oneofs(self, message: descriptor_pb2.DescriptorProto, spec: Mapping[str, Any]) -> dict[str, int]:
        fields = spec.get("fields") or {}
        oneofs = spec.get("oneofs") or {}

        def synthetic(members: list[str]) -> bool:
            return not self.proto2 and all(
                (fields.get(m, {}).get("options") or {}).get("proto3_optional") for m in members
            )

        # Synthetic proto3-optional oneofs must follow real ones.
        ordered = sorted(oneofs.items(), key=lambda item: synthetic(item[1].get("oneof", [])))
        index: dict[str, int] = {}
        for position, (oneof_name, oneof_spec) in enumerate(ordered):
            message.oneof_decl.add(name=oneof_name)
            for member in oneof_spec.get("oneof", []):
                index[member] = position
        return index

    def _field(
        self,
        message: descriptor_pb2.DescriptorProto,
        scope: str,
        name: str,
        spec: Mapping[str, Any],
        oneof_index: dict[str, int],
    ) -> descriptor_pb2.FieldDescriptorProto:
        if "id" not in spec or "type" not in spec:
            raise DescriptorError(f"Field {scope}.{name} needs 'type' and 'id'")
        field_proto = _FDP(name=name, number=int(spec["id"]))
        options = spec.get("options") or {}

        if "keyType" in spec:
            entry = self._map_entry(scope, name, spec)
            message.nested_type.append(entry)
            field_proto.label = _FDP.LABEL_REPEATED
            field_proto.type = _FDP.TYPE_MESSAGE
            field_proto.type_name = f".{scope}.{entry.name}"
            return field_proto

        rule = spec.get("rule")
        if rule == "repeated":
            field_proto.label = _FDP.LABEL_REPEATED
        elif rule == "required":
            field_proto.label = _FDP.LABEL_REQUIRED
        else:
            field_proto.label = _FDP.LABEL_OPTIONAL

        self._set_type(field_proto, spec["type"], scope)

        if "packed" in options:
            field_proto.options.packed = bool(options["packed"])
        if name in oneof_index:
            field_proto.oneof_index = oneof_index[name]
            if options.get("proto3_optional") and not self.proto2:
                field_proto.proto3_optional = True
        return field_proto

    def _map_entry(self, scope: str, name: str, spec: Mapping[str, Any]) -> descriptor_pb2.DescriptorProto:
        key_type = spec["keyType"]
        if key_type not in _SCALAR_TYPES or key_type in ("double", "float", "bytes"):
            raise DescriptorError(f"Invalid map key type {key_type!r} for {scope}.{name}")
        entry_name = "".join(part[:1].upper() + part[1:] for part in name.split("_")) + "Entry"
        entry = descriptor_pb2.DescriptorProto(name=entry_name)
        entry.options.map_entry = True
        entry.field.add(name="key", number=1, label=_FDP.LABEL_OPTIONAL, type=_SCALAR_TYPES[key_type])
        value = entry.field.add(name="value", number=2, label=_FDP.LABEL_OPTIONAL)
        self._set_type(value, spec["type"], scope)
        return entry

    def _set_type(self, field_proto: descriptor_pb2.FieldDescriptorProto, type_ref: str, scope: str) -> None:
        if type_ref in _SCALAR_TYPES:
            field_proto.type = _SCALAR_TYPES[type_ref]
            return
        full_name, kind = self.resolve(type_ref, scope)
        field_proto.type = _FDP.TYPE_MESSAGE if kind == MESSAGE else _FDP.TYPE_ENUM
        field_proto.type_name = f".{full_name}"

    def _enum(self, name: str, spec: Mapping[str, Any]) -> descriptor_pb2.EnumDescriptorProto:
        enum = descriptor_pb2.EnumDescriptorProto(name=name)
        values = spec.get("values") or {}
        for value_name, number in values.items():
            enum.value.add(name=value_name, number=int(number))
        if len(set(values.values())) != len(values):
            enum.options.allow_alias = True
        return enum

    def _service(self, name: str, symbol: Symbol) -> descriptor_pb2.ServiceDescriptorProto:
        service = descriptor_pb2.ServiceDescriptorProto(name=name)
        for method_name, spec in (symbol.spec.get("methods") or {}).items():
            try:
                request_ref, response_ref = spec["requestType"], spec["responseType"]
            except KeyError as exc:
                raise DescriptorError(
                    f"Method {symbol.full_name}.{method_name} is missing {exc.args[0]!r}"
                ) from exc
            request_name, request_kind = self.resolve(request_ref, symbol.full_name)
            response_name, response_kind = self.resolve(response_ref, symbol.full_name)
            if request_kind != MESSAGE or response_kind != MESSAGE:
                raise DescriptorError(
                    f"Method {symbol.full_name}.{method_name} must use message types"
                )
            service.method.add(
                name=method_name,
                input_type=f".{request_name}",
                output_type=f".{response_name}",
                client_streaming=bool(spec.get("requestStream", False)),
                server_streaming=bool(spec.get("responseStream", False)),
            )
        return service


def file_name_for(package: str) -> str:
    """Synthetic file name for the descriptors of *package*."""
    return f"{package.replace('.', '/') or '_root'}/_fallback.proto"


def _needs_proto2(symbols: list[Symbol]) -> bool:
    for symbol in symbols:
        if symbol.kind == MESSAGE:
            for spec in (symbol.spec.get("fields") or {}).values():
                if spec.get("rule") == "required":
                    return True
        elif symbol.kind == ENUM:
            values = list((symbol.spec.get("values") or {}).values())
            if values and int(values[0]) != 0:
                return True
    return False


def _add_external(pool: descriptor_pool.DescriptorPool, file_desc: Any, added: set[str]) -> None:
    if file_desc.name in added:
        return
    for dependency in file_desc.dependencies:
        _add_external(pool, dependency, added)
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_desc.CopyToProto(file_proto)
    pool.AddSerializedFile(file_proto.SerializeToString())
    added.add(file_desc.name)


def _topological(builders: dict[str, _FileBuilder]) -> list[_FileBuilder]:
    ordered: list[_FileBuilder] = []
    state: dict[str, str] = {}

    def visit(name: str) -> None:
        if state.get(name) == "done":
            return
        if state.get(name) == "visiting":
            raise DescriptorError(f"Cyclic dependency between packages involving {name!r}")
        state[name] = "visiting"
        for dependency in sorted(builders[name].dependencies):
            if dependency in builders:
                visit(dependency)
        state[name] = "done"
        ordered.append(builders[name])

    for name in builders:
        visit(name)
    return ordered


def build_pool(descriptor: Mapping[str, Any] | str | bytes) -> LoadedDescriptors:
    """Build a private descriptor pool from a JSON descriptor.

    Args:
        descriptor: protobuf.js JSON descriptor, as a mapping or JSON text.

    Returns:
        The populated pool and the symbol index.

    Raises:
        DescriptorError: If the descriptor is malformed or rejected by the
            protobuf runtime.
    """
    symbols = index_symbols(parse_descriptor(descriptor))
    pool = descriptor_pool.DescriptorPool()

    by_package: dict[str, list[Symbol]] = {}
    for symbol in symbols.values():
        if symbol.kind != NAMESPACE and not symbol.parent:
            by_package.setdefault(symbol.package, []).append(symbol)

    builders: dict[str, _FileBuilder] = {}
    for package, members in by_package.items():
        builder = _FileBuilder(package, symbols, proto2=_needs_proto2(
            [s for s in symbols.values() if s.package == package]
        ))
        for symbol in members:
            builder.add(symbol)
        builder.file_proto.dependency.extend(sorted(builder.dependencies))
        builders[builder.file_proto.name] = builder

    added: set[str] = set()
    try:
        for builder in builders.values():
            for file_desc in builder.external_files.values():
                _add_external(pool, file_desc, added)
        for builder in _topological(builders):
            pool.AddSerializedFile(builder.file_proto.SerializeToString())
            logger.debug(
                "Loaded package %r (%d messages, %d enums, %d services)",
                builder.package,
                len(builder.file_proto.message_type),
                len(builder.file_proto.enum_type),
                len(builder.file_proto.service),
            )
    except (TypeError, ValueError, KeyError) as exc:
        raise DescriptorError(f"Protobuf runtime rejected the descriptor: {exc}") from exc

    return LoadedDescriptors(pool=pool, symbols=symbols)
