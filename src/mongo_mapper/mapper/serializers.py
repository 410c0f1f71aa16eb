# src/mongo_mapper/mapper/serializers.py

"""
Standard serializers and deserializers used by the ObjectMapper.

A serializer writes one value to a ``TokenGenerator``; a deserializer reads one
value from a ``TokenParser`` that is positioned on the value's first token and
leaves the parser on the value's last token. Both receive the ObjectMapper so
they can look up serializers for nested values and check features.
"""

import logging
import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, get_origin
from uuid import UUID

from bson import Binary, Code, DBRef, Decimal128, Int64, MaxKey, MinKey, ObjectId, Regex, Timestamp

from mongo_mapper.base.exceptions import (
    MappingException,
    UnsupportedGeneratorException,
)
from mongo_mapper.mapper.introspection import BeanDescription, PropertyDefinition
from mongo_mapper.mapper.tokens import Token, TokenGenerator, TokenParser

log = logging.getLogger(__name__)

# Driver types that are stored as they are
BSON_TYPES = (
    ObjectId,
    DBRef,
    Decimal128,
    Int64,
    Binary,
    Regex,
    re.Pattern,
    Code,
    Timestamp,
    MinKey,
    MaxKey,
)


def write_native_value(gen: TokenGenerator, value: Any) -> None:
    """
    Write a value that is already in its document representation.

    Native sinks store it verbatim. Generators that can detach their codec record
    it without handing it back to the mapper. Any other generator is rejected.
    """
    if gen.supports_native_values:
        gen.write_object(value)
    elif gen.can_detach_codec:
        with gen.detached_codec():
            gen.write_object(value)
    else:
        raise UnsupportedGeneratorException(
            f"Cannot write native value of type {type(value).__name__} "
            f"to generator {type(gen).__name__}"
        )


def _type_name(tp: Any) -> str:
    return getattr(tp, "__name__", None) or repr(tp)


# --- Serializers ---
class Serializer:
    """Base class for serializers. ``handled_type`` is the type of values it expects."""

    handled_type: Optional[type] = None

    def serialize(self, value: Any, gen: TokenGenerator, mapper: Any) -> None:
        raise NotImplementedError

    def contextual(self, tp: Any) -> "Serializer":
        """Return a serializer specialised for the declared type ``tp``."""
        return self

    @property
    def content_serializer(self) -> Optional["Serializer"]:
        """Serializer used for the elements of a container, if this is one."""
        return None

    def find_property_serializer(self, name: str) -> Optional["Serializer"]:
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({_type_name(self.handled_type)})"


class StringSerializer(Serializer):
    handled_type = str

    def serialize(self, value, gen, mapper):
        gen.write_string(value if isinstance(value, str) else str(value))


class NumberSerializer(Serializer):
    def __init__(self, handled_type: type = int):
        self.handled_type = handled_type

    def serialize(self, value, gen, mapper):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MappingException(
                f"Cannot serialise object of type {type(value).__name__} as a number",
                runtime_type=type(value),
            )
        gen.write_number(value)


class BooleanSerializer(Serializer):
    handled_type = bool

    def serialize(self, value, gen, mapper):
        gen.write_boolean(bool(value))


class BytesSerializer(Serializer):
    handled_type = bytes

    def serialize(self, value, gen, mapper):
        gen.write_binary(bytes(value))


class EnumSerializer(Serializer):
    """Writes the enum member's value."""

    def __init__(self, enum_type: Type[Enum]):
        self.handled_type = enum_type

    def serialize(self, value, gen, mapper):
        mapper.write_value(gen, value.value)


class NativeSerializer(Serializer):
    """Passes values of a document-native type through unchanged."""

    def __init__(self, handled_type: type):
        self.handled_type = handled_type

    def serialize(self, value, gen, mapper):
        write_native_value(gen, value)


class DynamicSerializer(Serializer):
    """Looks the serializer up from the runtime type of each value."""

    def serialize(self, value, gen, mapper):
        if value is None:
            gen.write_null()
            return
        mapper.value_serializer(value).serialize(value, gen, mapper)


class ContainerSerializer(Serializer):
    def __init__(self, content_serializer: Optional[Serializer] = None):
        self._content = content_serializer

    @property
    def content_serializer(self) -> Optional[Serializer]:
        return self._content

    def _write_item(self, item: Any, gen: TokenGenerator, mapper: Any) -> None:
        if item is None:
            gen.write_null()
        elif self._content is not None:
            self._content.serialize(item, gen, mapper)
        else:
            mapper.value_serializer(item).serialize(item, gen, mapper)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._content!r})"


class SequenceSerializer(ContainerSerializer):
    handled_type = list

    def serialize(self, value, gen, mapper):
        gen.write_start_array()
        for index, item in enumerate(value):
            try:
                self._write_item(item, gen, mapper)
            except MappingException as e:
                raise e.with_path(str(index)) from e.__cause__
        gen.write_end_array()


class MapSerializer(ContainerSerializer):
    handled_type = dict

    def serialize(self, value, gen, mapper):
        gen.write_start_object()
        for key, item in value.items():
            key = key.value if isinstance(key, Enum) else key
            gen.write_field_name(str(key))
            try:
                self._write_item(item, gen, mapper)
            except MappingException as e:
                raise e.with_path(str(key)) from e.__cause__
        gen.write_end_object()


def _instance_type(cls: Any) -> Optional[type]:
    """Class that values of the mapped type ``cls`` must be instances of."""
    origin = get_origin(cls) or cls
    metadata = getattr(origin, "__pydantic_generic_metadata__", None)
    if metadata and metadata.get("origin") is not None:
        origin = metadata["origin"]
    return origin if isinstance(origin, type) else None


class BeanSerializer(Serializer):
    """
    Serializes a mapped type property by property.

    Property serializers are resolved on first use, so self-referencing types
    can be registered in the mapper's cache before their properties are known.
    """

    def __init__(self, description: BeanDescription, mapper: Any):
        self.handled_type = description.cls
        self.description = description
        self._mapper = mapper
        self._properties: Optional[List[Tuple[PropertyDefinition, Serializer]]] = None
        self._instance_type = _instance_type(description.cls)

    @property
    def properties(self) -> List[Tuple[PropertyDefinition, Serializer]]:
        if self._properties is None:
            self._properties = [
                (prop, self._mapper.serializer_for(prop.type_hint))
                for prop in self.description.properties
            ]
        return self._properties

    def find_property_serializer(self, name: str) -> Optional[Serializer]:
        prop = self.description.find_property(name)
        if prop is None:
            return None
        for candidate, serializer in self.properties:
            if candidate is prop:
                return serializer
        return None

    def serialize(self, value, gen, mapper):
        from mongo_mapper.mapper.object_mapper import MapperFeature

        if self._instance_type is not None and not isinstance(value, self._instance_type):
            raise MappingException(
                f"Cannot serialise object of type {type(value).__name__} "
                f"as {_type_name(self.handled_type)}",
                runtime_type=type(value),
            )
        write_nulls = mapper.is_enabled(MapperFeature.WRITE_NULL_PROPERTIES)
        gen.write_start_object()
        for prop, serializer in self.properties:
            prop_value = prop.get(value)
            if prop_value is None:
                if write_nulls:
                    gen.write_field_name(prop.stored_name)
                    gen.write_null()
                continue
            gen.write_field_name(prop.stored_name)
            try:
                serializer.serialize(prop_value, gen, mapper)
            except MappingException as e:
                raise e.with_path(prop.stored_name) from e.__cause__
        gen.write_end_object()


# --- Deserializers ---
class Deserializer:
    handled_type: Optional[type] = None

    def deserialize(self, parser: TokenParser, mapper: Any) -> Any:
        raise NotImplementedError

    def contextual(self, tp: Any) -> "Deserializer":
        """Return a deserializer specialised for the declared type ``tp``."""
        return self

    def find_property_deserializer(self, name: str) -> Optional["Deserializer"]:
        return None

    def _fail(self, parser: TokenParser) -> MappingException:
        value = parser.get_embedded_object()
        if parser.current_token is not None and parser.current_token.is_struct_start:
            runtime = dict if parser.current_token is Token.START_OBJECT else list
        else:
            runtime = type(value)
        return MappingException(
            f"Cannot deserialise object of type {runtime.__name__} "
            f"to {_type_name(self.handled_type)}",
            runtime_type=runtime,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({_type_name(self.handled_type)})"


class UntypedDeserializer(Deserializer):
    """Reads any value into plain dicts, lists and native scalars."""

    def deserialize(self, parser, mapper):
        token = parser.current_token
        if token is Token.START_OBJECT:
            result: Dict[str, Any] = {}
            while parser.next_token() is Token.FIELD_NAME:
                name = parser.current_name
                parser.next_token()
                result[name] = self.deserialize(parser, mapper)
            return result
        if token is Token.START_ARRAY:
            items = []
            while parser.next_token() is not Token.END_ARRAY:
                items.append(self.deserialize(parser, mapper))
            return items
        if token is Token.VALUE_STRING:
            return parser.get_text()
        if token is not None and token.is_numeric:
            return parser.get_number_value()
        if token is Token.VALUE_TRUE or token is Token.VALUE_FALSE:
            return parser.get_boolean_value()
        if token is Token.VALUE_NULL:
            return None
        return parser.get_embedded_object()


class StringDeserializer(Deserializer):
    handled_type = str

    def deserialize(self, parser, mapper):
        token = parser.current_token
        if token is Token.VALUE_STRING:
            return parser.get_text()
        if token is Token.VALUE_EMBEDDED_OBJECT or (token is not None and token.is_numeric):
            # object ids and similar scalars read as their text form
            return parser.get_text()
        raise self._fail(parser)


class IntDeserializer(Deserializer):
    handled_type = int

    def deserialize(self, parser, mapper):
        token = parser.current_token
        if token is Token.VALUE_NUMBER_INT:
            return int(parser.get_number_value())
        if token is Token.VALUE_NUMBER_FLOAT:
            value = parser.get_number_value()
            if value == int(value):
                return int(value)
        if token is Token.VALUE_STRING:
            try:
                return int(parser.get_text())
            except ValueError:
                pass
        raise self._fail(parser)


class FloatDeserializer(Deserializer):
    handled_type = float

    def deserialize(self, parser, mapper):
        token = parser.current_token
        if token is not None and token.is_numeric:
            return float(parser.get_number_value())
        if token is Token.VALUE_STRING:
            try:
                return float(parser.get_text())
            except ValueError:
                pass
        raise self._fail(parser)


class BooleanDeserializer(Deserializer):
    handled_type = bool

    def deserialize(self, parser, mapper):
        if parser.current_token in (Token.VALUE_TRUE, Token.VALUE_FALSE):
            return parser.get_boolean_value()
        if parser.current_token is Token.VALUE_NUMBER_INT:
            return bool(parser.get_number_value())
        raise self._fail(parser)


class BytesDeserializer(Deserializer):
    handled_type = bytes

    def deserialize(self, parser, mapper):
        value = parser.get_binary_value()
        if value is None:
            raise self._fail(parser)
        return value


class EnumDeserializer(Deserializer):
    def __init__(self, enum_type: Type[Enum]):
        self.handled_type = enum_type

    def deserialize(self, parser, mapper):
        raw = UntypedDeserializer().deserialize(parser, mapper)
        try:
            return self.handled_type(raw)
        except ValueError as e:
            raise MappingException(
                f"{raw!r} is not a valid {self.handled_type.__name__}",
                runtime_type=type(raw),
            ) from e


class NativeDeserializer(Deserializer):
    """
    Reads a document-native value of ``handled_type``.

    ``convert`` optionally turns other scalar shapes (usually text) into the
    native type.
    """

    def __init__(self, handled_type: type, convert: Optional[Callable[[Any], Any]] = None):
        self.handled_type = handled_type
        self._convert = convert

    def deserialize(self, parser, mapper):
        token = parser.current_token
        if token is None or token.is_struct_start:
            raise self._fail(parser)
        value = parser.get_embedded_object()
        if isinstance(value, self.handled_type):
            return value
        if self._convert is not None:
            try:
                return self._convert(value)
            except (TypeError, ValueError) as e:
                raise self._fail(parser) from e
        raise self._fail(parser)


class SequenceDeserializer(Deserializer):
    def __init__(self, content: Deserializer, container_type: type = list):
        self.handled_type = container_type
        self.content = content

    def deserialize(self, parser, mapper):
        if parser.current_token is not Token.START_ARRAY:
            raise self._fail(parser)
        items = []
        index = 0
        while parser.next_token() is not Token.END_ARRAY:
            if parser.current_token is Token.VALUE_NULL:
                items.append(None)
            else:
                try:
                    items.append(self.content.deserialize(parser, mapper))
                except MappingException as e:
                    raise e.with_path(str(index)) from e.__cause__
            index += 1
        return items if self.handled_type is list else self.handled_type(items)


class MapDeserializer(Deserializer):
    handled_type = dict

    def __init__(self, content: Deserializer):
        self.content = content

    def deserialize(self, parser, mapper):
        if parser.current_token is not Token.START_OBJECT:
            raise self._fail(parser)
        result: Dict[str, Any] = {}
        while parser.next_token() is Token.FIELD_NAME:
            name = parser.current_name
            parser.next_token()
            if parser.current_token is Token.VALUE_NULL:
                result[name] = None
                continue
            try:
                result[name] = self.content.deserialize(parser, mapper)
            except MappingException as e:
                raise e.with_path(name) from e.__cause__
        return result


class BeanDeserializer(Deserializer):
    """Reads an object into a mapped type, matching fields by stored name."""

    def __init__(self, description: BeanDescription, mapper: Any):
        self.handled_type = description.cls
        self.description = description
        self._mapper = mapper
        self._deserializers: Dict[str, Deserializer] = {}

    def _property_deserializer(self, prop: PropertyDefinition) -> Deserializer:
        deserializer = self._deserializers.get(prop.name)
        if deserializer is None:
            deserializer = self._mapper.deserializer_for(prop.type_hint)
            self._deserializers[prop.name] = deserializer
        return deserializer

    def find_property_deserializer(self, name: str) -> Optional[Deserializer]:
        prop = self.description.find_property(name)
        return self._property_deserializer(prop) if prop is not None else None

    def deserialize(self, parser, mapper):
        from mongo_mapper.mapper.object_mapper import MapperFeature

        if parser.current_token is not Token.START_OBJECT:
            raise self._fail(parser)
        values: Dict[str, Any] = {}
        while parser.next_token() is Token.FIELD_NAME:
            name = parser.current_name
            parser.next_token()
            prop = self.description.find_property(name)
            if prop is None:
                if mapper.is_enabled(MapperFeature.FAIL_ON_UNKNOWN_PROPERTIES):
                    raise MappingException(
                        f"Unrecognized field '{name}' for {self.handled_type.__name__}",
                        path=name,
                    )
                parser.skip_children()
                continue
            if parser.current_token is Token.VALUE_NULL:
                values[prop.name] = None
                continue
            try:
                values[prop.name] = self._property_deserializer(prop).deserialize(parser, mapper)
            except MappingException as e:
                raise e.with_path(name) from e.__cause__
        return mapper.construct(self.handled_type, values)


# --- Defaults for builtin types ---
def _to_decimal(value: Any) -> Decimal:
    return Decimal(str(value))


def std_serializer_for(cls: type) -> Optional[Serializer]:
    """Serializer for builtin scalar types, or None."""
    if issubclass(cls, bool):
        return BooleanSerializer()
    if issubclass(cls, BSON_TYPES) or issubclass(cls, (datetime, date, UUID, Decimal)):
        return NativeSerializer(cls)
    if issubclass(cls, Enum):
        return EnumSerializer(cls)
    if issubclass(cls, str):
        return StringSerializer()
    if issubclass(cls, (int, float)):
        return NumberSerializer(cls)
    if issubclass(cls, (bytes, bytearray)):
        return BytesSerializer()
    return None


def std_deserializer_for(cls: type) -> Optional[Deserializer]:
    """Deserializer for builtin scalar types, or None."""
    if issubclass(cls, bool):
        return BooleanDeserializer()
    if issubclass(cls, BSON_TYPES):
        return NativeDeserializer(cls)
    if issubclass(cls, Enum):
        return EnumDeserializer(cls)
    if issubclass(cls, str):
        return StringDeserializer()
    if cls is int:
        return IntDeserializer()
    if cls is float:
        return FloatDeserializer()
    if issubclass(cls, Decimal):
        return NativeDeserializer(Decimal, _to_decimal)
    if issubclass(cls, UUID):
        return NativeDeserializer(UUID, lambda v: UUID(str(v)))
    if issubclass(cls, (datetime, date)):
        return NativeDeserializer(cls)
    if issubclass(cls, (bytes, bytearray)):
        return BytesDeserializer()
    return None
