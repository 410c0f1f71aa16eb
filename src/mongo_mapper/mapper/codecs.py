# src/mongo_mapper/mapper/codecs.py

"""
Schema-aware codecs for values whose document representation differs from
their plain representation: object ids, dates, instants, UUIDs, decimals,
cross-collection references and untyped native containers.

Every serializer writes the native value through ``write_native_value`` and every
deserializer accepts both the native value and a textual or structural form.
"""

import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from inspect import isclass
from typing import Any, Optional, get_args, get_origin
from uuid import UUID

import bson
from bson import Binary, Decimal128, ObjectId, SON
from bson.errors import InvalidId
from bson.raw_bson import RawBSONDocument

from mongo_mapper.base.dbref import DBRef, FetchableDBRef
from mongo_mapper.base.exceptions import MappingException
from mongo_mapper.mapper.introspection import _origin_to_class, resolve_type
from mongo_mapper.mapper.serializers import (
    Deserializer,
    SequenceDeserializer,
    Serializer,
    UntypedDeserializer,
    write_native_value,
)
from mongo_mapper.mapper.tokens import Token

log = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_SEQUENCE_TYPES = (list, set, frozenset, tuple)


def _as_utc(value: datetime) -> datetime:
    # The driver returns naive datetimes that are already in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_millis(millis: Any) -> datetime:
    return datetime.fromtimestamp(int(millis) / 1000, tz=timezone.utc)


def _to_millis(value: datetime) -> int:
    return int((_as_utc(value) - _EPOCH).total_seconds() * 1000)


def _parse_iso(text: str) -> datetime:
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


# --- Object ids ---
def to_object_id(value: Any) -> ObjectId:
    """Convert a hex string, 12 raw bytes, an object id or a reference to an object id."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, (bson.DBRef, DBRef)):
        return to_object_id(value.id)
    try:
        if isinstance(value, str):
            return ObjectId(value)
        if isinstance(value, (bytes, bytearray)):
            return ObjectId(bytes(value))
    except (InvalidId, TypeError) as e:
        raise MappingException(
            f"Cannot deserialise object of type {type(value).__name__} to ObjectId: {e}",
            runtime_type=type(value),
        ) from e
    raise MappingException(
        f"Cannot deserialise object of type {type(value).__name__} to ObjectId",
        runtime_type=type(value),
    )


class ObjectIdSerializer(Serializer):
    """
    Writes ``str``/``bytes`` values as native object ids.

    Collections are written as arrays of object ids, so the same serializer
    handles a single id field and a list of ids. References keep their
    collection and database and get an object id as their id.
    """

    handled_type = object

    def serialize(self, value, gen, mapper):
        if isinstance(value, _SEQUENCE_TYPES):
            gen.write_start_array()
            for item in value:
                if item is None:
                    gen.write_null()
                else:
                    self._write_one(item, gen)
            gen.write_end_array()
        else:
            self._write_one(value, gen)

    def _write_one(self, value: Any, gen) -> None:
        if isinstance(value, (bson.DBRef, DBRef)):
            write_reference(gen, value.collection, to_object_id(value.id), value.database)
        else:
            write_native_value(gen, to_object_id(value))


class ObjectIdDeserializer(Deserializer):
    """Reads a native object id back into the declared raw type (``str``, ``bytes`` or ``ObjectId``)."""

    def __init__(self, raw_type: type = str):
        self.handled_type = raw_type

    def contextual(self, tp: Any) -> Deserializer:
        base, _ = resolve_type(tp)
        container = _origin_to_class(get_origin(base))
        if container in _SEQUENCE_TYPES:
            args = get_args(base)
            element = args[0] if args else str
            return SequenceDeserializer(_object_id_deserializer(element), container)
        return _object_id_deserializer(base)

    def deserialize(self, parser, mapper):
        token = parser.current_token
        if token is Token.VALUE_EMBEDDED_OBJECT:
            value = parser.get_embedded_object()
        elif token is Token.VALUE_STRING:
            value = parser.get_text()
        else:
            raise self._fail(parser)
        return self.convert(value)

    def convert(self, value: Any) -> Any:
        oid = to_object_id(value)
        if self.handled_type is bytes:
            return oid.binary
        if self.handled_type is ObjectId:
            return oid
        return str(oid)


def _raw_type(tp: Any) -> type:
    base, _ = resolve_type(tp)
    return base if base in (str, bytes, ObjectId) else str


def _object_id_deserializer(tp: Any) -> Deserializer:
    base, _ = resolve_type(tp)
    if get_origin(base) is DBRef or (isclass(base) and issubclass(base, DBRef)):
        return DBRefDeserializer(id_deserializer=ObjectIdDeserializer()).contextual(base)
    return ObjectIdDeserializer(_raw_type(base))


# --- Dates ---
class DateSerializer(Serializer):
    """Writes ``datetime`` values as native dates."""

    handled_type = datetime

    def serialize(self, value, gen, mapper):
        write_native_value(gen, value)


class DateDeserializer(Deserializer):
    """Reads a datetime from a native date, epoch milliseconds or ISO-8601 text. Always UTC aware."""

    handled_type = datetime

    def deserialize(self, parser, mapper):
        token = parser.current_token
        if token is Token.VALUE_EMBEDDED_OBJECT:
            value = parser.get_embedded_object()
            if isinstance(value, datetime):
                return _as_utc(value)
            raise self._fail(parser)
        if token is Token.VALUE_NUMBER_INT:
            return _from_millis(parser.get_number_value())
        if token is Token.VALUE_STRING:
            try:
                return _as_utc(_parse_iso(parser.get_text()))
            except ValueError as e:
                raise self._fail(parser) from e
        raise self._fail(parser)
        if token is Token.VALUE_NUMBER_INT:
            return _from_millis(parser.get_number_value())
        if token is Token.VALUE_STRING:
            try:
                return _parse_iso(parser.get_text())
            except ValueError as e:
                raise self._fail(parser) from e
        raise self._fail(parser)


class CalendarDateSerializer(Serializer):
    """Writes ``date`` values as a native date at midnight UTC."""

    handled_type = date

    def serialize(self, value, gen, mapper):
        write_native_value(gen, datetime.combine(value, time.min, tzinfo=timezone.utc))


class CalendarDateDeserializer(Deserializer):
    handled_type = date

    def deserialize(self, parser, mapper):
        token = parser.current_token
        if token is Token.VALUE_EMBEDDED_OBJECT:
            value = parser.get_embedded_object()
            if isinstance(value, datetime):
                return _as_utc(value).date()
            if isinstance(value, date):
                return value
            raise self._fail(parser)
        if token is Token.VALUE_NUMBER_INT:
            return _from_millis(parser.get_number_value()).date()
        if token is Token.VALUE_STRING:
            try:
                return date.fromisoformat(parser.get_text()[:10])
            except ValueError as e:
                raise self._fail(parser) from e
        raise self._fail(parser)


class InstantSerializer(Serializer):
    """
    Writes timestamp-semantics datetimes.

    With ``WRITE_DATES_AS_TIMESTAMPS`` enabled the value is written as epoch
    milliseconds. Otherwise it is a native UTC date, or an ISO-8601 string when
    ``native_date`` is off.
    """

    handled_type = datetime

    def __init__(self, native_date: bool = True):
        self.native_date = native_date

    def serialize(self, value, gen, mapper):
        from mongo_mapper.mapper.object_mapper import MapperFeature

        if mapper.is_enabled(MapperFeature.WRITE_DATES_AS_TIMESTAMPS):
            gen.write_number(_to_millis(value))
        elif self.native_date:
            write_native_value(gen, _as_utc(value))
        else:
            gen.write_string(_as_utc(value).isoformat())


class InstantDeserializer(Deserializer):
    """Reads an instant from a native date, epoch milliseconds or ISO-8601 text. Always UTC aware."""

    handled_type = datetime

    def deserialize(self, parser, mapper):
        token = parser.current_token
        if token is Token.VALUE_EMBEDDED_OBJECT:
            value = parser.get_embedded_object()
            if isinstance(value, datetime):
                return _as_utc(value)
            raise self._fail(parser)
        if token is not None and token.is_numeric:
            return _from_millis(parser.get_number_value())
        if token is Token.VALUE_STRING:
            try:
                return _as_utc(_parse_iso(parser.get_text()))
            except ValueError as e:
                raise self._fail(parser) from e
        raise self._fail(parser)


# --- UUID ---
class UUIDSerializer(Serializer):
    """Writes UUIDs as standard (subtype 4) binary."""

    handled_type = UUID

    def serialize(self, value, gen, mapper):
        write_native_value(gen, Binary.from_uuid(value))


class UUIDDeserializer(Deserializer):
    handled_type = UUID

    def deserialize(self, parser, mapper):
        token = parser.current_token
        if token is Token.VALUE_EMBEDDED_OBJECT:
            value = parser.get_embedded_object()
            if isinstance(value, UUID):
                return value
            if isinstance(value, Binary):
                try:
                    return value.as_uuid()
                except ValueError as e:
                    raise self._fail(parser) from e
            raise self._fail(parser)
        if token is Token.VALUE_STRING:
            try:
                return UUID(parser.get_text())
            except ValueError as e:
                raise self._fail(parser) from e
        raise self._fail(parser)


# --- Decimal ---
class DecimalSerializer(Serializer):
    handled_type = Decimal

    def serialize(self, value, gen, mapper):
        write_native_value(gen, Decimal128(value))


class DecimalDeserializer(Deserializer):
    handled_type = Decimal

    def deserialize(self, parser, mapper):
        token = parser.current_token
        try:
            if token is not None and token.is_numeric:
                value = parser.get_number_value()
                if isinstance(value, Decimal128):
                    return value.to_decimal()
                return value if isinstance(value, Decimal) else Decimal(str(value))
            if token is Token.VALUE_STRING:
                return Decimal(parser.get_text())
        except InvalidOperation as e:
            raise self._fail(parser) from e
        raise self._fail(parser)


# --- References ---
def write_reference(gen, collection: str, ref_id: Any, database: Optional[str] = None) -> None:
    """
    Write a reference as a native driver reference.

    Generators without native values get the equivalent ``$ref``/``$id``/``$db``
    structure instead.
    """
    if gen.supports_native_values:
        gen.write_object(bson.DBRef(collection, ref_id, database))
        return
    gen.write_start_object()
    gen.write_field_name("$ref")
    gen.write_string(collection)
    gen.write_field_name("$id")
    gen.write_object(ref_id)
    if database is not None:
        gen.write_field_name("$db")
        gen.write_string(database)
    gen.write_end_object()


class DBRefSerializer(Serializer):
    """Writes a ``DBRef`` with its id converted through the mapper."""

    handled_type = DBRef

    def serialize(self, value, gen, mapper):
        ref_id = mapper.to_native(value.id) if gen.supports_native_values else value.id
        write_reference(gen, value.collection, ref_id, value.database)


class DBRefDeserializer(Deserializer):
    """
    Reads a reference from a native driver reference or a ``$ref``/``$id``/``$db`` object.

    When the parser was created for a collection the result is a
    ``FetchableDBRef`` bound to that collection. Ids are read as the declared
    key type, or with ``id_deserializer`` when one is given.
    """

    handled_type = DBRef

    def __init__(self, object_type: Any = None, key_type: Any = None, id_deserializer: Any = None):
        self.object_type = object_type
        self.key_type = key_type
        self.id_deserializer = id_deserializer

    def contextual(self, tp: Any) -> Deserializer:
        base, _ = resolve_type(tp)
        args = get_args(base)
        if len(args) != 2:
            raise MappingException(
                "DBRef fields must declare the referenced type and its key type, "
                "for example DBRef[Owner, str]",
                runtime_type=DBRef,
            )
        id_deserializer = self.id_deserializer
        if id_deserializer is not None:
            id_deserializer = id_deserializer.contextual(args[1])
        return DBRefDeserializer(args[0], args[1], id_deserializer)

    def deserialize(self, parser, mapper):
        token = parser.current_token
        if token is Token.VALUE_NULL:
            return None
        if token is Token.VALUE_EMBEDDED_OBJECT:
            value = parser.get_embedded_object()
            if not isinstance(value, bson.DBRef):
                raise MappingException(
                    f"Don't know what to do with embedded object: {value!r}",
                    runtime_type=type(value),
                )
            return self._build(parser, mapper, value.id, value.collection, value.database)
        if token is Token.START_OBJECT:
            native_id = collection = database = None
            while parser.next_token() is Token.FIELD_NAME:
                name = parser.current_name
                parser.next_token()
                if name == "$id":
                    native_id = UntypedDeserializer().deserialize(parser, mapper)
                elif name == "$ref":
                    collection = parser.get_text()
                elif name == "$db":
                    database = parser.get_text()
                else:
                    parser.skip_children()
            if collection is None:
                raise MappingException("Couldn't extract collection name for dbref", runtime_type=dict)
            if native_id is None:
                raise MappingException("Couldn't extract object id for dbref", runtime_type=dict)
            return self._build(parser, mapper, native_id, collection, database)
        raise self._fail(parser)

    def _build(self, parser, mapper, native_id, collection, database):
        if self.id_deserializer is not None:
            ref_id = self.id_deserializer.convert(native_id)
        else:
            ref_id = mapper.from_native(native_id, self.key_type if self.key_type is not None else Any)
        source = getattr(parser, "collection", None)
        if source is not None and self.object_type is not None:
            return FetchableDBRef(
                ref_id,
                collection,
                database,
                object_type=self.object_type,
                key_type=self.key_type,
                source=source,
            )
        return DBRef(ref_id, collection, database, object_type=self.object_type, key_type=self.key_type)


# --- Untyped native containers ---
class NativeValueSerializer(Serializer):
    """
    Writes a heterogeneous tree of native values (``SON``, ``RawBSONDocument``) key by key.

    Nested values that are not native go through the mapper's value serializer.
    """

    handled_type = SON

    def serialize(self, value, gen, mapper):
        if isinstance(value, RawBSONDocument):
            value = bson.decode(value.raw)
        self._write(value, gen, mapper)

    def _write(self, value: Any, gen, mapper) -> None:
        from mongo_mapper.mapper.generator import NATIVE_TYPES

        if value is None:
            gen.write_null()
        elif isinstance(value, dict):
            gen.write_start_object()
            for key, item in value.items():
                gen.write_field_name(str(key))
                self._write(item, gen, mapper)
            gen.write_end_object()
        elif isinstance(value, (list, tuple)):
            gen.write_start_array()
            for item in value:
                self._write(item, gen, mapper)
            gen.write_end_array()
        elif isinstance(value, bool):
            gen.write_boolean(value)
        elif isinstance(value, NATIVE_TYPES):
            write_native_value(gen, value)
        else:
            mapper.value_serializer(value).serialize(value, gen, mapper)


class NativeValueDeserializer(Deserializer):
    def __init__(self, handled_type: type = SON):
        self.handled_type = handled_type

    def deserialize(self, parser, mapper):
        if parser.current_token is not Token.START_OBJECT:
            raise self._fail(parser)
        document = _to_son(UntypedDeserializer().deserialize(parser, mapper))
        if self.handled_type is RawBSONDocument:
            return RawBSONDocument(bson.encode(document))
        return document


def _to_son(value: Any) -> Any:
    if isinstance(value, dict):
        return SON((key, _to_son(item)) for key, item in value.items())
    if isinstance(value, list):
        return [_to_son(item) for item in value]
    return value

