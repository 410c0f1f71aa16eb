# src/mongo_mapper/mapper/module.py

import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional
from uuid import UUID

from bson import SON
from bson.raw_bson import RawBSONDocument

from mongo_mapper.base.annotations import Instant, ObjectId
from mongo_mapper.base.dbref import DBRef
from mongo_mapper.mapper.codecs import (
    CalendarDateDeserializer,
    CalendarDateSerializer,
    DateDeserializer,
    DateSerializer,
    DBRefDeserializer,
    DBRefSerializer,
    DecimalDeserializer,
    DecimalSerializer,
    InstantDeserializer,
    InstantSerializer,
    NativeValueDeserializer,
    NativeValueSerializer,
    ObjectIdDeserializer,
    ObjectIdSerializer,
    UUIDDeserializer,
    UUIDSerializer,
)
from mongo_mapper.mapper.object_mapper import MapperFeature, Module, ObjectMapper

log = logging.getLogger(__name__)


class ModuleFeature(Enum):
    """Options of the mongo module. The value is the default state."""

    WRITE_INSTANT_AS_NATIVE_DATE = True
    ENABLE_NATIVE_VALUE_SERIALIZATION = False
    SERIALIZATION_INCLUSION_NON_NULL = True

    @property
    def enabled_by_default(self) -> bool:
        return self.value


class MongoMapperModule(Module):
    """
    Registers the document codecs on an ObjectMapper.

    Args:
        features: Overrides for the default ``ModuleFeature`` states.
    """

    name = "mongo-mapper"

    def __init__(self, features: Optional[Dict[ModuleFeature, bool]] = None):
        self.features = dict(features or {})

    def is_enabled(self, feature: ModuleFeature) -> bool:
        return self.features.get(feature, feature.enabled_by_default)

    def setup(self, mapper: ObjectMapper) -> None:
        mapper.add_marker_codec(ObjectId, ObjectIdSerializer(), ObjectIdDeserializer())
        mapper.add_marker_codec(
            Instant,
            InstantSerializer(self.is_enabled(ModuleFeature.WRITE_INSTANT_AS_NATIVE_DATE)),
            InstantDeserializer(),
        )
        mapper.add_serializer(datetime, DateSerializer())
        mapper.add_deserializer(datetime, DateDeserializer())
        mapper.add_serializer(date, CalendarDateSerializer())
        mapper.add_deserializer(date, CalendarDateDeserializer())
        mapper.add_serializer(UUID, UUIDSerializer())
        mapper.add_deserializer(UUID, UUIDDeserializer())
        mapper.add_serializer(Decimal, DecimalSerializer())
        mapper.add_deserializer(Decimal, DecimalDeserializer())
        mapper.add_serializer(DBRef, DBRefSerializer())
        mapper.add_deserializer(DBRef, DBRefDeserializer())
        if self.is_enabled(ModuleFeature.ENABLE_NATIVE_VALUE_SERIALIZATION):
            for native_type in (SON, RawBSONDocument):
                mapper.add_serializer(native_type, NativeValueSerializer())
                mapper.add_deserializer(native_type, NativeValueDeserializer(native_type))


def configure_mapper(
    mapper: Optional[ObjectMapper] = None,
    features: Optional[Dict[ModuleFeature, bool]] = None,
) -> ObjectMapper:
    """
    Register the mongo module on ``mapper`` (a new one when omitted) and apply the module-level settings.
    """
    mapper = mapper if mapper is not None else ObjectMapper()
    module = MongoMapperModule(features)
    mapper.register_module(module)
    if module.is_enabled(ModuleFeature.SERIALIZATION_INCLUSION_NON_NULL):
        mapper.disable(MapperFeature.WRITE_NULL_PROPERTIES)
    log.debug(f"Configured {mapper!r} with features {module.features}")
    return mapper
