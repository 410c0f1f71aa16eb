# src/mongo_mapper/mapper/id_handler.py

import logging
from typing import Any, Generic, TypeVar

from bson import ObjectId

from mongo_mapper.mapper.generator import NativeDocumentGenerator
from mongo_mapper.mapper.introspection import ID_FIELD
from mongo_mapper.mapper.parser import NativeDocumentParser
from mongo_mapper.mapper.serializers import Deserializer, Serializer

log = logging.getLogger(__name__)

K = TypeVar("K")


class IdHandler(Generic[K]):
    """Converts a mapped type's id values to and from their stored form."""

    def to_db_id(self, id: K) -> Any:
        raise NotImplementedError

    def from_db_id(self, db_id: Any) -> K:
        raise NotImplementedError

    def to_native(self, id: Any) -> Any:
        """``to_db_id`` with native ids passed through unchanged."""
        if id is None or isinstance(id, ObjectId):
            return id
        return self.to_db_id(id)


class NoopIdHandler(IdHandler[K]):
    def to_db_id(self, id: K) -> Any:
        return id

    def from_db_id(self, db_id: Any) -> K:
        return db_id


class MapperIdHandler(IdHandler[K]):
    """Routes id values through the id property's own serializer and deserializer."""

    def __init__(self, serializer: Serializer, deserializer: Deserializer, mapper: Any):
        self.serializer = serializer
        self.deserializer = deserializer
        self.mapper = mapper

    def to_db_id(self, id: K) -> Any:
        gen = NativeDocumentGenerator(self.mapper)
        self.serializer.serialize(id, gen, self.mapper)
        return gen.value

    def from_db_id(self, db_id: Any) -> K:
        if db_id is None:
            return None
        parser = NativeDocumentParser(db_id, self.mapper)
        parser.next_token()
        return self.deserializer.deserialize(parser, self.mapper)

    def __repr__(self) -> str:
        return f"MapperIdHandler({self.serializer!r}, {self.deserializer!r})"


class IdHandlerFactory:
    @staticmethod
    def get_id_handler_for_type(value_type: Any, mapper: Any) -> IdHandler:
        """
        Build the id handler for ``value_type`` from the codecs the mapper already
        uses for its ``_id`` property. Types without one get a ``NoopIdHandler``.
        """
        serializer = mapper.serializer_for(value_type)
        deserializer = mapper.deserializer_for(value_type)
        id_serializer = serializer.find_property_serializer(ID_FIELD)
        id_deserializer = deserializer.find_property_deserializer(ID_FIELD)
        if id_serializer is not None and id_deserializer is not None:
            handler = MapperIdHandler(id_serializer, id_deserializer, mapper)
        else:
            handler = NoopIdHandler()
        log.debug(f"Id handler for {getattr(value_type, '__name__', value_type)}: {handler!r}")
        return handler
