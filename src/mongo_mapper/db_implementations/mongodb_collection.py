# src/mongo_mapper/db_implementations/mongodb_collection.py

import logging
import re
from enum import Enum
from typing import (
    Any,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    NoReturn,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
    get_origin,
)

from bson import Code, ObjectId, SON
from pymongo import ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError
from pymongo.results import BulkWriteResult, DeleteResult, UpdateResult

from mongo_mapper.base.aggregation import Pipeline
from mongo_mapper.base.annotations import ObjectId as ObjectIdMarker
from mongo_mapper.base.annotations import find_marker
from mongo_mapper.base.dbref import CollectionKey, DBRef
from mongo_mapper.base.exceptions import KeyAlreadyExistsException, ObjectNotFoundException
from mongo_mapper.base.query import DBQuery, Query
from mongo_mapper.base.update import UpdateBuilder
from mongo_mapper.db_implementations.bulk import WriteModel
from mongo_mapper.db_implementations.cursor import MappedCursor
from mongo_mapper.mapper.generator import NativeDocumentGenerator
from mongo_mapper.mapper.id_handler import IdHandler, IdHandlerFactory
from mongo_mapper.mapper.introspection import (
    ID_FIELD,
    PropertyDefinition,
    _origin_to_class,
    is_mapped_type,
    resolve_type,
)
from mongo_mapper.mapper.module import configure_mapper
from mongo_mapper.mapper.object_mapper import ObjectMapper
from mongo_mapper.mapper.tokens import TokenBuffer

# --- Type Variables ---
T = TypeVar("T")
K = TypeVar("K")

Filter = Union[Query, Dict[str, Any], None]
UpdateSpec = Union[UpdateBuilder, Dict[str, Any]]
Projection = Optional[Dict[str, Any]]


class SerializationStrategy(Enum):
    """
    How objects are turned into documents on writes.

    NATIVE serializes straight into the native document and fills in a missing
    ``ObjectId`` before the write, so the id is set on the saved object. GENERIC
    records the object's tokens first and replays them into a document, leaving
    id generation to the driver; the saved object is not modified.
    """

    NATIVE = "native"
    GENERIC = "generic"


class MappedDocument(dict):
    """A document produced from ``mapped_object``; converting it back returns that object."""

    def __init__(self, document: Dict[str, Any], mapped_object: Any):
        super().__init__(document)
        self.mapped_object = mapped_object


class WriteResult(Generic[T, K]):
    """
    Result of an insert or save.

    Ids are reported in the value type's id type, converted from the ids the
    documents were stored with.
    """

    def __init__(
        self,
        collection: "MappedCollection[T, K]",
        objects: Sequence[T],
        db_ids: Sequence[Any],
        raw_result: Any,
    ):
        self._collection = collection
        self._objects = list(objects)
        self._db_ids = list(db_ids)
        self.raw_result = raw_result

    @property
    def acknowledged(self) -> bool:
        return getattr(self.raw_result, "acknowledged", True)

    def get_saved_ids(self) -> List[K]:
        return [self._collection.id_handler.from_db_id(db_id) for db_id in self._db_ids]

    def get_saved_id(self) -> Optional[K]:
        ids = self.get_saved_ids()
        return ids[0] if ids else None

    def get_saved_objects(self) -> List[T]:
        return list(self._objects)

    def get_saved_object(self) -> Optional[T]:
        return self._objects[0] if self._objects else None

    def __repr__(self) -> str:
        return f"WriteResult(ids={self._db_ids!r})"


class MappedCollection(Generic[T, K]):
    """
    A pymongo collection bound to a value type.

    Objects are serialized with the ObjectMapper on the way in and documents are
    deserialized on the way out. Deferred ``Query``, ``UpdateBuilder`` and
    ``Pipeline`` values are serialized against the value type before they are
    sent; plain documents are sent unchanged. Driver errors are passed through,
    except ``DuplicateKeyError`` which becomes ``KeyAlreadyExistsException``.

    Args:
        collection: The pymongo collection.
        value_type: Type of the stored objects (a mapped type or ``dict``).
        key_type: Type of the ids; taken from the value type's id property when omitted.
        object_mapper: A configured ObjectMapper. A new one is configured when omitted.
        strategy: How objects are serialized on writes.
    """

    def __init__(
        self,
        collection: Collection,
        value_type: Any,
        key_type: Any = None,
        object_mapper: Optional[ObjectMapper] = None,
        strategy: SerializationStrategy = SerializationStrategy.NATIVE,
    ):
        if not isinstance(collection, Collection):
            raise TypeError("collection must be an instance of pymongo.collection.Collection")
        self._collection = collection
        self._value_type = value_type
        self._object_mapper = object_mapper if object_mapper is not None else configure_mapper()
        self._strategy = strategy

        base, _ = resolve_type(value_type)
        self._value_cls = _origin_to_class(get_origin(base)) or base
        self._id_property: Optional[PropertyDefinition] = None
        if is_mapped_type(self._value_cls):
            self._id_property = self._object_mapper.describe(base).id_property
        if key_type is None and self._id_property is not None:
            key_type = self._id_property.type_hint
        self._key_type = key_type if key_type is not None else Any
        self._id_handler: IdHandler[K] = IdHandlerFactory.get_id_handler_for_type(
            value_type, self._object_mapper
        )
        self._references: Dict[CollectionKey, "MappedCollection[Any, Any]"] = {}

        type_name = getattr(self._value_cls, "__name__", str(value_type))
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}[{type_name}]")
        self._logger.info(
            f"Collection instance created for {type_name} "
            f"(db: '{collection.database.name}', collection: '{collection.name}', "
            f"strategy: {strategy.value})."
        )

    # --- Properties ---
    @property
    def collection(self) -> Collection:
        return self._collection

    @property
    def name(self) -> str:
        return self._collection.name

    @property
    def value_type(self) -> Any:
        return self._value_type

    @property
    def key_type(self) -> Any:
        return self._key_type

    @property
    def object_mapper(self) -> ObjectMapper:
        return self._object_mapper

    @property
    def strategy(self) -> SerializationStrategy:
        return self._strategy

    @property
    def id_handler(self) -> IdHandler[K]:
        return self._id_handler

    # --- Conversion ---
    def convert_to_document(self, obj: T) -> Dict[str, Any]:
        """Serialize an object of the value type into a document."""
        if isinstance(obj, dict) and not isinstance(obj, self._value_cls_or_none()):
            # already a document
            return self._object_mapper.to_native(obj)
        if self._strategy is SerializationStrategy.GENERIC:
            buffer = TokenBuffer(self._object_mapper)
            self._object_mapper.write_value(buffer, obj, self._value_type)
            parser = buffer.as_parser()
            parser.next_token()
            gen = NativeDocumentGenerator(self._object_mapper)
            gen.copy_current_structure(parser)
            return gen.document
        gen = NativeDocumentGenerator(self._object_mapper)
        self._object_mapper.write_value(gen, obj, self._value_type)
        return MappedDocument(gen.document, obj)

    def convert_from_document(self, document: Optional[Dict[str, Any]]) -> Optional[T]:
        """Deserialize a document into the value type. Documents made from an object return that object."""
        if document is None:
            return None
        if isinstance(document, MappedDocument):
            return document.mapped_object
        value_cls = self._value_cls_or_none()
        if value_cls is not dict and isinstance(document, value_cls):
            return document
        return self._object_mapper.from_native(document, self._value_type, collection=self)

    def _value_cls_or_none(self) -> type:
        return self._value_cls if isinstance(self._value_cls, type) else type(None)

    # --- Filter and update handling ---
    def manage_filter(self, query: Filter) -> Dict[str, Any]:
        """Serialize a deferred query against the value type; documents are returned as they are."""
        if query is None:
            return {}
        if isinstance(query, Query):
            query.initialize(self._object_mapper, self._value_type)
            return query.serialize()
        return query

    def manage_update(self, update: UpdateSpec) -> Dict[str, Any]:
        if isinstance(update, UpdateBuilder):
            return update.serialize(self._object_mapper, self._value_type)
        return update

    def manage_pipeline(self, pipeline: Union[Pipeline, Iterable[Any]]) -> List[Dict[str, Any]]:
        if not isinstance(pipeline, Pipeline):
            pipeline = Pipeline(*pipeline)
        return pipeline.serialize(self._object_mapper, self._value_type)

    def _id_filter(self, id: K) -> Dict[str, Any]:
        return {ID_FIELD: self._id_handler.to_native(id)}

    def _generates_object_ids(self) -> bool:
        if self._id_property is None:
            return False
        base, markers = resolve_type(self._id_property.type_hint)
        if find_marker(markers, ObjectIdMarker) is not None:
            return True
        return base in (str, ObjectId)

    def convert_for_insert(self, obj: T) -> Dict[str, Any]:
        """The document inserted for ``obj``. Under NATIVE a missing object id is generated and set on ``obj``."""
        document = self.convert_to_document(obj)
        self._prepare_for_insert(obj, document)
        return document

    def convert_for_replace(self, obj: T) -> Dict[str, Any]:
        """The replacement document for ``obj``, without a null id."""
        document = self.convert_to_document(obj)
        if document.get(ID_FIELD) is None:
            document.pop(ID_FIELD, None)
        return document

    def _prepare_for_insert(self, obj: T, document: Dict[str, Any]) -> None:
        if ID_FIELD in document and document[ID_FIELD] is None:
            del document[ID_FIELD]
        if (
            self._strategy is SerializationStrategy.NATIVE
            and ID_FIELD not in document
            and self._generates_object_ids()
        ):
            key = self._id_handler.from_db_id(ObjectId())
            document[ID_FIELD] = self._id_handler.to_native(key)
            self._id_property.set(obj, key)
            self._logger.debug(f"Generated id '{key}' for new {self._type_name}")

    @property
    def _type_name(self) -> str:
        return getattr(self._value_cls, "__name__", str(self._value_type))

    # --- Inserts ---
    def insert(self, *objects: T) -> WriteResult[T, K]:
        """Insert one or more objects."""
        if not objects:
            raise ValueError("No objects to insert")
        documents = [self.convert_for_insert(obj) for obj in objects]
        try:
            if len(documents) == 1:
                result = self._collection.insert_one(documents[0])
                db_ids = [result.inserted_id]
            else:
                result = self._collection.insert_many(documents)
                db_ids = list(result.inserted_ids)
        except PyMongoError as e:
            self._handle_db_error(e, f"inserting {len(documents)} {self._type_name}(s)")
        self._logger.info(f"Inserted {len(db_ids)} {self._type_name}(s) into '{self.name}'.")
        return WriteResult(self, objects, db_ids, result)

    def insert_one(self, obj: T) -> WriteResult[T, K]:
        return self.insert(obj)

    def insert_many(self, objects: Iterable[T]) -> WriteResult[T, K]:
        return self.insert(*objects)

    def save(self, obj: T) -> WriteResult[T, K]:
        """Insert the object when it has no id, otherwise replace (or create) the document with its id."""
        document = self.convert_to_document(obj)
        if document.get(ID_FIELD) is None:
            self._prepare_for_insert(obj, document)
            try:
                result = self._collection.insert_one(document)
            except PyMongoError as e:
                self._handle_db_error(e, f"saving new {self._type_name}")
            self._logger.info(f"Saved new {self._type_name} with id '{result.inserted_id}'.")
            return WriteResult(self, [obj], [result.inserted_id], result)
        db_id = document[ID_FIELD]
        try:
            result = self._collection.replace_one({ID_FIELD: db_id}, document, upsert=True)
        except PyMongoError as e:
            self._handle_db_error(e, f"saving {self._type_name} '{db_id}'")
        self._logger.info(f"Saved {self._type_name} with id '{db_id}'.")
        return WriteResult(self, [obj], [db_id], result)

    # --- Finds ---
    def find(self, query: Filter = None, projection: Projection = None) -> MappedCursor[T]:
        """
        Find objects matching the query.

        The returned cursor accepts further conditions, sort, skip and limit
        until it is iterated.
        """
        if isinstance(query, dict):
            query = _RawQuery(query)
        return MappedCursor(self, query, projection)

    def find_one(self, query: Filter = None, projection: Projection = None) -> Optional[T]:
        query_filter = self.manage_filter(query)
        self._logger.debug(f"find_one on '{self.name}': {query_filter}")
        try:
            document = self._collection.find_one(query_filter, projection=projection)
        except PyMongoError as e:
            self._handle_db_error(e, "finding one")
        return self.convert_from_document(document)

    def find_one_by_id(self, id: K, projection: Projection = None) -> Optional[T]:
        return self.find_one(self._id_filter(id), projection)

    def get_by_id(self, id: K, projection: Projection = None) -> T:
        """Like ``find_one_by_id`` but raises ``ObjectNotFoundException`` when nothing has the id."""
        obj = self.find_one_by_id(id, projection)
        if obj is None:
            self._logger.warning(f"{self._type_name} with id '{id}' not found.")
            raise ObjectNotFoundException(f"{self._type_name} with ID '{id}' not found.")
        return obj

    def count(self, query: Filter = None) -> int:
        return self._collection.count_documents(self.manage_filter(query))

    def distinct(self, key: str, query: Filter = None, result_type: Any = None) -> List[Any]:
        """Distinct values of a field, deserialized into ``result_type`` when it is given."""
        values = self._collection.distinct(key, self.manage_filter(query))
        if result_type is None:
            return values
        return [self._object_mapper.from_native(value, result_type, collection=self) for value in values]

    # --- Updates ---
    def update_one(self, query: Filter, update: UpdateSpec, upsert: bool = False) -> UpdateResult:
        query_filter = self.manage_filter(query)
        update_doc = self.manage_update(update)
        self._logger.debug(f"update_one on '{self.name}': filter={query_filter}, update={update_doc}")
        try:
            result = self._collection.update_one(query_filter, update_doc, upsert=upsert)
        except PyMongoError as e:
            self._handle_db_error(e, "updating one")
        self._logger.info(f"Updated {result.modified_count} {self._type_name}(s).")
        return result

    def update_many(self, query: Filter, update: UpdateSpec, upsert: bool = False) -> UpdateResult:
        query_filter = self.manage_filter(query)
        update_doc = self.manage_update(update)
        self._logger.debug(f"update_many on '{self.name}': filter={query_filter}, update={update_doc}")
        try:
            result = self._collection.update_many(query_filter, update_doc, upsert=upsert)
        except PyMongoError as e:
            self._handle_db_error(e, "updating many")
        self._logger.info(f"Updated {result.modified_count} {self._type_name}(s).")
        return result

    def update_by_id(self, id: K, update: UpdateSpec) -> UpdateResult:
        return self.update_one(self._id_filter(id), update)

    def replace_one(self, query: Filter, obj: T, upsert: bool = False) -> UpdateResult:
        query_filter = self.manage_filter(query)
        document = self.convert_for_replace(obj)
        try:
            result = self._collection.replace_one(query_filter, document, upsert=upsert)
        except PyMongoError as e:
            self._handle_db_error(e, "replacing one")
        self._logger.info(f"Replaced {result.modified_count} {self._type_name}(s).")
        return result

    def replace_one_by_id(self, id: K, obj: T, upsert: bool = False) -> UpdateResult:
        return self.replace_one(self._id_filter(id), obj, upsert=upsert)

    def find_and_modify(
        self,
        query: Filter,
        update: UpdateSpec,
        sort: Optional[Dict[str, int]] = None,
        projection: Projection = None,
        upsert: bool = False,
        return_new: bool = False,
    ) -> Optional[T]:
        """Update one document and return it, as it was before the update unless ``return_new``."""
        query_filter = self.manage_filter(query)
        update_doc = self.manage_update(update)
        try:
            document = self._collection.find_one_and_update(
                query_filter,
                update_doc,
                projection=projection,
                sort=list(sort.items()) if sort else None,
                upsert=upsert,
                return_document=ReturnDocument.AFTER if return_new else ReturnDocument.BEFORE,
            )
        except PyMongoError as e:
            self._handle_db_error(e, "finding and modifying")
        return self.convert_from_document(document)

    # --- Removes ---
    def remove(self, query: Filter) -> DeleteResult:
        """Delete every document matching the query."""
        return self.delete_many(query)

    def delete_one(self, query: Filter) -> DeleteResult:
        query_filter = self.manage_filter(query)
        try:
            result = self._collection.delete_one(query_filter)
        except PyMongoError as e:
            self._handle_db_error(e, "deleting one")
        self._logger.info(f"Deleted {result.deleted_count} {self._type_name}(s).")
        return result

    def delete_many(self, query: Filter) -> DeleteResult:
        query_filter = self.manage_filter(query)
        try:
            result = self._collection.delete_many(query_filter)
        except PyMongoError as e:
            self._handle_db_error(e, "deleting many")
        self._logger.info(f"Deleted {result.deleted_count} {self._type_name}(s).")
        return result

    def remove_by_id(self, id: K) -> DeleteResult:
        return self.delete_one(self._id_filter(id))

    def find_and_remove(self, query: Filter, sort: Optional[Dict[str, int]] = None) -> Optional[T]:
        query_filter = self.manage_filter(query)
        try:
            document = self._collection.find_one_and_delete(
                query_filter, sort=list(sort.items()) if sort else None
            )
        except PyMongoError as e:
            self._handle_db_error(e, "finding and removing")
        return self.convert_from_document(document)

    # --- Aggregation ---
    def aggregate(
        self,
        pipeline: Union[Pipeline, Iterable[Any]],
        result_type: Any = None,
        **kwargs: Any,
    ) -> Iterator[Any]:
        """
        Run an aggregation. Results are deserialized into ``result_type``, the
        collection's value type when omitted.
        """
        stages = self.manage_pipeline(pipeline)
        self._logger.debug(f"aggregate on '{self.name}': {stages}")
        try:
            cursor = self._collection.aggregate(stages, **kwargs)
        except PyMongoError as e:
            self._handle_db_error(e, "aggregating")
        return self._results(cursor, result_type)

    def map_reduce(
        self,
        map_function: str,
        reduce_function: str,
        result_type: Any = dict,
        query: Filter = None,
        finalize_function: Optional[str] = None,
    ) -> List[Any]:
        """Run a map/reduce with inline output; each ``{_id, value}`` result becomes a ``result_type``."""
        command = SON(
            [
                ("mapReduce", self.name),
                ("map", Code(map_function)),
                ("reduce", Code(reduce_function)),
                ("out", {"inline": 1}),
                ("query", self.manage_filter(query)),
            ]
        )
        if finalize_function is not None:
            command["finalize"] = Code(finalize_function)
        try:
            response = self._collection.database.command(command)
        except PyMongoError as e:
            self._handle_db_error(e, "running map/reduce")
        return list(self._results(response.get("results", []), result_type))

    def _results(self, documents: Iterable[Dict[str, Any]], result_type: Any) -> Iterator[Any]:
        for document in documents:
            if result_type is None:
                yield self.convert_from_document(document)
            else:
                yield self._object_mapper.from_native(document, result_type, collection=self)

    # --- Bulk ---
    def bulk_write(self, requests: Iterable[WriteModel[T]], ordered: bool = True) -> BulkWriteResult:
        """Run bulk requests; their filters and updates are handled like those of single operations."""
        operations = [request.to_request(self) for request in requests]
        try:
            result = self._collection.bulk_write(operations, ordered=ordered)
        except PyMongoError as e:
            self._handle_db_error(e, f"bulk writing {len(operations)} request(s)")
        self._logger.info(f"Bulk write of {len(operations)} request(s) on '{self.name}' complete.")
        return result

    # --- References ---
    def get_reference_collection(
        self, key: Union[CollectionKey, DBRef, Tuple[str, Optional[str], Any]]
    ) -> "MappedCollection[Any, Any]":
        """The collection a reference points to, created once per (name, database, type)."""
        if isinstance(key, DBRef):
            key = key.collection_key
        key = CollectionKey(*key)
        collection = self._references.get(key)
        if collection is None:
            database = self._collection.database
            if key.database is not None and key.database != database.name:
                database = database.client[key.database]
            collection = self._references.setdefault(
                key,
                MappedCollection(
                    database[key.name],
                    key.type if key.type is not None else dict,
                    object_mapper=self._object_mapper,
                    strategy=self._strategy,
                ),
            )
        return collection

    def fetch(self, refs: Iterable[DBRef]) -> List[Any]:
        """
        Load the objects behind several references, with one query per referenced collection.

        Results are in the order of ``refs``; missing objects are None.
        """
        refs = list(refs)
        grouped: Dict[CollectionKey, List[DBRef]] = {}
        for ref in refs:
            grouped.setdefault(ref.collection_key, []).append(ref)
        found: Dict[Tuple[CollectionKey, Any], Any] = {}
        for key, group in grouped.items():
            collection = self.get_reference_collection(key)
            native_ids = [collection.id_handler.to_native(ref.id) for ref in group]
            query = DBQuery.in_(ID_FIELD, native_ids)
            for obj in collection.find(query):
                found[(key, collection._native_id_of(obj))] = obj
        return [
            found.get((ref.collection_key, self.get_reference_collection(ref).id_handler.to_native(ref.id)))
            for ref in refs
        ]

    def _native_id_of(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            return obj.get(ID_FIELD)
        if self._id_property is None:
            return None
        return self._id_handler.to_native(self._id_property.get(obj))

    # --- Indexes and maintenance ---
    def create_index(self, keys: Union[str, Dict[str, Any], List[Tuple[str, Any]]], **kwargs: Any) -> str:
        if isinstance(keys, dict):
            keys = list(keys.items())
        name = self._collection.create_index(keys, **kwargs)
        self._logger.info(f"Ensured index '{name}' on '{self.name}'.")
        return name

    def drop_index(self, index: Union[str, Dict[str, Any], List[Tuple[str, Any]]]) -> None:
        if isinstance(index, dict):
            index = list(index.items())
        self._collection.drop_index(index)

    def drop_indexes(self) -> None:
        self._collection.drop_indexes()

    def index_information(self) -> Dict[str, Any]:
        return self._collection.index_information()

    def drop(self) -> None:
        self._logger.info(f"Dropping collection '{self.name}'.")
        self._collection.drop()

    # --- Errors ---
    def _handle_db_error(self, error: PyMongoError, context: str = "operation") -> NoReturn:
        if isinstance(error, DuplicateKeyError):
            self._logger.error(f"MongoDB error during {context}: {error}", exc_info=True)
            match = re.search(r"index: (\S+).* dup key: ({.*?})", str(error))
            index = match.group(1) if match else "unknown"
            key = match.group(2) if match else "unknown"
            raise KeyAlreadyExistsException(
                f"Duplicate key error on index '{index}'. Key: {key}"
            ) from error
        raise error

    def __repr__(self) -> str:
        return f"MappedCollection({self._collection.full_name!r}, {self._type_name})"


class _RawQuery(Query):
    """A plain filter document carried by a cursor; sent as it is, with any added conditions serialized."""

    def __init__(self, document: Dict[str, Any]):
        super().__init__()
        self._document = dict(document)

    def is_empty(self) -> bool:
        return not self._document and super().is_empty()

    def serialize(self) -> Dict[str, Any]:
        serialized = dict(self._document)
        if not super().is_empty():
            serialized.update(super().serialize())
        return serialized

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, _RawQuery):
            return NotImplemented
        return self._document == other._document and self._conditions == other._conditions

    __hash__ = None
