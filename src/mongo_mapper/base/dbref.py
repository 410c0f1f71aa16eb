# src/mongo_mapper/base/dbref.py

import logging
from typing import Any, Dict, Generic, NamedTuple, Optional, TypeVar

from pydantic import GetCoreSchemaHandler
from pydantic_core import core_schema

log = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K")


class CollectionKey(NamedTuple):
    """Identifies a mapped collection: collection name, database name and value type."""

    name: str
    database: Optional[str]
    type: Any


class DBRef(Generic[T, K]):
    """
    A typed reference to a document in another collection.

    Declare reference fields as ``DBRef[Owner, str]``: the referenced value type
    and the type of its id. References read back through a ``MappedCollection``
    are ``FetchableDBRef`` instances that can load the referenced object.

    Args:
        id: Id of the referenced document, in the referenced type's id type.
        collection: Name of the collection the document lives in.
        database: Optional database name, ``None`` for the current database.
    """

    def __init__(
        self,
        id: K,
        collection: str,
        database: Optional[str] = None,
        object_type: Any = None,
        key_type: Any = None,
    ):
        self.id = id
        self.collection = collection
        self.database = database
        self.object_type = object_type
        self.key_type = key_type

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        # model fields hold references as given
        return core_schema.is_instance_schema(cls)

    @property
    def collection_key(self) -> CollectionKey:
        return CollectionKey(self.collection, self.database, self.object_type)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, DBRef):
            return NotImplemented
        return (self.id, self.collection, self.database) == (
            other.id,
            other.collection,
            other.database,
        )

    def __hash__(self) -> int:
        return hash((self.id, self.collection, self.database))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, collection={self.collection!r}, database={self.database!r})"


class FetchableDBRef(DBRef[T, K]):
    """A reference read through a collection, able to load the object it points to."""

    def __init__(
        self,
        id: K,
        collection: str,
        database: Optional[str] = None,
        object_type: Any = None,
        key_type: Any = None,
        source: Any = None,
    ):
        super().__init__(id, collection, database, object_type, key_type)
        # The MappedCollection the reference was read from
        self._source = source
        self._object: Optional[T] = None

    def fetch(self, projection: Optional[Dict[str, Any]] = None) -> Optional[T]:
        """
        Load the referenced object, or None when it does not exist.

        The result is cached unless a projection is given.
        """
        collection = self._source.get_reference_collection(self.collection_key)
        if projection is not None:
            return collection.find_one_by_id(self.id, projection=projection)
        if self._object is None:
            log.debug(f"Fetching {self.collection}/{self.id!r}")
            self._object = collection.find_one_by_id(self.id)
        return self._object
