# src/mongo_mapper/db_implementations/cursor.py

import logging
from typing import TYPE_CHECKING, Any, Dict, Generic, Iterable, Iterator, List, Optional, TypeVar

from pymongo.cursor import Cursor

from mongo_mapper.base.exceptions import QueryStateException
from mongo_mapper.base.query import Query, QueryBuilder, QueryCondition

if TYPE_CHECKING:
    from mongo_mapper.db_implementations.mongodb_collection import MappedCollection

log = logging.getLogger(__name__)

T = TypeVar("T")


class MappedCursor(QueryBuilder, Generic[T]):
    """
    A lazily executed find over a ``MappedCollection``.

    The cursor is also a query builder: conditions, sort, projection, skip and
    limit may be added until the first result is requested. After that the
    query is running on the server and any further change raises
    ``QueryStateException``. Documents are converted to the collection's value
    type one at a time, as they are read.
    """

    def __init__(
        self,
        collection: "MappedCollection[T, Any]",
        query: Optional[Query] = None,
        projection: Optional[Dict[str, Any]] = None,
    ):
        self._collection = collection
        self._query = query if query is not None else Query()
        self._projection = dict(projection) if projection is not None else None
        self._sort: Optional[Dict[str, int]] = None
        self._skip = 0
        self._limit = 0
        self._batch_size: Optional[int] = None
        self._cursor: Optional[Cursor] = None

    # --- Builder state ---
    @property
    def executed(self) -> bool:
        return self._cursor is not None

    def _check_executed(self) -> None:
        if self._cursor is not None:
            raise QueryStateException("Cannot modify query after it's been executed")

    def _put(self, key: str, condition: QueryCondition) -> "MappedCursor[T]":
        self._check_executed()
        self._query._put(key, condition)
        return self

    def _put_op(self, field_name: str, op: str, condition: QueryCondition) -> "MappedCursor[T]":
        self._check_executed()
        self._query._put_op(field_name, op, condition)
        return self

    def _put_group(self, op: str, expressions: Iterable[Query]) -> "MappedCursor[T]":
        self._check_executed()
        self._query._put_group(op, expressions)
        return self

    @property
    def query(self) -> Query:
        return self._query

    def sort(self, sort: Dict[str, int]) -> "MappedCursor[T]":
        self._check_executed()
        self._sort = dict(sort)
        return self

    def projection(self, projection: Dict[str, Any]) -> "MappedCursor[T]":
        self._check_executed()
        self._projection = dict(projection)
        return self

    def skip(self, skip: int) -> "MappedCursor[T]":
        self._check_executed()
        self._skip = skip
        return self

    def limit(self, limit: int) -> "MappedCursor[T]":
        self._check_executed()
        self._limit = limit
        return self

    def batch_size(self, batch_size: int) -> "MappedCursor[T]":
        self._check_executed()
        self._batch_size = batch_size
        return self

    # --- Execution ---
    def _execute(self) -> Cursor:
        if self._cursor is None:
            query_filter = self._collection.manage_filter(self._query)
            log.debug(
                f"Executing find on '{self._collection.name}': filter={query_filter}, "
                f"sort={self._sort}, skip={self._skip}, limit={self._limit}"
            )
            cursor = self._collection.collection.find(
                query_filter,
                projection=self._projection,
                skip=self._skip,
                limit=self._limit,
                sort=list(self._sort.items()) if self._sort else None,
            )
            if self._batch_size is not None:
                cursor = cursor.batch_size(self._batch_size)
            self._cursor = cursor
        return self._cursor

    def __iter__(self) -> Iterator[T]:
        return self

    def __next__(self) -> T:
        document = next(self._execute())
        return self._collection.convert_from_document(document)

    def next(self) -> T:
        return self.__next__()

    def first(self) -> Optional[T]:
        """The first result, or None. Executes the query."""
        return next(self, None)

    def to_list(self) -> List[T]:
        return list(self)

    def count(self) -> int:
        """Number of documents matching the query, ignoring skip and limit."""
        return self._collection.count(self._query)

    def close(self) -> None:
        if self._cursor is not None:
            self._cursor.close()

    def __enter__(self) -> "MappedCursor[T]":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"MappedCursor({self._query!r}, executed={self.executed})"
