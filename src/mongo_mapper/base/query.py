# src/mongo_mapper/base/query.py
import logging
import re
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    ItemsView,
    Iterable,
    List,
    Optional,
    Tuple,
    Union,
)

from .exceptions import QueryStateException

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Operator names ---
GT = "$gt"
GTE = "$gte"
LT = "$lt"
LTE = "$lte"
NE = "$ne"
IN = "$in"
NIN = "$nin"
MOD = "$mod"
ALL = "$all"
SIZE = "$size"
EXISTS = "$exists"
ELEM_MATCH = "$elemMatch"
WHERE = "$where"
OR = "$or"
AND = "$and"
NOR = "$nor"

GROUP_OPERATORS = (OR, AND, NOR)


# Path conditions are stored under their first segment plus this separator,
# next to any condition on the first segment itself
PATH_SEPARATOR = "."


def is_operator(key: str) -> bool:
    return key.startswith("$")


def _collect(values: Tuple[Any, ...]) -> List[Any]:
    """Accept both ``in_("f", 1, 2)`` and ``in_("f", [1, 2])``."""
    if len(values) == 1 and isinstance(values[0], (list, tuple, set, frozenset)):
        return list(values[0])
    return list(values)


# --- Conditions ---
@dataclass
class QueryCondition:
    """A leaf or group of a query whose values are serialized later, against the collection's type."""

    pass


@dataclass
class SimpleQueryCondition(QueryCondition):
    """A single value. ``requires_serialization`` is False for values that are not field values (sizes, flags, code)."""

    value: Any
    requires_serialization: bool = True


@dataclass
class CollectionQueryCondition(QueryCondition):
    """An ordered list of conditions, e.g. the operands of ``$in`` or ``$or``."""

    values: List[QueryCondition] = field(default_factory=list)
    target_is_collection: bool = False

    def add_all(self, conditions: Iterable[QueryCondition]) -> None:
        self.values.extend(conditions)


@dataclass
class CompoundQueryCondition(QueryCondition):
    """
    A nested query.

    ``is_path`` marks the sub-query that collects dotted field paths under their
    first segment; it is written back out as dotted keys.
    """

    query: "Query"
    target_is_collection: bool = False
    is_path: bool = False


# --- Builder ---
class QueryBuilder:
    """
    The fluent query operations, shared by ``Query`` and cursor-bound queries.

    Subclasses store conditions through ``_put``, ``_put_op`` and ``_put_group``.
    """

    def _put(self, key: str, condition: QueryCondition):
        raise NotImplementedError

    def _put_op(self, field_name: str, op: str, condition: QueryCondition):
        raise NotImplementedError

    def _put_group(self, op: str, expressions: Iterable["Query"]):
        raise NotImplementedError

    def _put_values(self, field_name: str, op: str, values: Iterable[Any]):
        conditions = [SimpleQueryCondition(value) for value in values]
        return self._put_op(field_name, op, CollectionQueryCondition(conditions, True))

    def is_(self, field_name: str, value: Any):
        return self._put(field_name, SimpleQueryCondition(value))

    def less_than(self, field_name: str, value: Any):
        return self._put_op(field_name, LT, SimpleQueryCondition(value))

    def less_than_equals(self, field_name: str, value: Any):
        return self._put_op(field_name, LTE, SimpleQueryCondition(value))

    def greater_than(self, field_name: str, value: Any):
        return self._put_op(field_name, GT, SimpleQueryCondition(value))

    def greater_than_equals(self, field_name: str, value: Any):
        return self._put_op(field_name, GTE, SimpleQueryCondition(value))

    def not_equals(self, field_name: str, value: Any):
        return self._put_op(field_name, NE, SimpleQueryCondition(value))

    def in_(self, field_name: str, *values: Any):
        return self._put_values(field_name, IN, _collect(values))

    def not_in(self, field_name: str, *values: Any):
        return self._put_values(field_name, NIN, _collect(values))

    def mod(self, field_name: str, divisor: Union[int, float], remainder: Union[int, float]):
        condition = CollectionQueryCondition(
            [SimpleQueryCondition(divisor, False), SimpleQueryCondition(remainder)],
            False,
        )
        return self._put_op(field_name, MOD, condition)

    def all(self, field_name: str, *values: Any):
        return self._put_values(field_name, ALL, _collect(values))

    def size(self, field_name: str, size: int):
        return self._put_op(field_name, SIZE, SimpleQueryCondition(size, False))

    def exists(self, field_name: str):
        return self._put_op(field_name, EXISTS, SimpleQueryCondition(True, False))

    def not_exists(self, field_name: str):
        return self._put_op(field_name, EXISTS, SimpleQueryCondition(False, False))

    def or_(self, *expressions: "Query"):
        return self._put_group(OR, expressions)

    def and_(self, *expressions: "Query"):
        return self._put_group(AND, expressions)

    def nor(self, *expressions: "Query"):
        return self._put_group(NOR, expressions)

    def regex(self, field_name: str, pattern: Union[str, "re.Pattern[str]"]):
        if isinstance(pattern, str):
            pattern = re.compile(pattern)
        return self._put(field_name, SimpleQueryCondition(pattern, False))

    def elem_match(self, field_name: str, query: "Query"):
        return self._put_op(field_name, ELEM_MATCH, CompoundQueryCondition(query, False))

    def where(self, code: str):
        return self._put(WHERE, SimpleQueryCondition(code, False))


class Query(QueryBuilder):
    """
    An insertion-ordered map of field or operator names to conditions.

    Values are kept as given until ``serialize()``, which requires the query to
    have been bound to an object mapper and a mapped type with ``initialize()``.
    """

    def __init__(self) -> None:
        self._conditions: Dict[str, QueryCondition] = {}
        self._mapper: Any = None
        self._type: Any = None

    def conditions(self) -> ItemsView[str, QueryCondition]:
        return self._conditions.items()

    def get(self, key: str) -> Optional[QueryCondition]:
        return self._conditions.get(key)

    def get_path(self, head: str) -> Optional["Query"]:
        """The sub-query holding the dotted conditions below ``head``, if any."""
        saved = self._conditions.get(head + PATH_SEPARATOR)
        return saved.query if isinstance(saved, CompoundQueryCondition) else None

    def is_empty(self) -> bool:
        return not self._conditions

    # --- Storage ---
    def _put(self, key: str, condition: QueryCondition) -> "Query":
        if "." in key and not is_operator(key):
            head, rest = key.split(".", 1)
            self._path_query(head)._put(rest, condition)
        else:
            self._conditions[key] = condition
        return self

    def _put_op(self, field_name: str, op: str, condition: QueryCondition) -> "Query":
        if "." in field_name:
            head, rest = field_name.split(".", 1)
            self._path_query(head)._put_op(rest, op, condition)
            return self
        saved = self._conditions.get(field_name)
        if isinstance(saved, CompoundQueryCondition) and not saved.is_path:
            sub_query = saved.query
        else:
            sub_query = Query()
            target_is_collection = isinstance(
                condition, (CollectionQueryCondition, CompoundQueryCondition)
            ) and condition.target_is_collection
            self._conditions[field_name] = CompoundQueryCondition(sub_query, target_is_collection)
        # the same operator written twice keeps the last value
        sub_query._conditions[op] = condition
        return self

    def _path_query(self, head: str) -> "Query":
        key = head + PATH_SEPARATOR
        saved = self._conditions.get(key)
        if isinstance(saved, CompoundQueryCondition):
            return saved.query
        sub_query = Query()
        self._conditions[key] = CompoundQueryCondition(sub_query, False, is_path=True)
        return sub_query

    def _put_group(self, op: str, expressions: Iterable["Query"]) -> "Query":
        existing = self._conditions.get(op)
        if existing is None:
            condition = CollectionQueryCondition()
            self._conditions[op] = condition
        elif isinstance(existing, CollectionQueryCondition):
            condition = existing
        else:
            raise QueryStateException(f"Expecting collection for {op}")
        condition.add_all(CompoundQueryCondition(query, False) for query in expressions)
        return self

    # --- Serialization ---
    def initialize(self, mapper: Any, value_type: Any) -> "Query":
        """Bind the mapper and mapped type the query's values are serialized with."""
        if self._mapper is not None and (self._mapper is not mapper or self._type != value_type):
            log.debug(f"Rebinding query from {self._type!r} to {value_type!r}")
        self._mapper = mapper
        self._type = value_type
        return self

    @property
    def is_initialized(self) -> bool:
        return self._mapper is not None and self._type is not None

    def serialize(self) -> Dict[str, Any]:
        if not self.is_initialized:
            raise QueryStateException(
                "Query must be initialized with an object mapper and a type before it is serialized"
            )
        from .utils import serialize_query

        return serialize_query(self._mapper, self._type, self)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Query):
            return NotImplemented
        return self._conditions == other._conditions

    __hash__ = None

    def __repr__(self) -> str:
        return f"Query({self._conditions!r})"


class DBQuery:
    """Static entry points: ``DBQuery.is_("name", "x").greater_than("age", 3)``."""

    @staticmethod
    def empty() -> Query:
        return Query()

    @staticmethod
    def is_(field_name: str, value: Any) -> Query:
        return Query().is_(field_name, value)

    @staticmethod
    def less_than(field_name: str, value: Any) -> Query:
        return Query().less_than(field_name, value)

    @staticmethod
    def less_than_equals(field_name: str, value: Any) -> Query:
        return Query().less_than_equals(field_name, value)

    @staticmethod
    def greater_than(field_name: str, value: Any) -> Query:
        return Query().greater_than(field_name, value)

    @staticmethod
    def greater_than_equals(field_name: str, value: Any) -> Query:
        return Query().greater_than_equals(field_name, value)

    @staticmethod
    def not_equals(field_name: str, value: Any) -> Query:
        return Query().not_equals(field_name, value)

    @staticmethod
    def in_(field_name: str, *values: Any) -> Query:
        return Query().in_(field_name, *values)

    @staticmethod
    def not_in(field_name: str, *values: Any) -> Query:
        return Query().not_in(field_name, *values)

    @staticmethod
    def mod(field_name: str, divisor: Union[int, float], remainder: Union[int, float]) -> Query:
        return Query().mod(field_name, divisor, remainder)

    @staticmethod
    def all(field_name: str, *values: Any) -> Query:
        return Query().all(field_name, *values)

    @staticmethod
    def size(field_name: str, size: int) -> Query:
        return Query().size(field_name, size)

    @staticmethod
    def exists(field_name: str) -> Query:
        return Query().exists(field_name)

    @staticmethod
    def not_exists(field_name: str) -> Query:
        return Query().not_exists(field_name)

    @staticmethod
    def or_(*expressions: Query) -> Query:
        return Query().or_(*expressions)

    @staticmethod
    def and_(*expressions: Query) -> Query:
        return Query().and_(*expressions)

    @staticmethod
    def nor(*expressions: Query) -> Query:
        return Query().nor(*expressions)

    @staticmethod
    def regex(field_name: str, pattern: Union[str, "re.Pattern[str]"]) -> Query:
        return Query().regex(field_name, pattern)

    @staticmethod
    def elem_match(field_name: str, query: Query) -> Query:
        return Query().elem_match(field_name, query)

    @staticmethod
    def where(code: str) -> Query:
        return Query().where(code)
