# src/mongo_mapper/base/aggregation.py

"""
Aggregation pipeline builder.

Stages hold deferred values: a ``match`` stage keeps its ``Query`` and the
pipeline is serialized against the mapped type of the collection it runs on.

    pipeline = (
        Aggregation.match(DBQuery.greater_than("n", 5))
        .group(Expression.path("kind"), total=Group.sum("n"), count=Group.count())
        .sort(DBSort.desc("total"))
    )
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

from .options import DBProjection, DBSort
from .query import Query

log = logging.getLogger(__name__)


# --- Expressions ---
class Expression:
    """An aggregation expression. Use the static factories to build one."""

    @staticmethod
    def path(*path: str) -> "FieldPath":
        """``Expression.path("a", "b")`` and ``Expression.path("a.b")`` are both ``"$a.b"``."""
        return FieldPath(".".join(path))

    @staticmethod
    def literal(value: Any) -> "Literal":
        return Literal(value)

    @staticmethod
    def object(properties: Optional[Dict[str, "Expression"]] = None, **kwargs: "Expression") -> "ExpressionObject":
        merged = dict(properties or {})
        merged.update(kwargs)
        return ExpressionObject(merged)

    @staticmethod
    def operator(op: str, *operands: "Expression") -> "OperatorExpression":
        return OperatorExpression(op, list(operands))

    # --- Boolean ---
    @staticmethod
    def and_(*operands: "Expression") -> "OperatorExpression":
        return OperatorExpression("$and", list(operands))

    @staticmethod
    def or_(*operands: "Expression") -> "OperatorExpression":
        return OperatorExpression("$or", list(operands))

    @staticmethod
    def not_(operand: "Expression") -> "OperatorExpression":
        return OperatorExpression("$not", [operand])

    # --- Comparison ---
    @staticmethod
    def compare_to(value1: "Expression", value2: "Expression") -> "OperatorExpression":
        return OperatorExpression("$cmp", [value1, value2])

    @staticmethod
    def equals(value1: "Expression", value2: "Expression") -> "OperatorExpression":
        return OperatorExpression("$eq", [value1, value2])

    @staticmethod
    def not_equals(value1: "Expression", value2: "Expression") -> "OperatorExpression":
        return OperatorExpression("$ne", [value1, value2])

    @staticmethod
    def greater_than(value1: "Expression", value2: "Expression") -> "OperatorExpression":
        return OperatorExpression("$gt", [value1, value2])

    @staticmethod
    def greater_than_or_equals(value1: "Expression", value2: "Expression") -> "OperatorExpression":
        return OperatorExpression("$gte", [value1, value2])

    @staticmethod
    def less_than(value1: "Expression", value2: "Expression") -> "OperatorExpression":
        return OperatorExpression("$lt", [value1, value2])

    @staticmethod
    def less_than_or_equals(value1: "Expression", value2: "Expression") -> "OperatorExpression":
        return OperatorExpression("$lte", [value1, value2])

    # --- Arithmetic ---
    @staticmethod
    def add(*numbers: "Expression") -> "OperatorExpression":
        return OperatorExpression("$add", list(numbers))

    @staticmethod
    def subtract(number1: "Expression", number2: "Expression") -> "OperatorExpression":
        return OperatorExpression("$subtract", [number1, number2])

    @staticmethod
    def multiply(*numbers: "Expression") -> "OperatorExpression":
        return OperatorExpression("$multiply", list(numbers))

    @staticmethod
    def divide(number1: "Expression", number2: "Expression") -> "OperatorExpression":
        return OperatorExpression("$divide", [number1, number2])

    @staticmethod
    def mod(number1: "Expression", number2: "Expression") -> "OperatorExpression":
        return OperatorExpression("$mod", [number1, number2])

    # --- Strings and arrays ---
    @staticmethod
    def concat(*strings: "Expression") -> "OperatorExpression":
        return OperatorExpression("$concat", list(strings))

    @staticmethod
    def to_lower(string: "Expression") -> "OperatorExpression":
        return OperatorExpression("$toLower", [string])

    @staticmethod
    def to_upper(string: "Expression") -> "OperatorExpression":
        return OperatorExpression("$toUpper", [string])

    @staticmethod
    def size(array: "Expression") -> "OperatorExpression":
        return OperatorExpression("$size", [array])


@dataclass
class FieldPath(Expression):
    path: str

    def __str__(self) -> str:
        return "$" + self.path


@dataclass
class Literal(Expression):
    value: Any


@dataclass
class ExpressionObject(Expression):
    properties: Dict[str, Expression] = field(default_factory=dict)


@dataclass
class OperatorExpression(Expression):
    operator: str
    operands: List[Expression] = field(default_factory=list)


ExpressionOrPath = Union[Expression, str]


def _expression(value: ExpressionOrPath) -> Expression:
    return Expression.path(value) if isinstance(value, str) else value


# --- Stages ---
class Stage:
    """One stage of a pipeline."""

    pass


@dataclass
class Limit(Stage):
    limit: int


@dataclass
class Skip(Stage):
    skip: int


@dataclass
class Sort(Stage):
    sort: Dict[str, int]


@dataclass
class Unwind(Stage):
    path: FieldPath


@dataclass
class Out(Stage):
    collection_name: str


@dataclass
class Match(Stage):
    query: Query


@dataclass
class Project(Stage):
    """Projected fields: an ``Expression`` or a plain include/exclude flag per field."""

    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Accumulator:
    operator: str
    expression: Expression


class Group(Stage):
    """A ``$group`` stage: a key expression plus calculated fields."""

    def __init__(self, key: Optional[ExpressionOrPath], calculated_fields: Optional[Dict[str, Accumulator]] = None):
        self.key: Optional[Expression] = _expression(key) if key is not None else None
        self.calculated_fields: Dict[str, Accumulator] = dict(calculated_fields or {})

    def set(self, field_name: str, accumulator: Accumulator) -> "Group":
        self.calculated_fields[field_name] = accumulator
        return self

    @staticmethod
    def by(key: Optional[ExpressionOrPath]) -> "Group":
        return Group(key)

    # --- Accumulators ---
    @staticmethod
    def distinct(expression: ExpressionOrPath) -> Accumulator:
        return Accumulator("$addToSet", _expression(expression))

    @staticmethod
    def average(expression: ExpressionOrPath) -> Accumulator:
        return Accumulator("$avg", _expression(expression))

    @staticmethod
    def first(expression: ExpressionOrPath) -> Accumulator:
        return Accumulator("$first", _expression(expression))

    @staticmethod
    def last(expression: ExpressionOrPath) -> Accumulator:
        return Accumulator("$last", _expression(expression))

    @staticmethod
    def max(expression: ExpressionOrPath) -> Accumulator:
        return Accumulator("$max", _expression(expression))

    @staticmethod
    def min(expression: ExpressionOrPath) -> Accumulator:
        return Accumulator("$min", _expression(expression))

    @staticmethod
    def list(expression: ExpressionOrPath) -> Accumulator:
        return Accumulator("$push", _expression(expression))

    @staticmethod
    def sum(expression: ExpressionOrPath) -> Accumulator:
        return Accumulator("$sum", _expression(expression))

    @staticmethod
    def count() -> Accumulator:
        return Accumulator("$sum", Expression.literal(1))

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Group):
            return NotImplemented
        return (self.key, self.calculated_fields) == (other.key, other.calculated_fields)

    def __repr__(self) -> str:
        return f"Group(key={self.key!r}, calculated_fields={self.calculated_fields!r})"


# --- Pipeline ---
class Pipeline:
    """
    An ordered list of stages. Raw ``dict`` stages are accepted and sent unchanged.
    """

    def __init__(self, *stages: Union[Stage, Dict[str, Any]]):
        self.stages: List[Union[Stage, Dict[str, Any]]] = list(stages)

    def then(self, stage: Union[Stage, Dict[str, Any]]) -> "Pipeline":
        self.stages.append(stage)
        return self

    def match(self, query: Query) -> "Pipeline":
        return self.then(Match(query))

    def project(self, projection: Optional[Dict[str, Any]] = None, **fields: Any) -> "Pipeline":
        """Project fields: values are expressions or plain values such as ``1``/``0`` flags."""
        merged: Dict[str, Any] = dict(projection or {})
        merged.update(fields)
        return self.then(Project(merged))

    def project_fields(self, *field_names: str) -> "Pipeline":
        return self.then(Project(dict(DBProjection.include(*field_names))))

    def group(self, key: Optional[ExpressionOrPath], **calculated_fields: Accumulator) -> "Pipeline":
        return self.then(Group(key, calculated_fields))

    def sort(self, sort: Dict[str, int]) -> "Pipeline":
        return self.then(Sort(dict(sort)))

    def limit(self, n: int) -> "Pipeline":
        return self.then(Limit(n))

    def skip(self, n: int) -> "Pipeline":
        return self.then(Skip(n))

    def unwind(self, *path: str) -> "Pipeline":
        return self.then(Unwind(Expression.path(*path)))

    def out(self, collection_name: str) -> "Pipeline":
        return self.then(Out(collection_name))

    def serialize(self, mapper: Any, value_type: Any) -> List[Dict[str, Any]]:
        from .utils import serialize_pipeline

        return serialize_pipeline(mapper, value_type, self)

    def __iter__(self) -> Iterator[Union[Stage, Dict[str, Any]]]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Pipeline):
            return NotImplemented
        return self.stages == other.stages

    __hash__ = None

    def __repr__(self) -> str:
        return f"Pipeline({self.stages!r})"


class Aggregation:
    """Static entry points that start a ``Pipeline``."""

    @staticmethod
    def pipeline(*stages: Union[Stage, Dict[str, Any]]) -> Pipeline:
        return Pipeline(*stages)

    @staticmethod
    def match(query: Query) -> Pipeline:
        return Pipeline().match(query)

    @staticmethod
    def project(projection: Optional[Dict[str, Any]] = None, **fields: Any) -> Pipeline:
        return Pipeline().project(projection, **fields)

    @staticmethod
    def group(key: Optional[ExpressionOrPath], **calculated_fields: Accumulator) -> Pipeline:
        return Pipeline().group(key, **calculated_fields)

    @staticmethod
    def sort(sort: Union[Dict[str, int], DBSort.SortBuilder]) -> Pipeline:
        return Pipeline().sort(sort)

    @staticmethod
    def limit(n: int) -> Pipeline:
        return Pipeline().limit(n)

    @staticmethod
    def skip(n: int) -> Pipeline:
        return Pipeline().skip(n)

    @staticmethod
    def unwind(*path: str) -> Pipeline:
        return Pipeline().unwind(*path)

    @staticmethod
    def out(collection_name: str) -> Pipeline:
        return Pipeline().out(collection_name)
