# src/mongo_mapper/base/utils.py

"""
Serialization of deferred queries, updates and pipelines against a mapped type.

Leaf values are written with the serializer the ObjectMapper uses for the field
they target, found by walking the dotted field path through the mapped type's
serializers. When no field serializer can be found the value is serialized by
its runtime type instead.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from bson import Regex

from .aggregation import (
    Accumulator,
    Expression,
    ExpressionObject,
    FieldPath,
    Group,
    Limit,
    Literal,
    Match,
    OperatorExpression,
    Out,
    Pipeline,
    Project,
    Skip,
    Sort,
    Stage,
    Unwind,
)
from .exceptions import MappingException
from .query import (
    CollectionQueryCondition,
    CompoundQueryCondition,
    Query,
    QueryCondition,
    SimpleQueryCondition,
    is_operator,
)
from .update import (
    EACH_MODIFIERS,
    MultiUpdateOperationValue,
    SingleUpdateOperationValue,
    UpdateBuilder,
    UpdateOperationValue,
)

# --- Setup Logging ---
log = logging.getLogger(__name__)

# Values written as they are when no serializer claims them
BASIC_TYPES = (str, int, float, bool, bytes)

_INDEX = re.compile(r"^\d+$")


def _is_index(part: str) -> bool:
    return part == "$" or part == "$[]" or bool(_INDEX.match(part))


def _is_native(value: Any) -> bool:
    from mongo_mapper.mapper.serializers import BSON_TYPES

    return isinstance(value, BSON_TYPES) or isinstance(value, datetime)


def find_field_serializer(
    field_path: str,
    serializer: Any,
    target_is_collection: bool = False,
    step_into_collections: bool = True,
) -> Optional[Any]:
    """
    Find the serializer for a dotted field path, starting from the serializer of its parent.

    Index parts (``0``, ``$``) step into a collection's elements. With
    ``step_into_collections`` a name part first steps through any collections,
    so ``items.name`` finds the ``name`` of the elements of ``items``, as
    MongoDB queries do. Returns None when the path cannot be followed.

    With ``target_is_collection`` the result is the serializer for one element
    of the field rather than the field itself.
    """
    from mongo_mapper.mapper.codecs import ObjectIdSerializer
    from mongo_mapper.mapper.serializers import BeanSerializer, ContainerSerializer, MapSerializer

    field_serializer = serializer
    for part in field_path.split("."):
        if field_serializer is None:
            return None
        if _is_index(part):
            if not isinstance(field_serializer, ContainerSerializer) or isinstance(field_serializer, MapSerializer):
                return None
            field_serializer = field_serializer.content_serializer
            continue
        if step_into_collections:
            while isinstance(field_serializer, ContainerSerializer) and not isinstance(
                field_serializer, MapSerializer
            ):
                field_serializer = field_serializer.content_serializer
        if isinstance(field_serializer, BeanSerializer):
            field_serializer = field_serializer.find_property_serializer(part)
            if field_serializer is None:
                return None
        elif isinstance(field_serializer, MapSerializer):
            field_serializer = field_serializer.content_serializer
        else:
            return None

    if target_is_collection:
        if isinstance(field_serializer, ContainerSerializer):
            return field_serializer.content_serializer
        if isinstance(field_serializer, ObjectIdSerializer):
            # writes single ids and collections of ids alike
            return field_serializer
        return None
    return field_serializer


def serialize_query_field(mapper: Any, value: Any, serializer: Optional[Any], operation: str = "") -> Any:
    """Serialize one leaf value, with the field's serializer when there is one."""
    is_collection = isinstance(value, (list, tuple, set, frozenset))
    if value is not None and not is_collection and _is_sequence(serializer):
        # a single value compared against an array field matches its elements
        serializer = serializer.content_serializer
    if isinstance(value, dict) and _is_bean(serializer):
        return serialize_sub_document(mapper, value, serializer, operation)
    if serializer is None:
        if value is None or type(value) in BASIC_TYPES:
            return value
        if is_collection:
            return [serialize_query_field(mapper, item, None, operation) for item in value]
        serializer = mapper.value_serializer(value)
    if (
        value is not None
        and isinstance(serializer.handled_type, type)
        and not isinstance(value, serializer.handled_type)
        and (type(value) in BASIC_TYPES or _is_native(value))
    ):
        return value
    return serialize_field(mapper, value, serializer, operation)


def _is_sequence(serializer: Optional[Any]) -> bool:
    from mongo_mapper.mapper.serializers import ContainerSerializer, MapSerializer

    return isinstance(serializer, ContainerSerializer) and not isinstance(serializer, MapSerializer)


def _is_bean(serializer: Optional[Any]) -> bool:
    from mongo_mapper.mapper.serializers import BeanSerializer

    return isinstance(serializer, BeanSerializer)


def serialize_sub_document(
    mapper: Any, document: Dict[str, Any], serializer: Any, operation: str = ""
) -> Dict[str, Any]:
    """
    Serialize a plain dict given in place of a mapped type's value.

    Each key is looked up as a property path of the mapped type and its value
    written with that property's serializer. Operator keys (``$gt``, ``$in``)
    apply to the field they are nested under.
    """
    serialized: Dict[str, Any] = {}
    for key, item in document.items():
        field_serializer = serializer if is_operator(key) else find_field_serializer(key, serializer)
        if isinstance(item, dict) and any(is_operator(k) for k in item):
            serialized[key] = serialize_sub_document(mapper, item, field_serializer, operation)
        elif is_operator(key) and isinstance(item, (list, tuple)):
            serialized[key] = [serialize_query_field(mapper, element, field_serializer, key) for element in item]
        else:
            serialized[key] = serialize_query_field(mapper, item, field_serializer, operation)
    return serialized


def serialize_field(mapper: Any, value: Any, serializer: Any, operation: str = "") -> Any:
    from mongo_mapper.mapper.generator import NativeDocumentGenerator

    if value is None:
        return None
    gen = NativeDocumentGenerator(mapper)
    try:
        serializer.serialize(value, gen, mapper)
    except MappingException as e:
        raise MappingException(
            f"Error serializing value {value!r} in operation '{operation}': {e.reason}",
            path=e.path,
            runtime_type=e.runtime_type or type(value),
        ) from e
    return gen.value


# --- Queries ---
def _flatten(query: Query) -> Iterator[Tuple[str, QueryCondition]]:
    """Conditions of the query, with path conditions written back out as dotted keys."""
    for key, condition in query.conditions():
        if isinstance(condition, CompoundQueryCondition) and condition.is_path:
            for sub_key, sub_condition in _flatten(condition.query):
                yield f"{key}{sub_key}", sub_condition
        else:
            yield key, condition


def serialize_query(mapper: Any, value_type: Any, query: Query) -> Dict[str, Any]:
    """Serialize a query against the mapped type ``value_type``."""
    serialized = _serialize_query(mapper, mapper.serializer_for(value_type), query)
    log.debug(f"Serialized query for {getattr(value_type, '__name__', value_type)}: {serialized}")
    return serialized


def _serialize_query(mapper: Any, serializer: Optional[Any], query: Query) -> Dict[str, Any]:
    return {
        key: _serialize_condition(mapper, serializer, key, condition)
        for key, condition in _flatten(query)
    }


def _serialize_condition(mapper: Any, serializer: Optional[Any], key: str, condition: QueryCondition) -> Any:
    if isinstance(condition, SimpleQueryCondition):
        if not condition.requires_serialization or condition.value is None:
            value = condition.value
            return Regex.from_native(value) if isinstance(value, re.Pattern) else value
        if not is_operator(key):
            serializer = find_field_serializer(key, serializer, False)
        return serialize_query_field(mapper, condition.value, serializer, key)

    if isinstance(condition, CollectionQueryCondition):
        if not is_operator(key):
            serializer = find_field_serializer(key, serializer, condition.target_is_collection)
        return [_serialize_condition(mapper, serializer, "$", item) for item in condition.values]

    if isinstance(condition, CompoundQueryCondition):
        if not is_operator(key):
            serializer = find_field_serializer(key, serializer, condition.target_is_collection)
        return _serialize_query(mapper, serializer, condition.query)

    raise TypeError(f"Unknown query condition {type(condition).__name__}")


# --- Updates ---
def serialize_update(mapper: Any, value_type: Any, update: UpdateBuilder) -> Dict[str, Any]:
    """
    Serialize an update against the mapped type ``value_type``.

    Only values that are field values (``$set``, ``$push``, ...) go through the
    field's serializer; counters, flags and names (``$inc``, ``$unset``,
    ``$rename``, ...) are written as given.
    """
    serializer = None
    serialized: Dict[str, Any] = {}
    for modifier, fields in update.operations():
        operations: Dict[str, Any] = {}
        for field_name, operation in fields.items():
            if operation.requires_serialization:
                if serializer is None:
                    serializer = mapper.serializer_for(value_type)
                field_serializer = find_field_serializer(
                    field_name,
                    serializer,
                    operation.target_collection,
                    step_into_collections=False,
                )
                value = _serialize_update_value(mapper, operation, field_serializer, modifier)
            else:
                value = _raw_update_value(operation)
            if modifier in EACH_MODIFIERS and isinstance(operation, MultiUpdateOperationValue):
                value = {"$each": value}
            operations[field_name] = value
        serialized[modifier] = operations
    log.debug(f"Serialized update for {getattr(value_type, '__name__', value_type)}: {serialized}")
    return serialized


def _raw_update_value(operation: UpdateOperationValue) -> Any:
    if isinstance(operation, SingleUpdateOperationValue):
        return operation.value
    return operation.values


def _serialize_update_value(
    mapper: Any, operation: UpdateOperationValue, serializer: Optional[Any], modifier: str
) -> Any:
    if isinstance(operation, MultiUpdateOperationValue):
        return [_serialize_update_item(mapper, item, serializer, modifier) for item in operation.values]
    return _serialize_update_item(mapper, _raw_update_value(operation), serializer, modifier)


def _serialize_update_item(mapper: Any, value: Any, serializer: Optional[Any], modifier: str) -> Any:
    if isinstance(value, dict) and _is_bean(serializer):
        return serialize_sub_document(mapper, value, serializer, modifier)
    if serializer is not None:
        return serialize_field(mapper, value, serializer, modifier)
    return mapper.to_native(value)


# --- Aggregation ---
def serialize_pipeline(mapper: Any, value_type: Any, pipeline: Pipeline) -> List[Dict[str, Any]]:
    """Serialize every stage; ``dict`` stages are passed through unchanged."""
    serializer = mapper.serializer_for(value_type)
    return [
        stage if isinstance(stage, dict) else serialize_pipeline_stage(mapper, serializer, stage)
        for stage in pipeline
    ]


def serialize_pipeline_stage(mapper: Any, serializer: Any, stage: Stage) -> Dict[str, Any]:
    if isinstance(stage, Limit):
        return {"$limit": stage.limit}
    if isinstance(stage, Skip):
        return {"$skip": stage.skip}
    if isinstance(stage, Sort):
        return {"$sort": dict(stage.sort)}
    if isinstance(stage, Unwind):
        return {"$unwind": str(stage.path)}
    if isinstance(stage, Match):
        return {"$match": _serialize_query(mapper, serializer, stage.query)}
    if isinstance(stage, Project):
        return {
            "$project": {
                name: serialize_expression(mapper, value) if isinstance(value, Expression) else value
                for name, value in stage.fields.items()
            }
        }
    if isinstance(stage, Group):
        group: Dict[str, Any] = {
            "_id": serialize_expression(mapper, stage.key) if stage.key is not None else None
        }
        for name, accumulator in stage.calculated_fields.items():
            group[name] = _serialize_accumulator(mapper, accumulator)
        return {"$group": group}
    if isinstance(stage, Out):
        return {"$out": stage.collection_name}
    raise ValueError(f"Unknown pipeline stage {type(stage).__name__}")


def _serialize_accumulator(mapper: Any, accumulator: Accumulator) -> Dict[str, Any]:
    return {accumulator.operator: serialize_expression(mapper, accumulator.expression)}


def serialize_expression(mapper: Any, expression: Expression) -> Any:
    if isinstance(expression, FieldPath):
        return str(expression)
    if isinstance(expression, Literal):
        return {"$literal": serialize_query_field(mapper, expression.value, None, "$literal")}
    if isinstance(expression, ExpressionObject):
        return {
            name: serialize_expression(mapper, value)
            for name, value in expression.properties.items()
        }
    if isinstance(expression, OperatorExpression):
        return {
            expression.operator: [
                serialize_expression(mapper, operand) for operand in expression.operands
            ]
        }
    raise ValueError(f"Unknown expression {type(expression).__name__}")
