# src/mongo_mapper/base/update.py

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, ItemsView, Iterable, List, Optional, Tuple, Union

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Modifier names ---
INC = "$inc"
SET = "$set"
UNSET = "$unset"
PUSH = "$push"
ADD_TO_SET = "$addToSet"
POP = "$pop"
PULL = "$pull"
PULL_ALL = "$pullAll"
RENAME = "$rename"
BIT = "$bit"
MIN = "$min"
MAX = "$max"
MUL = "$mul"

# Modifiers whose many-value form is written as ``{"$each": [...]}``
EACH_MODIFIERS = (PUSH, ADD_TO_SET)


# --- Update Operation Values ---
@dataclass
class UpdateOperationValue:
    """
    The deferred argument of one modifier on one field.

    ``target_collection`` asks for the codec of an element of the field rather
    than of the whole field (``$push`` onto a list field takes one element).
    Values with ``requires_serialization`` False are written as given.
    """

    target_collection: bool
    requires_serialization: bool


@dataclass
class SingleUpdateOperationValue(UpdateOperationValue):
    value: Any = None


@dataclass
class MultiUpdateOperationValue(UpdateOperationValue):
    values: List[Any] = field(default_factory=list)


@dataclass
class ComplexUpdateOperationValue(UpdateOperationValue):
    """Sub-operations keyed by name, e.g. the ``and``/``or``/``xor`` of ``$bit``."""

    values: Dict[str, Any] = field(default_factory=dict)


def _collect(values: Tuple[Any, ...]) -> List[Any]:
    if len(values) == 1 and isinstance(values[0], (list, tuple, set, frozenset)):
        return list(values[0])
    return list(values)


class UpdateBuilder:
    """
    Fluent builder for MongoDB update documents.

    Operations are stored as ``{modifier: {field: UpdateOperationValue}}`` in
    insertion order; values are serialized against the collection's mapped type
    when the update is executed. A second operation of the same modifier on the
    same field replaces the first.
    """

    def __init__(self) -> None:
        self._update: Dict[str, Dict[str, UpdateOperationValue]] = {}

    def add_operation(self, modifier: str, field_name: str, value: UpdateOperationValue) -> "UpdateBuilder":
        self._update.setdefault(modifier, {})[field_name] = value
        return self

    def operations(self) -> ItemsView[str, Dict[str, UpdateOperationValue]]:
        return self._update.items()

    def is_empty(self) -> bool:
        return not self._update

    # --- Update Methods ---
    def inc(self, field_name: str, by: Union[int, float] = 1) -> "UpdateBuilder":
        return self.add_operation(INC, field_name, SingleUpdateOperationValue(False, False, by))

    def set(self, field_name: str, value: Any) -> "UpdateBuilder":
        return self.add_operation(SET, field_name, SingleUpdateOperationValue(False, True, value))

    def unset(self, field_name: str) -> "UpdateBuilder":
        return self.add_operation(UNSET, field_name, SingleUpdateOperationValue(False, False, 1))

    def push(self, field_name: str, value: Any) -> "UpdateBuilder":
        return self.add_operation(PUSH, field_name, SingleUpdateOperationValue(True, True, value))

    def push_all(self, field_name: str, *values: Any) -> "UpdateBuilder":
        """Append every value; written as ``$push`` with ``$each``."""
        return self.add_operation(
            PUSH, field_name, MultiUpdateOperationValue(True, True, _collect(values))
        )

    def add_to_set(self, field_name: str, *values: Any) -> "UpdateBuilder":
        """Add one value, or several with ``$each`` when a list or more than one value is given."""
        if len(values) == 1 and not isinstance(values[0], (list, tuple, set, frozenset)):
            operation: UpdateOperationValue = SingleUpdateOperationValue(True, True, values[0])
        else:
            operation = MultiUpdateOperationValue(True, True, _collect(values))
        return self.add_operation(ADD_TO_SET, field_name, operation)

    def pop_first(self, field_name: str) -> "UpdateBuilder":
        return self.add_operation(POP, field_name, SingleUpdateOperationValue(True, False, -1))

    def pop_last(self, field_name: str) -> "UpdateBuilder":
        return self.add_operation(POP, field_name, SingleUpdateOperationValue(True, False, 1))

    def pull(self, field_name: str, value: Any) -> "UpdateBuilder":
        return self.add_operation(PULL, field_name, SingleUpdateOperationValue(True, True, value))

    def pull_all(self, field_name: str, *values: Any) -> "UpdateBuilder":
        return self.add_operation(
            PULL_ALL, field_name, MultiUpdateOperationValue(True, True, _collect(values))
        )

    def rename(self, old_field_name: str, new_field_name: str) -> "UpdateBuilder":
        return self.add_operation(
            RENAME, old_field_name, SingleUpdateOperationValue(False, False, new_field_name)
        )

    def bit(
        self,
        field_name: str,
        operation: str,
        value: int,
        operation2: Optional[str] = None,
        value2: Optional[int] = None,
    ) -> "UpdateBuilder":
        """Bitwise update; ``operation`` is one of ``and``, ``or`` or ``xor``."""
        values = {operation: value}
        if operation2 is not None:
            values[operation2] = value2
        return self.add_operation(BIT, field_name, ComplexUpdateOperationValue(False, False, values))

    def bitwise_and(self, field_name: str, value: int) -> "UpdateBuilder":
        return self.bit(field_name, "and", value)

    def bitwise_or(self, field_name: str, value: int) -> "UpdateBuilder":
        return self.bit(field_name, "or", value)

    def min(self, field_name: str, value: Any) -> "UpdateBuilder":
        return self.add_operation(MIN, field_name, SingleUpdateOperationValue(False, True, value))

    def max(self, field_name: str, value: Any) -> "UpdateBuilder":
        return self.add_operation(MAX, field_name, SingleUpdateOperationValue(False, True, value))

    def mul(self, field_name: str, factor: Union[int, float]) -> "UpdateBuilder":
        return self.add_operation(MUL, field_name, SingleUpdateOperationValue(False, False, factor))

    def add_raw_operation(self, modifier: str, field_name: str, value: Any) -> "UpdateBuilder":
        """Add an operation whose value is sent to the server as is."""
        return self.add_operation(modifier, field_name, SingleUpdateOperationValue(False, False, value))

    # --- Serialization ---
    def serialize(self, mapper: Any, value_type: Any) -> Dict[str, Any]:
        from .utils import serialize_update

        return serialize_update(mapper, value_type, self)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, UpdateBuilder):
            return NotImplemented
        return self._update == other._update

    __hash__ = None

    def __repr__(self) -> str:
        return f"UpdateBuilder({self._update!r})"


class DBUpdate:
    """Static entry points: ``DBUpdate.set("name", "x").inc("count")``."""

    @staticmethod
    def inc(field_name: str, by: Union[int, float] = 1) -> UpdateBuilder:
        return UpdateBuilder().inc(field_name, by)

    @staticmethod
    def set(field_name: str, value: Any) -> UpdateBuilder:
        return UpdateBuilder().set(field_name, value)

    @staticmethod
    def unset(field_name: str) -> UpdateBuilder:
        return UpdateBuilder().unset(field_name)

    @staticmethod
    def push(field_name: str, value: Any) -> UpdateBuilder:
        return UpdateBuilder().push(field_name, value)

    @staticmethod
    def push_all(field_name: str, *values: Any) -> UpdateBuilder:
        return UpdateBuilder().push_all(field_name, *values)

    @staticmethod
    def add_to_set(field_name: str, *values: Any) -> UpdateBuilder:
        return UpdateBuilder().add_to_set(field_name, *values)

    @staticmethod
    def pop_first(field_name: str) -> UpdateBuilder:
        return UpdateBuilder().pop_first(field_name)

    @staticmethod
    def pop_last(field_name: str) -> UpdateBuilder:
        return UpdateBuilder().pop_last(field_name)

    @staticmethod
    def pull(field_name: str, value: Any) -> UpdateBuilder:
        return UpdateBuilder().pull(field_name, value)

    @staticmethod
    def pull_all(field_name: str, *values: Any) -> UpdateBuilder:
        return UpdateBuilder().pull_all(field_name, *values)

    @staticmethod
    def rename(old_field_name: str, new_field_name: str) -> UpdateBuilder:
        return UpdateBuilder().rename(old_field_name, new_field_name)

    @staticmethod
    def bit(
        field_name: str,
        operation: str,
        value: int,
        operation2: Optional[str] = None,
        value2: Optional[int] = None,
    ) -> UpdateBuilder:
        return UpdateBuilder().bit(field_name, operation, value, operation2, value2)

    @staticmethod
    def bitwise_and(field_name: str, value: int) -> UpdateBuilder:
        return UpdateBuilder().bitwise_and(field_name, value)

    @staticmethod
    def bitwise_or(field_name: str, value: int) -> UpdateBuilder:
        return UpdateBuilder().bitwise_or(field_name, value)

    @staticmethod
    def min(field_name: str, value: Any) -> UpdateBuilder:
        return UpdateBuilder().min(field_name, value)

    @staticmethod
    def max(field_name: str, value: Any) -> UpdateBuilder:
        return UpdateBuilder().max(field_name, value)

    @staticmethod
    def mul(field_name: str, factor: Union[int, float]) -> UpdateBuilder:
        return UpdateBuilder().mul(field_name, factor)

    @staticmethod
    def add_raw_operation(modifier: str, field_name: str, value: Any) -> UpdateBuilder:
        return UpdateBuilder().add_raw_operation(modifier, field_name, value)
