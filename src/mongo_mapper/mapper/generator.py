# src/mongo_mapper/mapper/generator.py

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, MutableMapping, MutableSequence, Optional, Union

from bson import Binary, Code, DBRef, Decimal128, Int64, MaxKey, MinKey, ObjectId, Regex, Timestamp

from mongo_mapper.base.exceptions import InvalidStructureException
from mongo_mapper.mapper.tokens import TokenGenerator

log = logging.getLogger(__name__)

_UNSET = object()

# Values a document can hold without any conversion
NATIVE_TYPES = (
    str,
    int,
    float,
    bytes,
    datetime,
    ObjectId,
    DBRef,
    Decimal128,
    Int64,
    Binary,
    Regex,
    re.Pattern,
    Code,
    Timestamp,
    MinKey,
    MaxKey,
)


class _ObjectFrame:
    __slots__ = ("document", "pending_name")

    def __init__(self) -> None:
        self.document: Dict[str, Any] = {}
        self.pending_name: Optional[str] = None

    def set(self, value: Any) -> None:
        if self.pending_name is None:
            raise InvalidStructureException(
                "Cannot write a value in an object without a field name"
            )
        self.document[self.pending_name] = value
        self.pending_name = None

    @property
    def value(self) -> Any:
        return self.document


class _ArrayFrame:
    __slots__ = ("items",)

    def __init__(self) -> None:
        self.items: List[Any] = []

    def set(self, value: Any) -> None:
        self.items.append(value)

    @property
    def value(self) -> Any:
        return self.items


class NativeDocumentGenerator(TokenGenerator):
    """
    Token generator that builds a native document tree directly.

    Objects become ``dict`` instances (key order preserved), arrays become
    ``list`` instances, and scalar writes are stored without any coercion.
    Native values handed to ``write_object`` (object ids, dates, references,
    decimals, ...) are stored verbatim.

    By default the finished root value is available from ``value`` once the
    outermost container has been closed. When ``target`` is given the root value
    is written straight into that parent container instead (under ``key`` for a
    mapping, appended for a sequence), so nested writes never materialize a
    standalone root.

    Args:
        codec: Object mapper used for values that are not native.
        target: Optional parent container that receives the root value.
        key: Key under which the root value is stored in a mapping target.
    """

    supports_native_values = True

    def __init__(
        self,
        codec: Any = None,
        target: Optional[Union[MutableMapping[str, Any], MutableSequence[Any]]] = None,
        key: Optional[str] = None,
    ):
        super().__init__(codec)
        self._stack: List[Union[_ObjectFrame, _ArrayFrame]] = []
        self._root: Any = _UNSET
        self._target = target
        self._key = key
        if isinstance(target, MutableMapping) and key is None:
            raise ValueError("A key is required when writing into a mapping")

    # --- Structure ---
    def write_start_object(self) -> None:
        self._stack.append(_ObjectFrame())

    def write_end_object(self) -> None:
        frame = self._pop(_ObjectFrame, "object")
        self._set_value(frame.value)

    def write_start_array(self) -> None:
        self._stack.append(_ArrayFrame())

    def write_end_array(self) -> None:
        frame = self._pop(_ArrayFrame, "array")
        self._set_value(frame.value)

    def write_field_name(self, name: str) -> None:
        if not self._stack:
            raise InvalidStructureException(
                f"Cannot write field name '{name}' outside of an object"
            )
        frame = self._stack[-1]
        if not isinstance(frame, _ObjectFrame):
            raise InvalidStructureException(
                f"Cannot write field name '{name}' while writing an array"
            )
        frame.pending_name = name

    def _pop(self, frame_type: type, kind: str):
        if not self._stack:
            raise InvalidStructureException(f"End of {kind} written with no open {kind}")
        frame = self._stack[-1]
        if not isinstance(frame, frame_type):
            raise InvalidStructureException(
                f"End of {kind} written while an "
                f"{'object' if isinstance(frame, _ObjectFrame) else 'array'} is open"
            )
        return self._stack.pop()

    def _set_value(self, value: Any) -> None:
        if self._stack:
            self._stack[-1].set(value)
            return
        if self._root is not _UNSET:
            raise InvalidStructureException("Cannot write multiple values to a root value node")
        self._root = value
        if self._target is not None:
            if isinstance(self._target, MutableMapping):
                self._target[self._key] = value
            else:
                self._target.append(value)

    # --- Scalars ---
    def write_string(self, value: str) -> None:
        self._set_value(value)

    def write_number(self, value: Any) -> None:
        self._set_value(value)

    def write_boolean(self, value: bool) -> None:
        self._set_value(value)

    def write_null(self) -> None:
        self._set_value(None)

    def write_binary(self, value: bytes) -> None:
        self._set_value(value)

    def write_embedded_object(self, value: Any) -> None:
        self._set_value(value)

    def write_raw(self, value: Any) -> None:
        self._set_value(value)

    def write_object(self, value: Any) -> None:
        """Store native values verbatim, anything else goes through the codec."""
        if value is None or self.codec is None or is_native_value(value):
            self._set_value(value)
        else:
            self.codec.write_value(self, value)

    # --- Result ---
    @property
    def is_complete(self) -> bool:
        return not self._stack and self._root is not _UNSET

    @property
    def value(self) -> Any:
        """The finished root value."""
        if self._stack:
            raise InvalidStructureException(
                f"Document is not complete: {len(self._stack)} container(s) still open"
            )
        if self._root is _UNSET:
            raise InvalidStructureException("No value has been written")
        return self._root

    @property
    def document(self) -> Dict[str, Any]:
        value = self.value
        if not isinstance(value, dict):
            raise InvalidStructureException(
                f"Root value is a {type(value).__name__}, not a document"
            )
        return value


def is_native_value(value: Any) -> bool:
    """True when the value can be stored in a document without conversion."""
    if isinstance(value, dict):
        return all(isinstance(k, str) and is_native_value(v) for k, v in value.items())
    if isinstance(value, list):
        return all(is_native_value(item) for item in value)
    return value is None or isinstance(value, NATIVE_TYPES)
