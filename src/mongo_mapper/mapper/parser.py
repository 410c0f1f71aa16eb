# src/mongo_mapper/mapper/parser.py

import logging
from collections import deque
from decimal import Decimal
from typing import Any, Deque, Iterator, Mapping, Optional, Tuple

from bson import Decimal128, Int64

from mongo_mapper.mapper.tokens import Token, TokenParser

log = logging.getLogger(__name__)

Event = Tuple[Token, Optional[str], Any]


def classify(value: Any) -> Token:
    """Map a native value to the token kind it is read as."""
    if value is None:
        return Token.VALUE_NULL
    if isinstance(value, bool):
        return Token.VALUE_TRUE if value else Token.VALUE_FALSE
    if isinstance(value, str):
        return Token.VALUE_STRING
    if isinstance(value, (int, Int64)):
        return Token.VALUE_NUMBER_INT
    if isinstance(value, (float, Decimal, Decimal128)):
        return Token.VALUE_NUMBER_FLOAT
    if isinstance(value, Mapping):
        return Token.START_OBJECT
    if isinstance(value, (list, tuple)):
        return Token.START_ARRAY
    # Object ids, dates, references, binary, regexes and anything else the
    # generic mapper cannot decompose
    return Token.VALUE_EMBEDDED_OBJECT


def _walk(value: Any, name: Optional[str]) -> Iterator[Event]:
    token = classify(value)
    if token is Token.START_OBJECT:
        yield token, name, value
        for key, child in value.items():
            yield Token.FIELD_NAME, key, None
            yield from _walk(child, key)
        yield Token.END_OBJECT, None, value
    elif token is Token.START_ARRAY:
        yield token, name, value
        for child in value:
            yield from _walk(child, None)
        yield Token.END_ARRAY, None, value
    else:
        yield token, name, value


class NativeDocumentParser(TokenParser):
    """
    Token parser that walks an existing native document (or a single native value).

    Keys are visited in the document's own order, array items by index. Values
    the generic mapper cannot decompose (object ids, dates, references, binary
    data, ...) are reported as ``VALUE_EMBEDDED_OBJECT`` and are available
    unchanged from ``get_embedded_object()``.

    The document is only read, never modified, so several parsers may walk the
    same document at the same time.
    """

    def __init__(self, root: Any, codec: Any = None, collection: Any = None):
        super().__init__(codec)
        self.root = root
        # Collection the document was read from, used to resolve references
        self.collection = collection
        self._events = _walk(root, None)
        self._lookahead: Deque[Event] = deque()

    def _next_event(self) -> Optional[Event]:
        if self._lookahead:
            return self._lookahead.popleft()
        return next(self._events, None)

    def _peek_event(self) -> Optional[Event]:
        if not self._lookahead:
            event = next(self._events, None)
            if event is None:
                return None
            self._lookahead.append(event)
        return self._lookahead[0]

    def get_number_value(self) -> Any:
        value = super().get_number_value()
        if isinstance(value, Decimal128):
            return value.to_decimal()
        if isinstance(value, Int64):
            return int(value)
        return value

    def sub_parser(self) -> "NativeDocumentParser":
        """
        Return a new parser over the value at the current position.

        The new parser is already positioned on the value's first token. This
        parser is left where it is; call ``skip_children()`` to move past the value.
        """
        parser = NativeDocumentParser(self._current_value, self.codec, self.collection)
        parser.next_token()
        parser.current_name = self.current_name
        return parser

    def __repr__(self) -> str:
        return f"NativeDocumentParser(token={self.current_token}, name={self.current_name!r})"
