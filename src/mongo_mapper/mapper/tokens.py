# src/mongo_mapper/mapper/tokens.py

"""
Token protocol shared by all generators (write side) and parsers (read side).

Serializers talk to a ``TokenGenerator`` and deserializers to a ``TokenParser``.
Concrete implementations decide where the tokens go: into a native document
(``NativeDocumentGenerator``), out of a native document (``NativeDocumentParser``),
or into an in-memory replayable buffer (``TokenBuffer``).
"""

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator, List, Optional, Tuple

from mongo_mapper.base.exceptions import InvalidStructureException

log = logging.getLogger(__name__)


class Token(Enum):
    START_OBJECT = "{"
    END_OBJECT = "}"
    START_ARRAY = "["
    END_ARRAY = "]"
    FIELD_NAME = "FIELD_NAME"
    VALUE_STRING = "VALUE_STRING"
    VALUE_NUMBER_INT = "VALUE_NUMBER_INT"
    VALUE_NUMBER_FLOAT = "VALUE_NUMBER_FLOAT"
    VALUE_TRUE = "true"
    VALUE_FALSE = "false"
    VALUE_NULL = "null"
    VALUE_EMBEDDED_OBJECT = "VALUE_EMBEDDED_OBJECT"

    @property
    def is_struct_start(self) -> bool:
        return self in (Token.START_OBJECT, Token.START_ARRAY)

    @property
    def is_struct_end(self) -> bool:
        return self in (Token.END_OBJECT, Token.END_ARRAY)

    @property
    def is_scalar_value(self) -> bool:
        return not (self.is_struct_start or self.is_struct_end or self is Token.FIELD_NAME)

    @property
    def is_numeric(self) -> bool:
        return self in (Token.VALUE_NUMBER_INT, Token.VALUE_NUMBER_FLOAT)


# --- Write side ---
class TokenGenerator:
    """
    Base class of the write side of the token protocol.

    Capabilities are advertised through class attributes instead of being
    inferred from the concrete class:

    - ``supports_native_values``: ``write_object`` stores native document values verbatim.
    - ``can_detach_codec``: ``detached_codec()`` is available, so a native value can be
      recorded without handing it back to the object mapper.
    """

    supports_native_values: bool = False
    can_detach_codec: bool = False

    def __init__(self, codec: Any = None):
        # The object mapper used by write_object for values that are not tokens
        self.codec = codec

    def write_start_object(self) -> None:
        raise NotImplementedError

    def write_end_object(self) -> None:
        raise NotImplementedError

    def write_start_array(self) -> None:
        raise NotImplementedError

    def write_end_array(self) -> None:
        raise NotImplementedError

    def write_field_name(self, name: str) -> None:
        raise NotImplementedError

    def write_string(self, value: str) -> None:
        raise NotImplementedError

    def write_number(self, value: Any) -> None:
        raise NotImplementedError

    def write_boolean(self, value: bool) -> None:
        raise NotImplementedError

    def write_null(self) -> None:
        raise NotImplementedError

    def write_binary(self, value: bytes) -> None:
        raise NotImplementedError

    def write_embedded_object(self, value: Any) -> None:
        raise NotImplementedError

    def write_raw(self, value: Any) -> None:
        raise NotImplementedError(
            f"{type(self).__name__} does not support raw values"
        )

    def write_object(self, value: Any) -> None:
        """Write an arbitrary value, delegating to the bound object mapper."""
        if value is None:
            self.write_null()
        elif self.codec is None:
            self.write_embedded_object(value)
        else:
            self.codec.write_value(self, value)

    def write_string_field(self, name: str, value: Optional[str]) -> None:
        self.write_field_name(name)
        if value is None:
            self.write_null()
        else:
            self.write_string(value)

    def copy_current_structure(self, parser: "TokenParser") -> None:
        """Copy the value the parser is positioned on, including all of its children."""
        token = parser.current_token
        if token is None:
            raise InvalidStructureException("Parser has no current token to copy")
        if token is Token.FIELD_NAME:
            self.write_field_name(parser.current_name)
            token = parser.next_token()
        self._copy_value(parser, token)

    def _copy_value(self, parser: "TokenParser", token: Token) -> None:
        if token is Token.START_OBJECT:
            self.write_start_object()
            token = parser.next_token()
            while token is Token.FIELD_NAME:
                self.write_field_name(parser.current_name)
                self._copy_value(parser, parser.next_token())
                token = parser.next_token()
            self.write_end_object()
        elif token is Token.START_ARRAY:
            self.write_start_array()
            token = parser.next_token()
            while token is not Token.END_ARRAY:
                self._copy_value(parser, token)
                token = parser.next_token()
            self.write_end_array()
        elif token is Token.VALUE_STRING:
            self.write_string(parser.get_text())
        elif token.is_numeric:
            self.write_number(parser.get_number_value())
        elif token is Token.VALUE_TRUE or token is Token.VALUE_FALSE:
            self.write_boolean(token is Token.VALUE_TRUE)
        elif token is Token.VALUE_NULL:
            self.write_null()
        elif token is Token.VALUE_EMBEDDED_OBJECT:
            self._copy_embedded(parser.get_embedded_object())
        else:
            raise InvalidStructureException(f"Unexpected token {token} while copying")

    def _copy_embedded(self, value: Any) -> None:
        if self.supports_native_values:
            self.write_object(value)
        else:
            self.write_embedded_object(value)


# --- Read side ---
class TokenParser:
    """Base class of the read side of the token protocol."""

    def __init__(self, codec: Any = None):
        self.codec = codec
        self.current_token: Optional[Token] = None
        self.current_name: Optional[str] = None
        self._current_value: Any = None
        self.closed = False

    def _next_event(self) -> Optional[Tuple[Token, Optional[str], Any]]:
        raise NotImplementedError

    def _peek_event(self) -> Optional[Tuple[Token, Optional[str], Any]]:
        raise NotImplementedError

    def next_token(self) -> Optional[Token]:
        event = self._next_event()
        if event is None:
            self.closed = True
            self.current_token = None
            self._current_value = None
            return None
        self.current_token, name, self._current_value = event
        if name is not None or self.current_token is Token.FIELD_NAME:
            self.current_name = name
        return self.current_token

    def peek_token(self) -> Optional[Token]:
        """Return the kind of the next token without consuming it."""
        event = self._peek_event()
        return event[0] if event is not None else None

    def next_value(self) -> Optional[Token]:
        """Advance to the next value token, stepping over a field name."""
        token = self.next_token()
        if token is Token.FIELD_NAME:
            token = self.next_token()
        return token

    def skip_children(self) -> "TokenParser":
        """If positioned on a container start, advance to its matching end."""
        if self.current_token is None or not self.current_token.is_struct_start:
            return self
        depth = 1
        while depth:
            token = self.next_token()
            if token is None:
                raise InvalidStructureException("Unexpected end of input while skipping")
            if token.is_struct_start:
                depth += 1
            elif token.is_struct_end:
                depth -= 1
        return self

    def get_text(self) -> Optional[str]:
        token = self.current_token
        if token is None or self.closed:
            return None
        if token is Token.FIELD_NAME:
            return self.current_name
        if token is Token.VALUE_STRING:
            return self._current_value
        if token.is_numeric or token is Token.VALUE_EMBEDDED_OBJECT:
            return str(self._current_value)
        return token.value

    def get_number_value(self) -> Any:
        if self.current_token is None or not self.current_token.is_numeric:
            raise InvalidStructureException(
                f"Current token ({self.current_token}) is not a number"
            )
        return self._current_value

    def get_boolean_value(self) -> bool:
        if self.current_token is Token.VALUE_TRUE:
            return True
        if self.current_token is Token.VALUE_FALSE:
            return False
        raise InvalidStructureException(
            f"Current token ({self.current_token}) is not a boolean"
        )

    def get_binary_value(self) -> Optional[bytes]:
        value = self._current_value
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        binary = getattr(value, "binary", None)
        if isinstance(binary, bytes):
            return binary
        return None

    def get_embedded_object(self) -> Any:
        """Return the current native value as-is."""
        if self.closed:
            return None
        return self._current_value

    def sub_parser(self) -> "TokenParser":
        raise NotImplementedError

    def close(self) -> None:
        self.closed = True
        self.current_token = None
        self._current_value = None

    def __iter__(self) -> Iterator[Token]:
        while True:
            token = self.next_token()
            if token is None:
                return
            yield token


# --- Buffer ---
class TokenBuffer(TokenGenerator):
    """
    Records tokens in memory so they can be replayed later through ``as_parser()``.

    Used for the generic serialization path and whenever the mapper has to look
    at a value's tokens more than once.
    """

    can_detach_codec = True

    def __init__(self, codec: Any = None):
        super().__init__(codec)
        self._events: List[Tuple[Token, Optional[str], Any]] = []
        self._pending_name: Optional[str] = None
        self._depth: List[Token] = []

    def _append(self, token: Token, value: Any = None) -> None:
        name = None
        if self._depth and self._depth[-1] is Token.START_OBJECT:
            if self._pending_name is None:
                raise InvalidStructureException(
                    f"Value {token} written in an object without a field name"
                )
            name, self._pending_name = self._pending_name, None
        self._events.append((token, name, value))

    def write_start_object(self) -> None:
        self._append(Token.START_OBJECT)
        self._depth.append(Token.START_OBJECT)

    def write_end_object(self) -> None:
        if not self._depth or self._depth[-1] is not Token.START_OBJECT:
            raise InvalidStructureException("Current context is not an object")
        self._depth.pop()
        self._events.append((Token.END_OBJECT, None, None))

    def write_start_array(self) -> None:
        self._append(Token.START_ARRAY)
        self._depth.append(Token.START_ARRAY)

    def write_end_array(self) -> None:
        if not self._depth or self._depth[-1] is not Token.START_ARRAY:
            raise InvalidStructureException("Current context is not an array")
        self._depth.pop()
        self._events.append((Token.END_ARRAY, None, None))

    def write_field_name(self, name: str) -> None:
        if not self._depth or self._depth[-1] is not Token.START_OBJECT:
            raise InvalidStructureException(
                f"Cannot write field name '{name}' outside of an object"
            )
        self._events.append((Token.FIELD_NAME, name, None))
        self._pending_name = name

    def write_string(self, value: str) -> None:
        self._append(Token.VALUE_STRING, value)

    def write_number(self, value: Any) -> None:
        if isinstance(value, bool):
            self.write_boolean(value)
        elif isinstance(value, int):
            self._append(Token.VALUE_NUMBER_INT, value)
        else:
            self._append(Token.VALUE_NUMBER_FLOAT, value)

    def write_boolean(self, value: bool) -> None:
        self._append(Token.VALUE_TRUE if value else Token.VALUE_FALSE, value)

    def write_null(self) -> None:
        self._append(Token.VALUE_NULL)

    def write_binary(self, value: bytes) -> None:
        self._append(Token.VALUE_EMBEDDED_OBJECT, bytes(value))

    def write_embedded_object(self, value: Any) -> None:
        self._append(Token.VALUE_EMBEDDED_OBJECT, value)

    def write_raw(self, value: Any) -> None:
        self.write_embedded_object(value)

    @contextmanager
    def detached_codec(self):
        """Temporarily unbind the codec so ``write_object`` records values verbatim."""
        codec = self.codec
        self.codec = None
        try:
            yield self
        finally:
            self.codec = codec

    @property
    def tokens(self) -> List[Token]:
        return [event[0] for event in self._events]

    def as_parser(self, codec: Any = None) -> "TokenParser":
        if self._depth:
            raise InvalidStructureException("Token buffer has unclosed containers")
        return _BufferParser(list(self._events), codec if codec is not None else self.codec)

    def __repr__(self) -> str:
        return f"TokenBuffer({len(self._events)} tokens)"


class _BufferParser(TokenParser):
    def __init__(self, events: List[Tuple[Token, Optional[str], Any]], codec: Any = None):
        super().__init__(codec)
        self._events = events
        self._index = 0

    def _next_event(self):
        if self._index >= len(self._events):
            return None
        event = self._events[self._index]
        self._index += 1
        return event

    def _peek_event(self):
        if self._index >= len(self._events):
            return None
        return self._events[self._index]

    def sub_parser(self) -> TokenParser:
        token = self.current_token
        start = self._index - 1
        if token is None or not token.is_struct_start:
            events = [self._events[start]]
        else:
            depth, end = 0, start
            while True:
                current = self._events[end][0]
                if current.is_struct_start:
                    depth += 1
                elif current.is_struct_end:
                    depth -= 1
                    if depth == 0:
                        break
                end += 1
            events = self._events[start : end + 1]
        parser = _BufferParser(events, self.codec)
        parser.next_token()
        return parser
