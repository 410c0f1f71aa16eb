from typing import Optional


class MongoMapperException(Exception):
    """Base class for all errors raised by the mapper."""

    def __init__(self, message: str = "An error occurred in the mongo mapper."):
        super().__init__(message)


class ObjectNotFoundException(MongoMapperException):
    """Exception raised when an object with the specified identifier does not exist."""

    def __init__(self, message: str = "The requested object was not found."):
        super().__init__(message)


class KeyAlreadyExistsException(MongoMapperException):
    """Exception raised when trying to insert an entity that would violate a unique constraint."""

    def __init__(self, message: str = "An object with the same key already exists."):
        super().__init__(message)


class InvalidStructureException(MongoMapperException):
    """
    Raised by the native generator and parser when calls do not nest correctly.

    This always indicates a bug in a serializer or in the mapper itself, never bad data.
    """

    def __init__(self, message: str = "Invalid document structure."):
        super().__init__(message)


class UnsupportedGeneratorException(MongoMapperException):
    """Raised when a native codec is handed a generator it cannot write native values to."""

    def __init__(self, message: str = "Generator does not support native values."):
        super().__init__(message)


class MappingException(MongoMapperException):
    """
    Raised when a value cannot be converted to or from its document representation.

    Args:
        message: Description of the failure.
        path: Dotted path of the offending field, when known.
        runtime_type: The Python type of the offending value, when known.
    """

    def __init__(
        self,
        message: str = "Could not map value.",
        path: Optional[str] = None,
        runtime_type: Optional[type] = None,
    ):
        self.reason = message
        self.path = path
        self.runtime_type = runtime_type
        if path:
            message = f"{message} (path: '{path}')"
        super().__init__(message)

    def with_path(self, segment: str) -> "MappingException":
        """Return a copy of this error with ``segment`` prepended to its path."""
        path = f"{segment}.{self.path}" if self.path else segment
        error = MappingException(self.reason, path=path, runtime_type=self.runtime_type)
        error.__cause__ = self.__cause__
        return error


class QueryStateException(MongoMapperException):
    """Raised when a query or update builder is used in an invalid state."""

    def __init__(self, message: str = "Invalid query builder state."):
        super().__init__(message)
