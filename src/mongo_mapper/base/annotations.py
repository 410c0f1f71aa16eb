# src/mongo_mapper/base/annotations.py

"""
Field metadata markers.

Markers are attached to field types with ``typing.Annotated``::

    class BlogPost(BaseModel):
        id: Annotated[Optional[str], Id(), ObjectId()] = None
        author_ids: Annotated[List[str], ObjectId()] = []
        published: Annotated[Optional[datetime], Instant()] = None
        title: Annotated[str, Serialize(using=UpperCaseSerializer)] = ""
"""

from dataclasses import dataclass
from typing import Any, Optional, Tuple


@dataclass(frozen=True)
class Id:
    """Marks the identifier property. It is always stored under ``_id``."""


@dataclass(frozen=True)
class ObjectId:
    """Stores a ``str`` or ``bytes`` value (or a collection of them) as a native object id."""


@dataclass(frozen=True)
class Instant:
    """Gives a ``datetime`` field timestamp semantics (UTC, optionally written as epoch millis)."""


@dataclass(frozen=True)
class Serialize:
    """Use a custom serializer (class or instance) for this field."""

    using: Any


@dataclass(frozen=True)
class Deserialize:
    """Use a custom deserializer (class or instance) for this field."""

    using: Any


def find_marker(markers: Tuple[Any, ...], marker_type: type) -> Optional[Any]:
    for marker in markers:
        if isinstance(marker, marker_type) or marker is marker_type:
            return marker
    return None
