# src/mongo_mapper/mapper/object_mapper.py

"""
The ObjectMapper: resolves serializers and deserializers for type hints and
runtime values, and converts between mapped objects and native documents.

Resolution order for a declared type:

1. ``Serialize``/``Deserialize`` markers, then any marker with a registered codec
   (``ObjectId()``, ``Instant()`` once the mongo module is registered).
2. ``Optional[X]`` resolves as ``X``; other unions and ``Any`` are resolved per value.
3. Sequences and mappings get container (de)serializers for their element type.
4. Codecs registered with ``add_serializer``/``add_deserializer``, matched along the MRO.
5. Builtin scalars.
6. Mapped types (pydantic models, dataclasses, annotated classes).
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional, Set, Union, get_args, get_origin

from mongo_mapper.base.annotations import Deserialize, Serialize
from mongo_mapper.base.exceptions import MappingException
from mongo_mapper.mapper.generator import NativeDocumentGenerator
from mongo_mapper.mapper.introspection import (
    BeanDescription,
    _origin_to_class,
    describe_type,
    is_mapped_type,
    resolve_type,
)
from mongo_mapper.mapper.parser import NativeDocumentParser
from mongo_mapper.mapper.serializers import (
    BeanDeserializer,
    BeanSerializer,
    Deserializer,
    DynamicSerializer,
    MapDeserializer,
    MapSerializer,
    SequenceDeserializer,
    SequenceSerializer,
    Serializer,
    UntypedDeserializer,
    std_deserializer_for,
    std_serializer_for,
)
from mongo_mapper.mapper.tokens import Token, TokenGenerator, TokenParser

log = logging.getLogger(__name__)

_SEQUENCE_TYPES = (list, set, frozenset, tuple)


class MapperFeature(Enum):
    """On/off features of an ObjectMapper. The value is the default state."""

    WRITE_DATES_AS_TIMESTAMPS = False
    FAIL_ON_UNKNOWN_PROPERTIES = False
    WRITE_NULL_PROPERTIES = True

    @property
    def enabled_by_default(self) -> bool:
        return self.value


class Module:
    """A bundle of codecs and configuration installed with ``ObjectMapper.register_module``."""

    name: str = "module"

    def setup(self, mapper: "ObjectMapper") -> None:
        raise NotImplementedError


def _instantiate(using: Any) -> Any:
    return using() if isinstance(using, type) else using


def _element_type(container: type, args: tuple) -> Any:
    if container is tuple:
        # only homogeneous tuples, Tuple[X, ...], have a single element type
        return args[0] if len(args) == 2 and args[1] is Ellipsis else None
    return args[0] if args else None


def _marker_codec(registry: Dict[Any, Any], marker: Any) -> Any:
    key = marker if isinstance(marker, type) else type(marker)
    return registry.get(key)


class ObjectMapper:
    """
    Converts between Python objects and native documents.

    Codec registration and module installation must happen before the mapper is
    shared between threads. Resolved (de)serializers are cached per declared type.
    """

    def __init__(self):
        self._features: Dict[Enum, bool] = {}
        self._serializers: Dict[type, Serializer] = {}
        self._deserializers: Dict[type, Deserializer] = {}
        self._marker_serializers: Dict[type, Serializer] = {}
        self._marker_deserializers: Dict[type, Deserializer] = {}
        self._modules: Set[str] = set()
        self._serializer_cache: Dict[Any, Serializer] = {}
        self._deserializer_cache: Dict[Any, Deserializer] = {}
        self._descriptions: Dict[Any, BeanDescription] = {}

    # --- Configuration ---
    def configure(self, feature: Enum, state: bool) -> "ObjectMapper":
        self._features[feature] = state
        self._clear_caches()
        return self

    def enable(self, feature: Enum) -> "ObjectMapper":
        return self.configure(feature, True)

    def disable(self, feature: Enum) -> "ObjectMapper":
        return self.configure(feature, False)

    def is_enabled(self, feature: Enum) -> bool:
        return self._features.get(feature, feature.enabled_by_default)

    def add_serializer(self, tp: type, serializer: Serializer) -> "ObjectMapper":
        self._serializers[tp] = serializer
        self._clear_caches()
        return self

    def add_deserializer(self, tp: type, deserializer: Deserializer) -> "ObjectMapper":
        self._deserializers[tp] = deserializer
        self._clear_caches()
        return self

    def add_marker_codec(
        self,
        marker_type: type,
        serializer: Optional[Serializer] = None,
        deserializer: Optional[Deserializer] = None,
    ) -> "ObjectMapper":
        """Use the given codec for every field annotated with a ``marker_type`` marker."""
        if serializer is not None:
            self._marker_serializers[marker_type] = serializer
        if deserializer is not None:
            self._marker_deserializers[marker_type] = deserializer
        self._clear_caches()
        return self

    def register_module(self, module: Module) -> "ObjectMapper":
        if module.name in self._modules:
            log.debug(f"Module '{module.name}' already registered")
            return self
        module.setup(self)
        self._modules.add(module.name)
        log.debug(f"Registered module '{module.name}'")
        return self

    def _clear_caches(self) -> None:
        self._serializer_cache.clear()
        self._deserializer_cache.clear()

    # --- Introspection ---
    def describe(self, cls: Any) -> BeanDescription:
        description = self._descriptions.get(cls)
        if description is None:
            description = describe_type(cls)
            self._descriptions[cls] = description
        return description

    def construct(self, cls: Any, values: Dict[str, Any]) -> Any:
        """Create an instance of a mapped type from attribute-name keyed values."""
        return self.describe(cls).instantiate(values)

    # --- Serializer resolution ---
    def serializer_for(self, tp: Any) -> Serializer:
        try:
            return self._serializer_cache[tp]
        except KeyError:
            pass
        except TypeError:
            # unhashable metadata
            return self._find_serializer(tp)
        serializer = self._find_serializer(tp)
        self._serializer_cache.setdefault(tp, serializer)
        return serializer

    def _find_serializer(self, tp: Any) -> Serializer:
        base, markers = resolve_type(tp)
        for marker in markers:
            if isinstance(marker, Serialize):
                return _instantiate(marker.using)
        for marker in markers:
            codec = _marker_codec(self._marker_serializers, marker)
            if codec is not None:
                return codec.contextual(base)
        if base is Any or get_origin(base) is Union:
            return DynamicSerializer()
        origin = get_origin(base)
        if origin is not None:
            container = _origin_to_class(origin)
            args = get_args(base)
            if container in _SEQUENCE_TYPES:
                return SequenceSerializer(self._content_serializer(_element_type(container, args)))
            if container is dict:
                return MapSerializer(self._content_serializer(args[1] if len(args) == 2 else None))
        cls = _origin_to_class(origin) if origin is not None else base
        if not isinstance(cls, type):
            return DynamicSerializer()
        if cls in _SEQUENCE_TYPES:
            return SequenceSerializer()
        if cls is dict:
            return MapSerializer()
        for klass in cls.__mro__:
            registered = self._serializers.get(klass)
            if registered is not None:
                return registered.contextual(base)
        serializer = std_serializer_for(cls)
        if serializer is not None:
            return serializer
        if is_mapped_type(cls):
            serializer = BeanSerializer(self.describe(base), self)
            # cached before its properties resolve, for self-referencing types
            self._serializer_cache.setdefault(base, serializer)
            return serializer
        raise MappingException(
            f"No serializer found for type {getattr(cls, '__name__', cls)}",
            runtime_type=cls,
        )

    def _content_serializer(self, tp: Any) -> Optional[Serializer]:
        if tp is None or tp is Any:
            return None
        return self.serializer_for(tp)

    def value_serializer(self, value: Any) -> Serializer:
        """Serializer for the runtime type of ``value``."""
        return self.serializer_for(type(value))

    # --- Deserializer resolution ---
    def deserializer_for(self, tp: Any) -> Deserializer:
        try:
            return self._deserializer_cache[tp]
        except KeyError:
            pass
        except TypeError:
            return self._find_deserializer(tp)
        deserializer = self._find_deserializer(tp)
        self._deserializer_cache.setdefault(tp, deserializer)
        return deserializer

    def _find_deserializer(self, tp: Any) -> Deserializer:
        base, markers = resolve_type(tp)
        for marker in markers:
            if isinstance(marker, Deserialize):
                return _instantiate(marker.using)
        for marker in markers:
            codec = _marker_codec(self._marker_deserializers, marker)
            if codec is not None:
                return codec.contextual(base)
        if base is Any or get_origin(base) is Union:
            return UntypedDeserializer()
        origin = get_origin(base)
        if origin is not None:
            container = _origin_to_class(origin)
            args = get_args(base)
            if container in _SEQUENCE_TYPES:
                element = _element_type(container, args)
                return SequenceDeserializer(self.deserializer_for(element or Any), container)
            if container is dict:
                return MapDeserializer(self.deserializer_for(args[1] if len(args) == 2 else Any))
        cls = _origin_to_class(origin) if origin is not None else base
        if not isinstance(cls, type):
            return UntypedDeserializer()
        if cls in _SEQUENCE_TYPES:
            return SequenceDeserializer(UntypedDeserializer(), cls)
        if cls is dict:
            return MapDeserializer(UntypedDeserializer())
        for klass in cls.__mro__:
            registered = self._deserializers.get(klass)
            if registered is not None:
                return registered.contextual(base)
        deserializer = std_deserializer_for(cls)
        if deserializer is not None:
            return deserializer
        if is_mapped_type(cls):
            deserializer = BeanDeserializer(self.describe(base), self)
            self._deserializer_cache.setdefault(base, deserializer)
            return deserializer
        raise MappingException(
            f"No deserializer found for type {getattr(cls, '__name__', cls)}",
            runtime_type=cls,
        )

    # --- Conversion ---
    def write_value(self, gen: TokenGenerator, value: Any, tp: Any = None) -> None:
        if value is None:
            gen.write_null()
            return
        serializer = self.serializer_for(tp) if tp is not None else self.value_serializer(value)
        serializer.serialize(value, gen, self)

    def read_value(self, parser: TokenParser, tp: Any) -> Any:
        if parser.current_token is None:
            parser.next_token()
        if parser.current_token is None or parser.current_token is Token.VALUE_NULL:
            return None
        return self.deserializer_for(tp).deserialize(parser, self)

    def to_native(self, value: Any, tp: Any = None) -> Any:
        """Serialize ``value`` into its native document representation."""
        gen = NativeDocumentGenerator(self)
        self.write_value(gen, value, tp)
        return gen.value

    def from_native(self, value: Any, tp: Any, collection: Any = None) -> Any:
        """Deserialize a native document (or native scalar) into ``tp``."""
        return self.read_value(NativeDocumentParser(value, self, collection), tp)

    def __repr__(self) -> str:
        return f"ObjectMapper(modules={sorted(self._modules)})"

