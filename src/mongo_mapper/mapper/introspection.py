# src/mongo_mapper/mapper/introspection.py

"""
Schema introspection for mapped types.

Turns pydantic models, dataclasses and plain annotated classes into a
``BeanDescription``: an ordered list of ``PropertyDefinition`` entries with the
attribute name, the stored (document) name, the full type hint including
``Annotated`` markers, and whether the property is the identifier.
"""

import dataclasses
import inspect
import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from inspect import isclass
from typing import (
    Annotated,
    Any,
    ClassVar,
    Dict,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Type,
    TypeVar,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from pydantic import BaseModel

from mongo_mapper.base.annotations import Id, find_marker
from mongo_mapper.base.exceptions import MappingException

# --- Setup Logging ---
log = logging.getLogger(__name__)

ID_FIELD = "_id"


# --- Helper Functions ---
def _is_none_type(t: Optional[Type]) -> bool:
    return t is type(None)


def _is_typevar(t: Any) -> bool:
    return isinstance(t, TypeVar)


def _origin_to_class(origin: Optional[Type]) -> Optional[Type]:
    if origin is None:
        return None
    map_ = {
        list: list,
        List: list,
        dict: dict,
        Dict: dict,
        set: set,
        Set: set,
        tuple: tuple,
        Tuple: tuple,
        Mapping: dict,
    }
    mapped = map_.get(origin, origin)
    return mapped if isclass(mapped) else origin


def unwrap_annotated(tp: Any) -> Tuple[Any, Tuple[Any, ...]]:
    """Split ``Annotated[T, m1, m2]`` into ``(T, (m1, m2))``."""
    if get_origin(tp) is Annotated:
        return tp.__origin__, tuple(tp.__metadata__)
    return tp, ()


def unwrap_optional(tp: Any) -> Tuple[Any, bool]:
    """Strip ``None`` from a union, returning the remaining type and whether it was there."""
    if get_origin(tp) is Union:
        args = get_args(tp)
        non_none = tuple(a for a in args if not _is_none_type(a))
        if len(non_none) == len(args):
            return tp, False
        if len(non_none) == 1:
            return non_none[0], True
        return Union[non_none], True
    return tp, False


def resolve_type(tp: Any) -> Tuple[Any, Tuple[Any, ...]]:
    """
    Peel ``Annotated`` and ``Optional`` layers off a type hint.

    Returns the bare type and every marker found on the way, outermost first.
    """
    markers: Tuple[Any, ...] = ()
    while True:
        tp, found = unwrap_annotated(tp)
        markers += found
        tp, optional = unwrap_optional(tp)
        if not found and not optional:
            return tp, markers


def is_pydantic_model(cls: Any) -> bool:
    return isclass(cls) and issubclass(cls, BaseModel)


def is_mapped_type(cls: Any) -> bool:
    """True for classes whose instances are mapped property by property."""
    if not isclass(cls) or issubclass(cls, Enum):
        return False
    if is_pydantic_model(cls) or dataclasses.is_dataclass(cls):
        return True
    if cls.__module__ == "builtins" or cls.__module__.split(".")[0] in ("bson", "datetime", "uuid", "decimal"):
        return False
    return bool(_class_annotations(cls))


def _class_annotations(cls: Type) -> Dict[str, Any]:
    names: Dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        names.update(getattr(klass, "__annotations__", {}) or {})
    return names


_type_hints_cache: Dict[Type, Dict[str, Any]] = {}


def _get_cached_type_hints(cls: Type) -> Dict[str, Any]:
    origin_cls = get_origin(cls) or cls
    if not isinstance(origin_cls, type):
        raise TypeError(f"Cannot get hints for non-class/type: {origin_cls!r}")
    if origin_cls not in _type_hints_cache:
        log.debug(f"Cache miss: hints for {origin_cls.__name__}")
        module = sys.modules.get(getattr(origin_cls, "__module__", ""), None)
        global_ns = vars(module) if module is not None else None
        try:
            hints = get_type_hints(origin_cls, globalns=global_ns, include_extras=True)
        except NameError as e:
            raise TypeError(
                f"Unresolved forward ref in {origin_cls.__name__}? Error: {e}"
            ) from e
        _type_hints_cache[origin_cls] = hints
    return _type_hints_cache[origin_cls]


def _resolve_generic_type_args(cls: Any) -> Dict[TypeVar, Any]:
    pydantic_meta = getattr(cls, "__pydantic_generic_metadata__", None)
    if pydantic_meta and pydantic_meta.get("origin") is not None:
        origin = pydantic_meta["origin"]
        args = pydantic_meta.get("args", ())
    else:
        origin = get_origin(cls)
        args = get_args(cls)
    params = getattr(origin, "__parameters__", None) if isinstance(origin, type) else None
    if not args or not params:
        return {}
    return {p: a for p, a in zip(params, args) if _is_typevar(p)}


def _substitute(tp: Any, type_vars: Dict[TypeVar, Any]) -> Any:
    if not type_vars:
        return tp
    if _is_typevar(tp):
        return type_vars.get(tp, Any)
    args = get_args(tp)
    if not args:
        return tp
    new_args = tuple(_substitute(a, type_vars) for a in args)
    if new_args == args:
        return tp
    origin = get_origin(tp)
    if origin is Annotated:
        return Annotated[(new_args[0], *tp.__metadata__)]
    if origin is Union:
        return Union[new_args]
    try:
        return tp.copy_with(new_args)
    except AttributeError:
        return origin[new_args]


# --- Schema description ---
@dataclass
class PropertyDefinition:
    """
    One mapped property of a type.

    Attributes:
        name: Attribute name on the Python object.
        stored_name: Key used in the document.
        type_hint: The declared type, including ``Annotated`` markers.
        markers: Markers collected from the type hint.
        is_id: Whether this property is the identifier (stored as ``_id``).
        input_name: Name the type's constructor or validator expects.
    """

    name: str
    stored_name: str
    type_hint: Any
    markers: Tuple[Any, ...] = ()
    is_id: bool = False
    input_name: Optional[str] = None

    def get(self, obj: Any) -> Any:
        return getattr(obj, self.name, None)

    def set(self, obj: Any, value: Any) -> None:
        setattr(obj, self.name, value)


@dataclass
class BeanDescription:
    cls: Type
    kind: str
    properties: List[PropertyDefinition] = field(default_factory=list)

    def find_property(self, name: str) -> Optional[PropertyDefinition]:
        """Look a property up by stored name, falling back to the attribute name."""
        for prop in self.properties:
            if prop.stored_name == name:
                return prop
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    @property
    def id_property(self) -> Optional[PropertyDefinition]:
        for prop in self.properties:
            if prop.is_id:
                return prop
        return None

    def instantiate(self, values: Dict[str, Any]) -> Any:
        """Build an instance from attribute-name keyed values."""
        try:
            if self.kind == "pydantic":
                return self._instantiate_pydantic(values)
            return self._instantiate_plain(values)
        except MappingException:
            raise
        except (TypeError, ValueError) as e:
            # pydantic's ValidationError is a ValueError
            raise MappingException(
                f"Failed to construct {self.cls.__name__}: {e}", runtime_type=self.cls
            ) from e

    def _instantiate_pydantic(self, values: Dict[str, Any]) -> Any:
        by_input: Dict[str, Any] = {}
        for name, value in values.items():
            prop = self.find_property(name)
            by_input[prop.input_name if prop and prop.input_name else name] = value
        return self.cls.model_validate(by_input)

    def _instantiate_plain(self, values: Dict[str, Any]) -> Any:
        try:
            signature = inspect.signature(self.cls)
        except (TypeError, ValueError):
            signature = None
        kwargs: Dict[str, Any] = {}
        remaining = dict(values)
        if signature is not None:
            params = signature.parameters
            takes_var_kw = any(p.kind is p.VAR_KEYWORD for p in params.values())
            for name in list(remaining):
                param = params.get(name)
                if takes_var_kw or (
                    param is not None
                    and param.kind in (param.POSITIONAL_OR_KEYWORD, param.KEYWORD_ONLY)
                ):
                    kwargs[name] = remaining.pop(name)
        instance = self.cls(**kwargs)
        for name, value in remaining.items():
            setattr(instance, name, value)
        return instance


def describe_type(cls: Any) -> BeanDescription:
    """Introspect ``cls`` (optionally a parametrized generic) into a BeanDescription."""
    origin_cls = get_origin(cls) or cls
    if getattr(cls, "__pydantic_generic_metadata__", None):
        origin_cls = cls
    if not is_mapped_type(origin_cls):
        raise MappingException(
            f"{origin_cls!r} is not a mapped type", runtime_type=origin_cls
        )
    type_vars = _resolve_generic_type_args(cls)
    hints = _get_cached_type_hints(origin_cls)

    if is_pydantic_model(origin_cls):
        kind = "pydantic"
        entries = []
        for name, info in origin_cls.model_fields.items():
            input_name = info.alias or name
            if isinstance(info.validation_alias, str):
                input_name = info.validation_alias
            entries.append((name, hints.get(name, info.annotation), info.alias, input_name))
    elif dataclasses.is_dataclass(origin_cls):
        kind = "dataclass"
        entries = [
            (f.name, hints.get(f.name, f.type), None, f.name)
            for f in dataclasses.fields(origin_cls)
        ]
    else:
        kind = "plain"
        entries = [
            (name, hint, None, name)
            for name, hint in hints.items()
            if not name.startswith("__") and get_origin(hint) is not ClassVar and hint is not ClassVar
        ]

    description = BeanDescription(cls=origin_cls, kind=kind)
    for name, hint, alias, input_name in entries:
        hint = _substitute(hint, type_vars)
        _, markers = resolve_type(hint)
        stored_name = alias or name
        is_id = stored_name == ID_FIELD or find_marker(markers, Id) is not None
        if is_id:
            stored_name = ID_FIELD
        description.properties.append(
            PropertyDefinition(
                name=name,
                stored_name=stored_name,
                type_hint=hint,
                markers=markers,
                is_id=is_id,
                input_name=input_name,
            )
        )
    log.debug(
        f"Described {origin_cls.__name__} ({kind}): "
        f"{[p.stored_name for p in description.properties]}"
    )
    return description
