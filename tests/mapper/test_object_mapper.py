# tests/mapper/test_object_mapper.py

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional, Tuple
from uuid import uuid4

import bson
import pytest
from bson import Decimal128, ObjectId
from pydantic import BaseModel, Field

from mongo_mapper.base.annotations import Deserialize, Serialize
from mongo_mapper.base.dbref import DBRef
from mongo_mapper.base.exceptions import MappingException
from mongo_mapper.mapper.introspection import is_pydantic_model
from mongo_mapper.mapper.object_mapper import MapperFeature, Module, ObjectMapper
from mongo_mapper.mapper.parser import NativeDocumentParser
from mongo_mapper.mapper.serializers import Deserializer, Serializer
from mongo_mapper.mapper.tokens import Token
from tests.conftest import (
    Author,
    BlogPost,
    Comment,
    Counter,
    Kind,
    Measurement,
    Owner,
    Point,
    Shelter,
)

HEX = "5f1e1a1b2c3d4e5f60718293"


class Reversed(Serializer):
    handled_type = str

    def serialize(self, value, gen, mapper):
        gen.write_string(value[::-1])


class ReversedBack(Deserializer):
    handled_type = str

    def deserialize(self, parser, mapper):
        return parser.get_text()[::-1]


class Profile(BaseModel):
    full_name: str = Field(default="", alias="fullName")
    secret: str = ""


class Tree(BaseModel):
    label: str = ""
    children: List["Tree"] = Field(default_factory=list)


Tree.model_rebuild()


def _post() -> BlogPost:
    return BlogPost(
        id=HEX,
        title="hello",
        n=3,
        kind=Kind.REVIEW,
        tags=["a", "b"],
        author_ids=[HEX],
        author=Author(name="ann"),
        comments=[Comment(text="nice", votes=2)],
        scores={"x": 1},
        price=Decimal("9.99"),
        published=datetime(2024, 1, 2, tzinfo=timezone.utc),
        slug="foo",
    )


def test_pydantic_model_to_native(object_mapper):
    document = object_mapper.to_native(_post())
    assert document == {
        "_id": ObjectId(HEX),
        "title": "hello",
        "n": 3,
        "kind": "review",
        "tags": ["a", "b"],
        "author_ids": [ObjectId(HEX)],
        "author": {"name": "ann"},
        "comments": [{"text": "nice", "votes": 2}],
        "scores": {"x": 1},
        "price": Decimal128("9.99"),
        "published": datetime(2024, 1, 2, tzinfo=timezone.utc),
        "slug": "bar",
    }
    assert next(iter(document)) == "_id"


def test_pydantic_model_round_trip(object_mapper):
    post = _post()
    post.slug = "plain"
    read = object_mapper.from_native(object_mapper.to_native(post), BlogPost)
    assert read.model_dump() == post.model_dump()


def test_null_properties_written_when_enabled():
    mapper = ObjectMapper()
    assert mapper.is_enabled(MapperFeature.WRITE_NULL_PROPERTIES)
    assert mapper.to_native(Author(name="x")) == {"name": "x", "email": None}


def test_null_properties_omitted_by_module(object_mapper):
    assert object_mapper.to_native(Author(name="x")) == {"name": "x"}


def test_alias_is_stored_name(object_mapper):
    document = object_mapper.to_native(Profile(fullName="Ann Lee"))
    assert document == {"fullName": "Ann Lee", "secret": ""}
    assert object_mapper.from_native(document, Profile).full_name == "Ann Lee"


def test_dataclass_round_trip(object_mapper):
    taken = datetime(2024, 1, 2, tzinfo=timezone.utc)
    measurement = Measurement(id="m1", sensor=uuid4(), value=1.5, taken=taken)
    document = object_mapper.to_native(measurement)
    assert document["_id"] == "m1"
    assert object_mapper.from_native(document, Measurement) == measurement


def test_plain_class_round_trip(object_mapper):
    point = Point(1, 2)
    point.label = "origin-ish"
    document = object_mapper.to_native(point)
    assert document == {"x": 1, "y": 2, "label": "origin-ish"}
    read = object_mapper.from_native(document, Point)
    assert (read.x, read.y, read.label) == (1, 2, "origin-ish")


def test_self_referencing_model(object_mapper):
    tree = Tree(label="root", children=[Tree(label="leaf")])
    document = object_mapper.to_native(tree)
    assert document == {"label": "root", "children": [{"label": "leaf", "children": []}]}
    assert object_mapper.from_native(document, Tree).model_dump() == tree.model_dump()


def test_unknown_properties_are_skipped(object_mapper):
    read = object_mapper.from_native({"name": "c", "count": 2, "extra": {"deep": [1]}}, Counter)
    assert read.model_dump() == {"name": "c", "count": 2}


def test_unknown_properties_fail_when_enabled(object_mapper):
    object_mapper.enable(MapperFeature.FAIL_ON_UNKNOWN_PROPERTIES)
    with pytest.raises(MappingException) as exc_info:
        object_mapper.from_native({"name": "c", "extra": 1}, Counter)
    assert exc_info.value.path == "extra"


def test_mapping_error_carries_path_and_type(object_mapper):
    with pytest.raises(MappingException) as exc_info:
        object_mapper.from_native({"comments": [{"votes": "many"}]}, BlogPost)
    error = exc_info.value
    assert error.path == "comments.0.votes"
    assert error.runtime_type is str
    assert "comments.0.votes" in str(error)


def test_serialization_error_carries_path(object_mapper):
    class Holder(BaseModel):
        count: Any = None

    with pytest.raises(MappingException) as exc_info:
        object_mapper.to_native(Holder(count=object()))
    assert exc_info.value.path == "count"


def test_value_that_is_not_an_instance_of_the_model_is_rejected(object_mapper):
    with pytest.raises(MappingException) as exc_info:
        object_mapper.to_native({"name": "x"}, Author)
    assert exc_info.value.runtime_type is dict

    post = BlogPost.model_construct(author={"name": "x"})
    with pytest.raises(MappingException) as exc_info:
        object_mapper.to_native(post)
    assert exc_info.value.path == "author"


def test_pydantic_model_with_references(object_mapper):
    shelter = Shelter(name="home", owner=DBRef("ann", "owner"), keeper=DBRef(HEX, "owner"))
    document = object_mapper.to_native(shelter)
    assert document == {
        "name": "home",
        "owner": bson.DBRef("owner", "ann"),
        "keeper": bson.DBRef("owner", ObjectId(HEX)),
    }

    read = object_mapper.from_native(document, Shelter)
    assert isinstance(read, Shelter)
    assert read.owner == DBRef("ann", "owner")
    assert read.keeper == DBRef(HEX, "owner")
    assert read.keeper.object_type is Owner


def test_custom_field_codecs(object_mapper):
    class Secretive(BaseModel):
        word: Annotated[str, Serialize(using=Reversed), Deserialize(using=ReversedBack())] = ""

    document = object_mapper.to_native(Secretive(word="abc"))
    assert document == {"word": "cba"}
    assert object_mapper.from_native(document, Secretive).word == "abc"


def test_registered_codec_applies_to_subclasses():
    class Money(Decimal):
        pass

    class MoneySerializer(Serializer):
        handled_type = Decimal

        def serialize(self, value, gen, mapper):
            gen.write_string(f"{value:.2f}")

    mapper = ObjectMapper().add_serializer(Decimal, MoneySerializer())
    assert mapper.to_native(Money("1.5")) == "1.50"


def test_containers_and_untyped_values(object_mapper):
    value = {"list": [1, "a", None], "tuple": (1, 2), "nested": {"k": Kind.NEWS}}
    assert object_mapper.to_native(value) == {
        "list": [1, "a", None],
        "tuple": [1, 2],
        "nested": {"k": "news"},
    }
    read = object_mapper.from_native({"a": [1, {"b": True}]}, Dict[str, Any])
    assert read == {"a": [1, {"b": True}]}
    assert object_mapper.from_native([1, 2], Tuple[int, ...]) == (1, 2)
    assert object_mapper.from_native(["x"], Optional[List[str]]) == ["x"]


def test_wrong_scalar_shape_is_a_mapping_error(object_mapper):
    with pytest.raises(MappingException, match="to int"):
        object_mapper.from_native("twelve", int)
    with pytest.raises(MappingException):
        object_mapper.from_native([1], str)


def test_unmappable_type_is_a_mapping_error(object_mapper):
    with pytest.raises(MappingException, match="No serializer"):
        object_mapper.serializer_for(object)


def test_resolved_serializers_are_cached(object_mapper):
    assert object_mapper.serializer_for(BlogPost) is object_mapper.serializer_for(BlogPost)
    assert object_mapper.deserializer_for(BlogPost) is object_mapper.deserializer_for(BlogPost)


def test_describe_finds_id_property(object_mapper):
    description = object_mapper.describe(BlogPost)
    prop = description.id_property
    assert prop.name == "id"
    assert prop.stored_name == "_id"
    assert description.find_property("_id") is prop
    assert description.find_property("id") is prop


def test_only_base_model_subclasses_are_pydantic_models():
    class LooksLikeAModel:
        model_fields: Dict[str, Any] = {}

        @classmethod
        def model_validate(cls, data):
            return cls()

    assert is_pydantic_model(Author)
    assert not is_pydantic_model(Measurement)
    assert not is_pydantic_model(LooksLikeAModel)
    assert not is_pydantic_model(Author(name="x"))


def test_construct_by_attribute_name(object_mapper):
    post = object_mapper.construct(BlogPost, {"id": HEX, "title": "x"})
    assert post.id == HEX
    assert post.title == "x"


def test_construct_failure_is_a_mapping_error(object_mapper):
    with pytest.raises(MappingException, match="Failed to construct"):
        object_mapper.construct(Counter, {"count": "not a number"})


def test_module_registers_once():
    calls = []

    class Recording(Module):
        name = "recording"

        def setup(self, mapper):
            calls.append(mapper)

    mapper = ObjectMapper()
    mapper.register_module(Recording()).register_module(Recording())
    assert len(calls) == 1


def test_read_value_returns_none_for_null(object_mapper):
    parser = NativeDocumentParser(None)
    assert object_mapper.read_value(parser, BlogPost) is None
    assert parser.current_token is Token.VALUE_NULL
