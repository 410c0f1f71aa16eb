# tests/db_implementations/test_mapped_collection.py

"""Round trips through a running MongoDB server; skipped when none is reachable."""

import re
from typing import Annotated

import bson
import pytest
from bson import ObjectId

from mongo_mapper.base.aggregation import Aggregation, Group
from mongo_mapper.base.annotations import ObjectId as ObjectIdMarker
from mongo_mapper.base.dbref import DBRef, FetchableDBRef
from mongo_mapper.base.exceptions import KeyAlreadyExistsException, ObjectNotFoundException, QueryStateException
from mongo_mapper.base.options import DBProjection, DBSort
from mongo_mapper.base.query import DBQuery
from mongo_mapper.base.update import DBUpdate
from mongo_mapper.db_implementations.bulk import (
    DeleteOneModel,
    InsertOneModel,
    UpdateManyModel,
)
from mongo_mapper.db_implementations.mongodb_collection import SerializationStrategy
from tests.conftest import Author, BlogPost, Kind, Owner, Pet, Shelter

HEX = "5f1e1a1b2c3d4e5f60718293"
OBJECT_ID_TEXT = re.compile(r"^[0-9a-f]{24}$")


@pytest.fixture
def posts(collection_factory):
    return collection_factory(BlogPost)


@pytest.fixture
def seeded(posts):
    posts.insert(
        BlogPost(title="a", n=1, kind=Kind.NEWS),
        BlogPost(title="b", n=2, kind=Kind.REVIEW),
        BlogPost(title="c", n=3, kind=Kind.NEWS),
    )
    return posts


# --- Inserts ---
def test_insert_generates_the_id_and_reads_back_equal(posts):
    post = BlogPost(title="hello", n=3, author_ids=[HEX], author=Author(name="ann"))
    result = posts.insert(post)

    assert OBJECT_ID_TEXT.match(post.id)
    assert result.get_saved_id() == post.id
    stored = posts.collection.find_one()
    assert stored["_id"] == ObjectId(post.id)
    assert stored["author_ids"] == [ObjectId(HEX)]

    found = posts.find_one_by_id(post.id)
    assert found is not post
    assert found.model_dump() == post.model_dump()


def test_generic_strategy_leaves_the_object_untouched(collection_factory):
    posts = collection_factory(BlogPost, strategy=SerializationStrategy.GENERIC)
    post = BlogPost(title="generic")
    result = posts.insert(post)

    assert post.id is None
    saved_id = result.get_saved_id()
    assert OBJECT_ID_TEXT.match(saved_id)
    assert posts.find_one_by_id(saved_id).title == "generic"


def test_insert_many(seeded):
    assert seeded.count() == 3
    assert seeded.count(DBQuery.greater_than("n", 1)) == 2


def test_duplicate_id_raises_key_already_exists(posts):
    post = BlogPost(title="once")
    posts.insert(post)
    with pytest.raises(KeyAlreadyExistsException):
        posts.insert(post)


def test_unique_index_violation_raises_key_already_exists(posts):
    posts.create_index({"title": 1}, unique=True)
    posts.insert(BlogPost(title="same"))
    with pytest.raises(KeyAlreadyExistsException):
        posts.insert(BlogPost(title="same"))


def test_get_by_id_raises_when_missing(posts):
    post = BlogPost(title="present")
    posts.insert(post)
    assert posts.get_by_id(post.id).title == "present"
    with pytest.raises(ObjectNotFoundException):
        posts.get_by_id(str(ObjectId()))


def test_save_inserts_then_replaces(posts):
    post = BlogPost(title="draft")
    posts.save(post)
    assert post.id is not None

    post.title = "final"
    posts.save(post)
    assert posts.count() == 1
    assert posts.find_one_by_id(post.id).title == "final"


# --- Finds ---
def test_find_with_sort_skip_and_limit(seeded):
    titles = [post.title for post in seeded.find().sort(DBSort.desc("n")).limit(2)]
    assert titles == ["c", "b"]
    titles = [post.title for post in seeded.find().sort(DBSort.asc("n")).skip(1)]
    assert titles == ["b", "c"]


def test_cursor_conditions(seeded):
    cursor = seeded.find(DBQuery.is_("kind", Kind.NEWS)).greater_than("n", 1)
    assert [post.title for post in cursor.to_list()] == ["c"]
    assert seeded.find().is_("kind", Kind.NEWS).count() == 2


def test_find_with_raw_filter_and_projection(seeded):
    post = seeded.find_one({"title": "b"}, projection=DBProjection.include("title"))
    assert post.title == "b"
    assert post.n == 0


def test_cursor_cannot_change_after_execution(seeded):
    cursor = seeded.find()
    assert cursor.first() is not None
    with pytest.raises(QueryStateException):
        cursor.sort(DBSort.asc("n"))


def test_distinct(seeded):
    assert sorted(seeded.distinct("n")) == [1, 2, 3]
    assert sorted(seeded.distinct("kind", result_type=Kind), key=lambda k: k.value) == [
        Kind.NEWS,
        Kind.REVIEW,
    ]


def test_distinct_ids_use_the_result_type(posts):
    posts.insert(BlogPost(author_ids=[HEX]))
    assert posts.distinct("author_ids", result_type=Annotated[str, ObjectIdMarker()]) == [HEX]


# --- Updates ---
def test_update_by_id_serializes_per_operation(posts):
    post = BlogPost(title="t", n=1)
    posts.insert(post)

    posts.update_by_id(post.id, DBUpdate.set("slug", "foo").inc("n").push("author_ids", HEX))
    stored = posts.collection.find_one({"_id": ObjectId(post.id)})
    assert stored["slug"] == "bar"
    assert stored["n"] == 2
    assert stored["author_ids"] == [ObjectId(HEX)]

    posts.update_by_id(post.id, DBUpdate.unset("slug"))
    assert "slug" not in posts.collection.find_one({"_id": ObjectId(post.id)})


def test_update_many(seeded):
    result = seeded.update_many(DBQuery.is_("kind", Kind.NEWS), DBUpdate.inc("n", 10))
    assert result.modified_count == 2
    assert sorted(seeded.distinct("n")) == [2, 11, 13]


def test_find_and_modify(seeded):
    before = seeded.find_and_modify(DBQuery.is_("title", "a"), DBUpdate.set("n", 5))
    assert before.n == 1
    after = seeded.find_and_modify(DBQuery.is_("title", "a"), DBUpdate.inc("n"), return_new=True)
    assert after.n == 6


# --- Removes ---
def test_remove_by_id_and_query(seeded):
    first = seeded.find().sort(DBSort.asc("n")).first()
    assert seeded.remove_by_id(first.id).deleted_count == 1
    assert seeded.remove(DBQuery.greater_than("n", 2)).deleted_count == 1
    assert [post.title for post in seeded.find()] == ["b"]


def test_find_and_remove(seeded):
    removed = seeded.find_and_remove(DBQuery.greater_than("n", 0), sort=DBSort.desc("n"))
    assert removed.title == "c"
    assert seeded.count() == 2


# --- Aggregation ---
def test_aggregate(seeded):
    pipeline = (
        Aggregation.match(DBQuery.greater_than("n", 0))
        .group("kind", total=Group.sum("n"), count=Group.count())
        .sort(DBSort.asc("_id"))
    )
    assert list(seeded.aggregate(pipeline, result_type=dict)) == [
        {"_id": "news", "total": 4, "count": 2},
        {"_id": "review", "total": 2, "count": 1},
    ]


def test_aggregate_into_the_value_type(seeded):
    results = list(seeded.aggregate(Aggregation.match(DBQuery.is_("title", "b"))))
    assert [post.title for post in results] == ["b"]
    assert isinstance(results[0], BlogPost)


# --- Bulk ---
def test_bulk_write(seeded):
    result = seeded.bulk_write(
        [
            InsertOneModel(BlogPost(title="d", n=4)),
            UpdateManyModel(DBQuery.greater_than_equals("n", 3), DBUpdate.inc("n")),
            DeleteOneModel(DBQuery.is_("title", "a")),
        ]
    )
    assert result.inserted_count == 1
    assert result.modified_count == 2
    assert result.deleted_count == 1
    assert sorted(seeded.distinct("n")) == [2, 4, 5]


# --- Dicts ---
def test_dict_collection(collection_factory):
    raw = collection_factory(dict, name="raw")
    raw.insert({"a": 1, "ids": [ObjectId(HEX)]})
    document = raw.find_one({"a": 1})
    assert document["ids"] == [ObjectId(HEX)]


# --- References ---
def test_references_are_stored_natively_and_fetched(collection_factory):
    owners = collection_factory(Owner)
    owner = Owner(name="ann")
    owners.insert(owner)

    pets = collection_factory(Pet)
    missing = str(ObjectId())
    pet = Pet(
        name="rex",
        owner=DBRef(owner.id, "owner"),
        friends=[DBRef(owner.id, "owner"), DBRef(missing, "owner")],
    )
    pets.insert(pet)

    stored = pets.collection.find_one()
    assert isinstance(stored["owner"], bson.DBRef)
    assert stored["owner"].collection == "owner"

    read = pets.find_one_by_id(pet.id)
    assert isinstance(read.owner, FetchableDBRef)
    assert read.owner.id == owner.id
    assert read.owner.fetch().name == "ann"

    fetched = pets.fetch(read.friends)
    assert [friend.name if friend is not None else None for friend in fetched] == ["ann", None]


def test_pydantic_model_references(collection_factory):
    owners = collection_factory(Owner)
    owner = Owner(name="bo")
    owners.insert(owner)

    shelters = collection_factory(Shelter)
    shelter = Shelter(name="home", keeper=DBRef(owner.id, "owner"))
    shelters.insert(shelter)

    stored = shelters.collection.find_one()
    assert stored["keeper"] == bson.DBRef("owner", ObjectId(owner.id))

    read = shelters.get_by_id(shelter.id)
    assert isinstance(read.keeper, FetchableDBRef)
    assert read.keeper.fetch().name == "bo"
    assert read.owner is None
