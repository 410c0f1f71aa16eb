# tests/db_implementations/test_collection_conversion.py

"""Collection behaviour that needs no server: conversion, filters, cursors and requests."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from bson import ObjectId
from pymongo import DeleteMany, DeleteOne, InsertOne, ReplaceOne, UpdateMany, UpdateOne
from pymongo.errors import DuplicateKeyError, OperationFailure

from mongo_mapper.base.dbref import DBRef
from mongo_mapper.base.exceptions import KeyAlreadyExistsException, QueryStateException
from mongo_mapper.base.options import DBSort
from mongo_mapper.base.query import DBQuery
from mongo_mapper.base.update import DBUpdate
from mongo_mapper.db_implementations.bulk import (
    DeleteManyModel,
    DeleteOneModel,
    InsertOneModel,
    ReplaceOneModel,
    UpdateManyModel,
    UpdateOneModel,
)
from mongo_mapper.db_implementations.mongodb_collection import (
    MappedCollection,
    MappedDocument,
    SerializationStrategy,
)
from mongo_mapper.mapper.id_handler import MapperIdHandler, NoopIdHandler
from mongo_mapper.mapper.module import ModuleFeature, configure_mapper
from tests.conftest import Author, BlogPost, Comment, Counter, Kind, Owner

HEX = "5f1e1a1b2c3d4e5f60718293"


@pytest.fixture
def posts(offline_db, object_mapper):
    return MappedCollection(offline_db["posts"], BlogPost, object_mapper=object_mapper)


def _post() -> BlogPost:
    return BlogPost(
        id=HEX,
        title="hello",
        n=2,
        kind=Kind.REVIEW,
        author_ids=[HEX],
        author=Author(name="ann"),
        comments=[Comment(text="c", votes=1)],
        price=Decimal("1.25"),
        published=datetime(2024, 1, 2, tzinfo=timezone.utc),
    )


# --- Construction ---
def test_requires_a_pymongo_collection(object_mapper):
    with pytest.raises(TypeError):
        MappedCollection({}, BlogPost, object_mapper=object_mapper)


def test_configures_a_mapper_when_none_is_given(offline_db):
    collection = MappedCollection(offline_db["posts"], BlogPost)
    assert collection.object_mapper is not None
    assert collection.strategy is SerializationStrategy.NATIVE
    assert collection.name == "posts"


def test_id_handler_follows_the_id_property(posts, offline_db, object_mapper):
    assert isinstance(posts.id_handler, MapperIdHandler)
    assert posts.id_handler.to_native(HEX) == ObjectId(HEX)

    counters = MappedCollection(offline_db["counters"], Counter, object_mapper=object_mapper)
    assert isinstance(counters.id_handler, NoopIdHandler)


# --- Conversion ---
def test_native_conversion_keeps_the_object(posts):
    post = _post()
    document = posts.convert_to_document(post)
    assert isinstance(document, MappedDocument)
    assert document.mapped_object is post
    assert document["_id"] == ObjectId(HEX)
    assert posts.convert_from_document(document) is post


def test_generic_conversion_produces_the_same_document(offline_db, object_mapper, posts):
    generic = MappedCollection(
        offline_db["posts"],
        BlogPost,
        object_mapper=object_mapper,
        strategy=SerializationStrategy.GENERIC,
    )
    post = _post()
    document = generic.convert_to_document(post)
    assert type(document) is dict
    assert document == posts.convert_to_document(post)
    assert list(document) == list(posts.convert_to_document(post))


def test_documents_are_read_into_the_value_type(posts):
    post = _post()
    document = dict(posts.convert_to_document(post))
    read = posts.convert_from_document(document)
    assert isinstance(read, BlogPost)
    assert read.model_dump() == post.model_dump()
    assert posts.convert_from_document(None) is None


def test_dict_collections_pass_documents_through(offline_db, object_mapper):
    raw = MappedCollection(offline_db["raw"], dict, object_mapper=object_mapper)
    document = {"a": 1, "b": [ObjectId(HEX)]}
    assert raw.convert_to_document(document) == document
    assert raw.convert_from_document(document) is document


# --- Filters and updates ---
def test_manage_filter(posts):
    assert posts.manage_filter(None) == {}
    raw = {"title": {"$regex": "^h"}}
    assert posts.manage_filter(raw) is raw
    assert posts.manage_filter(DBQuery.is_("author_ids", HEX)) == {"author_ids": ObjectId(HEX)}


def test_manage_update(posts):
    assert posts.manage_update(DBUpdate.set("slug", "foo")) == {"$set": {"slug": "bar"}}
    raw = {"$set": {"slug": "foo"}}
    assert posts.manage_update(raw) is raw


# --- Cursors ---
def test_find_is_lazy_and_chainable(posts):
    cursor = (
        posts.find(DBQuery.is_("author_ids", HEX))
        .greater_than("n", 1)
        .sort(DBSort.desc("n"))
        .skip(1)
        .limit(5)
    )
    assert not cursor.executed
    assert posts.manage_filter(cursor.query) == {
        "author_ids": ObjectId(HEX),
        "n": {"$gt": 1},
    }


def test_cursor_over_a_raw_filter_serializes_added_conditions(posts):
    cursor = posts.find({"title": "x"}).in_("author_ids", [HEX])
    assert posts.manage_filter(cursor.query) == {
        "title": "x",
        "author_ids": {"$in": [ObjectId(HEX)]},
    }
    assert posts.manage_filter(posts.find({"title": "x"}).query) == {"title": "x"}


# --- Bulk requests ---
def test_bulk_models_build_driver_requests(posts):
    post = _post()
    query = DBQuery.is_("author_ids", HEX)
    update = DBUpdate.set("slug", "foo")
    filter_doc = {"author_ids": ObjectId(HEX)}
    update_doc = {"$set": {"slug": "bar"}}
    document = posts.convert_to_document(post)

    assert InsertOneModel(post).to_request(posts) == InsertOne(document)
    assert ReplaceOneModel(query, post, upsert=True).to_request(posts) == ReplaceOne(
        filter_doc, document, upsert=True
    )
    assert UpdateOneModel(query, update).to_request(posts) == UpdateOne(
        filter_doc, update_doc, upsert=False
    )
    assert UpdateManyModel(query, update).to_request(posts) == UpdateMany(
        filter_doc, update_doc, upsert=False
    )
    assert DeleteOneModel(query).to_request(posts) == DeleteOne(filter_doc)
    assert DeleteManyModel({"n": 1}).to_request(posts) == DeleteMany({"n": 1})


def test_bulk_inserts_and_replaces_prepare_documents_like_single_writes(offline_db):
    mapper = configure_mapper(features={ModuleFeature.SERIALIZATION_INCLUSION_NON_NULL: False})
    posts = MappedCollection(offline_db["posts"], BlogPost, object_mapper=mapper)

    post = BlogPost(title="x")
    request = InsertOneModel(post).to_request(posts)
    assert post.id is not None
    document = posts.convert_to_document(post)
    assert document["_id"] == ObjectId(post.id)
    assert request == InsertOne(document)

    draft = BlogPost(title="y")
    document = posts.convert_to_document(draft)
    assert document["_id"] is None
    del document["_id"]
    assert ReplaceOneModel({"title": "y"}, draft).to_request(posts) == ReplaceOne({"title": "y"}, document)
    assert draft.id is None


# --- References ---
def test_reference_collections_are_created_once(posts):
    ref = DBRef(HEX, "owner", object_type=Owner)
    owners = posts.get_reference_collection(ref)
    assert owners.name == "owner"
    assert owners.value_type is Owner
    assert posts.get_reference_collection(ref) is owners

    elsewhere = posts.get_reference_collection(DBRef(HEX, "owner", "other_db", object_type=Owner))
    assert elsewhere.collection.database.name == "other_db"
    assert elsewhere is not owners


# --- Errors ---
def test_duplicate_key_becomes_key_already_exists(posts, monkeypatch):
    def insert_one(document):
        raise DuplicateKeyError(
            "E11000 duplicate key error collection: db.posts index: _id_ dup key: { _id: 1 }",
            11000,
        )

    monkeypatch.setattr(posts.collection, "insert_one", insert_one)
    with pytest.raises(KeyAlreadyExistsException, match="_id_"):
        posts.insert(_post())


def test_other_driver_errors_are_passed_through(posts, monkeypatch):
    def insert_one(document):
        raise OperationFailure("boom", 2)

    monkeypatch.setattr(posts.collection, "insert_one", insert_one)
    with pytest.raises(OperationFailure):
        posts.insert(_post())


def test_insert_without_objects_is_rejected(posts):
    with pytest.raises(ValueError):
        posts.insert()


def test_native_strategy_fills_in_ids_before_writing(posts, monkeypatch):
    written = []

    class Result:
        def __init__(self, inserted_id):
            self.inserted_id = inserted_id
            self.acknowledged = True

    def insert_one(document):
        written.append(document)
        return Result(document["_id"])

    monkeypatch.setattr(posts.collection, "insert_one", insert_one)
    post = BlogPost(title="new")
    result = posts.insert(post)
    assert isinstance(written[0]["_id"], ObjectId)
    assert post.id == str(written[0]["_id"])
    assert result.get_saved_id() == post.id
    assert result.get_saved_object() is post


def test_cursor_is_frozen_once_executed(posts, monkeypatch):
    monkeypatch.setattr(posts.collection, "find", lambda *args, **kwargs: iter([]))
    cursor = posts.find()
    assert cursor.first() is None
    assert cursor.executed
    with pytest.raises(QueryStateException, match="after it's been executed"):
        cursor.limit(1)
    with pytest.raises(QueryStateException):
        cursor.is_("n", 1)
