# tests/conftest.py
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional
from uuid import UUID

import pytest
from pydantic import BaseModel, Field
from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, PyMongoError

from mongo_mapper.base.annotations import Id, Instant, ObjectId, Serialize
from mongo_mapper.base.dbref import DBRef
from mongo_mapper.db_implementations.mongodb_collection import (
    MappedCollection,
    SerializationStrategy,
)
from mongo_mapper.mapper.module import configure_mapper
from mongo_mapper.mapper.serializers import Serializer

# Silence verbose loggers
logging.getLogger("pymongo").setLevel(logging.ERROR)


# --- Constants ---
TEST_MONGO_DB_NAME = "pytest_mongo_mapper_db"
MONGO_URI = os.getenv("TEST_MONGO_URI", "mongodb://localhost:27017")


# --- Availability Checks ---
_mongodb_available: Optional[bool] = None


def is_mongodb_available() -> bool:
    """Check if MongoDB is available (basic check, cached for the session)."""
    global _mongodb_available
    if _mongodb_available is not None:
        return _mongodb_available
    client = MongoClient(MONGO_URI, serverSelectionTimeoutMS=1000)  # Quick timeout
    try:
        client.admin.command("ismaster")
        logging.info(f"MongoDB found and responsive at {MONGO_URI}")
        _mongodb_available = True
    except ConnectionFailure:
        logging.warning(
            f"MongoDB not found or not responsive at {MONGO_URI}. "
            "Skipping MongoDB tests."
        )
        _mongodb_available = False
    except PyMongoError as e:
        logging.warning(
            f"Error checking MongoDB connection at {MONGO_URI}: {e}. "
            "Skipping MongoDB tests."
        )
        _mongodb_available = False
    finally:
        client.close()
    return _mongodb_available


# --- Test Models ---
class FooToBarSerializer(Serializer):
    """Writes "foo" as "bar", anything else unchanged."""

    handled_type = str

    def serialize(self, value, gen, mapper):
        gen.write_string("bar" if value == "foo" else value)


class Kind(Enum):
    NEWS = "news"
    REVIEW = "review"


class Author(BaseModel):
    name: str = ""
    email: Optional[str] = None


class Comment(BaseModel):
    text: str = ""
    votes: int = 0


class BlogPost(BaseModel):
    id: Annotated[Optional[str], Id(), ObjectId()] = None
    title: str = ""
    n: int = 0
    kind: Kind = Kind.NEWS
    tags: List[str] = Field(default_factory=list)
    author_ids: Annotated[List[str], ObjectId()] = Field(default_factory=list)
    author: Optional[Author] = None
    comments: List[Comment] = Field(default_factory=list)
    scores: Dict[str, int] = Field(default_factory=dict)
    price: Optional[Decimal] = None
    published: Annotated[Optional[datetime], Instant()] = None
    slug: Annotated[str, Serialize(using=FooToBarSerializer)] = ""


class Owner(BaseModel):
    id: Annotated[Optional[str], Id(), ObjectId()] = None
    name: str = ""


@dataclass
class Pet:
    id: Annotated[Optional[str], Id(), ObjectId()] = None
    name: str = ""
    owner: Optional[DBRef[Owner, str]] = None
    friends: List[DBRef[Owner, str]] = field(default_factory=list)


class Shelter(BaseModel):
    id: Annotated[Optional[str], Id(), ObjectId()] = None
    name: str = ""
    owner: Optional[DBRef[Owner, str]] = None
    keeper: Annotated[Optional[DBRef[Owner, str]], ObjectId()] = None


@dataclass
class Measurement:
    id: Annotated[Optional[str], Id()] = None
    sensor: UUID = None
    value: float = 0.0
    taken: Optional[datetime] = None


class Point:
    x: int
    y: int
    label: Optional[str]

    def __init__(self, x=0, y=0):
        self.x = x
        self.y = y
        self.label = None


class Counter(BaseModel):
    """A model without an identifier property."""

    name: str = ""
    count: int = 0


# --- Fixtures ---
@pytest.fixture
def object_mapper():
    """A mapper with the mongo module registered, as collections configure it."""
    return configure_mapper()


@pytest.fixture
def offline_db():
    """A database handle that never connects; enough to build collections and requests."""
    client = MongoClient(MONGO_URI, connect=False)
    yield client[TEST_MONGO_DB_NAME]
    client.close()


@pytest.fixture(scope="function")
def mongo_client():
    """Provides a real client connected for each test."""
    if not is_mongodb_available():
        pytest.skip("MongoDB not available or connection failed.")
    client = MongoClient(MONGO_URI, serverSelectionTimeoutMS=1000)
    try:
        client.admin.command("ismaster")  # Quick check
        yield client
    except ConnectionFailure as e:
        pytest.skip(
            f"Skipping MongoDB test: Could not connect to MongoDB at {MONGO_URI}: {e}"
        )
    finally:
        client.close()


@pytest.fixture(scope="function")
def mongo_db(mongo_client):
    """Cleans the test database before each test function runs."""
    db = mongo_client[TEST_MONGO_DB_NAME]
    for name in db.list_collection_names():
        if not name.startswith("system."):
            db.drop_collection(name)
    yield db


@pytest.fixture
def collection_factory(mongo_db, object_mapper):
    def _create(
        value_type: Any,
        name: Optional[str] = None,
        strategy: SerializationStrategy = SerializationStrategy.NATIVE,
    ) -> MappedCollection:
        collection_name = name or getattr(value_type, "__name__", "documents").lower()
        return MappedCollection(
            mongo_db[collection_name],
            value_type,
            object_mapper=object_mapper,
            strategy=strategy,
        )

    return _create
