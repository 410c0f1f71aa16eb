# src/mongo_mapper/db_implementations/bulk.py

"""
Bulk write requests for ``MappedCollection.bulk_write``.

Filters and updates may be deferred ``Query``/``UpdateBuilder`` values or plain
documents; they go through the same filter and update handling as the single
document operations of the collection.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Generic, TypeVar, Union

from pymongo import DeleteMany, DeleteOne, InsertOne, ReplaceOne, UpdateMany, UpdateOne

from mongo_mapper.base.query import Query
from mongo_mapper.base.update import UpdateBuilder

if TYPE_CHECKING:
    from mongo_mapper.db_implementations.mongodb_collection import MappedCollection

T = TypeVar("T")

Filter = Union[Query, Dict[str, Any]]
UpdateSpec = Union[UpdateBuilder, Dict[str, Any]]


@dataclass
class WriteModel(Generic[T]):
    def to_request(self, collection: "MappedCollection[T, Any]") -> Any:
        raise NotImplementedError


@dataclass
class InsertOneModel(WriteModel[T]):
    document: T

    def to_request(self, collection):
        return InsertOne(collection.convert_for_insert(self.document))


@dataclass
class ReplaceOneModel(WriteModel[T]):
    filter: Filter
    replacement: T
    upsert: bool = False

    def to_request(self, collection):
        return ReplaceOne(
            collection.manage_filter(self.filter),
            collection.convert_for_replace(self.replacement),
            upsert=self.upsert,
        )


@dataclass
class UpdateOneModel(WriteModel[T]):
    filter: Filter
    update: UpdateSpec
    upsert: bool = False

    def to_request(self, collection):
        return UpdateOne(
            collection.manage_filter(self.filter),
            collection.manage_update(self.update),
            upsert=self.upsert,
        )


@dataclass
class UpdateManyModel(WriteModel[T]):
    filter: Filter
    update: UpdateSpec
    upsert: bool = False

    def to_request(self, collection):
        return UpdateMany(
            collection.manage_filter(self.filter),
            collection.manage_update(self.update),
            upsert=self.upsert,
        )


@dataclass
class DeleteOneModel(WriteModel[T]):
    filter: Filter

    def to_request(self, collection):
        return DeleteOne(collection.manage_filter(self.filter))


@dataclass
class DeleteManyModel(WriteModel[T]):
    filter: Filter

    def to_request(self, collection):
        return DeleteMany(collection.manage_filter(self.filter))
