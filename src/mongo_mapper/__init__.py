# src/mongo_mapper/__init__.py

"""
Mongo Mapper Library Initialization.

This package maps Python objects (pydantic models, dataclasses and annotated
classes) to MongoDB documents through pymongo, serializing straight into the
driver's native document values.

It initializes a logger with a NullHandler and makes the collection facade,
the query, update and aggregation builders, the object mapper and the
exceptions available at the top level.
"""

import logging

# --------------------------------------------------------------------------
# Logging Setup
# --------------------------------------------------------------------------
# Library logs are discarded unless the consuming application configures
# logging for the "mongo_mapper" logger.
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())
logger.propagate = False

# --------------------------------------------------------------------------
# Exceptions and Annotations
# --------------------------------------------------------------------------
from .base.exceptions import (
    InvalidStructureException,
    KeyAlreadyExistsException,
    MappingException,
    MongoMapperException,
    ObjectNotFoundException,
    QueryStateException,
    UnsupportedGeneratorException,
)
from .base.annotations import Deserialize, Id, Instant, ObjectId, Serialize

# --------------------------------------------------------------------------
# Query, Update and Aggregation Builders
# --------------------------------------------------------------------------
from .base.query import DBQuery, Query
from .base.update import DBUpdate, UpdateBuilder
from .base.options import DBProjection, DBSort
from .base.aggregation import Aggregation, Expression, Group, Pipeline
from .base.dbref import CollectionKey, DBRef, FetchableDBRef

# --------------------------------------------------------------------------
# Object Mapper
# --------------------------------------------------------------------------
from .mapper.object_mapper import MapperFeature, ObjectMapper
from .mapper.module import ModuleFeature, MongoMapperModule, configure_mapper

# --------------------------------------------------------------------------
# Collection Facade
# --------------------------------------------------------------------------
from .db_implementations.mongodb_collection import (
    MappedCollection,
    SerializationStrategy,
    WriteResult,
)
from .db_implementations.cursor import MappedCursor
from .db_implementations.bulk import (
    DeleteManyModel,
    DeleteOneModel,
    InsertOneModel,
    ReplaceOneModel,
    UpdateManyModel,
    UpdateOneModel,
)

# --------------------------------------------------------------------------
# __all__ Definition
# --------------------------------------------------------------------------
__all__ = [
    # Exceptions
    "MongoMapperException",
    "InvalidStructureException",
    "UnsupportedGeneratorException",
    "MappingException",
    "QueryStateException",
    "ObjectNotFoundException",
    "KeyAlreadyExistsException",
    # Annotations
    "Id",
    "ObjectId",
    "Instant",
    "Serialize",
    "Deserialize",
    # Builders
    "DBQuery",
    "Query",
    "DBUpdate",
    "UpdateBuilder",
    "DBSort",
    "DBProjection",
    "Aggregation",
    "Expression",
    "Group",
    "Pipeline",
    # References
    "DBRef",
    "FetchableDBRef",
    "CollectionKey",
    # Mapper
    "ObjectMapper",
    "MapperFeature",
    "MongoMapperModule",
    "ModuleFeature",
    "configure_mapper",
    # Collection
    "MappedCollection",
    "MappedCursor",
    "SerializationStrategy",
    "WriteResult",
    "InsertOneModel",
    "ReplaceOneModel",
    "UpdateOneModel",
    "UpdateManyModel",
    "DeleteOneModel",
    "DeleteManyModel",
    # Logging
    "logger",
]

__version__ = "0.1.0"
