from active_record.config import DatabaseConfig
from active_record.eager import load_relations
from active_record.entity import Model, default_registry
from active_record.errors import (
    ActiveRecordError,
    EntityWithoutIdentity,
    InvalidKeyType,
    InvalidModel,
    MultipleIdentities,
    NestedTransaction,
    NotFound,
    OptimisticLockConflict,
    RelationNotLoaded,
    UnboundRegistry,
    UnknownAttribute,
    UnknownModel,
    UnknownRelation,
    UnknownScope,
    UnsupportedOperation,
)
from active_record.query import Page, Query
from active_record.relationships import BelongsTo, BelongsToMany, HasMany, HasOne
from active_record.schema import Identity
from active_record.storages.sqlalchemy import Database, SaRegistry, Transaction
from active_record.transaction import BoundModel, transaction
