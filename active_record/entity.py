import abc
import base64
import copy
import enum
import hashlib
import json
import logging
import typing
import uuid
from datetime import date, datetime
from decimal import Decimal

from active_record import persistence
from active_record.eager import load_relations
from active_record.errors import InvalidModel, NotFound, RelationNotLoaded, UnknownAttribute, UnknownRelation
from active_record.keys import INCREMENT, KeyPolicy, generate_key
from active_record.query import Query
from active_record.relationships import Relationship
from active_record.schema import FieldAccessor, ModelDescriptor, describe
from active_record.storages.sqlalchemy.database import ExecutionContext
from active_record.storages.sqlalchemy.registry import SaRegistry
from active_record.storages.sqlalchemy.types import from_storage


logger = logging.getLogger(__name__)

ModelT = typing.TypeVar("ModelT", bound="Model")

default_registry = SaRegistry()


class ModelMeta(abc.ABCMeta):
    def __new__(mcs, name: str, bases: tuple, namespace: dict) -> typing.Type:
        cls = super().__new__(mcs, name, bases, namespace)
        if namespace.get("__abstract__", False):
            return cls

        relations: typing.Dict[str, Relationship] = {}
        for klass in reversed(cls.__mro__):
            relations.update((key, value) for key, value in vars(klass).items() if isinstance(value, Relationship))

        descriptor = describe(cls, relations)
        shadowing = [field.name for field in descriptor.tree.fields if hasattr(Model, field.name)]
        if shadowing:
            raise InvalidModel(f"{name} fields shadow Model attributes: {', '.join(shadowing)}")
        for field in descriptor.tree.fields:
            setattr(cls, field.name, FieldAccessor(field.name, field.default))
        cls.__descriptor__ = descriptor
        cls.registry.register(cls)
        return cls


def _json_default(value: typing.Any) -> typing.Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, bytes):
        return base64.b64encode(value).decode()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _is_settable(attribute: typing.Any) -> bool:
    if isinstance(attribute, property):
        return attribute.fset is not None
    return isinstance(attribute, (FieldAccessor, Relationship))


class Model(metaclass=ModelMeta):
    """Base class of mapped entities.

    Annotated class attributes are fields, ``Identity[T]`` marks the primary key
    and ``typing.ClassVar`` attributes below configure the table.
    Instances are only obtained through :meth:`make`, :meth:`create` or
    :meth:`from_row`.
    """

    __abstract__ = True

    registry: typing.ClassVar[SaRegistry] = default_registry
    table_name: typing.ClassVar[typing.Optional[str]] = None
    primary_key: typing.ClassVar[str] = "id"
    key_type: typing.ClassVar[KeyPolicy] = INCREMENT
    timestamps: typing.ClassVar[bool] = False
    created_at_column: typing.ClassVar[str] = "created_at"
    updated_at_column: typing.ClassVar[str] = "updated_at"
    soft_deletes: typing.ClassVar[bool] = False
    deleted_at_column: typing.ClassVar[str] = "deleted_at"
    versioned: typing.ClassVar[bool] = False
    version_column: typing.ClassVar[str] = "version"
    hidden: typing.ClassVar[typing.Sequence[str]] = ()
    visible: typing.ClassVar[typing.Sequence[str]] = ()

    __descriptor__: typing.ClassVar[ModelDescriptor]

    def __init__(self, *args: typing.Any, **kwargs: typing.Any) -> None:
        name = type(self).__name__
        raise TypeError(f"Models cannot be manually constructed. Use {name}.make() or {name}.create()")

    @classmethod
    def _new_instance(
        cls: typing.Type[ModelT], exists: bool = False, context: typing.Optional[ExecutionContext] = None
    ) -> ModelT:
        instance = cls.__new__(cls)
        instance._attributes = {name: getattr(cls, name).initial_value() for name in cls.__descriptor__.field_names}
        instance._original = {}
        instance._changes = {}
        instance._relations = {}
        instance._exists = exists
        instance._context = context
        instance._hidden = None
        instance._visible = None
        return instance

    # Factories

    @classmethod
    def make(cls: typing.Type[ModelT], attributes: typing.Optional[typing.Mapping] = None, **kwargs: typing.Any) -> ModelT:
        values = dict(attributes or {}, **kwargs)
        instance = cls._new_instance()
        descriptor = cls.__descriptor__
        if descriptor.persistable and descriptor.key_name not in values:
            key = generate_key(descriptor.key_type)
            if key is not None:
                instance._attributes[descriptor.key_name] = key
        instance.sync_original()
        instance.fill(values)
        return instance

    @classmethod
    async def create(
        cls: typing.Type[ModelT],
        attributes: typing.Optional[typing.Mapping] = None,
        context: typing.Optional[ExecutionContext] = None,
        **kwargs: typing.Any,
    ) -> ModelT:
        instance = cls.make(attributes, **kwargs).bind_context(context)
        await instance.save(context=context)
        return instance

    @classmethod
    def from_row(
        cls: typing.Type[ModelT], row: typing.Mapping, context: typing.Optional[ExecutionContext] = None
    ) -> ModelT:
        instance = cls._new_instance(exists=True, context=context)
        instance.fill_from_row(row)
        return instance

    @classmethod
    def fresh_timestamp(cls) -> datetime:
        return datetime.now()

    # Querying

    @classmethod
    def query(cls: typing.Type[ModelT], context: typing.Optional[ExecutionContext] = None) -> Query:
        return Query(cls, context)

    @classmethod
    async def all(cls: typing.Type[ModelT], context: typing.Optional[ExecutionContext] = None) -> typing.List[ModelT]:
        return await cls.query(context).get()

    @classmethod
    def where(cls, *args: typing.Any, context: typing.Optional[ExecutionContext] = None, **kwargs: typing.Any) -> Query:
        return cls.query(context).where(*args, **kwargs)

    @classmethod
    def with_relations(
        cls, *relations: typing.Any, context: typing.Optional[ExecutionContext] = None, **constrained: typing.Any
    ) -> Query:
        return cls.query(context).with_relations(*relations, **constrained)

    @classmethod
    def with_trashed(cls, context: typing.Optional[ExecutionContext] = None) -> Query:
        return cls.query(context).with_trashed()

    @classmethod
    def only_trashed(cls, context: typing.Optional[ExecutionContext] = None) -> Query:
        return cls.query(context).only_trashed()

    @classmethod
    async def find(
        cls: typing.Type[ModelT], key: typing.Any, context: typing.Optional[ExecutionContext] = None
    ) -> typing.Optional[ModelT]:
        return await cls.query(context).find(key)

    @classmethod
    async def find_or_fail(cls: typing.Type[ModelT], key: typing.Any, context: typing.Optional[ExecutionContext] = None) -> ModelT:
        return await cls.query(context).find_or_fail(key)

    @classmethod
    async def find_many(
        cls: typing.Type[ModelT], keys: typing.Iterable, context: typing.Optional[ExecutionContext] = None
    ) -> typing.List[ModelT]:
        return await cls.query(context).find_many(keys)

    @classmethod
    async def count(cls, context: typing.Optional[ExecutionContext] = None) -> int:
        return await cls.query(context).count()

    @classmethod
    async def first_or_new(
        cls: typing.Type[ModelT],
        search: typing.Mapping,
        values: typing.Optional[typing.Mapping] = None,
        context: typing.Optional[ExecutionContext] = None,
    ) -> ModelT:
        instance = await cls.query(context).where(search).first()
        if instance is None:
            instance = cls.make({**search, **(values or {})})
            instance.bind_context(context)
        return instance

    @classmethod
    async def first_or_create(
        cls: typing.Type[ModelT],
        search: typing.Mapping,
        values: typing.Optional[typing.Mapping] = None,
        context: typing.Optional[ExecutionContext] = None,
    ) -> ModelT:
        instance = await cls.first_or_new(search, values, context=context)
        if not instance.exists:
            await instance.save(context=context)
        return instance

    @classmethod
    async def update_or_create(
        cls: typing.Type[ModelT],
        search: typing.Mapping,
        values: typing.Optional[typing.Mapping] = None,
        context: typing.Optional[ExecutionContext] = None,
    ) -> ModelT:
        instance = await cls.first_or_new(search, context=context)
        instance.fill(values or {})
        await instance.save(context=context)
        return instance

    @classmethod
    async def destroy(cls, *keys: typing.Any, context: typing.Optional[ExecutionContext] = None) -> int:
        if len(keys) == 1 and isinstance(keys[0], (list, tuple, set)):
            keys = tuple(keys[0])
        if not keys:
            return 0

        deleted = 0
        for instance in await cls.query(context).find_many(keys):
            await instance.delete(context=context)
            deleted += 1
        return deleted

    # Attribute store

    def __setattr__(self, name: str, value: typing.Any) -> None:
        if name.startswith("_") or _is_settable(getattr(type(self), name, None)):
            super().__setattr__(name, value)
        elif hasattr(type(self), f"set_{name}_attribute"):
            self.set_attribute(name, value)
        else:
            raise UnknownAttribute(type(self).__name__, name)

    def __getattr__(self, name: str) -> typing.Any:
        # only reached when regular lookup fails: virtual attributes backed by an accessor
        if not name.startswith("_") and hasattr(type(self), f"get_{name}_attribute"):
            return self.get_attribute(name)
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")

    def _ensure_field(self, name: str) -> None:
        if name not in self._attributes:
            raise UnknownAttribute(type(self).__name__, name)

    @property
    def exists(self) -> bool:
        return self._exists

    @property
    def attributes(self) -> typing.Dict[str, typing.Any]:
        return dict(self._attributes)

    @property
    def key(self) -> typing.Any:
        return self._attributes.get(self.__descriptor__.key_name)

    def get_attribute(self, name: str) -> typing.Any:
        accessor = getattr(type(self), f"get_{name}_attribute", None)
        if accessor is not None:
            return accessor(self)
        return self.read_attribute(name)

    def set_attribute(self, name: str, value: typing.Any) -> None:
        mutator = getattr(type(self), f"set_{name}_attribute", None)
        if mutator is not None:
            mutator(self, value)
            return
        self.write_attribute(name, value)

    def read_attribute(self, name: str) -> typing.Any:
        self._ensure_field(name)
        return self._attributes[name]

    def write_attribute(self, name: str, value: typing.Any) -> None:
        self._ensure_field(name)
        self._attributes[name] = value

    def fill(self: ModelT, attributes: typing.Optional[typing.Mapping] = None, **kwargs: typing.Any) -> ModelT:
        for name, value in dict(attributes or {}, **kwargs).items():
            self.set_attribute(name, value)
        return self

    def fill_from_row(self, row: typing.Mapping) -> None:
        for name, field in self.__descriptor__.fields.items():
            if name in row:
                self._attributes[name] = from_storage(row[name], field)
        self.sync_original()

    def get_dirty(self) -> typing.Dict[str, typing.Any]:
        return {
            name: value
            for name, value in self._attributes.items()
            if name not in self._original or value != self._original[name]
        }

    def is_dirty(self, *fields: str) -> bool:
        dirty = self.get_dirty()
        if not fields:
            return bool(dirty)
        for name in fields:
            self._ensure_field(name)
        return any(name in dirty for name in fields)

    def is_clean(self, *fields: str) -> bool:
        return not self.is_dirty(*fields)

    def get_original(self, name: typing.Optional[str] = None) -> typing.Any:
        if name is None:
            return copy.deepcopy(self._original)
        self._ensure_field(name)
        return self._original.get(name)

    def sync_original(self: ModelT) -> ModelT:
        self._original = copy.deepcopy(self._attributes)
        return self

    def get_changes(self) -> typing.Dict[str, typing.Any]:
        return dict(self._changes)

    def was_changed(self, *fields: str) -> bool:
        if not fields:
            return bool(self._changes)
        return any(name in self._changes for name in fields)

    # Execution context

    def bind_context(self: ModelT, context: typing.Optional[ExecutionContext]) -> ModelT:
        self._context = context
        return self

    def active_context(self) -> typing.Optional[ExecutionContext]:
        if self._context is not None and self._context.is_active:
            return self._context
        return None

    def execution_context(self, context: typing.Optional[ExecutionContext] = None) -> ExecutionContext:
        if context is not None:
            return context
        return self.active_context() or type(self).registry.database

    # Persistence

    async def save(self, context: typing.Optional[ExecutionContext] = None) -> bool:
        if self._exists:
            return await persistence.update(self, context) > 0
        await persistence.insert(self, context)
        return True

    async def delete(self, context: typing.Optional[ExecutionContext] = None) -> None:
        await persistence.delete(self, context)

    async def restore(self, context: typing.Optional[ExecutionContext] = None) -> None:
        await persistence.restore(self, context)

    async def force_delete(self, context: typing.Optional[ExecutionContext] = None) -> None:
        await persistence.force_delete(self, context)

    @property
    def trashed(self) -> bool:
        descriptor = self.__descriptor__
        return descriptor.soft_deletes and self._attributes[descriptor.deleted_at_column] is not None

    async def refresh(self: ModelT, context: typing.Optional[ExecutionContext] = None) -> ModelT:
        query = type(self).query(self.execution_context(context)).with_trashed()
        fresh = await query.where(self.__descriptor__.key_name, self.key).first()
        if fresh is None:
            raise NotFound(f"{type(self).__name__}({self.key!r}) no longer exists")
        self.fill_from_row(fresh.attributes)
        self._relations.clear()
        return self

    def replicate(self: ModelT) -> ModelT:
        descriptor = self.__descriptor__
        excluded = {descriptor.key_name}
        if descriptor.timestamps:
            excluded |= {descriptor.created_at_column, descriptor.updated_at_column}
        if descriptor.soft_deletes:
            excluded.add(descriptor.deleted_at_column)
        if descriptor.versioned:
            excluded.add(descriptor.version_column)
        values = {name: value for name, value in self._attributes.items() if name not in excluded}
        return type(self).make(copy.deepcopy(values))

    def is_same(self, other: typing.Any) -> bool:
        return (
            isinstance(other, Model)
            and other.__descriptor__.table_name == self.__descriptor__.table_name
            and self.key is not None
            and other.key == self.key
        )

    # Relations

    @property
    def relations(self) -> typing.Mapping[str, typing.Any]:
        return dict(self._relations)

    def _ensure_relation(self, name: str) -> None:
        if name not in self.__descriptor__.relations:
            raise UnknownRelation(type(self).__name__, name)

    def get_relation(self, name: str) -> typing.Any:
        self._ensure_relation(name)
        try:
            return self._relations[name]
        except KeyError:
            raise RelationNotLoaded(f"Relationship {name!r} of {type(self).__name__} has not been loaded")

    def set_relation(self: ModelT, name: str, value: typing.Any) -> ModelT:
        self._ensure_relation(name)
        self._relations[name] = value
        return self

    def unset_relation(self: ModelT, name: str) -> ModelT:
        self._ensure_relation(name)
        self._relations.pop(name, None)
        return self

    def relation_loaded(self, name: str) -> bool:
        self._ensure_relation(name)
        return name in self._relations

    async def load(self: ModelT, *relations: typing.Any, **constrained: typing.Any) -> ModelT:
        await load_relations([self], *relations, context=self.active_context(), **constrained)
        return self

    # Serialization

    def make_hidden(self: ModelT, *fields: str) -> ModelT:
        hidden = self._hidden if self._hidden is not None else set(self.__descriptor__.hidden)
        self._hidden = hidden | set(fields)
        return self

    def make_visible(self: ModelT, *fields: str) -> ModelT:
        hidden = self._hidden if self._hidden is not None else set(self.__descriptor__.hidden)
        self._hidden = hidden - set(fields)
        visible = self._visible if self._visible is not None else set(self.__descriptor__.visible)
        if visible:
            self._visible = visible | set(fields)
        return self

    def _is_visible(self, name: str) -> bool:
        visible = self._visible if self._visible is not None else self.__descriptor__.visible
        hidden = self._hidden if self._hidden is not None else self.__descriptor__.hidden
        return (not visible or name in visible) and name not in hidden

    def to_dict(self) -> typing.Dict[str, typing.Any]:
        data = {name: self.get_attribute(name) for name in self._attributes if self._is_visible(name)}
        for name, value in self._relations.items():
            if not self._is_visible(name):
                continue
            if isinstance(value, (list, tuple)):
                data[name] = [item.to_dict() for item in value]
            elif isinstance(value, Model):
                data[name] = value.to_dict()
            else:
                data[name] = value
        return data

    def to_json(self, **kwargs: typing.Any) -> str:
        return json.dumps(self.to_dict(), default=_json_default, **kwargs)

    @property
    def etag(self) -> str:
        body = json.dumps(self._attributes, default=_json_default, sort_keys=True, separators=(",", ":")).encode()
        digest = base64.b64encode(hashlib.sha1(body).digest()).decode()[:27]
        return f'"{len(body):x}-{digest}"'

    def __repr__(self) -> str:
        fields = ", ".join(f"{name}={value!r}" for name, value in self._attributes.items())
        return f"{type(self).__name__}({fields})"
