import abc
import copy
import types
import typing
from collections import deque

import attr
import inflection

from active_record.errors import InvalidModel, MultipleIdentities


T = typing.TypeVar("T")

_UNION_ORIGINS = (typing.Union, types.UnionType)


class Identity(typing.Generic[T]):
    @classmethod
    def is_identity(cls, field_type: typing.Any) -> bool:
        return typing.get_origin(field_type) is cls


def _is_generic(field_type: typing.Any) -> bool:
    return typing.get_origin(field_type) is not None


def _get_wrapped_type(wrapped_type: typing.Any) -> typing.Type:
    return next(arg for arg in typing.get_args(wrapped_type) if arg is not type(None))


def _is_field_nullable(field_type: typing.Any) -> bool:
    return typing.get_origin(field_type) in _UNION_ORIGINS and type(None) in typing.get_args(field_type)


def _is_class_var(field_type: typing.Any) -> bool:
    return field_type is typing.ClassVar or typing.get_origin(field_type) is typing.ClassVar


def table_name_for(model_name: str) -> str:
    return inflection.pluralize(inflection.underscore(model_name))


def foreign_key_for(table_name: str) -> str:
    return f"{inflection.singularize(table_name)}_id"


class FieldAccessor:
    """Class-level stand-in for a declared field, routing reads and writes through the attribute store."""

    def __init__(self, name: str, default: typing.Any = None) -> None:
        self.name = name
        self.default = default

    def __get__(self, instance: typing.Any, owner: typing.Type) -> typing.Any:
        if instance is None:
            return self
        return instance.get_attribute(self.name)

    def __set__(self, instance: typing.Any, value: typing.Any) -> None:
        instance.set_attribute(self.name, value)

    def initial_value(self) -> typing.Any:
        if isinstance(self.default, attr.Factory):
            return self.default.factory()
        return copy.copy(self.default)

    def __repr__(self) -> str:
        return f"<field {self.name}>"


class Visitor:
    def traverse_from(self, node: "Node") -> None:
        node.accept(self)
        for child in node.children:
            self.traverse_from(child)
        node.farewell(self)

    def visit_field(self, field: "FieldNode") -> None:
        pass

    def leave_field(self, field: "FieldNode") -> None:
        pass

    def visit_model(self, model: "ModelNode") -> None:
        pass

    def leave_model(self, model: "ModelNode") -> None:
        pass

    def visit_relation(self, relation: "RelationNode") -> None:
        pass

    def leave_relation(self, relation: "RelationNode") -> None:
        pass


class NodeMeta(abc.ABCMeta):
    def __new__(mcs, name: str, bases: tuple, namespace: dict) -> typing.Type:
        cls = super().__new__(mcs, name, bases, namespace)
        return attr.s(auto_attribs=True)(cls)


class Node(metaclass=NodeMeta):
    name: str
    type: typing.Type
    nullable: bool = False
    children: typing.List["Node"] = attr.Factory(list)

    @abc.abstractmethod
    def accept(self, visitor: Visitor) -> None:
        pass

    @abc.abstractmethod
    def farewell(self, visitor: Visitor) -> None:
        pass


class FieldNode(Node):
    is_identity: bool = False
    default: typing.Any = None

    def accept(self, visitor: Visitor) -> None:
        visitor.visit_field(self)

    def farewell(self, visitor: Visitor) -> None:
        visitor.leave_field(self)


class RelationNode(Node):
    related: typing.Union[str, typing.Type, None] = None

    def accept(self, visitor: Visitor) -> None:
        visitor.visit_relation(self)

    def farewell(self, visitor: Visitor) -> None:
        visitor.leave_relation(self)


class ModelNode(Node):
    table_name: str = ""

    def accept(self, visitor: Visitor) -> None:
        visitor.visit_model(self)

    def farewell(self, visitor: Visitor) -> None:
        visitor.leave_model(self)


@attr.s(auto_attribs=True)
class SchemaTree:
    root: ModelNode

    def __iter__(self) -> typing.Generator[Node, None, None]:
        def iterate_dfs() -> typing.Generator[Node, None, None]:
            nodes_left: typing.Deque[Node] = deque([self.root])

            while nodes_left:
                current = nodes_left.pop()
                yield current
                nodes_left.extend(current.children[::-1])

        return iterate_dfs()

    @property
    def fields(self) -> typing.List[FieldNode]:
        return [node for node in self.root.children if isinstance(node, FieldNode)]

    @property
    def relations(self) -> typing.List[RelationNode]:
        return [node for node in self.root.children if isinstance(node, RelationNode)]


@attr.s(auto_attribs=True)
class ModelDescriptor:
    """Static description of one mapped table, derived once per model class."""

    model: typing.Type
    tree: SchemaTree
    table_name: str
    key_name: typing.Optional[str]
    key_type: typing.Any = "increment"
    timestamps: bool = False
    created_at_column: str = "created_at"
    updated_at_column: str = "updated_at"
    soft_deletes: bool = False
    deleted_at_column: str = "deleted_at"
    versioned: bool = False
    version_column: str = "version"
    hidden: typing.FrozenSet[str] = frozenset()
    visible: typing.FrozenSet[str] = frozenset()
    relations: typing.Dict[str, typing.Any] = attr.Factory(dict)

    @property
    def name(self) -> str:
        return self.model.__name__

    @property
    def fields(self) -> typing.Dict[str, FieldNode]:
        return {node.name: node for node in self.tree.fields}

    @property
    def field_names(self) -> typing.List[str]:
        return [node.name for node in self.tree.fields]

    @property
    def persistable(self) -> bool:
        return self.key_name is not None and self.key_name in self.fields

    def has_field(self, name: str) -> bool:
        return any(node.name == name for node in self.tree.fields)


def _class_default(model: typing.Type, name: str) -> typing.Any:
    for klass in model.__mro__:
        if name in vars(klass):
            value = vars(klass)[name]
            return value.default if isinstance(value, FieldAccessor) else value
    return None


def build(model: typing.Type, relations: typing.Optional[typing.Dict[str, typing.Any]] = None) -> SchemaTree:
    children: typing.List[Node] = []

    for field_name, field_type in typing.get_type_hints(model).items():
        if _is_class_var(field_type):
            continue

        field_nullable = False
        is_identity = False

        if _is_generic(field_type):
            if Identity.is_identity(field_type):
                field_type = typing.get_args(field_type)[0]
                is_identity = True
            elif _is_field_nullable(field_type):
                field_type = _get_wrapped_type(field_type)
                field_nullable = True

        children.append(
            FieldNode(field_name, field_type, field_nullable, [], is_identity, _class_default(model, field_name))
        )

    if sum(1 for node in children if node.is_identity) > 1:
        raise MultipleIdentities(f"{model.__name__} declares more than one Identity field")

    for relation_name, relation in (relations or {}).items():
        children.append(RelationNode(relation_name, type(relation), True, [], relation.related))

    table_name = getattr(model, "table_name", None) or table_name_for(model.__name__)
    root = ModelNode(inflection.underscore(model.__name__), model, False, children, table_name)
    return SchemaTree(root)


def describe(model: typing.Type, relations: typing.Dict[str, typing.Any]) -> ModelDescriptor:
    tree = build(model, relations)
    identities = [node.name for node in tree.fields if node.is_identity]
    key_name = identities[0] if identities else getattr(model, "primary_key", "id")

    descriptor = ModelDescriptor(
        model=model,
        tree=tree,
        table_name=tree.root.table_name,
        key_name=key_name,
        key_type=getattr(model, "key_type", "increment"),
        timestamps=bool(getattr(model, "timestamps", False)),
        created_at_column=getattr(model, "created_at_column", "created_at"),
        updated_at_column=getattr(model, "updated_at_column", "updated_at"),
        soft_deletes=bool(getattr(model, "soft_deletes", False)),
        deleted_at_column=getattr(model, "deleted_at_column", "deleted_at"),
        versioned=bool(getattr(model, "versioned", False)),
        version_column=getattr(model, "version_column", "version"),
        hidden=frozenset(getattr(model, "hidden", ())),
        visible=frozenset(getattr(model, "visible", ())),
        relations=dict(relations),
    )

    required = []
    if descriptor.timestamps:
        required += [descriptor.created_at_column, descriptor.updated_at_column]
    if descriptor.soft_deletes:
        required.append(descriptor.deleted_at_column)
    if descriptor.versioned:
        required.append(descriptor.version_column)
    missing = [column for column in required if not descriptor.has_field(column)]
    if missing:
        raise InvalidModel(f"{model.__name__} is missing declared fields: {', '.join(missing)}")

    return descriptor
