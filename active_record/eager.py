"""Batched relation loading for a list of entities.

Dotted paths (``"comments.author"``) are merged into one tree, so every
relation level costs one query per model class regardless of the batch size.
Nothing is written into the relation caches until every level has loaded.
"""
import logging
import typing
from collections.abc import Mapping

import attr

from active_record.errors import UnknownRelation


logger = logging.getLogger(__name__)

Constraint = typing.Optional[typing.Callable[[typing.Any], typing.Any]]


@attr.s(auto_attribs=True)
class PathNode:
    name: str
    constraint: Constraint = None
    children: typing.Dict[str, "PathNode"] = attr.Factory(dict)


def normalize(relations: typing.Iterable[typing.Any], constrained: typing.Mapping[str, Constraint]) -> typing.Dict[str, Constraint]:
    paths: typing.Dict[str, Constraint] = {}
    for item in relations:
        if isinstance(item, str):
            paths.setdefault(item, None)
        elif isinstance(item, Mapping):
            paths.update(item)
        else:
            for path in item:
                paths.setdefault(path, None)
    paths.update(constrained)
    return paths


def build_tree(paths: typing.Mapping[str, Constraint]) -> typing.Dict[str, PathNode]:
    root: typing.Dict[str, PathNode] = {}
    for path, constraint in paths.items():
        level = root
        segments = path.split(".")
        for position, segment in enumerate(segments):
            node = level.setdefault(segment, PathNode(segment))
            if position == len(segments) - 1 and constraint is not None:
                node.constraint = constraint
            level = node.children
    return root


def validate(model: typing.Type, nodes: typing.Mapping[str, PathNode]) -> None:
    relations = model.__descriptor__.relations
    for node in nodes.values():
        relation = relations.get(node.name)
        if relation is None:
            raise UnknownRelation(model.__name__, node.name)
        if node.children:
            validate(relation.resolve_related(model), node.children)


def _group_by_model(entities: typing.Iterable[typing.Any]) -> typing.Dict[typing.Type, typing.List[typing.Any]]:
    groups: typing.Dict[typing.Type, typing.List[typing.Any]] = {}
    for entity in entities:
        groups.setdefault(type(entity), []).append(entity)
    return groups


def _flatten(value: typing.Any) -> typing.List[typing.Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


async def _load_level(
    entities: typing.List[typing.Any],
    nodes: typing.Mapping[str, PathNode],
    context: typing.Any,
    staged: typing.List[typing.Tuple[typing.Any, str, typing.Any]],
    depth: int = 0,
) -> None:
    for node in nodes.values():
        loaded: typing.Dict[int, typing.Any] = {}
        for model, group in _group_by_model(entities).items():
            relation = model.__descriptor__.relations[node.name]
            for parent, value in await relation.eager_load(model, group, node.constraint, context):
                staged.append((parent, node.name, value))
                loaded.update((id(entity), entity) for entity in _flatten(value))

        logger.debug("Eager loaded %r for %d parents (depth %d): %d related", node.name, len(entities), depth, len(loaded))
        if node.children and loaded:
            await _load_level(list(loaded.values()), node.children, context, staged, depth + 1)


async def load_relations(
    entities: typing.Iterable[typing.Any],
    *relations: typing.Any,
    context: typing.Any = None,
    **constrained: Constraint,
) -> typing.List[typing.Any]:
    """Load ``relations`` for every entity in one query per relation level.

    Each relation is a dotted path, an iterable of paths, or a mapping of path
    to constraint; keyword arguments are constrained paths as well. A
    constraint receives the relation query and may refine it in place or
    return a replacement.

    Unknown relation names raise :class:`UnknownRelation` before any query
    runs. If a query fails, no entity's relation cache is touched.
    """
    entities = [entity for entity in entities if entity is not None]
    tree = build_tree(normalize(relations, constrained))
    if not entities or not tree:
        return entities

    for model in _group_by_model(entities):
        validate(model, tree)

    staged: typing.List[typing.Tuple[typing.Any, str, typing.Any]] = []
    await _load_level(entities, tree, context, staged)

    for entity, name, value in staged:
        entity.set_relation(name, value)
    return entities
