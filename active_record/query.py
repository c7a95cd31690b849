import copy
import inspect
import logging
import math
import operator
import typing
from collections.abc import Mapping

import attr
import sqlalchemy as sa
from sqlalchemy.sql import ClauseElement

from active_record.eager import load_relations
from active_record.errors import NotFound, UnknownAttribute, UnknownScope, UnsupportedOperation
from active_record.storages.sqlalchemy.database import ExecutionContext
from active_record.storages.sqlalchemy.types import to_storage


logger = logging.getLogger(__name__)

EXCLUDE_TRASHED = "exclude"
WITH_TRASHED = "include"
ONLY_TRASHED = "only"

OPERATORS: typing.Dict[str, typing.Callable[[typing.Any, typing.Any], ClauseElement]] = {
    "=": operator.eq,
    "==": operator.eq,
    "!=": operator.ne,
    "<>": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "like": lambda column, value: column.like(value),
    "not like": lambda column, value: column.not_like(value),
    "in": lambda column, value: column.in_(list(value)),
    "not in": lambda column, value: column.not_in(list(value)),
}


@attr.s(auto_attribs=True)
class Page:
    items: typing.List[typing.Any]
    total: int
    per_page: int
    current_page: int

    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.per_page))

    @property
    def first_item(self) -> int:
        return (self.current_page - 1) * self.per_page + 1

    @property
    def last_item(self) -> int:
        return min(self.current_page * self.per_page, self.total)

    @property
    def has_more_pages(self) -> bool:
        return self.current_page < self.last_page

    def __iter__(self) -> typing.Iterator[typing.Any]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


class Query:
    """Fluent, re-usable select over one model's table.

    Builder methods mutate the query and return it; use :meth:`clone` to branch.
    Soft-deleted rows are filtered out when the statement is built, so the
    filter survives :meth:`clear_where` and any other predicate rebuild.
    """

    def __init__(self, model: typing.Type, context: typing.Optional[ExecutionContext] = None) -> None:
        self.model = model
        self.context = context
        self.table = model.registry.table_for(model)
        self._criteria: typing.List[ClauseElement] = []
        self._order_by: typing.List[ClauseElement] = []
        self._limit: typing.Optional[int] = None
        self._offset: typing.Optional[int] = None
        self._trashed = EXCLUDE_TRASHED
        self._eager: typing.Dict[str, typing.Optional[typing.Callable]] = {}
        self._joins: typing.List[typing.Tuple[sa.TableClause, ClauseElement]] = []
        self._columns: typing.List[ClauseElement] = []

    @property
    def descriptor(self):
        return self.model.__descriptor__

    def clone(self) -> "Query":
        query = copy.copy(self)
        query._criteria = list(self._criteria)
        query._order_by = list(self._order_by)
        query._eager = dict(self._eager)
        query._joins = list(self._joins)
        query._columns = list(self._columns)
        return query

    def _executor(self) -> ExecutionContext:
        if self.context is not None:
            return self.context
        return self.model.registry.database

    def _column(self, name: typing.Any) -> typing.Any:
        if isinstance(name, ClauseElement):
            return name
        if name in self.table.c:
            return self.table.c[name]
        if "." in name:
            table_name, column_name = name.rsplit(".", 1)
            for table in [self.table, *(target for target, _ in self._joins)]:
                if table.name == table_name and column_name in table.c:
                    return table.c[column_name]
        raise UnknownAttribute(self.model.__name__, name)

    # Predicates

    def _condition(self, column: typing.Any, op: str, value: typing.Any) -> ClauseElement:
        try:
            build = OPERATORS[op.lower()]
        except KeyError:
            raise ValueError(f"Unsupported operator {op!r}")
        if op.lower() in ("in", "not in"):
            return build(self._column(column), [to_storage(item) for item in value])
        return build(self._column(column), to_storage(value))

    def _conditions(self, *args: typing.Any, **kwargs: typing.Any) -> typing.List[ClauseElement]:
        conditions = []
        if len(args) == 1 and isinstance(args[0], Mapping):
            conditions += [self._condition(column, "=", value) for column, value in args[0].items()]
        elif len(args) == 1 and isinstance(args[0], ClauseElement):
            conditions.append(args[0])
        elif len(args) == 2:
            conditions.append(self._condition(args[0], "=", args[1]))
        elif len(args) == 3:
            conditions.append(self._condition(*args))
        elif args:
            raise TypeError(f"where() takes a mapping, an expression, or 2 to 3 arguments, got {len(args)}")
        conditions += [self._condition(column, "=", value) for column, value in kwargs.items()]
        return conditions

    def where(self, *args: typing.Any, **kwargs: typing.Any) -> "Query":
        self._criteria += self._conditions(*args, **kwargs)
        return self

    def or_where(self, *args: typing.Any, **kwargs: typing.Any) -> "Query":
        conditions = self._conditions(*args, **kwargs)
        if not self._criteria:
            self._criteria = conditions
        else:
            self._criteria = [sa.or_(sa.and_(*self._criteria), sa.and_(*conditions))]
        return self

    def where_in(self, column: str, values: typing.Iterable) -> "Query":
        return self.where(column, "in", values)

    def where_not_in(self, column: str, values: typing.Iterable) -> "Query":
        return self.where(column, "not in", values)

    def where_null(self, column: str) -> "Query":
        self._criteria.append(self._column(column).is_(None))
        return self

    def where_not_null(self, column: str) -> "Query":
        self._criteria.append(self._column(column).is_not(None))
        return self

    def where_between(self, column: str, values: typing.Sequence) -> "Query":
        low, high = values
        self._criteria.append(self._column(column).between(to_storage(low), to_storage(high)))
        return self

    def where_not_between(self, column: str, values: typing.Sequence) -> "Query":
        low, high = values
        self._criteria.append(sa.not_(self._column(column).between(to_storage(low), to_storage(high))))
        return self

    def clear_where(self) -> "Query":
        self._criteria = []
        return self

    def scope(self, name: str, *args: typing.Any, **kwargs: typing.Any) -> "Query":
        method = getattr(self.model, f"scope_{name}", None)
        if method is None:
            raise UnknownScope(self.model.__name__, name)
        result = method(self, *args, **kwargs)
        return self if result is None else result

    # Soft deletes

    def with_trashed(self) -> "Query":
        self._trashed = WITH_TRASHED
        return self

    def only_trashed(self) -> "Query":
        self._trashed = ONLY_TRASHED
        return self

    def without_trashed(self) -> "Query":
        self._trashed = EXCLUDE_TRASHED
        return self

    def _where_clause(self) -> typing.List[ClauseElement]:
        criteria = list(self._criteria)
        descriptor = self.descriptor
        if descriptor.soft_deletes:
            column = self.table.c[descriptor.deleted_at_column]
            if self._trashed == EXCLUDE_TRASHED:
                criteria.append(column.is_(None))
            elif self._trashed == ONLY_TRASHED:
                criteria.append(column.is_not(None))
        return criteria

    # Ordering and slicing

    def order_by(self, column: str, direction: str = "asc") -> "Query":
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            raise ValueError(f"Unsupported order direction {direction!r}")
        column = self._column(column)
        self._order_by.append(column.desc() if direction == "desc" else column.asc())
        return self

    def latest(self, column: typing.Optional[str] = None) -> "Query":
        return self.order_by(column or self.descriptor.created_at_column, "desc")

    def oldest(self, column: typing.Optional[str] = None) -> "Query":
        return self.order_by(column or self.descriptor.created_at_column, "asc")

    def limit(self, count: int) -> "Query":
        self._limit = count
        return self

    take = limit

    def offset(self, count: int) -> "Query":
        self._offset = count
        return self

    skip = offset

    # Joins and relations

    def join(self, target: sa.TableClause, onclause: ClauseElement) -> "Query":
        self._joins.append((target, onclause))
        return self

    def add_columns(self, *columns: ClauseElement) -> "Query":
        self._columns += columns
        return self

    def with_relations(self, *relations: typing.Any, **constrained: typing.Callable) -> "Query":
        for item in relations:
            if isinstance(item, str):
                self._eager.setdefault(item, None)
            elif isinstance(item, Mapping):
                self._eager.update(item)
            else:
                for path in item:
                    self._eager.setdefault(path, None)
        self._eager.update(constrained)
        return self

    # Statements

    def _source(self) -> sa.FromClause:
        source = self.table
        for target, onclause in self._joins:
            source = source.join(target, onclause)
        return source

    def _select(self) -> sa.Select:
        statement = sa.select(self.table, *self._columns).select_from(self._source()).where(*self._where_clause())
        if self._order_by:
            statement = statement.order_by(*self._order_by)
        if self._limit is not None:
            statement = statement.limit(self._limit)
        if self._offset is not None:
            statement = statement.offset(self._offset)
        return statement

    def _scalar_select(self, expression: ClauseElement) -> sa.Select:
        return sa.select(expression).select_from(self._source()).where(*self._where_clause())

    def to_sql(self) -> str:
        return str(self._select())

    # Materialisation

    async def get_pairs(self) -> typing.List[typing.Tuple[typing.Dict[str, typing.Any], typing.Any]]:
        """Fetch matching rows together with the entities built from them, eager loads applied."""
        result = await self._executor().execute(self._select())
        pairs = [(row, self.model.from_row(row, self.context)) for row in result.rows]
        if pairs and self._eager:
            await load_relations([entity for _, entity in pairs], self._eager, context=self.context)
        return pairs

    async def get(self) -> typing.List[typing.Any]:
        return [entity for _, entity in await self.get_pairs()]

    def __await__(self) -> typing.Generator[typing.Any, None, typing.List[typing.Any]]:
        return self.get().__await__()

    async def first(self) -> typing.Optional[typing.Any]:
        entities = await self.clone().limit(1).get()
        return entities[0] if entities else None

    async def first_or_fail(self) -> typing.Any:
        entity = await self.first()
        if entity is None:
            raise NotFound(f"No {self.model.__name__} matches the query")
        return entity

    async def find(self, key: typing.Any) -> typing.Optional[typing.Any]:
        return await self.clone().where(self.descriptor.key_name, key).first()

    async def find_or_fail(self, key: typing.Any) -> typing.Any:
        entity = await self.find(key)
        if entity is None:
            raise NotFound(f"{self.model.__name__}({key!r}) not found")
        return entity

    async def find_many(self, keys: typing.Iterable) -> typing.List[typing.Any]:
        keys = list(keys)
        if not keys:
            return []
        return await self.clone().where_in(self.descriptor.key_name, keys).get()

    # Aggregates

    async def _aggregate(self, expression: ClauseElement) -> typing.Any:
        result = await self._executor().execute(self._scalar_select(expression))
        return result.scalar()

    async def count(self) -> int:
        return int(await self._aggregate(sa.func.count()) or 0)

    async def max(self, column: str) -> typing.Any:
        return await self._aggregate(sa.func.max(self._column(column)))

    async def min(self, column: str) -> typing.Any:
        return await self._aggregate(sa.func.min(self._column(column)))

    async def avg(self, column: str) -> typing.Optional[float]:
        value = await self._aggregate(sa.func.avg(self._column(column)))
        return None if value is None else float(value)

    async def sum(self, column: str) -> typing.Any:
        return await self._aggregate(sa.func.sum(self._column(column)))

    async def exists(self) -> bool:
        return await self.count() > 0

    async def doesnt_exist(self) -> bool:
        return not await self.exists()

    async def paginate(self, page: int = 1, per_page: int = 15) -> Page:
        total = await self.count()
        items = await self.clone().offset((page - 1) * per_page).limit(per_page).get()
        return Page(items, total, per_page, page)

    async def chunk(self, size: int, callback: typing.Callable[[typing.List[typing.Any]], typing.Any]) -> bool:
        """Feed matching entities to ``callback`` in batches of ``size``.

        Ordered by primary key unless an order is set. Returns False when the
        callback stopped the iteration by returning False.
        """
        query = self.clone()
        if not query._order_by:
            query.order_by(self.descriptor.key_name)

        page = 1
        while True:
            entities = await query.clone().offset((page - 1) * size).limit(size).get()
            if not entities:
                return True
            outcome = callback(entities)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if outcome is False:
                return False
            if len(entities) < size:
                return True
            page += 1

    # Mutations

    def _mutation_criteria(self) -> typing.List[ClauseElement]:
        if self._limit is None and self._offset is None:
            return self._where_clause()

        key_name = self.descriptor.key_name
        if key_name not in self.table.c:
            raise UnsupportedOperation(f"Cannot limit a bulk write on {self.model.__name__} without a primary key")
        key = self.table.c[key_name]
        keys = sa.select(key).where(*self._where_clause()).order_by(*self._order_by).correlate(None)
        if self._limit is not None:
            keys = keys.limit(self._limit)
        if self._offset is not None:
            keys = keys.offset(self._offset)
        # sliced writes target the keys the equivalent select would return
        return [key.in_(keys)]

    async def update(self, values: typing.Optional[typing.Mapping] = None, **kwargs: typing.Any) -> int:
        if self._joins:
            raise UnsupportedOperation("Cannot update through a joined query")

        values = dict(values or {}, **kwargs)
        descriptor = self.descriptor
        if descriptor.timestamps and descriptor.updated_at_column not in values:
            values[descriptor.updated_at_column] = self.model.fresh_timestamp()

        payload = {self._column(name).name: to_storage(value) for name, value in values.items()}
        if descriptor.versioned and descriptor.version_column not in payload:
            payload[descriptor.version_column] = self.table.c[descriptor.version_column] + 1

        statement = sa.update(self.table).where(*self._mutation_criteria()).values(payload)
        result = await self._executor().execute(statement)
        logger.debug("Bulk updated %d %s rows: %s", result.rowcount, self.model.__name__, ", ".join(sorted(payload)))
        return result.rowcount

    async def delete(self) -> int:
        descriptor = self.descriptor
        if descriptor.soft_deletes:
            return await self.update({descriptor.deleted_at_column: self.model.fresh_timestamp()})
        return await self.force_delete()

    async def force_delete(self) -> int:
        if self._joins:
            raise UnsupportedOperation("Cannot delete through a joined query")

        result = await self._executor().execute(sa.delete(self.table).where(*self._mutation_criteria()))
        logger.debug("Bulk deleted %d %s rows", result.rowcount, self.model.__name__)
        return result.rowcount

    async def restore(self) -> int:
        descriptor = self.descriptor
        if not descriptor.soft_deletes:
            raise UnsupportedOperation(f"{self.model.__name__} does not use soft deletes")
        return await self.clone().only_trashed().update({descriptor.deleted_at_column: None})

    def __repr__(self) -> str:
        return f"<Query {self.model.__name__}: {self.to_sql()}>"
