import functools
import logging
import typing
from contextlib import asynccontextmanager

from active_record.errors import NestedTransaction, UnsupportedOperation
from active_record.storages.sqlalchemy.database import Transaction


logger = logging.getLogger(__name__)

CONTEXTUAL_METHODS = frozenset(
    {
        "query",
        "all",
        "where",
        "with_relations",
        "with_trashed",
        "only_trashed",
        "find",
        "find_or_fail",
        "find_many",
        "count",
        "create",
        "first_or_new",
        "first_or_create",
        "update_or_create",
        "destroy",
    }
)


class BoundModel:
    """A model class whose queries and writes run on one transaction.

    Entities it creates or loads remember the transaction, so their later
    ``save()``/``delete()`` calls join it too.
    """

    def __init__(self, model: typing.Type, context: Transaction) -> None:
        self.model = model
        self.context = context

    def make(self, attributes: typing.Optional[typing.Mapping] = None, **kwargs: typing.Any) -> typing.Any:
        return self.model.make(attributes, **kwargs).bind_context(self.context)

    def from_row(self, row: typing.Mapping) -> typing.Any:
        return self.model.from_row(row, self.context)

    def __getattr__(self, name: str) -> typing.Any:
        attribute = getattr(self.model, name)
        if name in CONTEXTUAL_METHODS:
            return functools.partial(attribute, context=self.context)
        return attribute

    def __repr__(self) -> str:
        return f"<BoundModel {self.model.__name__}>"


@asynccontextmanager
async def transaction(*models: typing.Type) -> typing.AsyncGenerator[typing.Any, None]:
    """Run a block on a single transaction shared by ``models``.

    Yields one :class:`BoundModel` for a single model, a tuple of them
    otherwise. Leaving the block normally commits; any exception rolls every
    write back and propagates.
    Opening another transaction on the same database inside the block
    raises :class:`NestedTransaction`.
    """
    if not models:
        raise TypeError("transaction() requires at least one model")
    if any(isinstance(model, BoundModel) for model in models):
        raise NestedTransaction("Nested transactions are not supported")

    databases = {id(model.registry.database): model.registry.database for model in models}
    if len(databases) > 1:
        raise UnsupportedOperation("Models bound to different databases cannot share a transaction")
    database = next(iter(databases.values()))

    async with database.transaction() as context:
        bound = tuple(BoundModel(model, context) for model in models)
        logger.debug("Bound %s to transaction", ", ".join(model.__name__ for model in models))
        yield bound[0] if len(bound) == 1 else bound
