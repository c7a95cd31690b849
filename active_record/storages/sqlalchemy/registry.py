import logging
import typing

import attr
from sqlalchemy import MetaData, Table

from active_record.errors import UnboundRegistry
from active_record.registry import Registry
from active_record.storages.sqlalchemy.constructing_table.visitor import TableConstructingVisitor
from active_record.storages.sqlalchemy.database import Database


logger = logging.getLogger(__name__)


@attr.s(auto_attribs=True)
class SaRegistry(Registry):
    metadata: MetaData = attr.Factory(MetaData)
    tables: typing.Dict[typing.Type, Table] = attr.Factory(dict)
    _database: typing.Optional[Database] = None

    def register(self, model: typing.Type) -> None:
        super().register(model)
        descriptor = model.__descriptor__
        visitor = TableConstructingVisitor(self.metadata, descriptor.key_name)
        visitor.traverse_from(descriptor.tree.root)
        self.tables[model] = visitor.table

    def table_for(self, model: typing.Type) -> Table:
        return self.tables[model]

    def bind(self, database: Database) -> "SaRegistry":
        self._database = database
        return self

    @property
    def database(self) -> Database:
        if self._database is None:
            raise UnboundRegistry("Registry is not bound to a database, call registry.bind(database) first")
        return self._database

    @property
    def is_bound(self) -> bool:
        return self._database is not None

    async def create_all(self) -> None:
        await self.database.create_all(self.metadata)

    async def drop_all(self) -> None:
        await self.database.drop_all(self.metadata)
