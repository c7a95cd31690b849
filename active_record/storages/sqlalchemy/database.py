import logging
import typing
from contextlib import asynccontextmanager
from contextvars import ContextVar

import attr
from sqlalchemy import MetaData
from sqlalchemy.engine import Dialect
from sqlalchemy.exc import InvalidRequestError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.sql import Executable

from active_record.config import DatabaseConfig
from active_record.errors import NestedTransaction, UnsupportedOperation


logger = logging.getLogger(__name__)

# databases with a transaction open in the current task
_open_transactions: ContextVar[typing.Tuple["Database", ...]] = ContextVar("open_transactions", default=())


@attr.s(auto_attribs=True)
class StatementResult:
    rows: typing.List[typing.Dict[str, typing.Any]] = attr.Factory(list)
    rowcount: int = 0
    inserted_primary_key: typing.Optional[typing.Tuple[typing.Any, ...]] = None

    def scalar(self) -> typing.Any:
        if not self.rows:
            return None
        return next(iter(self.rows[0].values()))


async def _run(connection: AsyncConnection, statement: Executable) -> StatementResult:
    result = await connection.execute(statement)
    if result.returns_rows:
        return StatementResult(rows=[dict(row) for row in result.mappings()], rowcount=result.rowcount)

    inserted_primary_key = None
    if getattr(statement, "is_insert", False):
        try:
            inserted_primary_key = tuple(result.inserted_primary_key or ())
        except InvalidRequestError:
            # multi-row inserts carry no single primary key
            inserted_primary_key = None
    return StatementResult(rowcount=result.rowcount, inserted_primary_key=inserted_primary_key)


class Database:
    """Default execution context: every statement runs in its own short transaction."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, **engine_options: typing.Any) -> "Database":
        return cls(create_async_engine(url, **engine_options))

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "Database":
        return cls.from_url(config.url, **config.engine_options())

    @property
    def database(self) -> "Database":
        return self

    @property
    def dialect(self) -> Dialect:
        return self.engine.dialect

    @property
    def supports_returning(self) -> bool:
        return bool(getattr(self.engine.dialect, "insert_returning", False))

    @property
    def is_active(self) -> bool:
        return True

    async def execute(self, statement: Executable) -> StatementResult:
        async with self.engine.begin() as connection:
            return await _run(connection, statement)

    @asynccontextmanager
    async def transaction(self) -> typing.AsyncGenerator["Transaction", None]:
        if self in _open_transactions.get():
            raise NestedTransaction("Nested transactions are not supported")

        async with self.engine.connect() as connection:
            await connection.begin()
            transaction = Transaction(self, connection)
            token = _open_transactions.set(_open_transactions.get() + (self,))
            logger.debug("Transaction started")
            try:
                yield transaction
            except BaseException:
                await connection.rollback()
                logger.debug("Transaction rolled back")
                raise
            else:
                await connection.commit()
                logger.debug("Transaction committed")
            finally:
                transaction.close()
                _open_transactions.reset(token)

    async def create_all(self, metadata: MetaData) -> None:
        async with self.engine.begin() as connection:
            await connection.run_sync(metadata.create_all)

    async def drop_all(self, metadata: MetaData) -> None:
        async with self.engine.begin() as connection:
            await connection.run_sync(metadata.drop_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


class Transaction:
    """Execution context pinned to one connection for the lifetime of a transactional scope."""

    def __init__(self, database: Database, connection: AsyncConnection) -> None:
        self.database = database
        self._connection = connection
        self._active = True

    @property
    def supports_returning(self) -> bool:
        return self.database.supports_returning

    @property
    def is_active(self) -> bool:
        return self._active

    async def execute(self, statement: Executable) -> StatementResult:
        if not self._active:
            raise UnsupportedOperation("Transaction has already finished")
        return await _run(self._connection, statement)

    def transaction(self) -> typing.NoReturn:
        raise NestedTransaction("Nested transactions are not supported")

    def close(self) -> None:
        self._active = False


ExecutionContext = typing.Union[Database, Transaction]
