import typing

import pytest
from _pytest.config.argparsing import Parser
from _pytest.fixtures import SubRequest
from sqlalchemy import event

from active_record import Database


def pytest_addoption(parser: Parser) -> None:
    parser.addoption("--database-url", action="store", default=None)


class StatementRecorder:
    def __init__(self) -> None:
        self.statements: typing.List[typing.Tuple[str, typing.Any]] = []

    def __call__(self, connection, cursor, statement, parameters, context, executemany) -> None:
        self.statements.append((statement, parameters))

    def clear(self) -> None:
        self.statements.clear()

    @property
    def count(self) -> int:
        return len(self.statements)

    def of_kind(self, kind: str) -> typing.List[typing.Tuple[str, typing.Any]]:
        return [(sql, params) for sql, params in self.statements if sql.lstrip().upper().startswith(kind.upper())]


@pytest.fixture()
async def database(request: SubRequest, tmp_path) -> typing.AsyncGenerator[Database, None]:
    url = request.config.getoption("--database-url") or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    database = Database.from_url(url)
    yield database
    await database.dispose()


@pytest.fixture()
def statements(database: Database) -> typing.Generator[StatementRecorder, None, None]:
    recorder = StatementRecorder()
    event.listen(database.engine.sync_engine, "before_cursor_execute", recorder)
    yield recorder
    event.remove(database.engine.sync_engine, "before_cursor_execute", recorder)
