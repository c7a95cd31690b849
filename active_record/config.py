"""Connection settings, read from the environment or passed explicitly."""
import logging
import os

import attr


logger = logging.getLogger(__name__)

DEFAULT_URL = "sqlite+aiosqlite:///:memory:"


@attr.s(auto_attribs=True, frozen=True)
class DatabaseConfig:
    """Settings used to build the async engine.

    Attributes:
        url: SQLAlchemy database URL with an async driver
        echo: Log every emitted statement through SQLAlchemy's engine logger
        pool_size: Connections kept open in the pool (ignored for SQLite)
        max_overflow: Extra connections allowed above ``pool_size`` (ignored for SQLite)
        pool_recycle: Seconds after which pooled connections are recycled (ignored for SQLite)
    """

    url: str = DEFAULT_URL
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    pool_recycle: int = 3600

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        url = os.getenv("ACTIVE_RECORD_DATABASE_URL")
        if not url:
            logger.debug("ACTIVE_RECORD_DATABASE_URL not set, using %s", DEFAULT_URL)
            url = DEFAULT_URL
        return cls(
            url=url,
            echo=os.getenv("ACTIVE_RECORD_ECHO", "false").lower() == "true",
            pool_size=int(os.getenv("ACTIVE_RECORD_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("ACTIVE_RECORD_MAX_OVERFLOW", "10")),
            pool_recycle=int(os.getenv("ACTIVE_RECORD_POOL_RECYCLE", "3600")),
        )

    def engine_options(self) -> dict:
        options = {"echo": self.echo}
        if not self.is_sqlite:
            options.update(pool_size=self.pool_size, max_overflow=self.max_overflow, pool_recycle=self.pool_recycle)
        return options
