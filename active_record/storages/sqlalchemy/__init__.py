from active_record.storages.sqlalchemy.database import Database, ExecutionContext, StatementResult, Transaction
from active_record.storages.sqlalchemy.registry import SaRegistry
