from .session import DbSession, Savepoint
from .tx import DbFactory, DbTransaction, DbTx

__all__ = [
    "DbSession",
    "Savepoint",
    "DbTx",
    "DbTransaction",
    "DbFactory",
]
