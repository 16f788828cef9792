"""Database module for work sessions and platform transactions."""

from .models import (
    Base,
    OperatorWorkSession,
    IdexTransaction,
    BybitTransaction,
)
from .session import (
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
    read_only_session,
)
from .repository import (
    TransactionRepository,
    WorkSessionRepository,
    windows_clause,
)

__all__ = [
    # Models
    "Base",
    "OperatorWorkSession",
    "IdexTransaction",
    "BybitTransaction",
    # Session management
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    "read_only_session",
    # Repositories
    "TransactionRepository",
    "WorkSessionRepository",
    "windows_clause",
]
