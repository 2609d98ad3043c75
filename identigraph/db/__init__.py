"""PostgreSQL database module."""

from .client import init_db, close_db, get_db_session, get_async_engine
from .rls import org_scope, get_org_scope

__all__ = [
    "init_db",
    "close_db",
    "get_db_session",
    "get_async_engine",
    "org_scope",
    "get_org_scope",
]
