"""Organization scope for row-level security (RLS) policies.

Every session opened by `get_db_session` publishes the active org id as
`app.org_id`, which the identity tables' RLS policies compare against.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_org_id_var: ContextVar[str | None] = ContextVar("rls_org_id", default=None)


def get_org_scope() -> str | None:
    """Get the organization id bound to the current context."""
    return _org_id_var.get()


@contextmanager
def org_scope(org_id: str | None) -> Iterator[None]:
    """Bind `org_id` for sessions opened inside the block, then restore."""
    token = _org_id_var.set(org_id)
    try:
        yield
    finally:
        _org_id_var.reset(token)
