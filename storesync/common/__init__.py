"""Shared services for storesync modules."""

from typing import Any

__all__ = [
    "RetryPolicy",
    "SingleFlightCache",
    "run_alembic_upgrade",
    "session_scope",
]


def __getattr__(name: str) -> Any:
    if name == "RetryPolicy":
        from .retry import RetryPolicy as _RetryPolicy

        return _RetryPolicy
    if name == "SingleFlightCache":
        from .cache import SingleFlightCache as _SingleFlightCache

        return _SingleFlightCache
    if name == "run_alembic_upgrade":
        from .db import run_alembic_upgrade as _run_alembic_upgrade

        return _run_alembic_upgrade
    if name == "session_scope":
        from .db import session_scope as _session_scope

        return _session_scope
    raise AttributeError(name)
